from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from magnus.state.models import Session, utcnow_iso

logger = logging.getLogger(__name__)

SessionFilter = Callable[[Session], bool]


class StateError(RuntimeError):
    """Raised when session persistence fails."""


class SessionNotFound(StateError):
    """Raised when no snapshot exists for a session id."""


class SessionCorruption(StateError):
    """Raised when a snapshot is unreadable or structurally invalid."""


class SessionStore:
    """File-backed session snapshots, one JSON envelope per session.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace``, so readers only ever see a complete snapshot.
    """

    SCHEMA_VERSION = 1
    SUFFIX = ".json"

    def __init__(self, directory: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self.lock_timeout_seconds = lock_timeout_seconds

    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise StateError(f"Invalid session id: {session_id!r}")
        return self.directory / f"{session_id}{self.SUFFIX}"

    @contextmanager
    def _lock(self, session_id: str):
        # the kernel drops a flock when its holder exits, so a leftover file never blocks
        lock_file = self.directory / f".{session_id}.lock"
        handle = open(lock_file, "a+", encoding="utf-8")
        try:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.monotonic() - start > self.lock_timeout_seconds:
                        raise StateError(
                            f"Timed out waiting for session lock {session_id}."
                        ) from exc
                    time.sleep(0.02)
            handle.seek(0)
            handle.truncate()
            handle.write(str(os.getpid()))
            handle.flush()
            yield
        finally:
            handle.close()

    def _read_envelope(self, path: Path) -> dict[str, Any]:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SessionCorruption(f"Snapshot {path.name} is not valid JSON: {exc}") from exc
        if not (isinstance(raw, dict) and isinstance(raw.get("data"), dict)):
            raise SessionCorruption(f"Snapshot {path.name} has no session payload.")
        schema_version = raw.get("schema_version")
        if schema_version != self.SCHEMA_VERSION:
            raise SessionCorruption(
                f"Snapshot {path.name} has unsupported schema version {schema_version!r}."
            )
        return raw

    def _write_atomic(self, path: Path, serialized: str) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).exists()

    def load(self, session_id: str) -> Session:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFound(f"Session not found: {session_id}")
        envelope = self._read_envelope(path)
        try:
            return Session.from_dict(envelope["data"], revision=int(envelope.get("revision", 0)))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise SessionCorruption(f"Snapshot {path.name} is invalid: {exc}") from exc

    def save(self, session: Session) -> Session:
        """Commit the whole snapshot; rejects writes based on a stale revision."""
        try:
            session.validate()
        except ValueError as exc:
            raise StateError(f"Refusing to persist invalid session {session.id}: {exc}") from exc
        path = self._path(session.id)
        with self._lock(session.id):
            current_revision = 0
            if path.exists():
                try:
                    current_revision = int(self._read_envelope(path).get("revision", 0))
                except SessionCorruption:
                    logger.warning("Overwriting unreadable snapshot for %s", session.id)
            if current_revision != session.revision:
                raise StateError(
                    f"Concurrent session update detected for {session.id} "
                    f"(expected revision {session.revision}, found {current_revision})."
                )
            session.updated_at = utcnow_iso()
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": session.updated_at,
                "data": session.to_dict(),
            }
            self._write_atomic(path, json.dumps(envelope, ensure_ascii=False, indent=2))
            session.revision = current_revision + 1
        logger.debug("Saved session %s at revision %s", session.id, session.revision)
        return session

    def list(
        self,
        filter: SessionFilter | None = None,
        *,
        status: str | None = None,
        classification: str | None = None,
    ) -> list[Session]:
        sessions: list[Session] = []
        for path in sorted(self.directory.glob(f"*{self.SUFFIX}")):
            try:
                session = self.load(path.stem)
            except SessionCorruption as exc:
                logger.warning("Skipping corrupt session snapshot %s: %s", path.name, exc)
                continue
            if status is not None and session.status != status:
                continue
            if classification is not None and session.classification != classification:
                continue
            if filter is not None and not filter(session):
                continue
            sessions.append(session)
        sessions.sort(key=lambda item: item.created_at)
        return sessions

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        with self._lock(session_id):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        logger.info("Deleted session %s", session_id)
        return True
