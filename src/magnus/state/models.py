from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from magnus.gates import QualityGate

Classification = Literal["ui", "api", "mixed"]
SessionStatus = Literal["active", "completed", "failed", "abandoned"]
PhaseStatus = Literal["pending", "in_progress", "completed", "skipped", "failed", "blocked"]

CLASSIFICATIONS: tuple[Classification, ...] = ("ui", "api", "mixed")
SESSION_STATUSES: tuple[SessionStatus, ...] = ("active", "completed", "failed", "abandoned")
PHASE_STATUSES: tuple[PhaseStatus, ...] = (
    "pending",
    "in_progress",
    "completed",
    "skipped",
    "failed",
    "blocked",
)
SETTLED_PHASE_STATUSES = frozenset({"completed", "skipped"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_session_id() -> str:
    return f"ses-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class ErrorEvent:
    kind: str
    message: str
    attempted: str = ""
    degraded: str = ""
    next_actions: list[str] = field(default_factory=list)
    at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "attempted": self.attempted,
            "degraded": self.degraded,
            "nextActions": list(self.next_actions),
            "at": self.at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ErrorEvent:
        return cls(
            kind=str(payload["kind"]),
            message=str(payload.get("message", "")),
            attempted=str(payload.get("attempted", "")),
            degraded=str(payload.get("degraded", "")),
            next_actions=[str(item) for item in payload.get("nextActions", [])],
            at=str(payload.get("at") or utcnow_iso()),
        )


@dataclass(slots=True)
class PhaseRecord:
    name: str
    status: PhaseStatus = "pending"
    iteration: int = 0
    iteration_limit: int = 0
    skip_reason: str | None = None
    gates: list[QualityGate] = field(default_factory=list)
    errors: list[ErrorEvent] = field(default_factory=list)
    advisories: list[str] = field(default_factory=list)

    @property
    def settled(self) -> bool:
        return self.status in SETTLED_PHASE_STATUSES

    def annotate(self, error: ErrorEvent) -> None:
        self.errors.append(error)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "status": self.status,
            "iteration": self.iteration,
            "iterationLimit": self.iteration_limit,
            "gates": [gate.to_dict() for gate in self.gates],
            "errors": [error.to_dict() for error in self.errors],
            "advisories": list(self.advisories),
        }
        if self.skip_reason is not None:
            payload["skipReason"] = self.skip_reason
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PhaseRecord:
        name = str(payload["name"])
        status = payload.get("status", "pending")
        if status not in PHASE_STATUSES:
            raise ValueError(f"Unknown phase status '{status}' for phase {name}.")
        return cls(
            name=name,
            status=status,
            iteration=int(payload.get("iteration", 0)),
            iteration_limit=int(payload.get("iterationLimit", 0)),
            skip_reason=payload.get("skipReason"),
            gates=[QualityGate.from_dict(name, item) for item in payload.get("gates", [])],
            errors=[ErrorEvent.from_dict(item) for item in payload.get("errors", [])],
            advisories=[str(item) for item in payload.get("advisories", [])],
        )


@dataclass(slots=True)
class Checkpoint:
    last_completed: str | None
    next_phase: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"lastCompleted": self.last_completed, "nextPhase": self.next_phase}


@dataclass(slots=True)
class Session:
    id: str
    request: str
    classification: Classification = "mixed"
    command: str = "full"
    status: SessionStatus = "active"
    phases: list[PhaseRecord] = field(default_factory=list)
    artifacts: dict[str, str] = field(default_factory=dict)
    background: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[ErrorEvent] = field(default_factory=list)
    result: dict[str, Any] | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    revision: int = 0

    def phase(self, name: str) -> PhaseRecord:
        for record in self.phases:
            if record.name == name:
                return record
        raise KeyError(name)

    def current_phase(self) -> PhaseRecord | None:
        """First phase that is neither completed nor skipped."""
        for record in self.phases:
            if not record.settled:
                return record
        return None

    def in_progress(self) -> list[PhaseRecord]:
        return [record for record in self.phases if record.status == "in_progress"]

    def checkpoint(self) -> Checkpoint:
        last_completed: str | None = None
        for record in self.phases:
            if not record.settled:
                break
            if record.status == "completed":
                last_completed = record.name
        current = self.current_phase()
        return Checkpoint(
            last_completed=last_completed,
            next_phase=current.name if current else None,
        )

    def validate(self) -> None:
        if self.classification not in CLASSIFICATIONS:
            raise ValueError(f"Unknown classification '{self.classification}'.")
        if self.status not in SESSION_STATUSES:
            raise ValueError(f"Unknown session status '{self.status}'.")
        running = self.in_progress()
        if len(running) > 1:
            names = ", ".join(record.name for record in running)
            raise ValueError(f"More than one phase in progress: {names}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request": self.request,
            "classification": self.classification,
            "command": self.command,
            "status": self.status,
            "phases": [record.to_dict() for record in self.phases],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "artifacts": dict(self.artifacts),
            "background": [dict(item) for item in self.background],
            "warnings": [warning.to_dict() for warning in self.warnings],
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, revision: int = 0) -> Session:
        session = cls(
            id=str(payload["id"]),
            request=str(payload.get("request", "")),
            classification=payload.get("classification", "mixed"),
            command=str(payload.get("command", "full")),
            status=payload.get("status", "active"),
            phases=[PhaseRecord.from_dict(item) for item in payload.get("phases", [])],
            artifacts={str(key): str(value) for key, value in payload.get("artifacts", {}).items()},
            background=[dict(item) for item in payload.get("background", [])],
            warnings=[ErrorEvent.from_dict(item) for item in payload.get("warnings", [])],
            result=payload.get("result"),
            created_at=str(payload.get("createdAt") or utcnow_iso()),
            updated_at=str(payload.get("updatedAt") or utcnow_iso()),
            revision=revision,
        )
        session.validate()
        return session
