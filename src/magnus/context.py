from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_content(content: str) -> str:
    return _WHITESPACE.sub(" ", content).strip()


def fingerprint(content: str) -> str:
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class ContextContribution:
    producer: str
    ordering_key: tuple[int, int]
    content: str
    fingerprint: str


class ContextCollector:
    """Merges side-channel contributions into one deduplicated, ordered payload.

    Ordering keys are ``(producer registration index, sequence)``. When two
    contributions share a fingerprint, the one with the smaller key survives,
    so the flushed payload does not depend on arrival order.
    """

    def __init__(self, producers: list[str] | None = None) -> None:
        self._producers: dict[str, int] = {}
        self._sequences: dict[str, int] = {}
        self._pending: dict[str, ContextContribution] = {}
        for producer in producers or []:
            self.register(producer)

    @property
    def producers(self) -> list[str]:
        return list(self._producers)

    def register(self, producer: str) -> int:
        if producer not in self._producers:
            self._producers[producer] = len(self._producers)
            self._sequences[producer] = 0
        return self._producers[producer]

    def contribute(self, producer: str, content: str, *, sequence: int | None = None) -> bool:
        """Queue a contribution; returns False when it was dropped as empty or duplicate."""
        if not normalize_content(content):
            return False
        index = self.register(producer)
        if sequence is None:
            sequence = self._sequences[producer]
        self._sequences[producer] = max(self._sequences[producer], sequence + 1)
        contribution = ContextContribution(
            producer=producer,
            ordering_key=(index, sequence),
            content=content.strip(),
            fingerprint=fingerprint(content),
        )
        existing = self._pending.get(contribution.fingerprint)
        if existing is not None and existing.ordering_key <= contribution.ordering_key:
            logger.debug("Dropping duplicate context from %s", producer)
            return False
        self._pending[contribution.fingerprint] = contribution
        return True

    def __len__(self) -> int:
        return len(self._pending)

    def flush(self) -> list[ContextContribution]:
        items = sorted(self._pending.values(), key=lambda item: item.ordering_key)
        self._pending.clear()
        return items


def render_context(contributions: list[ContextContribution], *, separator: str = "\n\n") -> str:
    return separator.join(item.content for item in contributions)
