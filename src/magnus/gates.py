"""
Quality gates guarding phase advancement.

A gate never stores its outcome: ``QualityGate.outcome`` is recomputed from
whatever inputs have been recorded so far (a user selection, validation checks,
classified issues or reviewer verdicts).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal

GateKind = Literal["user_approval", "automatic_validation", "severity_classification", "consensus"]
GateOutcome = Literal["pass", "fail", "pending"]
Severity = Literal["critical", "medium", "low"]
Confidence = Literal["high", "medium", "low"]

SEVERITIES: tuple[Severity, ...] = ("critical", "medium", "low")
APPROVING_SELECTIONS = frozenset({"approve", "accept", "continue"})

SEVERITY_PATTERN = re.compile(
    r"^\s*(?:[-*]\s*)?\[?(CRITICAL|BLOCKER|MEDIUM|MAJOR|LOW|MINOR)\]?\s*[:\-]\s*(.+)$",
    re.IGNORECASE,
)
VERDICT_PATTERN = re.compile(
    r"\bVERDICT\s*[:=]\s*(PASS|FAIL|APPROVE|APPROVED|REJECT|REJECTED)\b", re.IGNORECASE
)

_SEVERITY_ALIASES: dict[str, Severity] = {
    "CRITICAL": "critical",
    "BLOCKER": "critical",
    "MEDIUM": "medium",
    "MAJOR": "medium",
    "LOW": "low",
    "MINOR": "low",
}


@dataclass(slots=True)
class Issue:
    severity: Severity
    message: str
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"severity": self.severity, "message": self.message, "source": self.source}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Issue:
        return cls(
            severity=_normalize_severity(payload.get("severity")) or "low",
            message=str(payload.get("message", "")),
            source=str(payload.get("source", "")),
        )


@dataclass(slots=True)
class Check:
    name: str
    passed: bool
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "detail": self.detail}


@dataclass(slots=True)
class Verdict:
    reviewer: str
    approve: bool
    critical: bool = False
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewer": self.reviewer,
            "verdict": "pass" if self.approve else "fail",
            "critical": self.critical,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Verdict:
        return cls(
            reviewer=str(payload.get("reviewer", "")),
            approve=str(payload.get("verdict", "fail")) == "pass",
            critical=bool(payload.get("critical", False)),
            note=str(payload.get("note", "")),
        )


@dataclass(slots=True)
class QualityGate:
    phase: str
    kind: GateKind
    quorum: int = 1
    selection: str | None = None
    checks: list[Check] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    verdicts: list[Verdict] = field(default_factory=list)
    evaluated: bool = False

    @property
    def outcome(self) -> GateOutcome:
        if self.kind == "user_approval":
            if self.selection is None:
                return "pending"
            return "pass" if self.selection in APPROVING_SELECTIONS else "fail"

        if not self.evaluated:
            return "pending"
        if any(issue.severity == "critical" for issue in self.issues):
            return "fail"

        if self.kind == "automatic_validation":
            return "pass" if all(check.passed for check in self.checks) else "fail"

        if self.kind == "consensus":
            return self._consensus_outcome()

        return "pass"

    def _consensus_outcome(self) -> GateOutcome:
        votes = len(self.verdicts)
        if votes < max(1, self.quorum):
            return "fail"
        if any(verdict.critical and not verdict.approve for verdict in self.verdicts):
            return "fail"
        rejections = sum(1 for verdict in self.verdicts if not verdict.approve)
        # split reviews pass; dissent surfaces as advisories
        if rejections == votes:
            return "fail"
        return "pass"

    @property
    def confidence(self) -> Confidence | None:
        if self.kind != "consensus" or not self.verdicts:
            return None
        votes = len(self.verdicts)
        approvals = sum(1 for verdict in self.verdicts if verdict.approve)
        majority = max(approvals, votes - approvals)
        if majority == votes:
            return "high"
        if majority * 2 > votes:
            return "medium"
        return "low"

    @property
    def advisories(self) -> list[str]:
        notes = [
            f"{issue.severity}: {issue.message}"
            for issue in self.issues
            if issue.severity != "critical"
        ]
        if self.kind == "consensus" and self.outcome == "pass":
            dissent = [verdict for verdict in self.verdicts if not verdict.approve]
            for verdict in dissent:
                note = verdict.note or "flagged without details"
                notes.append(
                    f"{self.confidence}-confidence dissent from {verdict.reviewer}: {note}"
                )
        return notes

    def record_selection(self, selection: str) -> None:
        self.selection = selection

    def record_checks(self, checks: list[Check]) -> None:
        self.checks = list(checks)
        self.evaluated = True

    def record_issues(self, issues: list[Issue]) -> None:
        self.issues = list(issues)
        self.evaluated = True

    def record_verdicts(self, verdicts: list[Verdict]) -> None:
        self.verdicts = list(verdicts)
        self.evaluated = True

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "outcome": self.outcome,
            "evaluated": self.evaluated,
        }
        if self.kind == "user_approval":
            payload["selection"] = self.selection
        if self.checks:
            payload["checks"] = [check.to_dict() for check in self.checks]
        if self.issues:
            payload["issues"] = [issue.to_dict() for issue in self.issues]
        if self.kind == "consensus":
            payload["quorum"] = self.quorum
            payload["verdicts"] = [verdict.to_dict() for verdict in self.verdicts]
            payload["confidence"] = self.confidence
        return payload

    @classmethod
    def from_dict(cls, phase: str, payload: dict[str, Any]) -> QualityGate:
        checks = [
            Check(
                name=str(item.get("name", "")),
                passed=bool(item.get("passed", False)),
                detail=str(item.get("detail", "")),
            )
            for item in payload.get("checks", [])
            if isinstance(item, dict)
        ]
        return cls(
            phase=phase,
            kind=payload["kind"],
            quorum=int(payload.get("quorum", 1)),
            selection=payload.get("selection"),
            checks=checks,
            issues=[
                Issue.from_dict(item)
                for item in payload.get("issues", [])
                if isinstance(item, dict)
            ],
            verdicts=[
                Verdict.from_dict(item)
                for item in payload.get("verdicts", [])
                if isinstance(item, dict)
            ],
            evaluated=bool(payload.get("evaluated", False)),
        )


def combined_outcome(gates: list[QualityGate]) -> GateOutcome:
    """Fail wins over pending; all gates must pass for the phase to pass."""
    outcomes = [gate.outcome for gate in gates]
    if "fail" in outcomes:
        return "fail"
    if "pending" in outcomes:
        return "pending"
    return "pass"


def _normalize_severity(value: Any) -> Severity | None:
    if not isinstance(value, str):
        return None
    return _SEVERITY_ALIASES.get(value.strip().upper())


def _json_lines(text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def parse_issues(text: str, *, source: str = "") -> list[Issue]:
    """Pick severity markers out of agent output.

    JSON lines carrying ``severity``/``findings`` take precedence; otherwise
    lines such as ``CRITICAL: ...`` or ``- [minor]: ...`` are used.
    """
    issues: list[Issue] = []
    for payload in _json_lines(text):
        items = payload.get("findings")
        candidates = items if isinstance(items, list) else [payload]
        for item in candidates:
            if not isinstance(item, dict):
                continue
            severity = _normalize_severity(item.get("severity"))
            if severity is None:
                continue
            message = str(item.get("message") or item.get("title") or "").strip()
            issues.append(Issue(severity=severity, message=message, source=source))
    if issues:
        return issues

    for raw_line in text.splitlines():
        match = SEVERITY_PATTERN.match(raw_line)
        if not match:
            continue
        severity = _SEVERITY_ALIASES[match.group(1).upper()]
        issues.append(Issue(severity=severity, message=match.group(2).strip(), source=source))
    return issues


def parse_verdict(reviewer: str, text: str) -> Verdict:
    issues = parse_issues(text, source=reviewer)
    critical = any(issue.severity == "critical" for issue in issues)
    match = VERDICT_PATTERN.search(text)
    if match:
        approve = match.group(1).upper() in {"PASS", "APPROVE", "APPROVED"}
    else:
        approve = not any(issue.severity in {"critical", "medium"} for issue in issues)
    note = "; ".join(issue.message for issue in issues if issue.severity != "low")[:500]
    return Verdict(reviewer=reviewer, approve=approve, critical=critical, note=note)
