from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

from magnus.gates import GateKind
from magnus.state.models import Classification

CommandName = Literal["full", "backend", "validation", "review"]


@dataclass(frozen=True, slots=True)
class PhaseSpec:
    """Static description of one workflow phase.

    ``reviewers`` names the ``[workflow]`` setting that decides how many copies
    of the parallel role are issued. Roles listed in ``ROLE_SCOPE`` only take
    part in matching classifications.
    """

    name: str
    state: str
    gates: tuple[GateKind, ...]
    preparation: tuple[str, ...] = ()
    parallel: tuple[str, ...] = ()
    background: tuple[str, ...] = ()
    consolidation: tuple[str, ...] = ()
    presentation: tuple[str, ...] = ()
    fix_roles: tuple[str, ...] = ()
    rerun_after_fix: bool = True
    reviewers: str | None = None
    approval_options: tuple[str, ...] = ()
    skip_for: frozenset[str] = field(default_factory=frozenset)
    skip_reason: str = ""
    optional: bool = False

    @property
    def interactive(self) -> bool:
        return "user_approval" in self.gates

    def applies_to(self, classification: Classification) -> bool:
        return classification not in self.skip_for

    def roles(self) -> tuple[str, ...]:
        return (
            self.preparation
            + self.parallel
            + self.background
            + self.consolidation
            + self.presentation
        )


PHASES: tuple[PhaseSpec, ...] = (
    PhaseSpec(
        name="planning",
        state="Planning",
        gates=("automatic_validation", "severity_classification"),
        parallel=("planner",),
        fix_roles=("planner",),
        rerun_after_fix=False,
    ),
    PhaseSpec(
        name="plan_approval",
        state="AwaitingApproval",
        gates=("user_approval",),
        approval_options=("approve", "revise", "abandon"),
        fix_roles=("planner",),
    ),
    PhaseSpec(
        name="plan_review",
        state="OptionalReview",
        gates=("consensus",),
        parallel=("plan_reviewer",),
        consolidation=("consolidator",),
        fix_roles=("planner",),
        reviewers="plan_reviewers",
        optional=True,
    ),
    PhaseSpec(
        name="implementation",
        state="Implementing",
        gates=("severity_classification",),
        parallel=("ui_developer", "backend_developer"),
        fix_roles=("ui_developer", "backend_developer"),
        rerun_after_fix=False,
    ),
    PhaseSpec(
        name="design_validation",
        state="Validating",
        gates=("severity_classification",),
        parallel=("designer",),
        background=("tester",),
        fix_roles=("ui_developer",),
        skip_for=frozenset({"api"}),
        skip_reason="design validation does not apply to api workflows",
    ),
    PhaseSpec(
        name="code_review",
        state="Reviewing",
        gates=("consensus", "severity_classification"),
        parallel=("code_reviewer",),
        consolidation=("consolidator",),
        fix_roles=("ui_developer", "backend_developer"),
        reviewers="code_reviewers",
    ),
    PhaseSpec(
        name="testing",
        state="Testing",
        gates=("severity_classification", "automatic_validation"),
        preparation=("test_architect",),
        background=("tester",),
        fix_roles=("backend_developer",),
        skip_for=frozenset({"ui"}),
        skip_reason="the TDD loop does not apply to ui workflows",
    ),
    PhaseSpec(
        name="user_acceptance",
        state="AwaitingAcceptance",
        gates=("user_approval",),
        approval_options=("accept", "revise", "abandon"),
        fix_roles=("ui_developer", "backend_developer"),
    ),
    PhaseSpec(
        name="cleanup",
        state="Cleanup",
        gates=("automatic_validation",),
        presentation=("cleaner",),
        fix_roles=("cleaner",),
        rerun_after_fix=False,
    ),
)

PHASES_BY_NAME: dict[str, PhaseSpec] = {spec.name: spec for spec in PHASES}

ROLE_SCOPE: dict[str, frozenset[str]] = {
    "ui_developer": frozenset({"ui", "mixed"}),
    "backend_developer": frozenset({"api", "mixed"}),
}

COMMAND_PHASES: dict[str, tuple[str, ...]] = {
    "full": tuple(spec.name for spec in PHASES),
    "backend": (
        "planning",
        "plan_approval",
        "plan_review",
        "implementation",
        "code_review",
        "testing",
        "user_acceptance",
        "cleanup",
    ),
    "validation": ("design_validation",),
    "review": ("code_review",),
}

COMMAND_CLASSIFICATION: dict[str, Classification] = {
    "backend": "api",
    "validation": "ui",
}


def phase_spec(name: str) -> PhaseSpec:
    try:
        return PHASES_BY_NAME[name]
    except KeyError as exc:
        raise ValueError(f"Unknown phase: {name}") from exc


def roles_for(roles: tuple[str, ...], classification: Classification) -> list[str]:
    return [role for role in roles if classification in ROLE_SCOPE.get(role, {classification})]


def phases_for_command(command: str) -> list[str]:
    try:
        return list(COMMAND_PHASES[command])
    except KeyError as exc:
        raise ValueError(f"Unknown command: {command}") from exc


UI_KEYWORDS = (
    "ui",
    "page",
    "component",
    "layout",
    "css",
    "style",
    "figma",
    "design",
    "frontend",
    "svelte",
    "button",
    "form",
    "modal",
    "responsive",
    "screen",
)
API_KEYWORDS = (
    "api",
    "endpoint",
    "backend",
    "database",
    "schema",
    "mutation",
    "query",
    "convex",
    "server",
    "auth",
    "migration",
    "webhook",
    "cron",
)

_WORD = re.compile(r"[a-z0-9]+")


def classify_request(request: str) -> tuple[Classification, bool]:
    """Keyword classification; returns ``(classification, ambiguous)``.

    Requests with no signal at all are ambiguous and default to ``mixed``.
    """
    words = [
        word[:-1] if word.endswith("s") and len(word) > 3 else word
        for word in _WORD.findall(request.lower())
    ]
    ui_score = sum(1 for word in words if word in UI_KEYWORDS)
    api_score = sum(1 for word in words if word in API_KEYWORDS)
    if ui_score and api_score:
        return "mixed", False
    if ui_score:
        return "ui", False
    if api_score:
        return "api", False
    return "mixed", True
