from __future__ import annotations

from pathlib import Path

from magnus.backends.base import AgentBackend
from magnus.config import AgentsConfig
from magnus.specialists.base import (
    READ_ONLY_PERMISSIONS,
    WRITE_PERMISSIONS,
    SpecialistAgent,
)

REPORT_PERMISSIONS = {**READ_ONLY_PERMISSIONS, "write": "allow", "bash": "allow"}


class PlannerAgent(SpecialistAgent):
    role = "planner"
    description = "Turns a request into an implementation plan with interfaces and risks"
    default_model = "anthropic/claude-opus-4-1"
    permissions = {**READ_ONLY_PERMISSIONS, "write": "allow"}
    fallback_prompt = """
You are the planner.
Analyze the request, define interfaces, list implementation steps,
and call out risks with alternatives. You produce plans, not code.
Write the plan to implementation-plan.md.
"""


class PlanReviewerAgent(SpecialistAgent):
    role = "plan_reviewer"
    description = "Independently reviews a plan before implementation (read-only)"
    fallback_prompt = """
You are an independent plan reviewer.
Check the plan for missing interfaces, unclear milestones and unhandled risks.
Label each finding CRITICAL, MEDIUM or LOW and end with VERDICT: PASS or VERDICT: FAIL.
"""


class UIDeveloperAgent(SpecialistAgent):
    role = "ui_developer"
    description = "Implements pages, components and styling"
    permissions = WRITE_PERMISSIONS
    fallback_prompt = """
You are the UI developer.
Implement the user-facing part of the plan: routes, components, forms and styling.
Report what you changed and any CRITICAL, MEDIUM or LOW issues left open.
"""


class BackendDeveloperAgent(SpecialistAgent):
    role = "backend_developer"
    description = "Implements schemas, queries, mutations and server endpoints"
    permissions = WRITE_PERMISSIONS
    fallback_prompt = """
You are the backend developer.
Implement the data and server part of the plan: schema, queries, mutations, endpoints.
Report what you changed and any CRITICAL, MEDIUM or LOW issues left open.
"""


class DesignerAgent(SpecialistAgent):
    role = "designer"
    description = "Validates UI against the reference designs (read-only)"
    default_model = "google/gemini-2.5-pro"
    permissions = REPORT_PERMISSIONS
    fallback_prompt = """
You are the designer, a UI/UX validator. You do not write code.
Compare the implementation against the reference designs: layout, colors,
typography, spacing, responsive breakpoints, hover and focus states.
Write design-validation.md and label each issue CRITICAL, MEDIUM or LOW.
"""


class TestArchitectAgent(SpecialistAgent):
    role = "test_architect"
    description = "Designs the test suite and writes failing tests first"
    permissions = WRITE_PERMISSIONS
    fallback_prompt = """
You are the test architect.
Derive test cases from the plan, write them before the fix, and describe
how to run them. Label gaps you find CRITICAL, MEDIUM or LOW.
"""


class TesterAgent(SpecialistAgent):
    role = "tester"
    description = "Browser and integration testing"
    mode = "background"
    default_model = "anthropic/claude-haiku-4-5"
    output_kind = "test_report"
    permissions = REPORT_PERMISSIONS
    fallback_prompt = """
You are the tester.
Run browser and integration tests, validate interactions, form submissions,
error states and responsive behavior. Write testing-report.md with results
(passed/failed) and label issues CRITICAL, MEDIUM or LOW.
"""


class CodeReviewerAgent(SpecialistAgent):
    role = "code_reviewer"
    description = "Independent code review (read-only)"
    fallback_prompt = """
You are an independent code reviewer.
Find correctness, maintainability and security issues.
Label each finding CRITICAL, MEDIUM or LOW and end with VERDICT: PASS or VERDICT: FAIL.
"""


class ConsolidatorAgent(SpecialistAgent):
    role = "consolidator"
    description = "Merges and ranks parallel review results"
    permissions = {**READ_ONLY_PERMISSIONS, "write": "allow"}
    fallback_prompt = """
You are the consolidator.
Merge the independent reviews you are given, drop duplicates, rank the
remaining findings, and keep their CRITICAL, MEDIUM or LOW labels.
"""


class CleanerAgent(SpecialistAgent):
    role = "cleaner"
    description = "Removes temporary artifacts and writes the delivery summary"
    mode = "supervisor"
    permissions = WRITE_PERMISSIONS
    fallback_prompt = """
You are the cleaner.
Remove temporary files created during the workflow, keep the deliverables,
and write a short delivery summary of what was built and verified.
"""


ROLE_CATALOGUE: dict[str, type[SpecialistAgent]] = {
    agent.role: agent
    for agent in (
        PlannerAgent,
        PlanReviewerAgent,
        UIDeveloperAgent,
        BackendDeveloperAgent,
        DesignerAgent,
        TestArchitectAgent,
        TesterAgent,
        CodeReviewerAgent,
        ConsolidatorAgent,
        CleanerAgent,
    )
}


def build_specialists(
    backend: AgentBackend,
    config: AgentsConfig,
    *,
    project_dir: Path | None = None,
) -> dict[str, SpecialistAgent]:
    """Instantiate every enabled role with its configured model."""
    unknown = sorted((set(config.disabled) | set(config.models)) - set(ROLE_CATALOGUE))
    if unknown:
        raise ValueError(f"Unknown roles in [agents] config: {', '.join(unknown)}")
    prompt_dir: Path | None = None
    if config.prompt_dir:
        prompt_dir = Path(config.prompt_dir).expanduser()
        if project_dir is not None and not prompt_dir.is_absolute():
            prompt_dir = project_dir / prompt_dir
    specialists: dict[str, SpecialistAgent] = {}
    for role, agent_type in ROLE_CATALOGUE.items():
        if role in config.disabled:
            continue
        model = config.models.get(role) or agent_type.default_model or config.default_model
        specialists[role] = agent_type(backend, model=model, prompt_dir=prompt_dir)
    return specialists
