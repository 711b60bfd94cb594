from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from magnus.config import MagnusConfig
from magnus.context import ContextCollector, render_context
from magnus.dispatcher import (
    BatchOutcome,
    InputInvalid,
    QuorumNotMet,
    Task,
    TaskDispatcher,
    TaskInvoker,
)
from magnus.gates import (
    Check,
    Issue,
    QualityGate,
    Verdict,
    combined_outcome,
    parse_issues,
    parse_verdict,
)
from magnus.monitor import BackgroundTaskMonitor
from magnus.phases import (
    COMMAND_CLASSIFICATION,
    PhaseSpec,
    classify_request,
    phase_spec,
    phases_for_command,
    roles_for,
)
from magnus.skills import SkillContext, SkillInjector
from magnus.specialists.roles import ROLE_CATALOGUE
from magnus.state.models import (
    Classification,
    ErrorEvent,
    PhaseRecord,
    Session,
    new_session_id,
    utcnow_iso,
)
from magnus.state.store import SessionCorruption, SessionStore, StateError

logger = logging.getLogger(__name__)

Presenter = Callable[[str, str, list[str]], str | None]
WorkflowEventHook = Callable[[dict[str, Any]], None]

DECISION_OPTIONS = ["continue", "accept", "abandon"]
CONTEXT_PRODUCERS = ["skills", "workflow", "dispatcher", "monitor", "gates"]
SESSION_STATES = {"completed": "Delivered", "failed": "Failed", "abandoned": "Abandoned"}

PHASE_INSTRUCTIONS: dict[str, str] = {
    "planning": "Produce an implementation plan for the request.",
    "plan_approval": "Revise the plan according to the feedback.",
    "plan_review": "Review the plan independently.",
    "implementation": "Implement your part of the plan.",
    "design_validation": "Validate the implemented UI against the designs.",
    "code_review": "Review the changes made for this request.",
    "testing": "Write and run the tests for this request.",
    "user_acceptance": "Address the feedback given at user acceptance.",
    "cleanup": "Clean up temporary artifacts and summarize the delivery.",
}


class WorkflowError(RuntimeError):
    """Raised when an operation is not valid for the session's current state."""


class WorkflowFailure(WorkflowError):
    """Session-level failure carrying what failed, what was tried and what to do next."""

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        attempted: str = "",
        degraded: str = "",
        next_actions: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.attempted = attempted
        self.degraded = degraded
        self.next_actions = list(next_actions or [])

    def describe(self) -> str:
        lines = [f"Failed: {self}"]
        if self.attempted:
            lines.append(f"Attempted: {self.attempted}")
        if self.degraded:
            lines.append(f"Degraded: {self.degraded}")
        if self.next_actions:
            lines.append("Next actions: " + "; ".join(self.next_actions))
        return "\n".join(lines)


@dataclass(slots=True)
class PhaseWork:
    tasks: list[Task] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    verdicts: list[Verdict] = field(default_factory=list)
    reviewers: int = 0


class WorkflowEngine:
    def __init__(
        self,
        store: SessionStore,
        invoker: TaskInvoker,
        config: MagnusConfig,
        *,
        artifacts_dir: Path,
        monitor: BackgroundTaskMonitor | None = None,
        skills: SkillInjector | None = None,
        presenter: Presenter | None = None,
        event_hook: WorkflowEventHook | None = None,
    ) -> None:
        self.store = store
        self.invoker = invoker
        self.config = config
        self.artifacts_dir = artifacts_dir
        self.monitor = monitor
        self.skills = skills
        self.presenter = presenter
        self.event_hook = event_hook
        self._locks: dict[str, asyncio.Lock] = {}
        self._dispatchers: dict[str, TaskDispatcher] = {}
        self._collectors: dict[str, ContextCollector] = {}

    # -- plumbing ---------------------------------------------------------

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def _dispatcher(self, session: Session) -> TaskDispatcher:
        dispatcher = self._dispatchers.get(session.id)
        if dispatcher is None:
            dispatcher = TaskDispatcher(
                self.invoker,
                session_id=session.id,
                monitor=self.monitor,
                quorum=self.config.workflow.quorum,
                required_roles=self.config.workflow.required_roles,
                max_background=self.config.background.max_concurrent,
                event_hook=self.event_hook,
            )
            self._dispatchers[session.id] = dispatcher
        return dispatcher

    def _collector(self, session_id: str) -> ContextCollector:
        collector = self._collectors.get(session_id)
        if collector is None:
            collector = ContextCollector(CONTEXT_PRODUCERS)
            self._collectors[session_id] = collector
        return collector

    def _session_dir(self, session: Session) -> Path:
        return self.artifacts_dir / session.id

    def _load(self, session_id: str) -> Session:
        try:
            session = self.store.load(session_id)
        except SessionCorruption as exc:
            raise WorkflowFailure(
                f"Session {session_id} snapshot is corrupt: {exc}",
                session_id=session_id,
                attempted="load the session snapshot",
                degraded="the session cannot be resumed; the snapshot is left untouched",
                next_actions=[
                    f"inspect {self.store.directory / (session_id + '.json')}",
                    f"magnus cleanup {session_id}",
                ],
            ) from exc
        if (
            self.monitor is not None
            and session.status == "active"
            and session.background
            and not self.monitor.records(session_id)
        ):
            self.monitor.restore(session.background)
        return session

    def _forget_background(self, session: Session) -> None:
        if self.monitor is not None:
            self.monitor.forget(session.id)

    def _commit(self, session: Session) -> None:
        if self.monitor is not None:
            session.background = self.monitor.export(session.id)
        self.store.save(session)

    def _present(self, session: Session, phase: str, options: list[str]) -> str | None:
        if self.presenter is None:
            return None
        selection = self.presenter(session.id, phase, list(options))
        if selection is not None and selection not in options:
            logger.warning(
                "Ignoring selection %r for %s; expected one of %s", selection, phase, options
            )
            return None
        return selection

    def _write_artifact(self, session: Session, relative: str, content: str) -> str:
        path = self._session_dir(session) / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return str(path)

    @staticmethod
    def _read_artifact(ref: str | None) -> str:
        if not ref:
            return ""
        try:
            return Path(ref).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def _flush_context(self, session: Session, boundary: str) -> None:
        items = self._collector(session.id).flush()
        if not items:
            return
        ref = self._write_artifact(session, f"{boundary}.context.md", render_context(items))
        session.artifacts[f"{boundary}/context"] = ref
        session.artifacts["context"] = ref

    def _active_roles(self, roles: tuple[str, ...], session: Session) -> list[str]:
        disabled = set(self.config.agents.disabled)
        return [role for role in roles_for(roles, session.classification) if role not in disabled]

    def state_of(self, session: Session) -> str:
        if session.status in SESSION_STATES:
            return SESSION_STATES[session.status]
        record = session.current_phase()
        if record is None:
            return "Delivered"
        return phase_spec(record.name).state

    @staticmethod
    def waiting_for_input(session: Session) -> bool:
        record = session.current_phase()
        if session.status != "active" or record is None:
            return False
        if record.status == "blocked":
            return True
        return (
            record.status == "in_progress"
            and bool(record.gates)
            and combined_outcome(record.gates) == "pending"
        )

    def pending_decision(self, session: Session) -> dict[str, Any] | None:
        record = session.current_phase()
        if session.status != "active" or record is None:
            return None
        if record.status == "blocked":
            return {"phase": record.name, "kind": "blocked", "options": list(DECISION_OPTIONS)}
        if self.waiting_for_input(session):
            return {
                "phase": record.name,
                "kind": "approval",
                "options": list(phase_spec(record.name).approval_options),
            }
        return None

    # -- operations -------------------------------------------------------

    async def start(
        self,
        request: str,
        *,
        command: str = "full",
        classification: Classification | None = None,
        phases: list[str] | None = None,
    ) -> str:
        request = request.strip()
        if not request:
            raise InputInvalid("A workflow request cannot be empty.")
        names = list(phases) if phases else phases_for_command(command)
        specs = [phase_spec(name) for name in names]

        forced = classification or COMMAND_CLASSIFICATION.get(command)
        ambiguous = False
        if forced is not None:
            resolved: Classification = forced
        else:
            resolved, ambiguous = classify_request(request)

        session = Session(
            id=new_session_id(),
            request=request,
            classification=resolved,
            command=command,
        )
        if ambiguous:
            logger.warning("Request classification is ambiguous; defaulting to mixed")
            session.warnings.append(
                ErrorEvent(
                    kind="ClassificationAmbiguous",
                    message="No ui or api signal found in the request; defaulted to mixed.",
                    next_actions=["restart with --classification ui|api|mixed to override"],
                )
            )

        for spec in specs:
            record = PhaseRecord(
                name=spec.name, iteration_limit=self.config.workflow.max_iterations
            )
            if not spec.applies_to(resolved):
                record.status = "skipped"
                record.skip_reason = spec.skip_reason
            elif spec.optional and self.config.workflow.plan_review == "never":
                record.status = "skipped"
                record.skip_reason = "disabled by workflow.plan_review = never"
            elif not spec.interactive and not self._active_roles(spec.roles(), session):
                record.status = "skipped"
                record.skip_reason = "every role of this phase is disabled"
            session.phases.append(record)

        session.artifacts["request"] = self._write_artifact(session, "request.md", request)
        collector = self._collector(session.id)
        collector.contribute("workflow", f"Workflow classification: {resolved}")
        if self.skills is not None and self.config.skills.enabled:
            self.skills.contribute(
                collector,
                resolved,
                SkillContext(session_id=session.id, agent="planner"),
            )
        self._flush_context(session, "session")
        self._commit(session)
        self._emit(
            {
                "event": "session_started",
                "session_id": session.id,
                "classification": resolved,
                "command": command,
                "phases": names,
            }
        )
        return session.id

    async def advance(self, session_id: str) -> Session:
        async with self._lock(session_id):
            session = self._load(session_id)
            if session.status != "active":
                return session
            return await self._guarded(session, self._advance(session))

    async def iterate(self, session_id: str, phase: str) -> Session:
        async with self._lock(session_id):
            session = self._load(session_id)
            record = self._current_record(session, phase)
            if record.status != "in_progress":
                raise WorkflowError(
                    f"Phase {phase} is {record.status}; only an in-progress phase can iterate."
                )
            spec = phase_spec(phase)
            if record.iteration >= record.iteration_limit:
                settle = self._settle(session, record, spec, record.gates)
                return await self._guarded(session, settle)
            return await self._guarded(session, self._iterate_and_settle(session, record, spec))

    async def resume(self, session_id: str) -> Session:
        async with self._lock(session_id):
            session = self._load(session_id)
            if session.status == "completed":
                return session
            if session.status == "abandoned":
                raise WorkflowError(f"Session {session_id} was abandoned and cannot be resumed.")
            if session.status == "failed":
                for record in session.phases:
                    if record.status == "failed":
                        record.status = "pending"
                session.status = "active"
            checkpoint = session.checkpoint()
            self._emit(
                {
                    "event": "session_resumed",
                    "session_id": session.id,
                    "last_completed": checkpoint.last_completed,
                    "next_phase": checkpoint.next_phase,
                }
            )
            self._commit(session)
            return await self._guarded(session, self._advance(session))

    async def run(self, session_id: str) -> Session:
        session = self._load(session_id)
        for _ in range(len(session.phases) + 1):
            if session.status != "active" or self.waiting_for_input(session):
                break
            session = await self.advance(session_id)
        return session

    async def decide(self, session_id: str, phase: str, choice: str) -> Session:
        async with self._lock(session_id):
            session = self._load(session_id)
            if session.status != "active":
                raise WorkflowError(f"Session {session_id} is {session.status}.")
            record = self._current_record(session, phase)
            spec = phase_spec(phase)

            if record.status == "blocked":
                if choice not in DECISION_OPTIONS:
                    raise WorkflowError(f"Choose one of {', '.join(DECISION_OPTIONS)}.")
                if choice == "abandon":
                    return await self._abandon(session, f"abandoned at blocked phase {phase}")
                if choice == "accept":
                    record.advisories.append(
                        f"accepted by decision at iteration {record.iteration} with failing gates"
                    )
                    self._complete(session, record, accepted=True)
                    self._commit(session)
                    return session
                record.status = "in_progress"
                record.iteration_limit = record.iteration + self.config.workflow.max_iterations
                self._commit(session)
                self._emit({"event": "phase_continued", "session_id": session.id, "phase": phase})
                return await self._guarded(session, self._iterate_and_settle(session, record, spec))

            if self.waiting_for_input(session):
                options = list(spec.approval_options)
                if choice not in options:
                    raise WorkflowError(f"Choose one of {', '.join(options)}.")
                for gate in record.gates:
                    if gate.kind == "user_approval":
                        gate.record_selection(choice)
                settle = self._settle(session, record, spec, record.gates)
                return await self._guarded(session, settle)

            raise WorkflowError(f"No decision is pending for phase {phase}.")

    async def abandon(self, session_id: str) -> Session:
        async with self._lock(session_id):
            session = self._load(session_id)
            if session.status != "active":
                return session
            return await self._abandon(session, "abandoned on request")

    def status(self, session_id: str) -> dict[str, Any]:
        session = self._load(session_id)
        background = session.background
        if self.monitor is not None and self.monitor.records(session.id):
            background = self.monitor.export(session.id)
        return {
            "session": session.to_dict(),
            "state": self.state_of(session),
            "checkpoint": session.checkpoint().to_dict(),
            "background": background,
            "pendingDecision": self.pending_decision(session),
        }

    # -- phase machinery --------------------------------------------------

    def _current_record(self, session: Session, phase: str) -> PhaseRecord:
        current = session.current_phase()
        if current is None or current.name != phase:
            expected = current.name if current else "none"
            raise WorkflowError(f"Phase {phase} is not the current phase (current: {expected}).")
        return current

    async def _guarded(self, session: Session, step) -> Session:
        try:
            return await step
        except (InputInvalid, StateError) as exc:
            record = session.current_phase()
            phase = record.name if record else "session"
            attempted = f"phase {phase}"
            if record is not None:
                attempted = f"phase {phase} at iteration {record.iteration}"
                record.status = "failed"
                record.annotate(
                    ErrorEvent(
                        kind=type(exc).__name__,
                        message=str(exc),
                        attempted=attempted,
                        next_actions=[
                            f"magnus resume {session.id}",
                            f"magnus abandon {session.id}",
                        ],
                    )
                )
            session.status = "failed"
            if not isinstance(exc, StateError):
                self._commit(session)
            self._emit(
                {
                    "event": "session_failed",
                    "session_id": session.id,
                    "phase": phase,
                    "error": str(exc),
                }
            )
            raise WorkflowFailure(
                f"{phase} failed: {exc}",
                session_id=session.id,
                attempted=attempted,
                degraded="the workflow is stopped; completed phases and artifacts are kept",
                next_actions=[f"magnus resume {session.id}", f"magnus abandon {session.id}"],
            ) from exc

    async def _advance(self, session: Session) -> Session:
        record = session.current_phase()
        if record is None:
            return self._deliver(session)
        if record.status in {"blocked", "failed"}:
            return session
        spec = phase_spec(record.name)

        if record.status == "pending":
            if spec.optional and self.config.workflow.plan_review == "ask":
                choice = self._present(session, record.name, ["review", "skip"])
                if choice != "review":
                    self._skip(session, record, "optional review not requested")
                    self._commit(session)
                    return session
            record.status = "in_progress"
            record.iteration = max(record.iteration, 1)
            record.iteration_limit = max(record.iteration_limit, record.iteration)
            self._commit(session)
            self._emit(
                {
                    "event": "phase_started",
                    "session_id": session.id,
                    "phase": record.name,
                    "state": spec.state,
                    "iteration": record.iteration,
                }
            )
        elif spec.interactive and self.waiting_for_input(session):
            selection = self._present(session, record.name, list(spec.approval_options))
            if selection is None:
                return session
            for gate in record.gates:
                if gate.kind == "user_approval":
                    gate.record_selection(selection)
            return await self._settle(session, record, spec, record.gates)

        gates = await self._execute(session, record, spec)
        return await self._settle(session, record, spec, gates)

    async def _settle(
        self,
        session: Session,
        record: PhaseRecord,
        spec: PhaseSpec,
        gates: list[QualityGate],
    ) -> Session:
        while True:
            record.gates = gates
            outcome = combined_outcome(gates)
            if outcome == "pending":
                self._commit(session)
                self._emit(
                    {
                        "event": "phase_awaiting_input",
                        "session_id": session.id,
                        "phase": record.name,
                    }
                )
                return session
            if outcome == "pass":
                self._complete(session, record)
                self._commit(session)
                return session

            if any(gate.selection == "abandon" for gate in gates):
                return await self._abandon(session, f"abandoned at {record.name}")
            failing = self._failure_summary(gates)
            record.annotate(
                ErrorEvent(
                    kind="ValidationFailure",
                    message=failing,
                    attempted=f"iteration {record.iteration} of {record.iteration_limit}",
                )
            )
            if record.iteration >= record.iteration_limit:
                record.status = "blocked"
                record.annotate(
                    ErrorEvent(
                        kind="MaxIterationsExceeded",
                        message=f"{record.name} still failing after {record.iteration} iterations",
                        attempted=f"{record.iteration} fix iterations",
                        degraded="the phase is blocked until a decision is made",
                        next_actions=[
                            f"magnus decide {session.id} {record.name} {choice}"
                            for choice in DECISION_OPTIONS
                        ],
                    )
                )
                self._commit(session)
                self._emit(
                    {
                        "event": "phase_blocked",
                        "session_id": session.id,
                        "phase": record.name,
                        "iteration": record.iteration,
                    }
                )
                return session
            self._commit(session)
            gates = await self._iterate_once(session, record, spec, gates)

    async def _iterate_and_settle(
        self, session: Session, record: PhaseRecord, spec: PhaseSpec
    ) -> Session:
        gates = await self._iterate_once(session, record, spec, record.gates)
        return await self._settle(session, record, spec, gates)

    async def _iterate_once(
        self,
        session: Session,
        record: PhaseRecord,
        spec: PhaseSpec,
        failing: list[QualityGate],
    ) -> list[QualityGate]:
        record.iteration += 1
        self._commit(session)
        feedback = self._failure_summary(failing)
        self._emit(
            {
                "event": "phase_iteration",
                "session_id": session.id,
                "phase": record.name,
                "iteration": record.iteration,
            }
        )
        fix_roles = self._active_roles(spec.fix_roles, session)
        if not fix_roles:
            return await self._execute(session, record, spec, feedback=feedback)

        dispatcher = self._dispatcher(session)
        tasks = [
            self._make_task(
                session,
                record,
                role,
                "parallel",
                task_id=f"{record.name}-fix-{role}-i{record.iteration}",
                instruction=f"Fix the problems reported for {record.name}.",
                feedback=feedback,
            )
            for role in fix_roles
        ]
        outcome = await dispatcher.dispatch_parallel(tasks)
        work = PhaseWork()
        self._absorb(session, record, outcome, work)
        if spec.rerun_after_fix:
            return await self._execute(session, record, spec, feedback=feedback)
        return self._build_gates(session, record, spec, work)

    async def _execute(
        self,
        session: Session,
        record: PhaseRecord,
        spec: PhaseSpec,
        *,
        feedback: str = "",
    ) -> list[QualityGate]:
        if spec.interactive:
            gate = QualityGate(phase=record.name, kind="user_approval")
            selection = self._present(session, record.name, list(spec.approval_options))
            if selection is not None:
                gate.record_selection(selection)
            return [gate]

        dispatcher = self._dispatcher(session)
        work = PhaseWork()
        instruction = PHASE_INSTRUCTIONS.get(record.name, f"Carry out the {record.name} phase.")

        preparation = self._active_roles(spec.preparation, session)
        if preparation:
            tasks = [
                self._make_task(session, record, role, "preparation", index=0,
                                instruction=instruction, feedback=feedback)
                for role in preparation
            ]
            outcome = await dispatcher.dispatch_preparation(tasks)
            self._absorb(session, record, outcome, work)
            if outcome.verdict == "fail":
                return self._build_gates(session, record, spec, work)

        parallel_tasks: list[Task] = []
        count = getattr(self.config.workflow, spec.reviewers) if spec.reviewers else 1
        for role in self._active_roles(spec.parallel, session):
            for index in range(count):
                parallel_tasks.append(
                    self._make_task(session, record, role, "parallel", index=index,
                                    instruction=instruction, feedback=feedback)
                )
        use_background = self.monitor is not None and self.config.background.enabled
        for role in self._active_roles(spec.background, session):
            parallel_tasks.append(
                self._make_task(
                    session,
                    record,
                    role,
                    "parallel",
                    index=0,
                    instruction=instruction,
                    feedback=feedback,
                    background=use_background,
                )
            )

        parallel: BatchOutcome | None = None
        if parallel_tasks:
            parallel = await dispatcher.dispatch_parallel(parallel_tasks)
            self._absorb(session, record, parallel, work, reviewers=spec.reviewers is not None)

        consolidation = self._active_roles(spec.consolidation, session)
        if consolidation and parallel is not None:
            reviews = "\n\n".join(
                f"### {task.id}\n{task.result.output}" for task in parallel.succeeded
            )
            tasks = [
                self._make_task(session, record, role, "consolidation", index=0,
                                instruction=f"Consolidate these reviews:\n\n{reviews}",
                                feedback=feedback)
                for role in consolidation
            ]
            try:
                outcome = await dispatcher.dispatch_consolidation(tasks, prior=parallel)
            except QuorumNotMet as exc:
                record.annotate(ErrorEvent(kind="QuorumNotMet", message=str(exc)))
                work.issues.append(
                    Issue(severity="critical", message=str(exc), source="dispatcher")
                )
            else:
                self._absorb(session, record, outcome, work)

        presentation = self._active_roles(spec.presentation, session)
        if presentation:
            tasks = [
                self._make_task(session, record, role, "presentation", index=0,
                                instruction=instruction, feedback=feedback)
                for role in presentation
            ]
            outcome = await dispatcher.dispatch_presentation(tasks)
            self._absorb(session, record, outcome, work)

        return self._build_gates(session, record, spec, work)

    def _make_task(
        self,
        session: Session,
        record: PhaseRecord,
        role: str,
        group: str,
        *,
        instruction: str,
        feedback: str = "",
        index: int = 0,
        task_id: str | None = None,
        background: bool = False,
    ) -> Task:
        task_id = task_id or f"{record.name}-{role}-i{record.iteration}-{index}"
        sections = [
            f"# {role} task for {record.name} (iteration {record.iteration})",
            f"## Request\n{session.request}",
        ]
        plan = self._read_artifact(session.artifacts.get("plan"))
        if plan:
            sections.append(f"## Plan\n{plan}")
        context = self._read_artifact(session.artifacts.get("context"))
        if context:
            sections.append(f"## Context\n{context}")
        sections.append(f"## Instructions\n{instruction}")
        if feedback:
            sections.append(f"## Problems to fix\n{feedback}")
        input_ref = self._write_artifact(
            session, f"{record.name}/{task_id}.input.md", "\n\n".join(sections) + "\n"
        )
        agent_type = ROLE_CATALOGUE.get(role)
        return self._dispatcher(session).create_task(
            task_id,
            role,
            group,
            input_ref,
            timeout_seconds=self.config.workflow.task_timeout_seconds,
            background=background,
            kind=agent_type.output_kind if agent_type else "default",
        )

    def _absorb(
        self,
        session: Session,
        record: PhaseRecord,
        outcome: BatchOutcome,
        work: PhaseWork,
        *,
        reviewers: bool = False,
    ) -> None:
        collector = self._collector(session.id)
        work.tasks.extend(outcome.tasks)
        for task in outcome.tasks:
            if task.result.output_ref:
                session.artifacts[f"{record.name}/{task.id}"] = task.result.output_ref
                if task.role == "planner":
                    session.artifacts["plan"] = task.result.output_ref
            if task.result.kind == "BackgroundTimeout":
                collector.contribute(
                    "monitor", f"Background task {task.id} ({task.role}) never verified completion."
                )
        if reviewers:
            work.reviewers += len(outcome.tasks)
            work.verdicts.extend(
                parse_verdict(task.id, task.result.output) for task in outcome.succeeded
            )
        else:
            for task in outcome.succeeded:
                work.issues.extend(parse_issues(task.result.output, source=task.role))
        batch_issues = outcome.issues()
        work.issues.extend(
            issue for issue in batch_issues if not reviewers or issue.severity == "critical"
        )
        if outcome.verdict == "degraded-pass":
            failed = ", ".join(f"{task.role}:{task.id}" for task in outcome.failed)
            record.annotate(
                ErrorEvent(
                    kind="PartialFailure",
                    message=f"{outcome.group} batch degraded; failed tasks: {failed}",
                    attempted=f"{len(outcome.tasks)} {outcome.group} tasks",
                    degraded=f"{len(outcome.succeeded)} of {len(outcome.tasks)} results available",
                )
            )
            collector.contribute("dispatcher", f"{record.name}: partial results, missing {failed}")

    def _build_gates(
        self,
        session: Session,
        record: PhaseRecord,
        spec: PhaseSpec,
        work: PhaseWork,
    ) -> list[QualityGate]:
        gates: list[QualityGate] = []
        has_severity_gate = "severity_classification" in spec.gates
        for kind in spec.gates:
            gate = QualityGate(phase=record.name, kind=kind)
            if kind == "automatic_validation":
                gate.record_checks(
                    [
                        Check(
                            name=f"{task.role} output",
                            passed=task.result.succeeded and bool(task.result.output.strip()),
                            detail=task.result.status,
                        )
                        for task in work.tasks
                    ]
                )
            elif kind == "severity_classification":
                gate.record_issues(work.issues)
            elif kind == "consensus":
                gate.quorum = min(self.config.workflow.quorum, max(1, work.reviewers))
                gate.record_verdicts(work.verdicts)
                if not has_severity_gate:
                    gate.issues = list(work.issues)
            gates.append(gate)
        for gate in gates:
            for advisory in gate.advisories:
                self._collector(session.id).contribute("gates", f"{record.name}: {advisory}")
        return gates

    @staticmethod
    def _failure_summary(gates: list[QualityGate]) -> str:
        lines: list[str] = []
        for gate in gates:
            if gate.outcome != "fail":
                continue
            if gate.kind == "user_approval":
                lines.append(f"- user selected '{gate.selection}'")
            lines.extend(
                f"- {issue.severity}: {issue.message}"
                for issue in gate.issues
                if issue.severity == "critical"
            )
            lines.extend(
                f"- check failed: {check.name} ({check.detail})"
                for check in gate.checks
                if not check.passed
            )
            lines.extend(
                f"- {verdict.reviewer} rejected: {verdict.note or 'no details'}"
                for verdict in gate.verdicts
                if not verdict.approve
            )
            if gate.kind == "consensus" and len(gate.verdicts) < gate.quorum:
                lines.append(f"- only {len(gate.verdicts)} verdicts, quorum is {gate.quorum}")
        return "\n".join(lines) or "quality gate failed"

    def _complete(self, session: Session, record: PhaseRecord, *, accepted: bool = False) -> None:
        record.status = "completed"
        for gate in record.gates:
            for advisory in gate.advisories:
                if advisory not in record.advisories:
                    record.advisories.append(advisory)
        self._flush_context(session, record.name)
        self._emit(
            {
                "event": "phase_completed",
                "session_id": session.id,
                "phase": record.name,
                "iteration": record.iteration,
                "accepted": accepted,
            }
        )

    def _skip(self, session: Session, record: PhaseRecord, reason: str) -> None:
        record.status = "skipped"
        record.skip_reason = reason
        self._flush_context(session, record.name)
        self._emit(
            {
                "event": "phase_skipped",
                "session_id": session.id,
                "phase": record.name,
                "reason": reason,
            }
        )

    def _deliver(self, session: Session) -> Session:
        session.status = "completed"
        summary_ref = next(
            (
                ref
                for key, ref in reversed(list(session.artifacts.items()))
                if key.startswith("cleanup/") and not key.endswith("/context")
            ),
            None,
        )
        session.result = {
            "deliveredAt": utcnow_iso(),
            "phases": {record.name: record.status for record in session.phases},
            "advisories": [
                f"{record.name}: {advisory}"
                for record in session.phases
                for advisory in record.advisories
            ],
            "summary": summary_ref,
        }
        self._commit(session)
        self._forget_background(session)
        self._emit({"event": "session_delivered", "session_id": session.id})
        return session

    async def _abandon(self, session: Session, reason: str) -> Session:
        if self.monitor is not None:
            await self.monitor.cancel_session(session.id)
        record = session.current_phase()
        if record is not None:
            record.annotate(ErrorEvent(kind="Abandoned", message=reason))
        session.status = "abandoned"
        self._commit(session)
        self._forget_background(session)
        self._emit({"event": "session_abandoned", "session_id": session.id, "reason": reason})
        return session
