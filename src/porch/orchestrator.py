from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import IntEnum
from pathlib import Path
from typing import Any

import structlog

from porch.checks import CheckReport, Checker, format_check_results, run_checks
from porch.config import PorchConfig
from porch.consultation import Verdict, run_consultations, summarize_verdicts
from porch.engine import (
    Advancement,
    PlanLoader,
    Position,
    StageOutcome,
    advance,
    current_position,
    enter_phase,
    iteration_limit,
    unblock,
)
from porch.errors import PlanFileNotFound, ProjectExists, ProjectNotFound, StateCorrupt
from porch.gates import PendingGate, approve, pending_gate, pending_gates
from porch.plan import (
    PlanPhase,
    all_plan_phases_complete,
    extract_phases_from_file,
    find_plan_file,
    get_phase_content,
)
from porch.prompts import render_artifact, render_consultation_prompt
from porch.protocol import (
    CheckSpec,
    ProtocolDefinition,
    get_phase_checks,
    is_phased,
    load_protocol,
)
from porch.reviewers import Reviewer, build_reviewers
from porch.state import (
    ProjectState,
    TransitionNote,
    find_status_path,
    iter_status_paths,
    new_project_state,
    read_state,
    status_path_for,
    write_state,
)

logger = structlog.get_logger(__name__)

PLAN_EXCERPT_CHARS = 500
ReviewerFactory = Callable[[Sequence[str]], list[Reviewer]]


class ResultCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    NOT_FOUND = 2
    BLOCKED = 3
    GATE_PENDING = 4


@dataclass(slots=True)
class OrchestratorResult:
    code: ResultCode
    lines: list[str] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LoadedProject:
    path: Path
    state: ProjectState
    protocol: ProtocolDefinition


def _gate_stop_lines(state: ProjectState, gate_name: str, artifact: str | None) -> list[str]:
    lines = [f"GATE: {gate_name}: STOP and wait"]
    if artifact:
        lines.append(f"  Artifact: {artifact}")
    lines.append("  Human approval required. Do not proceed until the gate is approved.")
    lines.append(f"  To approve: porch approve {state.id} {gate_name}")
    return lines


class Orchestrator:
    def __init__(
        self,
        root: Path,
        config: PorchConfig,
        *,
        checker: Checker | None = None,
        reviewer_factory: ReviewerFactory | None = None,
    ) -> None:
        self.root = root.resolve()
        self.config = config
        self.checker = checker
        self.reviewer_factory = reviewer_factory or (
            lambda names: build_reviewers(list(names), self.config, self.root)
        )

    @property
    def projects_root(self) -> Path:
        return self.root / self.config.paths.projects_dir

    def _load_protocol(self, protocol_name: str) -> ProtocolDefinition:
        return load_protocol(
            self.root, protocol_name, protocols_dir=self.config.paths.protocols_dir
        )

    def _load(self, project_id: str) -> LoadedProject:
        path = find_status_path(self.projects_root, project_id)
        if path is None:
            raise ProjectNotFound(project_id)
        state = read_state(path)
        return LoadedProject(path=path, state=state, protocol=self._load_protocol(state.protocol))

    def _find_plan(self, state: ProjectState) -> Path | None:
        return find_plan_file(
            self.root,
            state.id,
            state.title,
            plans_dir=self.config.paths.plans_dir,
            projects_dir=self.config.paths.projects_dir,
        )

    def _plan_loader(self, state: ProjectState) -> PlanLoader:
        def _load_plan() -> list[PlanPhase]:
            plan_path = self._find_plan(state)
            if plan_path is None:
                expected = self.projects_root / f"{state.id}-{state.title}" / "plan.md"
                raise PlanFileNotFound(str(expected))
            return extract_phases_from_file(plan_path)

        return _load_plan

    def _plan_excerpt(self, state: ProjectState, position: Position) -> str | None:
        if position.plan_phase is None:
            return None
        plan_path = self._find_plan(state)
        if plan_path is None:
            return None
        content = get_phase_content(plan_path.read_text(encoding="utf-8"), position.plan_phase.id)
        if content is None:
            return None
        return content[:PLAN_EXCERPT_CHARS]

    def _max_iterations(self, position: Position) -> int:
        return iteration_limit(position.phase, self.config.workflow.max_iterations)

    def _stage_checks(
        self, protocol: ProtocolDefinition, position: Position
    ) -> dict[str, CheckSpec]:
        checks = get_phase_checks(protocol, position.phase.id)
        if position.stage == "evaluate":
            checks.update(protocol.phase_completion)
        return checks

    def _run_stage_checks(
        self, state: ProjectState, protocol: ProtocolDefinition, position: Position
    ) -> CheckReport | None:
        checks = self._stage_checks(protocol, position)
        if not checks:
            return None
        return run_checks(
            checks,
            self.root,
            checker=self.checker,
            env={"PROJECT_ID": state.id, "PROJECT_TITLE": state.title},
            timeout=self.config.check_timeout,
        )

    def _consult(self, state: ProjectState, position: Position) -> tuple[Verdict, ...]:
        consultation = position.phase.consultation
        if consultation is None or not consultation.applies_to(position.stage):
            return ()
        models = consultation.models or tuple(self.config.consultation.reviewers)
        if not models:
            return ()
        reviewers = self.reviewer_factory(models)
        prompt = render_consultation_prompt(
            state,
            position,
            artifact=render_artifact(position.phase.artifact, state),
            plan_excerpt=self._plan_excerpt(state, position),
        )
        verdicts = run_consultations(
            reviewers,
            prompt,
            self.config.consultation.timeout_seconds,
            role=consultation.type,
        )
        return tuple(verdicts)

    def _describe_position(
        self, protocol: ProtocolDefinition, state: ProjectState, position: Position
    ) -> list[str]:
        lines = [f"PHASE: {position.phase.id} ({position.phase.name})"]
        if position.plan_phase is not None:
            index = [item.id for item in state.plan_phases].index(position.plan_phase.id) + 1
            lines.append(
                f"PLAN PHASE: {position.plan_phase.id} - {position.plan_phase.title} "
                f"({index}/{len(state.plan_phases)})"
            )
            lines.append(f"STAGE: {position.stage}")
        elif is_phased(protocol, position.phase.id) and all_plan_phases_complete(
            state.plan_phases
        ):
            lines.append(f"PLAN PHASES: all {len(state.plan_phases)} complete")
        return lines

    def _advancement_lines(
        self, protocol: ProtocolDefinition, advancement: Advancement, previous: Position
    ) -> list[str]:
        state = advancement.state
        if advancement.disposition == "complete":
            return [
                "PROTOCOL COMPLETE",
                f"  Project {state.id} has completed the {state.protocol} protocol.",
            ]
        position = current_position(protocol, state)
        if advancement.disposition == "gate_pending":
            gate_name = pending_gate(protocol, state) or ""
            artifact = render_artifact(position.phase.artifact, state)
            return [f"COMPLETED: {previous.label}", *_gate_stop_lines(state, gate_name, artifact)]
        if advancement.disposition == "blocked":
            return [
                f"BLOCKED: {previous.label} failed {state.iteration} times.",
                "  Human intervention required. STOP.",
                f"  After resolving the problem run: porch unblock {state.id}",
            ]
        if advancement.disposition == "retry":
            note = advancement.note.detail if advancement.note else ""
            return [
                f"NOT DONE: {previous.label} (attempt {state.iteration}/"
                f"{self._max_iterations(position)})",
                f"  {note}",
                f"  Fix the problems, then run: porch done {state.id}",
            ]
        return [
            f"COMPLETED: {previous.label}",
            f"NEXT: {position.label}",
            f"  Run: porch status {state.id}",
        ]

    def init(self, protocol_name: str, project_id: str, title: str) -> OrchestratorResult:
        protocol = self._load_protocol(protocol_name)
        existing = find_status_path(self.projects_root, project_id)
        if existing is not None:
            raise ProjectExists(project_id, str(existing))

        path = status_path_for(self.projects_root, project_id, title)
        state = new_project_state(project_id, title, protocol.name, protocol.first_phase.id)
        state = enter_phase(
            protocol, state, protocol.first_phase.id, plan_loader=self._plan_loader(state)
        )
        state = write_state(path, state, TransitionNote("initialized", protocol.name))
        logger.info("project_initialized", project=project_id, protocol=protocol.name)
        return OrchestratorResult(
            code=ResultCode.SUCCESS,
            lines=[
                f"Project initialized: {project_id}-{title}",
                f"  Protocol: {protocol.name}",
                f"  Initial phase: {state.phase}",
                f"  Run: porch status {project_id}",
            ],
            payload={"id": project_id, "path": str(path), "phase": state.phase},
        )

    def status(
        self,
        project_id: str,
        *,
        protocol: str | None = None,
        title: str | None = None,
    ) -> OrchestratorResult:
        if title and find_status_path(self.projects_root, project_id) is None:
            self.init(protocol or self.config.workflow.default_protocol, project_id, title)

        project = self._load(project_id)
        state = project.state
        position = current_position(project.protocol, state)
        limit = self._max_iterations(position)
        gate_name = pending_gate(project.protocol, state)

        lines = [
            f"PROJECT: {state.id} - {state.title}",
            f"PROTOCOL: {state.protocol}",
            *self._describe_position(project.protocol, state, position),
            f"ITERATION: {state.iteration}/{limit}",
        ]
        excerpt = self._plan_excerpt(state, position)
        if excerpt:
            lines.append("FROM THE PLAN:")
            lines.extend(f"  {line}" for line in excerpt.splitlines())
        checks = self._stage_checks(project.protocol, position)
        if checks:
            lines.append("CHECKS:")
            lines.extend(f"  - {name}: {spec.command}" for name, spec in checks.items())

        if state.is_complete:
            code = ResultCode.SUCCESS
            lines.append(f"STATUS: COMPLETE ({state.completed_at})")
        elif state.blocked:
            code = ResultCode.BLOCKED
            lines.append("STATUS: BLOCKED")
            lines.append(f"  Human intervention required. Then run: porch unblock {state.id}")
        elif gate_name is not None:
            code = ResultCode.GATE_PENDING
            artifact = render_artifact(position.phase.artifact, state)
            lines.extend(_gate_stop_lines(state, gate_name, artifact))
        else:
            code = ResultCode.SUCCESS
            lines.append("STATUS: IN PROGRESS")
            lines.append(f"  When the work is finished, run: porch done {state.id}")

        payload = {
            "id": state.id,
            "title": state.title,
            "protocol": state.protocol,
            "phase": position.phase.id,
            "plan_phase": position.plan_phase.id if position.plan_phase else None,
            "stage": position.stage,
            "iteration": state.iteration,
            "max_iterations": limit,
            "blocked": state.blocked,
            "pending_gate": gate_name,
            "complete": state.is_complete,
            "build_complete": state.build_complete,
            "plan_phases": [item.to_dict() for item in state.plan_phases],
        }
        return OrchestratorResult(code=code, lines=lines, payload=payload)

    def check(self, project_id: str) -> OrchestratorResult:
        project = self._load(project_id)
        position = current_position(project.protocol, project.state)
        report = self._run_stage_checks(project.state, project.protocol, position)
        if report is None:
            return OrchestratorResult(
                code=ResultCode.SUCCESS,
                lines=[f"No checks defined for {position.label}."],
                payload={"all_passed": True, "results": {}},
            )

        lines = [f"CHECKS for {position.label}:", *format_check_results(report)]
        payload = {
            "all_passed": report.all_passed,
            "results": {
                name: {
                    "exit_code": result.exit_code,
                    "stdout": result.stdout,
                    "stderr": result.stderr,
                }
                for name, result in report.results.items()
            },
        }
        if report.all_passed:
            lines.append("RESULT: ALL CHECKS PASSED")
            lines.append(f"  Run: porch done {project.state.id}")
            return OrchestratorResult(code=ResultCode.SUCCESS, lines=lines, payload=payload)
        lines.append("RESULT: CHECKS FAILED")
        return OrchestratorResult(code=ResultCode.ERROR, lines=lines, payload=payload)

    def done(self, project_id: str) -> OrchestratorResult:
        project = self._load(project_id)
        state = project.state
        protocol = project.protocol
        position = current_position(protocol, state)

        if state.is_complete:
            return OrchestratorResult(
                code=ResultCode.SUCCESS,
                lines=[f"Project {state.id} is already complete."],
            )
        if state.blocked:
            return OrchestratorResult(
                code=ResultCode.BLOCKED,
                lines=[
                    f"BLOCKED: {position.label} exhausted its attempts.",
                    f"  Human intervention required. Then run: porch unblock {state.id}",
                ],
            )
        gate_name = pending_gate(protocol, state)
        if gate_name is not None:
            artifact = render_artifact(position.phase.artifact, state)
            return OrchestratorResult(
                code=ResultCode.GATE_PENDING,
                lines=_gate_stop_lines(state, gate_name, artifact),
            )

        structlog.contextvars.bind_contextvars(project=state.id, position=position.label)
        try:
            lines: list[str] = []
            report = self._run_stage_checks(state, protocol, position)
            if report is not None:
                lines.append(f"CHECKS for {position.label}:")
                lines.extend(format_check_results(report))

            verdicts: tuple[Verdict, ...] = ()
            if report is None or report.all_passed:
                verdicts = self._consult(state, position)
                if verdicts:
                    lines.append(f"REVIEWS: {summarize_verdicts(verdicts)}")

            advancement = advance(
                protocol,
                state,
                StageOutcome(checks=report, verdicts=verdicts),
                plan_loader=self._plan_loader(state),
                max_iterations=self.config.workflow.max_iterations,
            )
            if advancement.note is not None:
                advancement = replace(
                    advancement,
                    state=write_state(project.path, advancement.state, advancement.note),
                )
            lines.extend(self._advancement_lines(protocol, advancement, position))
        finally:
            structlog.contextvars.unbind_contextvars("project", "position")

        code = {
            "blocked": ResultCode.BLOCKED,
            "gate_pending": ResultCode.GATE_PENDING,
            "retry": ResultCode.ERROR,
        }.get(advancement.disposition, ResultCode.SUCCESS)
        return OrchestratorResult(
            code=code,
            lines=lines,
            payload={"disposition": advancement.disposition},
        )

    def gate(self, project_id: str) -> OrchestratorResult:
        project = self._load(project_id)
        state = project.state
        position = current_position(project.protocol, state)
        gate_spec = position.phase.gate
        if gate_spec is None:
            return OrchestratorResult(
                code=ResultCode.SUCCESS,
                lines=[
                    f"No gate required for {position.phase.id}.",
                    f"  Run: porch done {state.id}",
                ],
            )
        gate_status = state.gate_status(gate_spec.name)
        if gate_status == "pending":
            artifact = render_artifact(position.phase.artifact, state)
            return OrchestratorResult(
                code=ResultCode.GATE_PENDING,
                lines=_gate_stop_lines(state, gate_spec.name, artifact),
                payload={"gate": gate_spec.name},
            )
        if gate_status == "approved":
            return OrchestratorResult(
                code=ResultCode.SUCCESS,
                lines=[f"Gate {gate_spec.name} is already approved."],
            )
        return OrchestratorResult(
            code=ResultCode.SUCCESS,
            lines=[
                f"Gate {gate_spec.name} has not been requested yet.",
                f"  Finish {position.phase.id}, then run: porch done {state.id}",
            ],
        )

    def approve(self, project_id: str, gate_name: str, approver: str) -> OrchestratorResult:
        project = self._load(project_id)
        approved = approve(project.protocol, project.state, gate_name, approver)
        previous = current_position(project.protocol, approved)
        advancement = advance(
            project.protocol,
            approved,
            StageOutcome(),
            plan_loader=self._plan_loader(approved),
            max_iterations=self.config.workflow.max_iterations,
        )
        detail = f"{gate_name} by {approver}"
        if advancement.note is not None:
            detail = f"{detail}; {advancement.note.detail}"
        state = write_state(
            project.path, advancement.state, TransitionNote("gate_approved", detail)
        )
        advancement = replace(advancement, state=state)
        return OrchestratorResult(
            code=ResultCode.SUCCESS,
            lines=[
                f"Gate {gate_name} approved by {approver}.",
                *self._advancement_lines(project.protocol, advancement, previous),
            ],
            payload={"gate": gate_name, "phase": state.phase},
        )

    def pending(self) -> OrchestratorResult:
        gates: list[PendingGate] = []
        for path in iter_status_paths(self.projects_root):
            try:
                gates.extend(pending_gates(read_state(path)))
            except StateCorrupt as exc:
                logger.warning("pending_scan_skipped", path=str(path), reason=exc.reason)
        if not gates:
            return OrchestratorResult(
                code=ResultCode.SUCCESS, lines=["No gates awaiting approval."]
            )
        lines = ["PENDING GATES:"]
        for item in gates:
            lines.append(
                f"  {item.project_id} ({item.title}) {item.phase}: {item.gate}"
                + (f" requested {item.requested_at}" if item.requested_at else "")
            )
        return OrchestratorResult(
            code=ResultCode.SUCCESS,
            lines=lines,
            payload={
                "pending": [
                    {"id": item.project_id, "phase": item.phase, "gate": item.gate}
                    for item in gates
                ]
            },
        )

    def unblock(self, project_id: str) -> OrchestratorResult:
        project = self._load(project_id)
        if not project.state.blocked:
            return OrchestratorResult(
                code=ResultCode.SUCCESS,
                lines=[f"Project {project_id} is not blocked."],
            )
        position = current_position(project.protocol, project.state)
        write_state(
            project.path, unblock(project.state), TransitionNote("unblocked", position.label)
        )
        logger.info("stage_unblocked", project=project_id, position=position.label)
        return OrchestratorResult(
            code=ResultCode.SUCCESS,
            lines=[
                f"Unblocked {position.label}; attempts reset.",
                f"  Run: porch done {project_id}",
            ],
        )
