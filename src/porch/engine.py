"""Advancement engine.

``advance`` is the only function that moves a project forward. It takes the
protocol, the persisted state and the outcome of the work just finished and
returns a new state plus a disposition telling the caller what happened. It
performs no I/O except through the ``plan_loader`` callback, which is called
at most once per project: the first time a ``per_plan_phase`` phase is
entered.

Per-plan-phase phases cycle ``implement -> defend -> evaluate`` for every plan
phase in order. ``iteration`` resets to zero whenever a stage is entered and
counts failed attempts at the current stage; reaching the iteration limit
blocks the stage until a human unblocks it.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Literal

import structlog

from porch.checks import CheckReport
from porch.consultation import Verdict, aggregate, summarize_verdicts
from porch.errors import ProtocolSchemaError
from porch.plan import (
    PlanPhase,
    all_plan_phases_complete,
    default_plan_phases,
    get_next_plan_phase,
    get_plan_phase,
)
from porch.protocol import Phase, ProtocolDefinition, get_next_phase, get_phase
from porch.state import GateStatus, ProjectState, TransitionNote, utcnow_iso

logger = structlog.get_logger(__name__)

Disposition = Literal["advanced", "retry", "blocked", "gate_pending", "complete"]
PlanLoader = Callable[[], Sequence[PlanPhase]]
DEFAULT_MAX_ITERATIONS = 7


@dataclass(frozen=True, slots=True)
class Position:
    phase: Phase
    plan_phase: PlanPhase | None = None
    stage: str | None = None

    @property
    def label(self) -> str:
        parts = [self.phase.id]
        if self.plan_phase is not None:
            parts.append(self.plan_phase.id)
        if self.stage is not None:
            parts.append(self.stage)
        return "/".join(parts)


@dataclass(frozen=True, slots=True)
class StageOutcome:
    checks: CheckReport | None = None
    verdicts: tuple[Verdict, ...] = ()

    @property
    def checks_passed(self) -> bool:
        return self.checks is None or self.checks.all_passed

    @property
    def passed(self) -> bool:
        return self.checks_passed and aggregate(self.verdicts) == "advance"

    def failure_summary(self) -> str:
        reasons: list[str] = []
        if self.checks is not None and not self.checks.all_passed:
            failed = ", ".join(result.name for result in self.checks.failed)
            reasons.append(f"checks failed: {failed}")
        if aggregate(self.verdicts) == "retry":
            reasons.append(f"changes requested: {summarize_verdicts(self.verdicts)}")
        return "; ".join(reasons)


@dataclass(frozen=True, slots=True)
class Advancement:
    state: ProjectState
    disposition: Disposition
    note: TransitionNote | None = None

    @property
    def changed(self) -> bool:
        return self.note is not None


def current_position(protocol: ProtocolDefinition, state: ProjectState) -> Position:
    phase = get_phase(protocol, state.phase)
    if phase is None:
        raise ProtocolSchemaError(
            f"Project {state.id} is in phase '{state.phase}', "
            f"which protocol '{protocol.name}' does not define"
        )
    if not phase.is_phased:
        return Position(phase=phase)
    plan_phase = get_plan_phase(state.plan_phases, state.current_plan_phase)
    if plan_phase is None:
        return Position(phase=phase)
    return Position(phase=phase, plan_phase=plan_phase, stage=plan_phase.current_stage)


def iteration_limit(phase: Phase, default: int) -> int:
    return phase.max_iterations or default


def _swap_plan_phase(
    phases: Sequence[PlanPhase], updated: PlanPhase
) -> tuple[PlanPhase, ...]:
    return tuple(updated if phase.id == updated.id else phase for phase in phases)


def _start(plan_phase: PlanPhase) -> PlanPhase:
    stage = plan_phase.current_stage
    if stage is None:
        return plan_phase
    return plan_phase.with_stage(stage, "in_progress")


def enter_phase(
    protocol: ProtocolDefinition,
    state: ProjectState,
    phase_id: str,
    *,
    plan_loader: PlanLoader | None = None,
) -> ProjectState:
    """Move ``state`` into ``phase_id``; seeds plan phases on first entry."""
    phase = get_phase(protocol, phase_id)
    if phase is None:
        raise ProtocolSchemaError(f"Protocol '{protocol.name}' has no phase '{phase_id}'")
    state = replace(state, phase=phase.id, iteration=0, blocked=False)
    if not phase.is_phased:
        return state

    plan_phases = state.plan_phases
    if not plan_phases:
        loaded = tuple(plan_loader()) if plan_loader is not None else ()
        plan_phases = loaded or tuple(default_plan_phases())
        logger.info(
            "plan_phases_seeded",
            project=state.id,
            phases=[plan_phase.id for plan_phase in plan_phases],
        )

    if all_plan_phases_complete(plan_phases):
        return replace(state, plan_phases=plan_phases, current_plan_phase=None)
    first_open = next(item for item in plan_phases if not item.is_complete)
    return replace(
        state,
        plan_phases=_swap_plan_phase(plan_phases, _start(first_open)),
        current_plan_phase=first_open.id,
    )


def _leave_phase(
    protocol: ProtocolDefinition,
    state: ProjectState,
    phase: Phase,
    *,
    plan_loader: PlanLoader | None,
    now: str,
) -> Advancement:
    next_phase = get_next_phase(protocol, phase.id)
    if next_phase is None:
        logger.info("protocol_complete", project=state.id, protocol=protocol.name)
        return Advancement(
            replace(state, iteration=0, completed_at=now),
            "complete",
            TransitionNote("protocol_complete", f"{phase.id} complete"),
        )
    entered = enter_phase(protocol, state, next_phase.id, plan_loader=plan_loader)
    logger.info("phase_entered", project=state.id, previous=phase.id, phase=next_phase.id)
    return Advancement(
        entered,
        "advanced",
        TransitionNote("phase_entered", f"{phase.id} -> {next_phase.id}"),
    )


def _complete_phase(
    protocol: ProtocolDefinition,
    state: ProjectState,
    phase: Phase,
    *,
    plan_loader: PlanLoader | None,
    now: str,
) -> Advancement:
    state = replace(state, iteration=0)
    gate = phase.gate
    if gate is not None and state.gate_status(gate.name) != "approved":
        gates = dict(state.gates)
        gates[gate.name] = GateStatus(status="pending", requested_at=now)
        logger.info("gate_requested", project=state.id, phase=phase.id, gate=gate.name)
        return Advancement(
            replace(state, gates=gates),
            "gate_pending",
            TransitionNote("gate_requested", gate.name),
        )
    return _leave_phase(protocol, state, phase, plan_loader=plan_loader, now=now)


def _complete_stage(
    protocol: ProtocolDefinition,
    state: ProjectState,
    position: Position,
    *,
    plan_loader: PlanLoader | None,
    now: str,
) -> Advancement:
    plan_phase = position.plan_phase
    stage = position.stage
    if plan_phase is None or stage is None:
        return _complete_phase(
            protocol, state, position.phase, plan_loader=plan_loader, now=now
        )

    finished = plan_phase.with_stage(stage, "complete")
    next_stage = finished.current_stage
    if next_stage is not None:
        advanced = finished.with_stage(next_stage, "in_progress")
        return Advancement(
            replace(
                state,
                plan_phases=_swap_plan_phase(state.plan_phases, advanced),
                iteration=0,
            ),
            "advanced",
            TransitionNote("stage_complete", f"{plan_phase.id}: {stage} -> {next_stage}"),
        )

    plan_phases = _swap_plan_phase(state.plan_phases, finished)
    following = get_next_plan_phase(plan_phases, plan_phase.id)
    if following is not None:
        logger.info(
            "plan_phase_complete", project=state.id, plan_phase=plan_phase.id, next=following.id
        )
        return Advancement(
            replace(
                state,
                plan_phases=_swap_plan_phase(plan_phases, _start(following)),
                current_plan_phase=following.id,
                iteration=0,
            ),
            "advanced",
            TransitionNote("plan_phase_complete", f"{plan_phase.id} -> {following.id}"),
        )

    logger.info("plan_phase_complete", project=state.id, plan_phase=plan_phase.id, next=None)
    state = replace(state, plan_phases=plan_phases, current_plan_phase=None)
    return _complete_phase(protocol, state, position.phase, plan_loader=plan_loader, now=now)


def _record_failure(
    state: ProjectState,
    position: Position,
    outcome: StageOutcome,
    *,
    max_iterations: int,
) -> Advancement:
    iteration = state.iteration + 1
    limit = iteration_limit(position.phase, max_iterations)
    detail = outcome.failure_summary()
    if iteration < limit:
        logger.info(
            "stage_retry", project=state.id, position=position.label, iteration=iteration
        )
        return Advancement(
            replace(state, iteration=iteration),
            "retry",
            TransitionNote("retry", detail),
        )

    plan_phases = state.plan_phases
    if position.plan_phase is not None and position.stage is not None:
        plan_phases = _swap_plan_phase(
            plan_phases, position.plan_phase.with_stage(position.stage, "blocked")
        )
    logger.warning(
        "stage_blocked",
        project=state.id,
        position=position.label,
        iteration=iteration,
        limit=limit,
    )
    return Advancement(
        replace(state, iteration=iteration, blocked=True, plan_phases=plan_phases),
        "blocked",
        TransitionNote("blocked", f"{limit} failed attempts; {detail}"),
    )


def advance(
    protocol: ProtocolDefinition,
    state: ProjectState,
    outcome: StageOutcome,
    *,
    plan_loader: PlanLoader | None = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    now: str | None = None,
) -> Advancement:
    """Apply ``outcome`` to the current stage and return the resulting state.

    Dispositions:
        ``advanced``: a stage, plan phase or protocol phase was entered.
        ``retry``: the stage failed and stays current with ``iteration + 1``.
        ``blocked``: the stage failed for the last allowed time.
        ``gate_pending``: the phase is done and waits for ``approve``.
        ``complete``: the terminal phase finished.

    ``Advancement.note`` is None when nothing changed (a gate still pending,
    a blocked stage, a finished project); such results need no write.
    """
    timestamp = now or utcnow_iso()
    position = current_position(protocol, state)
    phase = position.phase

    if state.is_complete:
        return Advancement(state, "complete")
    if state.blocked:
        return Advancement(state, "blocked")

    gate = phase.gate
    if gate is not None:
        gate_status = state.gate_status(gate.name)
        if gate_status == "pending":
            return Advancement(state, "gate_pending")
        if gate_status == "approved":
            return _leave_phase(protocol, state, phase, plan_loader=plan_loader, now=timestamp)

    state = replace(state, build_complete=outcome.checks_passed)
    if not outcome.passed:
        return _record_failure(state, position, outcome, max_iterations=max_iterations)
    if phase.is_phased:
        return _complete_stage(
            protocol, state, position, plan_loader=plan_loader, now=timestamp
        )
    return _complete_phase(protocol, state, phase, plan_loader=plan_loader, now=timestamp)


def unblock(state: ProjectState) -> ProjectState:
    """Clear a blocked stage and reset its attempt count."""
    plan_phases = tuple(
        phase.with_stage(stage, "in_progress")
        if (stage := phase.current_stage) is not None and phase.stages.get(stage) == "blocked"
        else phase
        for phase in state.plan_phases
    )
    return replace(state, blocked=False, iteration=0, plan_phases=plan_phases)
