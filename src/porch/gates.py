from __future__ import annotations

from dataclasses import dataclass, replace

import structlog

from porch.errors import GateNotPending, UnknownGate
from porch.protocol import ProtocolDefinition, get_phase
from porch.state import GateStatus, ProjectState, utcnow_iso

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PendingGate:
    project_id: str
    title: str
    phase: str
    gate: str
    requested_at: str | None = None


def is_gated(protocol: ProtocolDefinition, phase_id: str) -> str | None:
    phase = get_phase(protocol, phase_id)
    if phase is None or phase.gate is None:
        return None
    return phase.gate.name


def approve(
    protocol: ProtocolDefinition,
    state: ProjectState,
    gate_name: str,
    approver: str,
    *,
    now: str | None = None,
) -> ProjectState:
    """Record approval of the current phase's pending gate.

    Raises:
        UnknownGate: ``gate_name`` is not the gate configured on the current phase.
        GateNotPending: the gate exists but is not awaiting approval.
    """
    expected = is_gated(protocol, state.phase)
    if expected != gate_name:
        raise UnknownGate(gate_name, expected)

    current = state.gates.get(gate_name)
    if current is None or current.status != "pending":
        raise GateNotPending(gate_name, current.status if current else None)

    gates = dict(state.gates)
    gates[gate_name] = GateStatus(
        status="approved",
        requested_at=current.requested_at,
        approved_by=approver,
        approved_at=now or utcnow_iso(),
    )
    logger.info("gate_approved", project=state.id, gate=gate_name, approver=approver)
    return replace(state, gates=gates)


def pending_gate(protocol: ProtocolDefinition, state: ProjectState) -> str | None:
    gate_name = is_gated(protocol, state.phase)
    if gate_name is not None and state.gate_status(gate_name) == "pending":
        return gate_name
    return None


def pending_gates(state: ProjectState) -> list[PendingGate]:
    return [
        PendingGate(
            project_id=state.id,
            title=state.title,
            phase=state.phase,
            gate=name,
            requested_at=gate.requested_at,
        )
        for name, gate in state.gates.items()
        if gate.status == "pending"
    ]
