from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
import yaml

from porch.errors import StateCorrupt
from porch.plan import PlanPhase

logger = structlog.get_logger(__name__)

STATUS_FILE = "status.yaml"
REQUIRED_FIELDS = ("id", "title", "protocol", "phase")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class GateStatus:
    status: str = "pending"
    requested_at: str | None = None
    approved_by: str | None = None
    approved_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.requested_at:
            payload["requested_at"] = self.requested_at
        if self.approved_by:
            payload["approved_by"] = self.approved_by
        if self.approved_at:
            payload["approved_at"] = self.approved_at
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GateStatus:
        if not isinstance(payload, dict):
            raise ValueError("gate entries must be mappings")
        status = payload.get("status", "pending")
        if status not in {"pending", "approved"}:
            raise ValueError(f"invalid gate status '{status}'")
        return cls(
            status=status,
            requested_at=payload.get("requested_at"),
            approved_by=payload.get("approved_by"),
            approved_at=payload.get("approved_at"),
        )


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    at: str
    event: str
    phase: str
    plan_phase: str | None = None
    stage: str | None = None
    iteration: int = 0
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"at": self.at, "event": self.event, "phase": self.phase}
        if self.plan_phase:
            payload["plan_phase"] = self.plan_phase
        if self.stage:
            payload["stage"] = self.stage
        payload["iteration"] = self.iteration
        if self.detail:
            payload["detail"] = self.detail
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryEntry:
        if not isinstance(payload, dict):
            raise ValueError("history entries must be mappings")
        return cls(
            at=str(payload.get("at", "")),
            event=str(payload.get("event", "")),
            phase=str(payload.get("phase", "")),
            plan_phase=payload.get("plan_phase"),
            stage=payload.get("stage"),
            iteration=int(payload.get("iteration", 0)),
            detail=str(payload.get("detail", "")),
        )


@dataclass(frozen=True, slots=True)
class TransitionNote:
    """One-line summary of a transition, appended to history on write."""

    event: str
    detail: str = ""


@dataclass(frozen=True, slots=True)
class ProjectState:
    id: str
    title: str
    protocol: str
    phase: str
    plan_phases: tuple[PlanPhase, ...] = ()
    current_plan_phase: str | None = None
    gates: dict[str, GateStatus] = field(default_factory=dict)
    iteration: int = 0
    build_complete: bool = False
    blocked: bool = False
    history: tuple[HistoryEntry, ...] = ()
    context: dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def gate_status(self, gate_name: str) -> str | None:
        gate = self.gates.get(gate_name)
        return gate.status if gate is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "protocol": self.protocol,
            "phase": self.phase,
            "plan_phases": [phase.to_dict() for phase in self.plan_phases],
            "current_plan_phase": self.current_plan_phase,
            "gates": {name: gate.to_dict() for name, gate in self.gates.items()},
            "iteration": self.iteration,
            "build_complete": self.build_complete,
            "blocked": self.blocked,
            "history": [entry.to_dict() for entry in self.history],
            "context": dict(self.context),
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProjectState:
        missing = [key for key in REQUIRED_FIELDS if not payload.get(key)]
        if missing:
            raise ValueError(f"missing required fields: {', '.join(missing)}")
        raw_gates = payload.get("gates") or {}
        raw_plan_phases = payload.get("plan_phases") or []
        raw_history = payload.get("history") or []
        raw_context = payload.get("context") or {}
        if not isinstance(raw_gates, dict):
            raise ValueError("gates must be a mapping")
        if not isinstance(raw_plan_phases, list) or not isinstance(raw_history, list):
            raise ValueError("plan_phases and history must be lists")
        if not isinstance(raw_context, dict):
            raise ValueError("context must be a mapping")
        return cls(
            id=str(payload["id"]),
            title=str(payload["title"]),
            protocol=str(payload["protocol"]),
            phase=str(payload["phase"]),
            plan_phases=tuple(PlanPhase.from_dict(item) for item in raw_plan_phases),
            current_plan_phase=payload.get("current_plan_phase"),
            gates={
                str(name): GateStatus.from_dict(gate if gate is not None else {})
                for name, gate in raw_gates.items()
            },
            iteration=int(payload.get("iteration") or 0),
            build_complete=bool(payload.get("build_complete", False)),
            blocked=bool(payload.get("blocked", False)),
            history=tuple(HistoryEntry.from_dict(item) for item in raw_history),
            context=dict(raw_context),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            completed_at=payload.get("completed_at"),
        )


def new_project_state(project_id: str, title: str, protocol: str, phase: str) -> ProjectState:
    now = utcnow_iso()
    return ProjectState(
        id=project_id,
        title=title,
        protocol=protocol,
        phase=phase,
        started_at=now,
        updated_at=now,
    )


def state_exists(path: Path) -> bool:
    return path.is_file()


def read_state(path: Path) -> ProjectState:
    try:
        raw_text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise StateCorrupt(str(path), "file does not exist") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise StateCorrupt(str(path), f"cannot read file: {exc}") from exc
    try:
        payload = yaml.safe_load(raw_text)
    except yaml.YAMLError as exc:
        raise StateCorrupt(str(path), f"invalid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateCorrupt(str(path), "expected a mapping at the top level")
    try:
        return ProjectState.from_dict(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise StateCorrupt(str(path), str(exc)) from exc


def _position_of(state: ProjectState) -> tuple[str | None, str | None]:
    for plan_phase in state.plan_phases:
        if plan_phase.id == state.current_plan_phase:
            return plan_phase.id, plan_phase.current_stage
    return None, None


def write_state(
    path: Path,
    state: ProjectState,
    note: TransitionNote | None = None,
) -> ProjectState:
    """Atomically persist ``state``; returns the state as written."""
    now = utcnow_iso()
    history = state.history
    if note is not None:
        plan_phase, stage = _position_of(state)
        history = (
            *history,
            HistoryEntry(
                at=now,
                event=note.event,
                phase=state.phase,
                plan_phase=plan_phase,
                stage=stage,
                iteration=state.iteration,
                detail=note.detail,
            ),
        )
    written = replace(state, history=history, updated_at=now)
    serialized = yaml.safe_dump(
        written.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False
    )

    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as temp_file:
        temp_path = Path(temp_file.name)
        try:
            temp_file.write(serialized)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        except BaseException:
            temp_file.close()
            temp_path.unlink(missing_ok=True)
            raise

    try:
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise

    logger.debug(
        "state_written", path=str(path), transition=note.event if note else None
    )
    return written


def project_dir_name(project_id: str, title: str) -> str:
    return f"{project_id}-{title}" if title else project_id


def status_path_for(projects_root: Path, project_id: str, title: str) -> Path:
    return projects_root / project_dir_name(project_id, title) / STATUS_FILE


def find_status_path(projects_root: Path, project_id: str) -> Path | None:
    exact = projects_root / project_id / STATUS_FILE
    if state_exists(exact):
        return exact
    if not projects_root.is_dir():
        return None
    for candidate in sorted(projects_root.glob(f"{project_id}-*/{STATUS_FILE}")):
        if state_exists(candidate):
            return candidate
    return None


def iter_status_paths(projects_root: Path) -> Iterator[Path]:
    if not projects_root.is_dir():
        return
    for candidate in sorted(projects_root.glob(f"*/{STATUS_FILE}")):
        if state_exists(candidate):
            yield candidate
