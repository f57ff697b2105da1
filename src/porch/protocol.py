"""Protocol definitions.

A protocol is a JSON document naming an ordered list of phases. The loader
looks in the project's own protocols directory first and falls back to the
definitions bundled with this package.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Literal

import structlog

from porch.errors import ProtocolNotFound, ProtocolParseError, ProtocolSchemaError
from porch.plan import STAGES

logger = structlog.get_logger(__name__)

PhaseType = Literal["once", "per_plan_phase"]
PHASE_TYPE_ALIASES = {
    "once": "once",
    "per_plan_phase": "per_plan_phase",
    "phased": "per_plan_phase",
}
DEFAULT_PROTOCOLS_DIR = "codev/protocols"


@dataclass(frozen=True, slots=True)
class CheckSpec:
    name: str
    command: str
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class GateSpec:
    name: str
    next: str | None = None


@dataclass(frozen=True, slots=True)
class ConsultationSpec:
    models: tuple[str, ...] = ()
    type: str = "review"
    stages: tuple[str, ...] = ()

    def applies_to(self, stage: str | None) -> bool:
        if stage is None or not self.stages:
            return True
        return stage in self.stages


@dataclass(frozen=True, slots=True)
class Phase:
    id: str
    name: str
    type: PhaseType = "once"
    checks: dict[str, CheckSpec] = field(default_factory=dict)
    gate: GateSpec | None = None
    on_complete: str | None = None
    consultation: ConsultationSpec | None = None
    max_iterations: int | None = None
    artifact: str | None = None

    @property
    def is_phased(self) -> bool:
        return self.type == "per_plan_phase"

    @property
    def next_phase_id(self) -> str | None:
        if self.on_complete:
            return self.on_complete
        if self.gate is not None:
            return self.gate.next
        return None


@dataclass(frozen=True, slots=True)
class ProtocolDefinition:
    name: str
    version: str
    phases: tuple[Phase, ...]
    description: str = ""
    phase_completion: dict[str, CheckSpec] = field(default_factory=dict)
    source: str | None = None

    @property
    def first_phase(self) -> Phase:
        return self.phases[0]

    def phase_ids(self) -> list[str]:
        return [phase.id for phase in self.phases]


def _protocol_candidates(root: Path, protocol_name: str, protocols_dir: str) -> list[Path]:
    base = root / protocols_dir
    return [base / f"{protocol_name}.json", base / protocol_name / "protocol.json"]


def _read_bundled(protocol_name: str) -> tuple[str, str] | None:
    try:
        resource = resources.files("porch.protocols").joinpath(f"{protocol_name}.json")
        if not resource.is_file():
            return None
        return resource.read_text(encoding="utf-8"), f"porch.protocols/{protocol_name}.json"
    except (FileNotFoundError, ModuleNotFoundError):
        return None


def load_protocol(
    root: Path,
    protocol_name: str,
    *,
    protocols_dir: str = DEFAULT_PROTOCOLS_DIR,
) -> ProtocolDefinition:
    """Load a protocol by name, project-local override first, bundled copy second."""
    candidates = _protocol_candidates(root, protocol_name, protocols_dir)
    for candidate in candidates:
        if candidate.is_file():
            raw_text = candidate.read_text(encoding="utf-8")
            source = str(candidate)
            break
    else:
        bundled = _read_bundled(protocol_name)
        if bundled is None:
            searched = [str(path) for path in candidates]
            searched.append(f"porch.protocols/{protocol_name}.json")
            raise ProtocolNotFound(protocol_name, searched)
        raw_text, source = bundled

    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(
            f"Invalid protocol '{protocol_name}' ({source}): JSON parse error: {exc}"
        ) from exc

    protocol = parse_protocol(payload, source=source)
    logger.debug("protocol_loaded", protocol=protocol.name, source=source)
    return protocol


def _normalize_check(name: str, raw: Any) -> CheckSpec:
    if isinstance(raw, str) and raw.strip():
        return CheckSpec(name=name, command=raw.strip())
    if isinstance(raw, dict):
        command = raw.get("command")
        cwd = raw.get("cwd")
        if isinstance(command, str) and command.strip():
            return CheckSpec(
                name=name,
                command=command.strip(),
                cwd=cwd if isinstance(cwd, str) and cwd.strip() else None,
            )
    raise ProtocolSchemaError(f"Invalid check '{name}': expected a command string")


def _normalize_checks(raw: Any, where: str) -> dict[str, CheckSpec | None]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ProtocolSchemaError(f"Invalid checks in {where}: expected an object")
    checks: dict[str, CheckSpec | None] = {}
    for name, value in raw.items():
        # null drops a default check of the same name
        checks[str(name)] = None if value is None else _normalize_check(str(name), value)
    return checks


def _normalize_gate(raw: Any, phase_id: str, on_complete: str | None) -> GateSpec | None:
    if raw is None:
        return None
    if isinstance(raw, str) and raw.strip():
        return GateSpec(name=raw.strip(), next=on_complete)
    if isinstance(raw, dict):
        name = raw.get("name")
        next_phase = raw.get("next")
        if not isinstance(name, str) or not name.strip():
            raise ProtocolSchemaError(f"Invalid gate in phase '{phase_id}': missing \"name\"")
        if next_phase is not None and not isinstance(next_phase, str):
            raise ProtocolSchemaError(f"Invalid gate in phase '{phase_id}': bad \"next\"")
        return GateSpec(name=name.strip(), next=next_phase or on_complete)
    raise ProtocolSchemaError(f"Invalid gate in phase '{phase_id}'")


def _normalize_consultation(
    raw: Any,
    phase_id: str,
    phase_type: str,
    default_models: tuple[str, ...],
) -> ConsultationSpec | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ProtocolSchemaError(f"Invalid consultation in phase '{phase_id}'")
    models = raw.get("models")
    if models is None:
        models = list(default_models)
    if not isinstance(models, list) or not all(isinstance(item, str) for item in models):
        raise ProtocolSchemaError(f"Invalid consultation models in phase '{phase_id}'")
    stages = raw.get("stages")
    if stages is None:
        stages = ["evaluate"] if phase_type == "per_plan_phase" else []
    if not isinstance(stages, list) or any(stage not in STAGES for stage in stages):
        raise ProtocolSchemaError(
            f"Invalid consultation stages in phase '{phase_id}': expected any of {list(STAGES)}"
        )
    review_type = raw.get("type") or "review"
    return ConsultationSpec(
        models=tuple(models),
        type=str(review_type),
        stages=tuple(stages),
    )


def _normalize_phase(
    raw: Any,
    default_checks: dict[str, CheckSpec | None],
    default_models: tuple[str, ...],
) -> Phase:
    if not isinstance(raw, dict):
        raise ProtocolSchemaError("Invalid protocol phase: expected an object")
    phase_id = raw.get("id")
    if not isinstance(phase_id, str) or not phase_id.strip():
        raise ProtocolSchemaError('Invalid protocol phase: missing "id"')

    raw_type = raw.get("type") or "once"
    phase_type = PHASE_TYPE_ALIASES.get(str(raw_type))
    if phase_type is None:
        raise ProtocolSchemaError(f"Invalid type '{raw_type}' in phase '{phase_id}'")

    transition = raw.get("transition") or {}
    if not isinstance(transition, dict):
        raise ProtocolSchemaError(f"Invalid transition in phase '{phase_id}'")
    on_complete = transition.get("on_complete")
    if on_complete is not None and not isinstance(on_complete, str):
        raise ProtocolSchemaError(f"Invalid transition.on_complete in phase '{phase_id}'")

    merged = dict(default_checks)
    merged.update(_normalize_checks(raw.get("checks"), f"phase '{phase_id}'"))
    checks = {name: spec for name, spec in merged.items() if spec is not None}

    max_iterations = raw.get("max_iterations")
    if max_iterations is not None and (
        not isinstance(max_iterations, int)
        or isinstance(max_iterations, bool)
        or max_iterations < 1
    ):
        raise ProtocolSchemaError(f"Invalid max_iterations in phase '{phase_id}'")

    artifact = raw.get("artifact")
    return Phase(
        id=phase_id,
        name=str(raw.get("name") or phase_id),
        type=phase_type,  # type: ignore[arg-type]
        checks=checks,
        gate=_normalize_gate(raw.get("gate"), phase_id, on_complete),
        on_complete=on_complete,
        consultation=_normalize_consultation(
            raw.get("consultation"), phase_id, phase_type, default_models
        ),
        max_iterations=max_iterations,
        artifact=artifact if isinstance(artifact, str) and artifact.strip() else None,
    )


def _validate(phases: list[Phase]) -> None:
    seen: set[str] = set()
    for phase in phases:
        if phase.id in seen:
            raise ProtocolSchemaError(f"Duplicate phase id: {phase.id}")
        seen.add(phase.id)

    for phase in phases:
        target = phase.next_phase_id
        if target is not None and target not in seen:
            raise ProtocolSchemaError(
                f"Phase '{phase.id}' transitions to unknown phase '{target}'"
            )

    terminal = [phase.id for phase in phases if phase.next_phase_id is None]
    if len(terminal) != 1:
        raise ProtocolSchemaError(
            f"Protocol must have exactly one terminal phase, found {len(terminal)}: {terminal}"
        )

    phased = [phase.id for phase in phases if phase.is_phased]
    if len(phased) > 1:
        raise ProtocolSchemaError(f"At most one per_plan_phase phase is allowed, found {phased}")


def parse_protocol(payload: Any, *, source: str | None = None) -> ProtocolDefinition:
    if not isinstance(payload, dict):
        raise ProtocolSchemaError("Invalid protocol: expected a JSON object")
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ProtocolSchemaError('Invalid protocol: missing "name" field')
    raw_phases = payload.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise ProtocolSchemaError('Invalid protocol: missing "phases" array')

    defaults = payload.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ProtocolSchemaError('Invalid protocol: "defaults" must be an object')
    default_checks = _normalize_checks(defaults.get("checks"), "defaults")
    default_consultation = defaults.get("consultation") or {}
    default_models: tuple[str, ...] = ()
    if isinstance(default_consultation, dict) and isinstance(
        default_consultation.get("models"), list
    ):
        default_models = tuple(str(item) for item in default_consultation["models"])

    phases = [_normalize_phase(raw, default_checks, default_models) for raw in raw_phases]
    _validate(phases)

    completion = _normalize_checks(payload.get("phase_completion"), "phase_completion")
    return ProtocolDefinition(
        name=name.strip(),
        version=str(payload.get("version") or "0"),
        description=str(payload.get("description") or ""),
        phases=tuple(phases),
        phase_completion={key: spec for key, spec in completion.items() if spec is not None},
        source=source,
    )


def get_phase(protocol: ProtocolDefinition, phase_id: str) -> Phase | None:
    for phase in protocol.phases:
        if phase.id == phase_id:
            return phase
    return None


def get_next_phase(protocol: ProtocolDefinition, phase_id: str) -> Phase | None:
    """Return the phase entered after ``phase_id`` completes, or None at the end."""
    current = get_phase(protocol, phase_id)
    if current is None or current.next_phase_id is None:
        return None
    return get_phase(protocol, current.next_phase_id)


def get_phase_checks(protocol: ProtocolDefinition, phase_id: str) -> dict[str, CheckSpec]:
    phase = get_phase(protocol, phase_id)
    if phase is None:
        return {}
    return dict(phase.checks)


def is_phased(protocol: ProtocolDefinition, phase_id: str) -> bool:
    phase = get_phase(protocol, phase_id)
    return phase is not None and phase.is_phased
