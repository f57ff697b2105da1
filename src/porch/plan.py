"""Plan phase extraction.

A plan document lists the units of implementation work. The preferred form
is a fenced JSON block::

    ```json
    {"phases": [{"id": "phase_1", "title": "Core model"}]}
    ```

Plans without one fall back to ``### Phase N: Title`` headings, preferably
inside a ``## Phases`` (or ``## Implementation Phases``) section. Extraction
never fails on content: an unusable document yields a single
``phase_1 / Implementation`` entry.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

import structlog

from porch.errors import PlanFileNotFound

logger = structlog.get_logger(__name__)

StageName = Literal["implement", "defend", "evaluate"]
StageStatus = Literal["pending", "in_progress", "complete", "blocked"]
STAGES: tuple[StageName, ...] = ("implement", "defend", "evaluate")
STAGE_STATUSES = {"pending", "in_progress", "complete", "blocked"}

FENCED_BLOCK_PATTERN = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)
PHASES_SECTION_PATTERN = re.compile(
    r"^##[ \t]*(?:Implementation[ \t]+)?Phases[ \t]*\n(.*?)(?=^##[ \t]|\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)
PHASE_HEADING_PATTERN = re.compile(
    r"^#{2,4}[ \t]*Phase[ \t]+(\d+)[ \t]*[:.\-][ \t]*(.+?)[ \t]*#*[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)


def _fresh_stages() -> dict[str, str]:
    return {stage: "pending" for stage in STAGES}


@dataclass(frozen=True, slots=True)
class PlanPhase:
    id: str
    title: str
    stages: dict[str, str] = field(default_factory=_fresh_stages)

    @property
    def is_complete(self) -> bool:
        return all(self.stages.get(stage) == "complete" for stage in STAGES)

    @property
    def current_stage(self) -> str | None:
        for stage in STAGES:
            if self.stages.get(stage) != "complete":
                return stage
        return None

    def with_stage(self, stage: str, status: str) -> PlanPhase:
        stages = dict(self.stages)
        stages[stage] = status
        return replace(self, stages=stages)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "stages": dict(self.stages)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PlanPhase:
        if not isinstance(payload, dict):
            raise ValueError("plan phase entries must be mappings")
        raw_stages = payload.get("stages") or {}
        if not isinstance(raw_stages, dict):
            raise ValueError("plan phase stages must be a mapping")
        stages = _fresh_stages()
        for stage in STAGES:
            value = raw_stages.get(stage, "pending")
            if value not in STAGE_STATUSES:
                raise ValueError(f"invalid status '{value}' for stage {stage}")
            stages[stage] = value
        return cls(id=str(payload["id"]), title=str(payload.get("title") or ""), stages=stages)


def default_plan_phases() -> list[PlanPhase]:
    return [PlanPhase(id="phase_1", title="Implementation")]


def _phases_from_payload(payload: Any) -> list[PlanPhase] | None:
    if not isinstance(payload, dict):
        return None
    raw_phases = payload.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        return None
    phases: list[PlanPhase] = []
    seen: set[str] = set()
    for item in raw_phases:
        if not isinstance(item, dict):
            return None
        phase_id = item.get("id")
        title = item.get("title")
        if not isinstance(phase_id, str) or not phase_id.strip():
            return None
        if not isinstance(title, str):
            return None
        if phase_id in seen:
            return None
        seen.add(phase_id)
        phases.append(PlanPhase(id=phase_id.strip(), title=title.strip()))
    return phases


def _extract_structured(plan_text: str) -> list[PlanPhase] | None:
    for match in FENCED_BLOCK_PATTERN.finditer(plan_text):
        body = match.group(1).strip()
        if '"phases"' not in body:
            continue
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.debug("plan_structured_block_invalid", reason="json_decode_error")
            continue
        phases = _phases_from_payload(payload)
        if phases:
            return phases
    return None


def _extract_headings(plan_text: str) -> list[PlanPhase] | None:
    section = PHASES_SECTION_PATTERN.search(plan_text)
    scopes = [section.group(1)] if section else []
    scopes.append(plan_text)
    for scope in scopes:
        phases: list[PlanPhase] = []
        seen: set[str] = set()
        for match in PHASE_HEADING_PATTERN.finditer(scope):
            phase_id = f"phase_{int(match.group(1))}"
            if phase_id in seen:
                continue
            seen.add(phase_id)
            phases.append(PlanPhase(id=phase_id, title=match.group(2).strip()))
        if phases:
            return phases
    return None


def extract_plan_phases(plan_text: str) -> list[PlanPhase]:
    """Return the ordered plan phases declared by a plan document."""
    text = plan_text or ""
    phases = _extract_structured(text)
    if phases:
        return phases
    phases = _extract_headings(text)
    if phases:
        return phases
    logger.info("plan_phases_defaulted", reason="no phases found in plan")
    return default_plan_phases()


def extract_phases_from_file(path: Path) -> list[PlanPhase]:
    if not path.is_file():
        raise PlanFileNotFound(str(path))
    return extract_plan_phases(path.read_text(encoding="utf-8"))


def find_plan_file(
    root: Path,
    project_id: str,
    title_hint: str | None = None,
    *,
    plans_dir: str = "codev/plans",
    projects_dir: str = "codev/projects",
) -> Path | None:
    """Locate a project's plan, legacy flat file first, project directory second."""
    legacy_dir = root / plans_dir
    if title_hint:
        exact = legacy_dir / f"{project_id}-{title_hint}.md"
        if exact.is_file():
            return exact
    if legacy_dir.is_dir():
        for candidate in sorted(legacy_dir.glob(f"{project_id}-*.md")):
            if candidate.is_file():
                return candidate

    project_base = root / projects_dir
    candidates: list[Path] = []
    if title_hint:
        candidates.append(project_base / f"{project_id}-{title_hint}" / "plan.md")
    candidates.append(project_base / project_id / "plan.md")
    if project_base.is_dir():
        candidates.extend(sorted(project_base.glob(f"{project_id}-*/plan.md")))
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def get_phase_content(plan_text: str, phase_id: str) -> str | None:
    """Return the text under a ``Phase N`` heading, up to the next phase or section."""
    number = re.fullmatch(r"phase_(\d+)", phase_id)
    if not number:
        return None
    heading = re.compile(
        rf"^#{{2,4}}[ \t]*Phase[ \t]+0*{int(number.group(1))}[ \t]*[:.\-][^\n]*\n"
        r"(.*?)(?=^#{2,4}[ \t]*Phase[ \t]+\d|^##[ \t]|\Z)",
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    match = heading.search(plan_text)
    if not match:
        return None
    content = match.group(1).strip()
    return content or None


def get_plan_phase(phases: Sequence[PlanPhase], phase_id: str | None) -> PlanPhase | None:
    for phase in phases:
        if phase.id == phase_id:
            return phase
    return None


def get_next_plan_phase(
    phases: Sequence[PlanPhase], phase_id: str
) -> PlanPhase | None:
    ids = [phase.id for phase in phases]
    if phase_id not in ids:
        return None
    index = ids.index(phase_id)
    if index + 1 < len(phases):
        return phases[index + 1]
    return None


def all_plan_phases_complete(phases: Sequence[PlanPhase]) -> bool:
    return all(phase.is_complete for phase in phases)
