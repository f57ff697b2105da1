from __future__ import annotations

from importlib import resources
from string import Template

from porch.engine import Position
from porch.state import HistoryEntry, ProjectState

FALLBACK_CONSULT_PROMPT = """Review project $project_id ($title) at $position.
$context
End your reply with:
VERDICT: [APPROVE | REQUEST_CHANGES | COMMENT]
SUMMARY: [one line]
CONFIDENCE: [HIGH | MEDIUM | LOW]
ISSUES:
- [issue, or "None"]
"""


def load_template(name: str, fallback: str) -> str:
    try:
        template_path = resources.files("porch.templates").joinpath(name)
        return template_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        return fallback.strip()


def render_artifact(pattern: str | None, state: ProjectState) -> str | None:
    if not pattern:
        return None
    return pattern.replace("{id}", state.id).replace("{title}", state.title)


def previous_feedback(state: ProjectState) -> list[HistoryEntry]:
    """Return the retry notes recorded for the current stage, oldest first."""
    entries: list[HistoryEntry] = []
    for entry in reversed(state.history):
        if entry.event != "retry":
            break
        entries.append(entry)
    entries.reverse()
    return entries[-state.iteration:] if state.iteration > 0 else []


def render_consultation_prompt(
    state: ProjectState,
    position: Position,
    *,
    artifact: str | None = None,
    plan_excerpt: str | None = None,
) -> str:
    sections: list[str] = []
    if artifact:
        sections.append(f"\nArtifact under review: {artifact}")
    if position.plan_phase is not None:
        heading = f"{position.plan_phase.id}: {position.plan_phase.title}"
        if plan_excerpt:
            sections.append(f"\n## Plan phase {heading}\n\n{plan_excerpt}")
        else:
            sections.append(f"\n## Plan phase {heading}")
    feedback = previous_feedback(state)
    if feedback:
        lines = ["\n## Previous attempts"]
        for entry in feedback:
            lines.append(f"- attempt {entry.iteration}: {entry.detail}")
        lines.append("\nCheck whether these findings have been addressed.")
        sections.append("\n".join(lines))

    template = Template(load_template("consult.md", FALLBACK_CONSULT_PROMPT))
    return template.safe_substitute(
        project_id=state.id,
        title=state.title,
        protocol=state.protocol,
        position=position.label,
        phase_name=position.phase.name,
        attempt=str(state.iteration + 1),
        context="\n".join(sections),
    )
