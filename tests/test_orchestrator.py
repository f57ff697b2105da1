import json
from pathlib import Path

import pytest

from porch.config import PorchConfig
from porch.errors import PlanFileNotFound, ProjectExists, ProjectNotFound, UnknownGate
from porch.orchestrator import Orchestrator, ResultCode
from porch.reviewers.base import Reviewer
from porch.state import find_status_path, read_state

PLAN = """# Plan: widgets

## Phases

### Phase 1: Core model
Build the widget model.

### Phase 2: Storage
Persist widgets.
"""

APPROVE = "VERDICT: APPROVE\nSUMMARY: fine\nCONFIDENCE: HIGH\n"


class ScriptedReviewer(Reviewer):
    def __init__(self, name: str, replies: list[str], prompts: list[str]) -> None:
        self.name = name
        self.replies = replies
        self.prompts = prompts

    def invoke(self, prompt: str, role: str) -> str:
        self.prompts.append(prompt)
        return self.replies.pop(0) if self.replies else APPROVE


class ReviewerPanel:
    def __init__(self, replies: list[str] | None = None) -> None:
        self.replies = list(replies or [])
        self.prompts: list[str] = []
        self.requested: list[tuple[str, ...]] = []

    def __call__(self, names):
        self.requested.append(tuple(names))
        return [ScriptedReviewer(names[0], self.replies, self.prompts)]


class FixedChecker:
    def __init__(self, exit_code: int = 0) -> None:
        self.exit_code = exit_code
        self.commands: list[str] = []

    def run(self, command, cwd, *, env=None, timeout=None):
        self.commands.append(command)
        return self.exit_code, "", "tests failed" if self.exit_code else ""


def _orchestrator(root: Path, **kwargs) -> Orchestrator:
    return Orchestrator(root, PorchConfig.default(), **kwargs)


def _write_plan(root: Path, project_id: str = "0042", title: str = "widgets") -> None:
    plan_path = root / "codev" / "projects" / f"{project_id}-{title}" / "plan.md"
    plan_path.parent.mkdir(parents=True, exist_ok=True)
    plan_path.write_text(PLAN, encoding="utf-8")


def _write_protocol(root: Path, name: str, payload: dict) -> None:
    protocols_dir = root / "codev" / "protocols"
    protocols_dir.mkdir(parents=True, exist_ok=True)
    (protocols_dir / f"{name}.json").write_text(json.dumps(payload), encoding="utf-8")


def test_spider_flow_end_to_end(tmp_path: Path) -> None:
    panel = ReviewerPanel()
    orchestrator = _orchestrator(tmp_path, reviewer_factory=panel, checker=FixedChecker())

    init = orchestrator.init("spider", "0042", "widgets")
    assert init.code == ResultCode.SUCCESS
    assert orchestrator.status("0042").payload["phase"] == "specify"

    requested = orchestrator.done("0042")
    assert requested.code == ResultCode.GATE_PENDING
    assert "GATE: spec-approval: STOP and wait" in requested.lines
    assert "  Artifact: codev/specs/0042-widgets.md" in requested.lines

    again = orchestrator.done("0042")
    assert again.code == ResultCode.GATE_PENDING
    assert orchestrator.status("0042").code == ResultCode.GATE_PENDING
    assert orchestrator.gate("0042").code == ResultCode.GATE_PENDING

    approved = orchestrator.approve("0042", "spec-approval", "ana")
    assert approved.code == ResultCode.SUCCESS
    assert approved.payload["phase"] == "plan"

    assert orchestrator.done("0042").code == ResultCode.GATE_PENDING
    _write_plan(tmp_path)
    assert orchestrator.approve("0042", "plan-approval", "ana").payload["phase"] == "implement"

    status = orchestrator.status("0042")
    assert status.payload["plan_phase"] == "phase_1"
    assert status.payload["stage"] == "implement"
    assert "  Build the widget model." in status.lines

    positions = []
    for _ in range(6):
        positions.append(orchestrator.status("0042").payload)
        assert orchestrator.done("0042").code == ResultCode.SUCCESS
    assert [(item["plan_phase"], item["stage"]) for item in positions] == [
        ("phase_1", "implement"),
        ("phase_1", "defend"),
        ("phase_1", "evaluate"),
        ("phase_2", "implement"),
        ("phase_2", "defend"),
        ("phase_2", "evaluate"),
    ]
    assert panel.requested == [("gemini", "codex", "claude")] * 2
    assert "implement/phase_2/evaluate" in panel.prompts[1]

    assert orchestrator.status("0042").payload["phase"] == "review"
    final = orchestrator.done("0042")
    assert final.code == ResultCode.SUCCESS
    assert final.lines[0] == "PROTOCOL COMPLETE"

    state = read_state(find_status_path(tmp_path / "codev" / "projects", "0042"))
    assert state.is_complete
    assert state.gates["plan-approval"].approved_by == "ana"
    events = [entry.event for entry in state.history]
    assert events[0] == "initialized"
    assert events.count("gate_approved") == 2
    assert events[-1] == "protocol_complete"


def test_requested_changes_retry_with_previous_feedback(tmp_path: Path) -> None:
    _write_protocol(
        tmp_path,
        "reviewed",
        {
            "name": "reviewed",
            "phases": [
                {
                    "id": "draft",
                    "consultation": {"models": ["codex"], "type": "draft-review"},
                    "transition": {"on_complete": "ship"},
                },
                {"id": "ship"},
            ],
        },
    )
    panel = ReviewerPanel(["VERDICT: REQUEST_CHANGES\nSUMMARY: missing docs\n", APPROVE])
    orchestrator = _orchestrator(tmp_path, reviewer_factory=panel)
    orchestrator.init("reviewed", "7", "notes")

    retry = orchestrator.done("7")
    assert retry.code == ResultCode.ERROR
    assert retry.lines[-3].startswith("NOT DONE: draft (attempt 1/7)")
    assert orchestrator.status("7").payload["iteration"] == 1

    advanced = orchestrator.done("7")
    assert advanced.code == ResultCode.SUCCESS
    assert "NEXT: ship" in advanced.lines
    assert "## Previous attempts" not in panel.prompts[0]
    assert "missing docs" in panel.prompts[1]


def test_failing_checks_block_after_max_iterations(tmp_path: Path) -> None:
    _write_protocol(
        tmp_path,
        "strict",
        {
            "name": "strict",
            "phases": [{"id": "build", "checks": {"tests": "pytest -q"}}],
        },
    )
    checker = FixedChecker(exit_code=1)
    panel = ReviewerPanel()
    orchestrator = _orchestrator(tmp_path, checker=checker, reviewer_factory=panel)
    orchestrator.init("strict", "9", "tool")

    codes = [orchestrator.done("9").code for _ in range(7)]

    assert codes == [ResultCode.ERROR] * 6 + [ResultCode.BLOCKED]
    assert panel.requested == []
    assert orchestrator.status("9").code == ResultCode.BLOCKED
    assert orchestrator.done("9").code == ResultCode.BLOCKED
    assert len(checker.commands) == 7

    assert orchestrator.check("9").code == ResultCode.ERROR
    assert orchestrator.unblock("9").code == ResultCode.SUCCESS
    assert orchestrator.status("9").code == ResultCode.SUCCESS
    assert orchestrator.status("9").payload["iteration"] == 0

    checker.exit_code = 0
    assert orchestrator.check("9").code == ResultCode.SUCCESS
    assert orchestrator.done("9").lines[-2] == "PROTOCOL COMPLETE"


def test_status_auto_initializes_and_init_rejects_duplicates(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    with pytest.raises(ProjectNotFound):
        orchestrator.status("0042")

    created = orchestrator.status("0042", protocol="spider", title="widgets")
    assert created.code == ResultCode.SUCCESS
    assert created.payload["phase"] == "specify"

    with pytest.raises(ProjectExists):
        orchestrator.init("spider", "0042", "widgets")


def test_gate_and_approve_errors(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    orchestrator.init("spider", "0042", "widgets")

    not_requested = orchestrator.gate("0042")
    assert not_requested.code == ResultCode.SUCCESS
    assert not_requested.lines[0] == "Gate spec-approval has not been requested yet."

    with pytest.raises(UnknownGate):
        orchestrator.approve("0042", "plan-approval", "ana")

    orchestrator.done("0042")
    orchestrator.approve("0042", "spec-approval", "ana")
    orchestrator.done("0042")
    with pytest.raises(PlanFileNotFound) as excinfo:
        orchestrator.approve("0042", "plan-approval", "ana")
    assert excinfo.value.path.endswith("0042-widgets/plan.md")
    assert orchestrator.status("0042").code == ResultCode.GATE_PENDING


def test_pending_lists_gates_across_projects(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    assert orchestrator.pending().lines == ["No gates awaiting approval."]

    orchestrator.init("spider", "0042", "widgets")
    orchestrator.init("spider", "0043", "gadgets")
    orchestrator.done("0043")
    corrupt = tmp_path / "codev" / "projects" / "0099-broken" / "status.yaml"
    corrupt.parent.mkdir(parents=True)
    corrupt.write_text("id: [", encoding="utf-8")
    malformed = tmp_path / "codev" / "projects" / "0098-odd" / "status.yaml"
    malformed.parent.mkdir(parents=True)
    malformed.write_text(
        "id: '0098'\ntitle: odd\nprotocol: spider\nphase: specify\nhistory:\n  - oops\n",
        encoding="utf-8",
    )

    result = orchestrator.pending()

    assert result.payload["pending"] == [
        {"id": "0043", "phase": "specify", "gate": "spec-approval"}
    ]


def test_phase_completion_checks_run_only_at_evaluate(tmp_path: Path) -> None:
    _write_protocol(
        tmp_path,
        "staged",
        {
            "name": "staged",
            "phase_completion": {"commit": "git-commit-check"},
            "phases": [
                {
                    "id": "build",
                    "type": "per_plan_phase",
                    "checks": {"tests": "unit-tests"},
                    "gate": {"name": "build-approval", "next": "ship"},
                },
                {"id": "ship"},
            ],
        },
    )
    _write_plan(tmp_path, "5", "staged")
    checker = FixedChecker()
    orchestrator = _orchestrator(tmp_path, checker=checker)
    orchestrator.init("staged", "5", "staged")

    implement_status = orchestrator.status("5")
    assert "  - tests: unit-tests" in implement_status.lines
    assert "  - commit: git-commit-check" not in implement_status.lines

    runs = []
    for _ in range(6):
        status = orchestrator.status("5")
        if status.payload["stage"] == "evaluate":
            assert "  - commit: git-commit-check" in status.lines
        start = len(checker.commands)
        orchestrator.done("5")
        runs.append((status.payload["stage"], checker.commands[start:]))

    assert runs == [
        ("implement", ["unit-tests"]),
        ("defend", ["unit-tests"]),
        ("evaluate", ["unit-tests", "git-commit-check"]),
    ] * 2

    finished = orchestrator.status("5")
    assert finished.code == ResultCode.GATE_PENDING
    assert "PLAN PHASES: all 2 complete" in finished.lines
    assert "GATE: build-approval: STOP and wait" in finished.lines
