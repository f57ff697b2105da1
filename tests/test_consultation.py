import threading

from porch.consultation import (
    ParseFailure,
    ParsedVerdict,
    Verdict,
    aggregate,
    parse_reply,
    run_consultations,
    summarize_verdicts,
    to_verdict,
)
from porch.reviewers.base import Reviewer, ReviewerError

APPROVE_REPLY = """The change looks solid.

---
VERDICT: APPROVE
SUMMARY: Clean implementation with tests
CONFIDENCE: HIGH
ISSUES:
- None
"""


class FakeReviewer(Reviewer):
    def __init__(self, name: str, reply: str = APPROVE_REPLY) -> None:
        self.name = name
        self.reply = reply
        self.calls: list[tuple[str, str]] = []

    def invoke(self, prompt: str, role: str) -> str:
        self.calls.append((prompt, role))
        return self.reply


class FailingReviewer(Reviewer):
    name = "broken"

    def invoke(self, prompt: str, role: str) -> str:
        raise ReviewerError("exit code 2", reviewer=self.name, exit_code=2)


class HangingReviewer(Reviewer):
    name = "hung"

    def __init__(self) -> None:
        self.release = threading.Event()

    def invoke(self, prompt: str, role: str) -> str:
        self.release.wait(10)
        return APPROVE_REPLY


def test_parse_reply_reads_trailer() -> None:
    parsed = parse_reply(APPROVE_REPLY)

    assert parsed == ParsedVerdict(
        verdict="APPROVE",
        summary="Clean implementation with tests",
        confidence="HIGH",
        issues=(),
    )


def test_parse_reply_ignores_echoed_template() -> None:
    reply = (
        "Respond with:\n"
        "VERDICT: [APPROVE | REQUEST_CHANGES | COMMENT]\n"
        "SUMMARY: [one line]\n\n"
        "Review body here.\n\n"
        "**VERDICT: REQUEST_CHANGES**\n"
        "**SUMMARY:** Missing error handling\n"
        "CONFIDENCE: medium\n"
        "KEY_ISSUES:\n"
        "1. No timeout on the fetch\n"
        "- Unchecked return value\n"
    )

    parsed = parse_reply(reply)

    assert isinstance(parsed, ParsedVerdict)
    assert parsed.verdict == "REQUEST_CHANGES"
    assert parsed.summary == "Missing error handling"
    assert parsed.confidence == "MEDIUM"
    assert parsed.issues == ("No timeout on the fetch", "Unchecked return value")


def test_parse_reply_last_verdict_wins_and_confidence_defaults_low() -> None:
    reply = "VERDICT: REQUEST_CHANGES\nlater thoughts\nVERDICT: COMMENT\n"

    parsed = parse_reply(reply)

    assert isinstance(parsed, ParsedVerdict)
    assert parsed.verdict == "COMMENT"
    assert parsed.confidence == "LOW"
    assert parsed.summary == ""


def test_parse_reply_without_verdict_is_failure() -> None:
    assert parse_reply("") == ParseFailure("empty reply")
    failure = parse_reply("Looks fine to me, ship it.")
    assert isinstance(failure, ParseFailure)

    verdict = to_verdict("gemini", failure)
    assert verdict.verdict == "COMMENT"
    assert verdict.confidence == "LOW"
    assert verdict.summary.startswith("Unparseable review:")


def test_run_consultations_preserves_call_order() -> None:
    reviewers = [
        FakeReviewer("gemini"),
        FakeReviewer("codex", "VERDICT: REQUEST_CHANGES\nSUMMARY: needs tests\n"),
        FakeReviewer("claude"),
    ]

    verdicts = run_consultations(reviewers, "review this", timeout=5, role="impl-review")

    assert [verdict.model for verdict in verdicts] == ["gemini", "codex", "claude"]
    assert [verdict.verdict for verdict in verdicts] == ["APPROVE", "REQUEST_CHANGES", "APPROVE"]
    assert reviewers[0].calls == [("review this", "impl-review")]
    assert aggregate(verdicts) == "retry"


def test_failing_reviewer_becomes_low_confidence_comment() -> None:
    verdicts = run_consultations([FailingReviewer(), FakeReviewer("claude")], "p", timeout=5)

    assert verdicts[0].model == "broken"
    assert verdicts[0].verdict == "COMMENT"
    assert verdicts[0].confidence == "LOW"
    assert "Reviewer failed: exit code 2" in verdicts[0].summary
    assert aggregate(verdicts) == "advance"


def test_timed_out_reviewer_does_not_block_others() -> None:
    hanging = HangingReviewer()
    try:
        verdicts = run_consultations([hanging, FakeReviewer("claude")], "p", timeout=0.2)
    finally:
        hanging.release.set()

    assert verdicts[0].model == "hung"
    assert verdicts[0].verdict == "COMMENT"
    assert verdicts[0].summary == "Reviewer timed out after 0.2s"
    assert verdicts[1].verdict == "APPROVE"


def test_empty_reviewer_list_advances() -> None:
    verdicts = run_consultations([], "p", timeout=1)

    assert verdicts == []
    assert aggregate(verdicts) == "advance"


def test_summarize_verdicts() -> None:
    verdicts = [
        Verdict(model="gemini", verdict="APPROVE", summary="ok", confidence="HIGH"),
        Verdict(model="codex", verdict="COMMENT"),
    ]

    assert summarize_verdicts(verdicts) == "gemini=APPROVE/HIGH (ok); codex=COMMENT/LOW"
