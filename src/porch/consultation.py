"""Parallel reviewer consultations.

Every reviewer gets the same prompt. Replies end in a trailer::

    VERDICT: APPROVE | REQUEST_CHANGES | COMMENT
    SUMMARY: one line
    CONFIDENCE: HIGH | MEDIUM | LOW
    ISSUES:
    - issue one

A reviewer that fails, times out, or replies without a usable trailer is
recorded as a low-confidence ``COMMENT``; it never aborts the batch.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Literal

import structlog

from porch.reviewers.base import Reviewer

logger = structlog.get_logger(__name__)

VerdictValue = Literal["APPROVE", "REQUEST_CHANGES", "COMMENT"]
Confidence = Literal["HIGH", "MEDIUM", "LOW"]
Decision = Literal["advance", "retry"]

VERDICT_VALUES: tuple[VerdictValue, ...] = ("REQUEST_CHANGES", "APPROVE", "COMMENT")
CONFIDENCE_VALUES: tuple[Confidence, ...] = ("HIGH", "MEDIUM", "LOW")
MARKDOWN_EDGE_PATTERN = re.compile(r"^[*_`\->#\s]+|[*_`\-\s]+$")
BULLET_PATTERN = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(.+?)\s*$")
TRAILER_KEYS = ("VERDICT:", "SUMMARY:", "CONFIDENCE:", "ISSUES:", "KEY_ISSUES:")
NO_ISSUES = {"", "NONE", "N/A", "NONE.", "-"}


@dataclass(frozen=True, slots=True)
class Verdict:
    model: str
    verdict: VerdictValue
    summary: str = ""
    confidence: Confidence = "LOW"
    issues: tuple[str, ...] = ()

    @property
    def requests_changes(self) -> bool:
        return self.verdict == "REQUEST_CHANGES"


@dataclass(frozen=True, slots=True)
class ParsedVerdict:
    verdict: VerdictValue
    summary: str
    confidence: Confidence
    issues: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ParseFailure:
    reason: str


def _strip_markdown(line: str) -> str:
    return MARKDOWN_EDGE_PATTERN.sub("", line).strip()


def _field_value(stripped: str, key: str) -> str | None:
    if not stripped.upper().startswith(key):
        return None
    return _strip_markdown(stripped[len(key):])


def _parse_issues(lines: Sequence[str], start: int) -> tuple[str, ...]:
    issues: list[str] = []
    for raw_line in lines[start:]:
        stripped = _strip_markdown(raw_line)
        upper = stripped.upper()
        header = next((key for key in ("ISSUES:", "KEY_ISSUES:") if upper.startswith(key)), None)
        if header is not None:
            inline = stripped[len(header):].strip()
            if inline.upper() not in NO_ISSUES:
                issues.append(inline)
            continue
        if any(upper.startswith(key) for key in TRAILER_KEYS):
            continue
        bullet = BULLET_PATTERN.match(raw_line)
        if bullet and bullet.group(1).strip().upper() not in NO_ISSUES:
            issues.append(bullet.group(1).strip())
    return tuple(issues)


def parse_reply(text: str) -> ParsedVerdict | ParseFailure:
    """Parse the verdict trailer at the end of a reviewer reply.

    Lines are scanned from the end so that a prompt template echoed at the
    top of the reply (``VERDICT: [APPROVE | ...]``) never wins over the real
    verdict.
    """
    if not text or not text.strip():
        return ParseFailure("empty reply")

    lines = text.splitlines()
    verdict_index: int | None = None
    verdict: VerdictValue | None = None
    for index in range(len(lines) - 1, -1, -1):
        stripped = _strip_markdown(lines[index])
        value = _field_value(stripped, "VERDICT:")
        if value is None or "[" in value:
            continue
        upper = value.upper()
        verdict = next((item for item in VERDICT_VALUES if upper.startswith(item)), None)
        if verdict is not None:
            verdict_index = index
            break

    if verdict is None or verdict_index is None:
        return ParseFailure("no VERDICT line found")

    summary = ""
    confidence: Confidence = "LOW"
    issues_start: int | None = None
    for index in range(verdict_index + 1, len(lines)):
        stripped = _strip_markdown(lines[index])
        summary_value = _field_value(stripped, "SUMMARY:")
        if summary_value is not None and not summary:
            summary = summary_value
            continue
        confidence_value = _field_value(stripped, "CONFIDENCE:")
        if confidence_value is not None:
            upper = confidence_value.upper()
            confidence = next((item for item in CONFIDENCE_VALUES if upper.startswith(item)), "LOW")
            continue
        upper = stripped.upper()
        if issues_start is None and upper.startswith(("ISSUES:", "KEY_ISSUES:")):
            issues_start = index

    issues = _parse_issues(lines, issues_start) if issues_start is not None else ()
    return ParsedVerdict(verdict=verdict, summary=summary, confidence=confidence, issues=issues)


def failure_verdict(model: str, reason: str) -> Verdict:
    return Verdict(
        model=model,
        verdict="COMMENT",
        summary=reason,
        confidence="LOW",
        issues=(reason,),
    )


def to_verdict(model: str, parsed: ParsedVerdict | ParseFailure) -> Verdict:
    match parsed:
        case ParsedVerdict(verdict=verdict, summary=summary, confidence=confidence, issues=issues):
            return Verdict(
                model=model,
                verdict=verdict,
                summary=summary,
                confidence=confidence,
                issues=issues,
            )
        case ParseFailure(reason=reason):
            return failure_verdict(model, f"Unparseable review: {reason}")
    raise TypeError(f"unexpected parse result: {parsed!r}")


async def run_consultations_async(
    reviewers: Sequence[Reviewer],
    prompt: str,
    timeout: float | None,
    *,
    role: str = "review",
) -> list[Verdict]:
    """Invoke every reviewer concurrently and return verdicts in call order."""
    if not reviewers:
        return []

    wait_timeout = timeout if timeout and timeout > 0 else None
    loop = asyncio.get_running_loop()
    executor = ThreadPoolExecutor(max_workers=len(reviewers), thread_name_prefix="porch-reviewer")
    logger.info(
        "consultation_started",
        reviewers=[reviewer.name for reviewer in reviewers],
        role=role,
        timeout=wait_timeout,
    )
    try:
        futures = [
            loop.run_in_executor(executor, reviewer.invoke, prompt, role) for reviewer in reviewers
        ]
        await asyncio.wait(futures, timeout=wait_timeout)

        verdicts: list[Verdict] = []
        for reviewer, future in zip(reviewers, futures):
            if not future.done():
                future.cancel()
                logger.warning("reviewer_timed_out", reviewer=reviewer.name, timeout=wait_timeout)
                verdicts.append(
                    failure_verdict(reviewer.name, f"Reviewer timed out after {wait_timeout}s")
                )
                continue
            error = future.exception()
            if error is not None:
                logger.warning("reviewer_failed", reviewer=reviewer.name, error=str(error))
                verdicts.append(failure_verdict(reviewer.name, f"Reviewer failed: {error}"))
                continue
            parsed = parse_reply(future.result())
            if isinstance(parsed, ParseFailure):
                logger.warning(
                    "reviewer_reply_unparsed", reviewer=reviewer.name, reason=parsed.reason
                )
            verdicts.append(to_verdict(reviewer.name, parsed))
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    logger.info("consultation_finished", summary=summarize_verdicts(verdicts))
    return verdicts


def run_consultations(
    reviewers: Sequence[Reviewer],
    prompt: str,
    timeout: float | None,
    *,
    role: str = "review",
) -> list[Verdict]:
    return asyncio.run(run_consultations_async(reviewers, prompt, timeout, role=role))


def aggregate(verdicts: Sequence[Verdict]) -> Decision:
    """Any ``REQUEST_CHANGES`` forces a retry; anything else advances."""
    if any(verdict.requests_changes for verdict in verdicts):
        return "retry"
    return "advance"


def summarize_verdicts(verdicts: Sequence[Verdict]) -> str:
    parts = []
    for verdict in verdicts:
        part = f"{verdict.model}={verdict.verdict}/{verdict.confidence}"
        if verdict.summary:
            part = f"{part} ({verdict.summary})"
        parts.append(part)
    return "; ".join(parts)
