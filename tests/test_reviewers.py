import shlex
import sys
from pathlib import Path

import pytest

from porch.config import PorchConfig
from porch.errors import ConfigurationError
from porch.reviewers import (
    ClaudeReviewer,
    CodexReviewer,
    CommandReviewer,
    GeminiReviewer,
    ReviewerError,
    ReviewerTimeoutError,
    SubprocessReviewer,
    build_reviewer,
    build_reviewers,
)
from porch.reviewers.cli import compose_prompt


def test_cli_reviewer_command_shapes() -> None:
    assert ClaudeReviewer("claude").build_command("look") == [
        "claude",
        "-p",
        "look",
        "--output-format",
        "text",
    ]
    assert CodexReviewer("codex").build_command("look") == ["codex", "exec", "look"]
    assert CodexReviewer("codex", model=" o4 ").build_command("look") == [
        "codex",
        "exec",
        "-m",
        "o4",
        "look",
    ]
    assert GeminiReviewer("gemini").build_command("look") == ["gemini", "-p", "look"]


def test_compose_prompt_prefixes_role() -> None:
    assert compose_prompt("body", "impl-review") == (
        "You are acting as a impl-review reviewer.\n\nbody"
    )
    assert compose_prompt("body", "") == "body"


def test_build_reviewer_uses_configured_binaries(tmp_path: Path) -> None:
    config = PorchConfig.default()
    config.consultation.gemini_binary = "/opt/gemini"
    config.consultation.timeout_seconds = 12.0

    reviewers = build_reviewers(["gemini", "codex", "claude"], config, tmp_path)

    assert [reviewer.name for reviewer in reviewers] == ["gemini", "codex", "claude"]
    assert reviewers[0].binary == "/opt/gemini"
    assert reviewers[0].timeout_seconds == 12.0
    assert reviewers[0].working_directory == tmp_path

    with pytest.raises(ConfigurationError, match="Unsupported reviewer"):
        build_reviewer("copilot", config)


def test_command_reviewer_feeds_prompt_on_stdin(tmp_path: Path) -> None:
    reviewer = CommandReviewer(
        "echo",
        [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"],
        working_directory=tmp_path,
    )

    reply = reviewer.invoke("verdict: approve", "review")

    assert reviewer.name == "echo"
    assert reply.endswith("VERDICT: APPROVE")
    assert reply.startswith("YOU ARE ACTING AS A REVIEW REVIEWER.")


def test_reviewer_errors_are_typed(tmp_path: Path) -> None:
    missing = GeminiReviewer("definitely-not-a-real-binary-porch")
    with pytest.raises(ReviewerError) as excinfo:
        missing.invoke("prompt", "review")
    assert excinfo.value.retriable is False
    assert excinfo.value.reviewer == "gemini"

    failing = CommandReviewer("fail", [sys.executable, "-c", "import sys; sys.exit(3)"])
    with pytest.raises(ReviewerError) as excinfo:
        failing.invoke("prompt", "review")
    assert excinfo.value.exit_code == 3

    slow = CommandReviewer(
        "slow",
        [sys.executable, "-c", "import time; time.sleep(5)"],
        timeout_seconds=0.5,
    )
    with pytest.raises(ReviewerTimeoutError):
        slow.invoke("prompt", "review")


def test_command_reviewer_requires_argv() -> None:
    with pytest.raises(ValueError):
        CommandReviewer("empty", [])


def test_subprocess_reviewer_requires_build_command() -> None:
    class Incomplete(SubprocessReviewer):
        name = "incomplete"

    with pytest.raises(TypeError):
        Incomplete("incomplete")


def test_build_reviewer_wires_codex_model_and_command_reviewers(tmp_path: Path) -> None:
    script = "import sys; print('VERDICT: APPROVE', len(sys.stdin.read()) > 0)"
    config = PorchConfig.default()
    config.consultation.codex_model = "o4-mini"
    config.consultation.commands = {
        "house": f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}",
        "claude": "my-claude --review",
        "blank": "  ",
    }

    codex = build_reviewer("codex", config)
    house = build_reviewer("house", config, tmp_path)
    claude = build_reviewer("claude", config)

    assert isinstance(codex, CodexReviewer)
    assert codex.build_command("look") == ["codex", "exec", "-m", "o4-mini", "look"]
    assert isinstance(house, CommandReviewer)
    assert house.name == "house"
    assert house.working_directory == tmp_path
    assert house.invoke("prompt", "review") == "VERDICT: APPROVE True"
    assert isinstance(claude, CommandReviewer)
    assert claude.build_command("look") == ["my-claude", "--review"]
    with pytest.raises(ConfigurationError, match="Empty command"):
        build_reviewer("blank", config)


def test_reviewer_reply_with_undecodable_bytes_is_kept(tmp_path: Path) -> None:
    reviewer = CommandReviewer(
        "bytes",
        [
            sys.executable,
            "-c",
            "import sys; sys.stdout.buffer.write(b'VERDICT: APPROVE \\xff')",
        ],
    )

    reply = reviewer.invoke("prompt", "review")

    assert reply == "VERDICT: APPROVE \ufffd"


def test_non_executable_reviewer_raises_reviewer_error(tmp_path: Path) -> None:
    script = tmp_path / "review.sh"
    script.write_text("#!/bin/sh\necho 'VERDICT: APPROVE'\n", encoding="utf-8")
    script.chmod(0o644)
    reviewer = CommandReviewer("local", [str(script)], working_directory=tmp_path)

    with pytest.raises(ReviewerError) as excinfo:
        reviewer.invoke("prompt", "review")
    assert excinfo.value.retriable is False
    assert "could not be started" in str(excinfo.value)
