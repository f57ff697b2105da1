from __future__ import annotations

import shlex
from pathlib import Path

from porch.config import PorchConfig
from porch.errors import ConfigurationError
from porch.reviewers.base import Reviewer, ReviewerError, ReviewerTimeoutError
from porch.reviewers.cli import (
    ClaudeReviewer,
    CodexReviewer,
    CommandReviewer,
    GeminiReviewer,
    SubprocessReviewer,
)


def build_reviewer(
    name: str, config: PorchConfig, working_directory: Path | None = None
) -> Reviewer:
    """Build the reviewer called ``name``.

    Entries in ``[consultation.commands]`` take precedence over the built-in
    claude, codex and gemini reviewers.
    """
    consultation = config.consultation
    timeout = consultation.timeout_seconds or None
    options = {"working_directory": working_directory, "timeout_seconds": timeout}
    if name in consultation.commands:
        try:
            argv = shlex.split(consultation.commands[name])
        except ValueError as exc:
            raise ConfigurationError(f"Invalid command for reviewer {name}: {exc}") from exc
        if not argv:
            raise ConfigurationError(f"Empty command for reviewer {name}")
        return CommandReviewer(name, argv, **options)
    if name == "claude":
        return ClaudeReviewer(consultation.claude_binary, **options)
    if name == "codex":
        return CodexReviewer(
            consultation.codex_binary, model=consultation.codex_model or None, **options
        )
    if name == "gemini":
        return GeminiReviewer(consultation.gemini_binary, **options)
    raise ConfigurationError(f"Unsupported reviewer: {name}")


def build_reviewers(
    names: list[str] | tuple[str, ...],
    config: PorchConfig,
    working_directory: Path | None = None,
) -> list[Reviewer]:
    return [build_reviewer(name, config, working_directory) for name in names]


__all__ = [
    "ClaudeReviewer",
    "CodexReviewer",
    "CommandReviewer",
    "GeminiReviewer",
    "Reviewer",
    "ReviewerError",
    "ReviewerTimeoutError",
    "SubprocessReviewer",
    "build_reviewer",
    "build_reviewers",
]
