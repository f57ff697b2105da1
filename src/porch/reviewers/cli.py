from __future__ import annotations

import subprocess
from abc import abstractmethod
from collections.abc import Sequence
from pathlib import Path

import structlog

from porch.reviewers.base import Reviewer, ReviewerError, ReviewerTimeoutError

logger = structlog.get_logger(__name__)


def compose_prompt(prompt: str, role: str) -> str:
    if not role:
        return prompt
    return f"You are acting as a {role} reviewer.\n\n{prompt}"


class SubprocessReviewer(Reviewer):
    """A reviewer backed by a command-line agent.

    Subclasses build the argv; the reply is whatever the process prints on
    stdout. A non-zero exit status raises :class:`ReviewerError`.
    """

    stdin_prompt: bool = False

    def __init__(
        self,
        binary: str,
        *,
        working_directory: Path | None = None,
        timeout_seconds: float | None = None,
        name: str | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        if name:
            self.name = name

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Return the argv that runs the agent on ``prompt``."""

    def invoke(self, prompt: str, role: str) -> str:
        rendered = compose_prompt(prompt, role)
        command = self.build_command(rendered)
        logger.debug("reviewer_process_start", reviewer=self.name, command=command[:2])
        try:
            proc = subprocess.run(
                command,
                cwd=str(self.working_directory) if self.working_directory else None,
                input=rendered if self.stdin_prompt else None,
                encoding="utf-8",
                errors="replace",
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise ReviewerError(
                f"{self.name} binary not found: {self.binary}",
                reviewer=self.name,
                retriable=False,
            ) from exc
        except OSError as exc:
            raise ReviewerError(
                f"{self.name} could not be started: {exc}",
                reviewer=self.name,
                retriable=False,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ReviewerTimeoutError(
                f"{self.name} timed out after {self.timeout_seconds}s",
                reviewer=self.name,
            ) from exc

        if proc.returncode != 0:
            raise ReviewerError(
                f"{self.name} failed with exit code {proc.returncode}: {proc.stderr.strip()}",
                reviewer=self.name,
                exit_code=proc.returncode,
            )
        return proc.stdout.strip()


class ClaudeReviewer(SubprocessReviewer):
    name = "claude"

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-p", prompt, "--output-format", "text"]


class CodexReviewer(SubprocessReviewer):
    name = "codex"

    def __init__(self, binary: str = "codex", *, model: str | None = None, **kwargs) -> None:
        super().__init__(binary, **kwargs)
        self.model = model

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "exec"]
        if self.model and self.model.strip():
            command.extend(["-m", self.model.strip()])
        command.append(prompt)
        return command


class GeminiReviewer(SubprocessReviewer):
    name = "gemini"

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-p", prompt]


class CommandReviewer(SubprocessReviewer):
    """Runs an arbitrary argv and feeds the prompt on stdin."""

    stdin_prompt = True

    def __init__(self, name: str, argv: Sequence[str], **kwargs) -> None:
        if not argv:
            raise ValueError("CommandReviewer requires a non-empty argv")
        super().__init__(argv[0], name=name, **kwargs)
        self.argv = list(argv)

    def build_command(self, prompt: str) -> list[str]:
        _ = prompt
        return list(self.argv)
