from __future__ import annotations

import os
import re
import shlex
import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import structlog

from porch.protocol import CheckSpec

logger = structlog.get_logger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?~]|[$]\(|[$]\{?\w)")
EXIT_NOT_STARTED = 127
EXIT_TIMED_OUT = 124
OUTPUT_TAIL_CHARS = 4000


@dataclass(frozen=True, slots=True)
class CheckResult:
    name: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True, slots=True)
class CheckReport:
    all_passed: bool
    results: dict[str, CheckResult] = field(default_factory=dict)

    @property
    def failed(self) -> list[CheckResult]:
        return [result for result in self.results.values() if not result.passed]


class Checker(Protocol):
    def run(
        self,
        command: str,
        cwd: Path,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> tuple[int, str, str]:
        """Run ``command`` in ``cwd`` and return ``(exit_code, stdout, stderr)``."""
        ...


class ShellChecker:
    """Runs check commands as blocking subprocesses.

    Commands containing shell syntax (pipes, redirects, ``&&``, variable
    expansion) go through the shell; plain commands are split with
    :func:`shlex.split` and executed directly.
    """

    def run(
        self,
        command: str,
        cwd: Path,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> tuple[int, str, str]:
        command_text = command.strip()
        if not command_text:
            return 1, "", "Command is empty."

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        process_env = os.environ.copy()
        if env:
            process_env.update(env)

        try:
            proc = subprocess.run(
                command_payload,
                cwd=cwd,
                shell=used_shell,
                env=process_env,
                encoding="utf-8",
                errors="replace",
                capture_output=True,
                timeout=timeout,
            )
        except NotADirectoryError as exc:
            return EXIT_NOT_STARTED, "", f"Invalid working directory: {exc}"
        except OSError as exc:
            return EXIT_NOT_STARTED, "", f"Command could not be started: {exc}"
        except subprocess.TimeoutExpired as exc:
            stdout = _decode(exc.stdout)
            stderr = _decode(exc.stderr)
            message = f"Command timed out after {timeout}s."
            return EXIT_TIMED_OUT, stdout, f"{stderr}\n{message}".strip()
        return proc.returncode, proc.stdout, proc.stderr


def _decode(raw: str | bytes | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def _tail(text: str) -> str:
    text = text.strip()
    return text[-OUTPUT_TAIL_CHARS:]


def run_checks(
    checks: Mapping[str, CheckSpec | str],
    cwd: Path,
    *,
    checker: Checker | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> CheckReport:
    """Run every check in order, without short-circuiting on failure."""
    runner = checker or ShellChecker()
    results: dict[str, CheckResult] = {}
    for name, spec in checks.items():
        if isinstance(spec, str):
            spec = CheckSpec(name=name, command=spec)
        check_cwd = cwd / spec.cwd if spec.cwd else cwd
        logger.info("check_started", check=name, command=spec.command, cwd=str(check_cwd))
        started = time.monotonic()
        exit_code, stdout, stderr = runner.run(spec.command, check_cwd, env=env, timeout=timeout)
        duration = round(time.monotonic() - started, 3)
        results[name] = CheckResult(
            name=name,
            command=spec.command,
            exit_code=exit_code,
            stdout=_tail(stdout),
            stderr=_tail(stderr),
            duration=duration,
        )
        logger.info("check_finished", check=name, exit_code=exit_code, duration=duration)
    return CheckReport(
        all_passed=all(result.passed for result in results.values()),
        results=results,
    )


def format_check_results(report: CheckReport) -> list[str]:
    lines: list[str] = []
    for result in report.results.values():
        marker = "PASS" if result.passed else "FAIL"
        lines.append(f"  [{marker}] {result.name}: {result.command}")
        if not result.passed:
            detail = result.stderr or result.stdout
            if detail:
                for line in detail.splitlines()[-10:]:
                    lines.append(f"         {line}")
    return lines
