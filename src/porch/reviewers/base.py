from __future__ import annotations

from abc import ABC, abstractmethod


class ReviewerError(RuntimeError):
    """Raised when a reviewer invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        reviewer: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.reviewer = reviewer
        self.exit_code = exit_code
        self.retriable = retriable


class ReviewerTimeoutError(ReviewerError):
    """Raised when a reviewer exceeds its time budget."""


class Reviewer(ABC):
    name: str = "reviewer"

    @abstractmethod
    def invoke(self, prompt: str, role: str) -> str:
        """Review ``prompt`` in the given role and return the raw reply text."""
