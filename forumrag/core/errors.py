"""
ForumRAG exceptions.
"""

from __future__ import annotations

from typing import Any, Optional


class ForumRagError(RuntimeError):
    """Base class for indexing errors."""


class NoCreditsError(ForumRagError):
    """Raised when an indexing run is requested with a zero credit balance."""

    def __init__(self, message: str, *, credits_available: int = 0) -> None:
        self.credits_available = credits_available
        super().__init__(message)


class BackendUnavailableError(ForumRagError):
    """Raised when a backend cannot be reached or does not answer in time."""

    def __init__(
        self,
        detail: str,
        *,
        status_code: Optional[int] = None,
        path: Optional[str] = None,
        payload: Optional[Any] = None,
    ) -> None:
        self.status_code = status_code
        self.path = path
        self.payload = payload
        status_hint = f" (status={status_code})" if status_code is not None else ""
        path_hint = f" [{path}]" if path else ""
        super().__init__(f"{detail}{status_hint}{path_hint}")
