"""Exception taxonomy for the knowledge engine."""

from __future__ import annotations

from typing import Optional


class KnowBaseError(Exception):
    """Base class for all KnowBase errors."""


class ValidationError(KnowBaseError):
    """Rejected upload (unsupported type, empty or oversize payload)."""


class CorruptIndexError(KnowBaseError):
    """A persisted index or registry file could not be parsed."""


class ProviderError(KnowBaseError):
    """Embedding provider call failed and should not be retried."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Rate limit, server error or network failure; safe to retry."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class ProviderUnavailableError(ProviderError):
    """Provider is missing or misconfigured (no credentials, auth refused)."""
