"""Structured provider errors and the keyed-resource errors used by stores."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Normalized category of a provider error; fallback decisions key off it."""

    UNKNOWN = "Unknown"
    RATE_LIMIT = "RateLimit"
    TIMEOUT = "Timeout"
    CONTEXT_LENGTH = "ContextLength"
    OVERLOADED = "Overloaded"
    SERVER_ERROR = "ServerError"
    TOOLS_UNSUPPORTED = "ToolsUnsupported"
    UNSUPPORTED_CONTENT = "UnsupportedContent"
    CANCELED = "Canceled"
    AUTH_FAILED = "AuthFailed"
    NOT_FOUND = "NotFound"
    INVALID_REQUEST = "InvalidRequest"


class ProviderError(Exception):
    """Error raised by provider adapters, carrying what fallback needs to decide.

    A ``kind`` of ``None`` means "unspecified"; such an error used as a
    pattern in :meth:`matches` matches any provider error.
    """

    def __init__(
        self,
        kind: ErrorKind | str | None = None,
        provider: str = "",
        model: str = "",
        status_code: int = 0,
        retry_after: float = 0.0,
        request_id: str = "",
        after_output: bool = False,
        message: str = "",
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind: ErrorKind | None = ErrorKind(kind) if kind else None
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.retry_after = retry_after
        self.request_id = request_id
        self.after_output = after_output
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        base = f"{self.provider}: {self.kind or ''}"
        if self.message:
            base = f"{base}: {self.message}"
        if self.cause is not None:
            return f"{base}: {self.cause}"
        return base

    def __repr__(self) -> str:
        return (
            f"ProviderError(kind={self.kind!r}, provider={self.provider!r}, "
            f"model={self.model!r}, message={self.message!r})"
        )

    def matches(self, other: object) -> bool:
        """True if ``other`` is a ProviderError with no kind or the same kind."""
        if not isinstance(other, ProviderError):
            return False
        if other.kind is None:
            return True
        return other.kind == self.kind

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "kind": str(self.kind or ""),
            "provider": self.provider,
            "model": self.model,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
            "request_id": self.request_id,
            "after_output": self.after_output,
            "message": self.message,
        }
        if self.cause is not None:
            out["cause"] = str(self.cause)
        return out


class VersionConflictError(Exception):
    """A conditional session append saw a version mismatch."""

    def __init__(self, *args: object) -> None:
        super().__init__(*(args or ("session: version conflict",)))


class NotFoundError(LookupError):
    """A session or other keyed resource is missing."""

    def __init__(self, *args: object) -> None:
        super().__init__(*(args or ("not found",)))


def as_provider_error(err: BaseException | None) -> ProviderError | None:
    """Return the first ProviderError in ``err``'s cause chain, or None."""
    seen: set[int] = set()
    current = err
    while current is not None and id(current) not in seen:
        if isinstance(current, ProviderError):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None