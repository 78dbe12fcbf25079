"""Exception hierarchy for Deliberate."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class DeliberateError(Exception):
    """Base exception for all Deliberate errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(DeliberateError):
    """Configuration validation or resolution failed."""


class RequestValidationError(DeliberateError):
    """An inbound turn request did not have the expected shape."""

    def __init__(
        self, message: str, *, hint: str | None = None, field: str | None = None
    ) -> None:
        super().__init__(message, hint=hint)
        self.field = field


class PayloadError(DeliberateError):
    """An outbound analysis payload was malformed; nothing was sent.

    Raised before any network call. Never retried.
    """

    def __init__(
        self, message: str, *, hint: str | None = None, field: str | None = None
    ) -> None:
        super().__init__(message, hint=hint)
        self.field = field


class ContextTooLargeError(DeliberateError):
    """The assembled model context exceeds the configured size limit."""


class AnalysisError(DeliberateError):
    """A call to the analysis service failed.

    The client attaches retry metadata so the retry decision never depends
    on message text. Messages never contain credentials.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        operation: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
        elapsed_ms: int | None = None,
        upstream_request_id: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.operation = operation
        self.status_code = status_code
        self.retryable = retryable
        self.elapsed_ms = elapsed_ms
        self.upstream_request_id = upstream_request_id
        self.code = code


class AnalysisTimeoutError(AnalysisError):
    """The analysis call exceeded its per-call timeout."""

    def __init__(
        self, message: str, *, retryable: bool = True, **kwargs: Any
    ) -> None:
        super().__init__(message, retryable=retryable, **kwargs)


class AnalysisTransportError(AnalysisError):
    """The analysis service answered with a failure status, or the connection failed.

    ``status_code`` is *None* for connection-level failures.
    """


class ModelError(DeliberateError):
    """The model adapter failed or timed out."""

    def __init__(
        self, message: str, *, hint: str | None = None, timed_out: bool = False
    ) -> None:
        super().__init__(message, hint=hint)
        self.timed_out = timed_out


class ToolExecutionError(DeliberateError):
    """A tool handler could not produce a result."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        tool: str | None = None,
        code: str = "TOOL_EXECUTION_FAILED",
        recoverable: bool = False,
        suggested_retry: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.tool = tool
        self.code = code
        self.recoverable = recoverable
        self.suggested_retry = suggested_retry


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
