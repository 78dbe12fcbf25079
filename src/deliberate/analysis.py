"""Client for the remote analysis service.

Two operations, ``run`` and ``validate_patch``. Both check the outbound
payload before touching the network, retry once on transient failures
within the caller's turn budget, and turn every failure into the
``AnalysisError`` family. The bearer token never appears in logs, reprs or
error messages.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

from deliberate._http import NOT_IMPLEMENTED, is_client_error, is_server_error
from deliberate.errors import (
    AnalysisTimeoutError,
    AnalysisTransportError,
    PayloadError,
)
from deliberate.retry import RetryPolicy, retry_async

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Mapping

    from deliberate.config import Config
    from deliberate.retry import TurnBudget

logger = logging.getLogger(__name__)

RUN_PATH = "/v2/run"
VALIDATE_PATCH_PATH = "/v1/validate-patch"


@dataclass(frozen=True)
class CallOptions:
    """Per-call turn context: the deadline and an abort signal."""

    budget: TurnBudget | None = None
    abort: asyncio.Event | None = None


@dataclass(frozen=True)
class RunResult:
    """Successful ``run`` response."""

    body: dict[str, Any]
    elapsed_ms: int
    upstream_request_id: str | None = None

    @property
    def meta(self) -> dict[str, Any]:
        meta = self.body.get("meta")
        return meta if isinstance(meta, dict) else {}

    @property
    def response_hash(self) -> str | None:
        value = self.meta.get("response_hash")
        return value if isinstance(value, str) else None

    @property
    def seed_used(self) -> int | None:
        value = self.meta.get("seed_used")
        return value if isinstance(value, int) else None

    @property
    def n_samples(self) -> int | None:
        value = self.meta.get("n_samples")
        return value if isinstance(value, int) else None


@dataclass(frozen=True)
class PatchSuccess:
    verdict: str
    applied_graph: dict[str, Any] | None = None
    graph_hash: str | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class PatchRejection:
    code: str
    message: str
    violations: tuple[Any, ...] = ()


@dataclass(frozen=True)
class PatchFeatureDisabled:
    message: str = "Patch validation is not enabled on the analysis service"


PatchResult = PatchSuccess | PatchRejection | PatchFeatureDisabled


# --- Outbound validation ---


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def validate_run_payload(payload: Mapping[str, Any]) -> None:
    """Raise ``PayloadError`` naming the first missing or empty required field."""
    if payload.get("graph") is None:
        raise PayloadError("run payload is missing graph", field="graph")
    options = payload.get("options")
    if not isinstance(options, list) or not options:
        raise PayloadError("run payload needs a non-empty options list", field="options")
    for i, option in enumerate(options):
        if not isinstance(option, dict) or _is_blank(option.get("option_id")):
            raise PayloadError(
                f"run payload options[{i}] has no option_id",
                field="option_id",
                hint="Every option must carry the id of the option node it models.",
            )
    if _is_blank(payload.get("goal_node_id")):
        raise PayloadError("run payload is missing goal_node_id", field="goal_node_id")


def validate_patch_payload(payload: Mapping[str, Any]) -> None:
    if payload.get("graph") is None:
        raise PayloadError("validate_patch payload is missing graph", field="graph")
    operations = payload.get("operations")
    if not isinstance(operations, list) or not operations:
        raise PayloadError(
            "validate_patch payload needs a non-empty operations list",
            field="operations",
        )


# --- Response parsing ---


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(operation: str, status: int, body: Any) -> tuple[str, str | None]:
    """Return (human-readable message, error code) for a failure body."""
    fallback = f"Analysis {operation} failed with HTTP {status}"
    if not isinstance(body, dict):
        return fallback, None

    if body.get("analysis_status") == "blocked":
        parts: list[str] = []
        reason = body.get("status_reason")
        if isinstance(reason, str) and reason.strip():
            parts.append(reason.strip())
        critiques = body.get("critiques")
        if isinstance(critiques, list):
            for critique in critiques:
                msg = critique.get("message") if isinstance(critique, dict) else None
                if isinstance(msg, str) and msg.strip():
                    parts.append(msg.strip())
        return ("; ".join(parts) or fallback), "ANALYSIS_BLOCKED"

    code = body.get("code") if isinstance(body.get("code"), str) else None
    message = body.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip(), code
    return fallback, code


class AnalysisClient:
    """Async HTTP client for the analysis service.

    Example:
        async with AnalysisClient("https://analysis.example.com", token=t) as c:
            result = await c.run(payload, request_id="req-1")
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_s: float = 30.0,
        retry: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_s = timeout_s
        self._retry = retry or RetryPolicy()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()

    @classmethod
    def from_config(
        cls, config: Config, *, http_client: httpx.AsyncClient | None = None
    ) -> AnalysisClient | None:
        """Build a client, or return *None* when no base URL is configured."""
        if not config.analysis_base_url:
            logger.info("No analysis base URL configured; analysis tools disabled")
            return None
        return cls(
            config.analysis_base_url,
            token=config.analysis_token,
            timeout_s=config.analysis_timeout_s,  # type: ignore[arg-type]
            retry=config.retry,
            http_client=http_client,
        )

    def __repr__(self) -> str:
        return (
            f"AnalysisClient(base_url={self._base_url!r}, "
            f"token={'[REDACTED]' if self._token else None}, "
            f"timeout_s={self._timeout_s})"
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> AnalysisClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _headers(self, request_id: str) -> dict[str, str]:
        headers = {"X-Request-Id": request_id, "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _redact(self, text: str) -> str:
        if self._token and self._token in text:
            return text.replace(self._token, "[REDACTED]")
        return text

    async def _post(
        self, operation: str, path: str, payload: Mapping[str, Any], request_id: str
    ) -> tuple[httpx.Response, int]:
        started = time.monotonic()
        try:
            response = await self._http.post(
                self._base_url + path,
                json=dict(payload),
                headers=self._headers(request_id),
                timeout=self._timeout_s,
            )
        except httpx.TimeoutException as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                "Analysis %s [%s] timed out after %dms", operation, request_id, elapsed_ms
            )
            raise AnalysisTimeoutError(
                f"Analysis {operation} timed out after {self._timeout_s:g}s",
                operation=operation,
                elapsed_ms=elapsed_ms,
            ) from exc
        except httpx.RequestError as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                "Analysis %s [%s] transport failure: %s",
                operation,
                request_id,
                type(exc).__name__,
            )
            raise AnalysisTransportError(
                f"Analysis {operation} could not reach the service ({type(exc).__name__})",
                operation=operation,
                retryable=True,
                elapsed_ms=elapsed_ms,
            ) from exc

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Analysis %s [%s] -> HTTP %d in %dms",
            operation,
            request_id,
            response.status_code,
            elapsed_ms,
        )
        return response, elapsed_ms

    def _failure(
        self, operation: str, response: httpx.Response, elapsed_ms: int
    ) -> AnalysisTransportError:
        status = response.status_code
        message, code = _error_message(operation, status, _json_body(response))
        return AnalysisTransportError(
            self._redact(message),
            operation=operation,
            status_code=status,
            retryable=is_server_error(status),
            elapsed_ms=elapsed_ms,
            upstream_request_id=response.headers.get("x-request-id"),
            code=code,
        )

    async def run(
        self,
        payload: Mapping[str, Any],
        request_id: str,
        opts: CallOptions | None = None,
    ) -> RunResult:
        """Run an analysis. Extra payload fields are passed through untouched."""
        validate_run_payload(payload)
        opts = opts or CallOptions()

        async def attempt() -> RunResult:
            response, elapsed_ms = await self._post("run", RUN_PATH, payload, request_id)
            if not response.is_success:
                raise self._failure("run", response, elapsed_ms)
            body = _json_body(response)
            if not isinstance(body, dict):
                raise AnalysisTransportError(
                    "Analysis run returned an unreadable body",
                    operation="run",
                    status_code=response.status_code,
                    elapsed_ms=elapsed_ms,
                )
            return RunResult(
                body=body,
                elapsed_ms=elapsed_ms,
                upstream_request_id=response.headers.get("x-request-id"),
            )

        return await retry_async(
            attempt,
            policy=self._retry,
            budget=opts.budget,
            abort=opts.abort,
            label=f"analysis run [{request_id}]",
        )

    async def validate_patch(
        self,
        payload: Mapping[str, Any],
        request_id: str,
        opts: CallOptions | None = None,
    ) -> PatchResult:
        """Ask the service to validate and apply patch operations to a graph."""
        validate_patch_payload(payload)
        opts = opts or CallOptions()

        async def attempt() -> PatchResult:
            response, elapsed_ms = await self._post(
                "validate_patch", VALIDATE_PATCH_PATH, payload, request_id
            )
            body = _json_body(response)
            if response.is_success:
                verdict = body.get("verdict") if isinstance(body, dict) else None
                if not isinstance(verdict, str):
                    raise AnalysisTransportError(
                        "Analysis validate_patch returned an unreadable body",
                        operation="validate_patch",
                        status_code=response.status_code,
                        elapsed_ms=elapsed_ms,
                    )
                if verdict == "rejected":
                    reason = body.get("reason")
                    return PatchRejection(
                        code="REJECTED",
                        message=self._redact(reason)
                        if isinstance(reason, str)
                        else "Patch rejected",
                    )
                applied = body.get("applied_graph")
                warnings = body.get("warnings")
                return PatchSuccess(
                    verdict=verdict,
                    applied_graph=applied if isinstance(applied, dict) else None,
                    graph_hash=body.get("graph_hash")
                    if isinstance(body.get("graph_hash"), str)
                    else None,
                    warnings=tuple(str(w) for w in warnings)
                    if isinstance(warnings, list)
                    else (),
                )
            status = response.status_code
            code = body.get("code") if isinstance(body, dict) else None
            if status == NOT_IMPLEMENTED or code == "FEATURE_DISABLED":
                return PatchFeatureDisabled()
            if (
                is_client_error(status)
                and isinstance(body, dict)
                and body.get("status") == "rejected"
            ):
                violations = body.get("violations")
                message = body.get("message")
                return PatchRejection(
                    code=str(code or "REJECTED"),
                    message=self._redact(message)
                    if isinstance(message, str)
                    else "Patch rejected",
                    violations=tuple(violations) if isinstance(violations, list) else (),
                )
            raise self._failure("validate_patch", response, elapsed_ms)

        return await retry_async(
            attempt,
            policy=self._retry,
            budget=opts.budget,
            abort=opts.abort,
            label=f"analysis validate_patch [{request_id}]",
        )


__all__ = [
    "AnalysisClient",
    "CallOptions",
    "PatchFeatureDisabled",
    "PatchRejection",
    "PatchResult",
    "PatchSuccess",
    "RunResult",
    "validate_patch_payload",
    "validate_run_payload",
]
