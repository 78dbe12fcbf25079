from __future__ import annotations

import pytest

from deliberate.errors import (
    AnalysisError,
    AnalysisTimeoutError,
    AnalysisTransportError,
    ConfigurationError,
    DeliberateError,
    ModelError,
    PayloadError,
    ToolExecutionError,
)

pytestmark = pytest.mark.unit


def test_analysis_error_structured_metadata() -> None:
    err = AnalysisTransportError(
        "boom",
        hint="check the service",
        operation="run",
        status_code=503,
        retryable=True,
        elapsed_ms=120,
        upstream_request_id="up-1",
        code="OVERLOADED",
    )

    assert str(err) == "boom"
    assert err.hint == "check the service"
    assert err.operation == "run"
    assert err.status_code == 503
    assert err.retryable is True
    assert err.elapsed_ms == 120
    assert err.upstream_request_id == "up-1"
    assert err.code == "OVERLOADED"


def test_analysis_error_defaults() -> None:
    err = AnalysisError("fail")
    assert err.hint is None
    assert err.status_code is None
    assert err.retryable is False
    assert err.upstream_request_id is None


def test_timeouts_are_retryable_by_default() -> None:
    assert AnalysisTimeoutError("slow").retryable is True
    assert AnalysisTimeoutError("slow", retryable=False).retryable is False


def test_tool_error_defaults() -> None:
    err = ToolExecutionError("nope", tool="run_analysis")
    assert err.code == "TOOL_EXECUTION_FAILED"
    assert err.recoverable is False
    assert err.suggested_retry is None


def test_subclass_hierarchy() -> None:
    """Every library error is catchable as DeliberateError."""
    for err in (
        ConfigurationError("c"),
        PayloadError("p", field="graph"),
        AnalysisTimeoutError("t"),
        ModelError("m", timed_out=True),
        ToolExecutionError("x"),
    ):
        assert isinstance(err, DeliberateError)
    assert isinstance(AnalysisTimeoutError("t"), AnalysisError)
    assert isinstance(AnalysisTransportError("t"), AnalysisError)
    assert PayloadError("p", field="graph").field == "graph"
