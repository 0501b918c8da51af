from __future__ import annotations

import pytest

from depositwatch import observability
from depositwatch.observability import (
    NoopInstrumentation,
    configure_instrumentation,
    get_instrumentation,
    metric_name,
)


@pytest.fixture(autouse=True)
def reset_instrumentation(monkeypatch):
    monkeypatch.setattr(observability, "_INSTRUMENTATION", NoopInstrumentation())


def test_disabled_instrumentation_is_noop() -> None:
    sink = configure_instrumentation(enabled=False)

    assert isinstance(sink, NoopInstrumentation)
    assert get_instrumentation() is sink
    sink.counter("explorer_requests_total", attrs={"group": "mempool"})
    sink.histogram("batch_duration_seconds", 0.5)
    with sink.trace("explorer_call", attrs={"group": "mempool"}):
        pass
    sink.flush()


def test_setup_failure_falls_back_to_noop(monkeypatch) -> None:
    def _boom(**_kwargs):
        raise RuntimeError("exporter unavailable")

    monkeypatch.setattr(observability, "OTelInstrumentation", _boom)

    sink = configure_instrumentation(enabled=True, metrics_exporter="otlp")

    assert isinstance(sink, NoopInstrumentation)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("explorer_requests_total", "depositwatch.explorer_requests_total"),
        ("depositwatch.batch_duration_seconds", "depositwatch.batch_duration_seconds"),
        ("bad name!", "depositwatch.bad_name"),
        ("!!!", "depositwatch.invalid_metric"),
    ],
)
def test_metric_names_are_prefixed_and_sanitized(raw: str, expected: str) -> None:
    assert metric_name(raw) == expected
