"""Unit tests for the sync engine's OTel instruments.

Covers:
- init_metrics: no-op when OTEL_EXPORTER_OTLP_ENDPOINT is not set
- SyncMetrics: every instrument records with the expected attributes
- SyncOrchestrator: a run with one failing item and one fallback emits the
  matching counters
- sync_span: attributes and error status on the run span
"""

from __future__ import annotations

from typing import Any

import pytest
from opentelemetry import metrics, trace
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.util._once import Once

from courier.core.metrics import SyncMetrics, init_metrics
from courier.core.telemetry import sync_span
from courier.sync.errors import CursorInvalidError, ItemApplyError
from courier.sync.models import ResourceKey
from courier.sync.orchestrator import SyncOrchestrator
from tests._doubles import (
    PROVIDER,
    InMemoryApplier,
    InMemoryCursorRepository,
    InMemoryRunRepository,
    ScriptedAdapter,
    StaticTokenVault,
    make_pages,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _reset_metrics_global_state() -> None:
    """Reset the OTel global MeterProvider state for test isolation.

    The OTel SDK uses a ``Once`` guard that prevents ``set_meter_provider``
    from being called more than once per process.
    """
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


def _reset_trace_global_state() -> None:
    trace._TRACER_PROVIDER_SET_ONCE = Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture
def reader():
    _reset_metrics_global_state()
    in_memory = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[in_memory])
    metrics.set_meter_provider(provider)
    yield in_memory
    provider.shutdown()
    _reset_metrics_global_state()


@pytest.fixture
def span_exporter():
    _reset_trace_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_trace_global_state()


def _collect(reader: InMemoryMetricReader) -> dict[str, list[Any]]:
    """Flatten metrics data into {metric_name: data_points}."""
    result: dict[str, list[Any]] = {}
    data = reader.get_metrics_data()
    if data is None:
        return result
    for rm in data.resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                if metric.data.data_points:
                    result[metric.name] = list(metric.data.data_points)
    return result


def _point(points: list[Any], **attrs: str) -> Any:
    for point in points:
        if all(point.attributes.get(k) == v for k, v in attrs.items()):
            return point
    raise AssertionError(f"No data point with attributes {attrs}")


# ---------------------------------------------------------------------------
# init_metrics
# ---------------------------------------------------------------------------


def test_init_metrics_without_endpoint_is_noop(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    meter = init_metrics("courier-test")
    assert meter is not None
    # Recording against the no-op provider must not raise.
    SyncMetrics().run_started("gmail")


# ---------------------------------------------------------------------------
# SyncMetrics
# ---------------------------------------------------------------------------


class TestSyncMetrics:
    def test_run_lifecycle(self, reader: InMemoryMetricReader) -> None:
        m = SyncMetrics()
        m.run_started("gmail")
        m.run_finished("gmail", status="completed", mode="full", duration_ms=1200)

        data = _collect(reader)
        assert _point(data["courier.sync.active_runs"], provider="gmail").value == 0
        runs = _point(data["courier.sync.runs_total"], status="completed", mode="full")
        assert runs.value == 1
        duration = _point(data["courier.sync.run_duration_ms"], provider="gmail")
        assert duration.count == 1
        assert duration.sum == 1200

    def test_item_counters(self, reader: InMemoryMetricReader) -> None:
        m = SyncMetrics()
        m.item_applied("gmail", "upsert")
        m.item_applied("gmail", "upsert")
        m.item_applied("gmail", "tombstone")
        m.item_failed("gmail", retryable=False)

        data = _collect(reader)
        assert _point(data["courier.sync.items_applied_total"], change="upsert").value == 2
        assert _point(data["courier.sync.items_applied_total"], change="tombstone").value == 1
        assert _point(data["courier.sync.item_errors_total"], retryable="false").value == 1

    def test_fallback_rejection_and_refresh(self, reader: InMemoryMetricReader) -> None:
        m = SyncMetrics()
        m.cursor_fallback("google_calendar")
        m.request_rejected("google_calendar", outcome="coalesced")
        m.token_refresh("google_calendar", success=True)
        m.token_refresh("google_calendar", success=False)

        data = _collect(reader)
        assert _point(data["courier.sync.cursor_fallbacks_total"]).value == 1
        assert _point(data["courier.sync.rejected_requests_total"], outcome="coalesced").value == 1
        refreshes = data["courier.credentials.token_refresh_total"]
        assert _point(refreshes, outcome="success").value == 1
        assert _point(refreshes, outcome="failure").value == 1


async def test_orchestrator_emits_run_metrics(reader: InMemoryMetricReader) -> None:
    key = ResourceKey(account_id="acct", provider=PROVIDER, resource_id="res")
    cursors = InMemoryCursorRepository()
    cursors.cursors[key] = "stale"
    adapter = ScriptedAdapter()
    adapter.incremental = [CursorInvalidError("gone")]
    adapter.full = make_pages(4, 4, next_cursor="fresh")
    applier = InMemoryApplier()
    applier.failures["item-2"] = ItemApplyError("bad", retryable=True)
    orchestrator = SyncOrchestrator(
        vault=StaticTokenVault({("acct", PROVIDER): "t"}),
        cursors=cursors,
        runs=InMemoryRunRepository(),
        adapters={PROVIDER: adapter},
        appliers={PROVIDER: applier},
        metrics=SyncMetrics(),
    )

    await orchestrator.sync("acct", PROVIDER, "res")

    data = _collect(reader)
    assert _point(data["courier.sync.runs_total"], status="completed", mode="full").value == 1
    assert _point(data["courier.sync.cursor_fallbacks_total"], provider=PROVIDER).value == 1
    assert _point(data["courier.sync.items_applied_total"], change="upsert").value == 3
    assert _point(data["courier.sync.item_errors_total"], retryable="true").value == 1
    assert _point(data["courier.sync.active_runs"], provider=PROVIDER).value == 0


# ---------------------------------------------------------------------------
# sync_span
# ---------------------------------------------------------------------------


class TestSyncSpan:
    def test_span_attributes(self, span_exporter: InMemorySpanExporter) -> None:
        with sync_span(
            account_id="acct", provider="gmail", resource_id="INBOX", requested_mode="full"
        ) as span:
            span.set_attribute("sync.status", "completed")

        [finished] = span_exporter.get_finished_spans()
        assert finished.name == "courier.sync.run"
        assert finished.attributes["courier.provider"] == "gmail"
        assert finished.attributes["sync.requested_mode"] == "full"
        assert finished.attributes["sync.status"] == "completed"

    def test_exception_marks_span_error(self, span_exporter: InMemorySpanExporter) -> None:
        with pytest.raises(RuntimeError):
            with sync_span(
                account_id="acct", provider="gmail", resource_id="INBOX", requested_mode="full"
            ):
                raise RuntimeError("boom")

        [finished] = span_exporter.get_finished_spans()
        assert finished.status.status_code is trace.StatusCode.ERROR
        assert finished.events[0].name == "exception"
