"""OpenTelemetry metrics instruments for the sync engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
Sync runs (emitted from sync/orchestrator.py):

  courier.sync.active_runs              UpDownCounter (gauge semantics)
      Sync attempts currently in flight.

  courier.sync.runs_total               Counter  (labels: status, mode)
      Finalized sync runs.

  courier.sync.run_duration_ms          Histogram
      Wall-clock duration of finalized runs.

  courier.sync.items_applied_total      Counter  (label: change=upsert|tombstone)
      Delta items applied successfully.

  courier.sync.item_errors_total        Counter  (label: retryable)
      Delta items that failed to apply.

  courier.sync.cursor_fallbacks_total   Counter
      Incremental attempts that fell back to a full sync.

  courier.sync.rejected_requests_total  Counter  (label: outcome=rejected|coalesced)
      Requests refused or folded into a pending follow-up by single-flight.

Credentials (emitted from credentials/vault.py):

  courier.credentials.token_refresh_total  Counter  (label: outcome=success|failure)
      Access-token refresh attempts.

All instruments carry ``provider`` so dashboards can split by integration.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "courier"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.

    Args:
        service_name: Service name reported on the metrics resource.

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider.

    Safe to call before ``init_metrics``; returns a no-op meter in that case.
    """
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# Instrument factories
# ---------------------------------------------------------------------------


def _active_runs() -> metrics.UpDownCounter:
    return get_meter().create_up_down_counter(
        name="courier.sync.active_runs",
        description="Sync attempts currently in flight",
        unit="runs",
    )


def _runs_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="courier.sync.runs_total",
        description="Finalized sync runs by terminal status and effective mode",
        unit="runs",
    )


def _run_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="courier.sync.run_duration_ms",
        description="Wall-clock duration of finalized sync runs",
        unit="ms",
    )


def _items_applied_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="courier.sync.items_applied_total",
        description="Delta items applied successfully",
        unit="items",
    )


def _item_errors_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="courier.sync.item_errors_total",
        description="Delta items that failed to apply",
        unit="items",
    )


def _cursor_fallbacks_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="courier.sync.cursor_fallbacks_total",
        description="Incremental sync attempts that fell back to a full sync",
        unit="runs",
    )


def _rejected_requests_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="courier.sync.rejected_requests_total",
        description="Sync requests rejected or coalesced because a run was in flight",
        unit="requests",
    )


def _token_refresh_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="courier.credentials.token_refresh_total",
        description="Access-token refresh attempts by outcome",
        unit="refreshes",
    )


# ---------------------------------------------------------------------------
# SyncMetrics: convenience wrapper that caches instruments
# ---------------------------------------------------------------------------


class SyncMetrics:
    """Convenience wrapper around the sync engine's instruments.

    Instruments are lazily created from the global MeterProvider on first
    use, so it is safe to construct this object before ``init_metrics`` is
    called (all recordings are no-ops until a real provider is installed).
    """

    def __init__(self) -> None:
        self.__active: metrics.UpDownCounter | None = None
        self.__runs: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None
        self.__applied: metrics.Counter | None = None
        self.__item_errors: metrics.Counter | None = None
        self.__fallbacks: metrics.Counter | None = None
        self.__rejected: metrics.Counter | None = None
        self.__refreshes: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _active(self) -> metrics.UpDownCounter:
        if self.__active is None:
            self.__active = _active_runs()
        return self.__active

    @property
    def _runs(self) -> metrics.Counter:
        if self.__runs is None:
            self.__runs = _runs_total()
        return self.__runs

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = _run_duration_ms()
        return self.__duration

    @property
    def _applied(self) -> metrics.Counter:
        if self.__applied is None:
            self.__applied = _items_applied_total()
        return self.__applied

    @property
    def _item_errors(self) -> metrics.Counter:
        if self.__item_errors is None:
            self.__item_errors = _item_errors_total()
        return self.__item_errors

    @property
    def _fallbacks(self) -> metrics.Counter:
        if self.__fallbacks is None:
            self.__fallbacks = _cursor_fallbacks_total()
        return self.__fallbacks

    @property
    def _rejected(self) -> metrics.Counter:
        if self.__rejected is None:
            self.__rejected = _rejected_requests_total()
        return self.__rejected

    @property
    def _refreshes(self) -> metrics.Counter:
        if self.__refreshes is None:
            self.__refreshes = _token_refresh_total()
        return self.__refreshes

    # -- recording helpers ----------------------------------------------------

    def run_started(self, provider: str) -> None:
        self._active.add(1, {"provider": provider})

    def run_finished(self, provider: str, *, status: str, mode: str, duration_ms: int) -> None:
        """Record a finalized run and release its active-run slot."""
        attrs = {"provider": provider}
        self._active.add(-1, attrs)
        self._runs.add(1, {**attrs, "status": status, "mode": mode})
        self._duration.record(duration_ms, attrs)

    def item_applied(self, provider: str, change: str) -> None:
        self._applied.add(1, {"provider": provider, "change": change})

    def item_failed(self, provider: str, *, retryable: bool) -> None:
        self._item_errors.add(1, {"provider": provider, "retryable": str(retryable).lower()})

    def cursor_fallback(self, provider: str) -> None:
        self._fallbacks.add(1, {"provider": provider})

    def request_rejected(self, provider: str, *, outcome: str) -> None:
        self._rejected.add(1, {"provider": provider, "outcome": outcome})

    def token_refresh(self, provider: str, *, success: bool) -> None:
        outcome = "success" if success else "failure"
        self._refreshes.add(1, {"provider": provider, "outcome": outcome})
