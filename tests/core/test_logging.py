"""Tests for structured logging and credential redaction."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from courier.core.logging import (
    _NOISE_LOGGERS,
    CredentialRedactionFilter,
    _service_context,
    add_otel_context,
    add_service_context,
    configure_logging,
    get_service_context,
    redact,
    set_service_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and service context between tests."""
    token = _service_context.set(None)
    yield
    _service_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.filters.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        for handler in logging.getLogger(name).handlers:
            handler.close()
        logging.getLogger(name).handlers.clear()
    structlog.contextvars.clear_contextvars()


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


class TestServiceContext:
    def test_set_and_get(self):
        set_service_context("courier-prod")
        assert get_service_context() == "courier-prod"

    def test_processor_injects_service(self):
        set_service_context("courier-prod")
        assert add_service_context(None, "info", {"event": "x"})["service"] == "courier-prod"

    def test_processor_handles_unset_context(self):
        assert add_service_context(None, "info", {"event": "x"})["service"] is None


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class TestRedact:
    @pytest.mark.parametrize(
        ("text", "secret"),
        [
            ("Authorization: Bearer ya29.a0AfH6SMB", "ya29.a0AfH6SMB"),
            ("POST body refresh_token=1//0gLONGTOKEN&grant_type=refresh_token", "1//0gLONGTOKEN"),
            ('{"access_token": "ya29.secret", "expires_in": 3599}', "ya29.secret"),
            ("client_secret=GOCSPX-abc123", "GOCSPX-abc123"),
            ("callback code=4/0AX4XfWh", "4/0AX4XfWh"),
        ],
    )
    def test_secrets_are_scrubbed(self, text: str, secret: str):
        scrubbed = redact(text)
        assert secret not in scrubbed
        assert "[REDACTED]" in scrubbed

    def test_plain_text_untouched(self):
        text = "Sync run completed (mode=incremental, items=49)"
        assert redact(text) == text

    def test_error_code_words_are_not_redacted(self):
        assert redact("status_code=503") == "status_code=503"

    def test_filter_scrubs_args(self):
        record = logging.LogRecord(
            "courier.test", logging.INFO, __file__, 1, "token response: %s",
            ("access_token=ya29.secret",), None,
        )
        assert CredentialRedactionFilter().filter(record) is True
        assert "ya29.secret" not in record.getMessage()
        assert record.args is None

    def test_filter_leaves_clean_records_alone(self):
        record = logging.LogRecord(
            "courier.test", logging.INFO, __file__, 1, "items=%d", (3,), None
        )
        CredentialRedactionFilter().filter(record)
        assert record.args == (3,)
        assert record.getMessage() == "items=3"


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_console_handler_redacts(self):
        configure_logging()
        handler = logging.getLogger().handlers[0]
        assert any(isinstance(f, CredentialRedactionFilter) for f in handler.filters)

    def test_sets_service_context(self):
        configure_logging(service_name="courier-a")
        assert get_service_context() == "courier-a"

    def test_noise_loggers_suppressed(self):
        configure_logging()
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_reconfigure_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1


class TestLogFiles:
    def test_creates_subdirectories(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, service_name="courier-a")
        assert (tmp_path / "courier").is_dir()
        assert (tmp_path / "http").is_dir()

    def test_json_lines_carry_run_context_and_redaction(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, service_name="courier-a")
        log = logging.getLogger("courier.sync.orchestrator")

        with structlog.contextvars.bound_contextvars(
            account_id="acct-1", provider="gmail", resource_id="INBOX", run_id="r-1"
        ):
            log.warning("refresh failed for Bearer %s", "ya29.topsecret")

        for handler in logging.getLogger().handlers:
            handler.flush()
        lines = (tmp_path / "courier" / "courier-a.log").read_text().strip().splitlines()
        entry = json.loads(lines[-1])
        assert entry["account_id"] == "acct-1"
        assert entry["provider"] == "gmail"
        assert entry["run_id"] == "r-1"
        assert entry["service"] == "courier-a"
        assert entry["level"] == "warning"
        assert "ya29.topsecret" not in entry["event"]

    def test_transport_logs_go_to_http_dir(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, service_name="courier-a")
        httpx_logger = logging.getLogger("httpx")
        file_handlers = [h for h in httpx_logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert str(file_handlers[0].baseFilename).endswith("http/courier-a.log")
