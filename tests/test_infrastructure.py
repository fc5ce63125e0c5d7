# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import json
import logging
from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest
from asyncpg.exceptions import PostgresError

from max_express_bot.infra import db_resilience_async
from max_express_bot.infra.db_resilience_async import (
    CircuitBreaker,
    CircuitOpenError,
    is_transient_error,
    safe_db_conn,
)
from max_express_bot.infra.logging_config import JSONFormatter, LogContext, mask_user_id


class TestDatabaseResilience:
    def test_is_transient_error_connection_error(self):
        exc = PostgresError("connection timeout")
        assert is_transient_error(exc) is True

    def test_is_transient_error_server_closed(self):
        exc = PostgresError("server closed the connection unexpectedly")
        assert is_transient_error(exc) is True

    def test_is_transient_error_os_error(self):
        assert is_transient_error(ConnectionRefusedError()) is True

    def test_is_transient_error_non_transient(self):
        exc = ValueError("some other error")
        assert is_transient_error(exc) is False

    @pytest.mark.asyncio
    async def test_safe_db_conn_retries_acquisition(self):
        attempts = 0

        @asynccontextmanager
        async def flaky_conn(autocommit: bool = True):
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise ConnectionResetError("connection reset")
            yield "conn"

        with patch.object(db_resilience_async.db_async, "db_conn", flaky_conn):
            async with safe_db_conn() as conn:
                assert conn == "conn"

        assert attempts == 3

    @pytest.mark.asyncio
    async def test_safe_db_conn_does_not_retry_body_errors(self):
        attempts = 0

        @asynccontextmanager
        async def conn_factory(autocommit: bool = True):
            nonlocal attempts
            attempts += 1
            yield "conn"

        with patch.object(db_resilience_async.db_async, "db_conn", conn_factory):
            with pytest.raises(ConnectionResetError):
                async with safe_db_conn():
                    raise ConnectionResetError("connection reset mid-query")

        assert attempts == 1


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)
        breaker.record_failure()
        assert breaker.is_available()
        breaker.record_failure()
        assert breaker.state == "OPEN"
        assert not breaker.is_available()

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, timeout=0)
        breaker.record_failure()
        assert breaker.is_available()
        assert breaker.state == "HALF_OPEN"

        breaker.record_success()
        assert breaker.state == "CLOSED"

    def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker(failure_threshold=3, timeout=0)
        for _ in range(3):
            breaker.record_failure()
        assert breaker.is_available()

        breaker.record_failure()
        assert breaker.state == "OPEN"

    @pytest.mark.asyncio
    async def test_protected_conn_rejects_while_open(self):
        breaker = CircuitBreaker(failure_threshold=1, timeout=60)
        breaker.record_failure()

        with patch.object(db_resilience_async, "_circuit_breaker", breaker):
            with pytest.raises(CircuitOpenError):
                async with db_resilience_async.protected_db_conn():
                    pass


class TestMetrics:
    def test_metrics_counter_increment(self):
        from max_express_bot.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("test_counter", 1)
        collector.inc_counter("test_counter", 2)

        metrics = collector.get_metrics()
        assert metrics["counters"]["test_counter"] == 3

    def test_metrics_histogram_observe(self):
        from max_express_bot.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        for value in (0.1, 0.2, 0.3):
            collector.observe_histogram("test_histogram", value)

        stats = collector.get_metrics()["histograms"]["test_histogram"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.3

    def test_metrics_with_labels(self):
        from max_express_bot.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("updates", labels={"kind": "text"})
        collector.inc_counter("updates", labels={"kind": "command"})

        counters = collector.get_metrics()["counters"]
        assert counters["updates{kind=text}"] == 1
        assert counters["updates{kind=command}"] == 1

    def test_app_metrics_transition(self):
        from max_express_bot.infra.metrics import AppMetrics, get_metrics_collector

        AppMetrics.transition("idle", "awaiting_marketplace_choice")

        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["state_transitions_total{from_state=idle,to_state=awaiting_marketplace_choice}"] == 1

    def test_histogram_keeps_recent_window(self):
        from max_express_bot.infra.metrics import Histogram

        histogram = Histogram(window=3)
        for value in (9.0, 1.0, 2.0, 3.0):
            histogram.observe(value)

        stats = histogram.get_stats()
        assert stats["count"] == 4
        assert stats["max"] == 3.0
        assert stats["min"] == 1.0

    def test_processing_time_recorded_on_error(self):
        from max_express_bot.infra.metrics import AppMetrics, get_metrics_collector

        with pytest.raises(RuntimeError):
            with AppMetrics.track_processing_time("text"):
                raise RuntimeError("boom")

        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert histograms["update_processing_seconds{event=text}"]["count"] == 1


class TestLogging:
    def test_mask_user_id(self):
        assert mask_user_id(123456789) == "1234***89"
        assert mask_user_id(42) == "***"

    def test_json_formatter_includes_context(self):
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "hello", None, None)
        record.user_id = 123456789
        record.update_id = 7

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello"
        assert data["user_id"] == 123456789
        assert data["update_id"] == 7

    def test_log_context_adds_fields(self, caplog):
        logger = logging.getLogger("test.context")
        ctx = LogContext(logger, user_id=1, chat_id=2)

        with caplog.at_level(logging.INFO, logger="test.context"):
            ctx.info("processed")

        record = caplog.records[-1]
        assert record.user_id == 1
        assert record.chat_id == 2
        assert not hasattr(record, "update_id")
