from __future__ import annotations

import io
import json
import logging

from sol_paystream.monitoring.logger import (
    StructuredFormatter,
    _ContextFilter,
    correlation_scope,
    current_correlation_id,
    current_log_fields,
    log_fields,
    new_correlation_id,
)
from sol_paystream.monitoring.metrics import METRICS


def test_prometheus_export_sanitizes_metric_names() -> None:
    METRICS.increment("reconcile.calls")
    METRICS.increment("publisher.events.transaction-update", 2)
    METRICS.gauge("watcher.addresses", 3)
    METRICS.observe("reconcile.latency_ms", 0.5)

    output = METRICS.export_prometheus()
    lines = [line for line in output.splitlines() if line]

    assert any(line.startswith("# TYPE reconcile_calls counter") for line in lines)
    assert "reconcile.calls" not in output
    assert any("publisher_events_transaction_update" in line for line in lines)
    assert "watcher_addresses 3.0" in lines
    assert any(line.startswith('reconcile_latency_ms{quantile="p50"}') for line in lines)


def test_snapshot_reports_histogram_stats() -> None:
    for value in (10.0, 20.0, 30.0):
        METRICS.observe("reconcile.latency_ms", value)

    stats = METRICS.snapshot()["histograms"]["reconcile.latency_ms"]

    assert stats["count"] == 3.0
    assert stats["avg"] == 20.0
    assert stats["p50"] == 20.0


def test_correlation_scope_nests_and_restores() -> None:
    assert current_correlation_id() == "-"
    outer = new_correlation_id("tick")
    assert outer.startswith("tick-")
    with correlation_scope(outer):
        assert current_correlation_id() == outer
        with correlation_scope("inner"):
            assert current_correlation_id() == "inner"
        assert current_correlation_id() == outer
    assert current_correlation_id() == "-"


def test_structured_formatter_emits_json() -> None:
    record = logging.LogRecord("sol_paystream.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    record.correlation_id = "abc"
    record.address = "wallet"

    payload = json.loads(StructuredFormatter().format(record))

    assert payload["message"] == "hello world"
    assert payload["correlation_id"] == "abc"
    assert payload["extra"] == {"address": "wallet"}


def test_prometheus_export_describes_pipeline_metrics() -> None:
    METRICS.increment("reconcile.ingested")
    METRICS.increment("custom.thing")

    lines = METRICS.export_prometheus().splitlines()

    assert "# HELP reconcile_ingested Payments persisted for the first time" in lines
    assert not any(line.startswith("# HELP custom_thing") for line in lines)


def test_timer_records_milliseconds() -> None:
    with METRICS.timer("reconcile.latency_ms"):
        pass

    stats = METRICS.snapshot()["histograms"]["reconcile.latency_ms"]
    assert stats["count"] == 1.0
    assert stats["avg"] >= 0.0


def test_pipeline_summary_ratios() -> None:
    assert METRICS.pipeline_summary()["reconcileSuccessRate"] == 1.0

    METRICS.increment("reconcile.calls", 4)
    METRICS.increment("reconcile.failures")
    METRICS.increment("reconcile.ingested", 3)
    METRICS.increment("reconcile.duplicates", 1)
    METRICS.increment("webhooks.delivered", 1)
    METRICS.increment("webhooks.failed", 1)

    summary = METRICS.pipeline_summary()

    assert summary["reconcileSuccessRate"] == 0.75
    assert summary["duplicateRatio"] == 0.25
    assert summary["webhookFailureRate"] == 0.5


def test_log_fields_reach_formatted_records() -> None:
    logger = logging.getLogger("sol_paystream.test.fields")
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(_ContextFilter())
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    try:
        with correlation_scope("reconcile-1"), log_fields(address="wallet"):
            with log_fields(signature="sig"):
                assert current_log_fields() == {"address": "wallet", "signature": "sig"}
                logger.info("persisted")
        logger.info("outside")
    finally:
        logger.removeHandler(handler)

    inside, outside = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert inside["correlation_id"] == "reconcile-1"
    assert inside["service"] == "sol-paystream"
    assert inside["extra"] == {"address": "wallet", "signature": "sig"}
    assert outside["correlation_id"] == "-"
    assert "extra" not in outside
