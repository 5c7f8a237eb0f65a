"""Tests for observability hooks and the manager."""

import logging

import pytest

from financial_parser.observability import (
    Event,
    EventType,
    LoggingHook,
    MetricEvent,
    MetricType,
    ObservabilityHook,
    ObservabilityManager,
    PrometheusHook,
)


class RecordingHook(ObservabilityHook):
    def __init__(self):
        self.metrics = []
        self.events = []

    def on_metric(self, metric):
        self.metrics.append(metric)

    def on_event(self, event):
        self.events.append(event)


class ExplodingHook(ObservabilityHook):
    def on_metric(self, metric):
        raise RuntimeError("boom")

    def on_event(self, event):
        raise RuntimeError("boom")


@pytest.fixture
def recorder():
    return RecordingHook()


@pytest.fixture
def manager(recorder):
    return ObservabilityManager([recorder])


def test_metric_and_event_strings():
    metric = MetricEvent(MetricType.COUNTER, "records_parsed", 3, tags={"engine": "sync"})
    assert str(metric) == "records_parsed:3|counter|engine=sync"

    event = Event(EventType.PARSE_COMPLETE, request_id="r1", details={"records": 3})
    assert str(event) == "parse_complete request=r1 records=3"


def test_convenience_metrics(manager, recorder):
    manager.counter("records_parsed", 5, tags={"engine": "offload"})
    manager.gauge("pending", 2)
    manager.histogram("chunk_bytes", 4096)

    assert [(m.metric_type, m.name, m.value) for m in recorder.metrics] == [
        (MetricType.COUNTER, "records_parsed", 5),
        (MetricType.GAUGE, "pending", 2),
        (MetricType.HISTOGRAM, "chunk_bytes", 4096),
    ]
    assert recorder.metrics[0].tags == {"engine": "offload"}
    assert recorder.metrics[1].tags == {}


def test_timer_is_keyed_per_request(manager, recorder):
    manager.start_timer("parse_duration", "r1")
    manager.start_timer("parse_duration", "r2")

    assert manager.end_timer("parse_duration", "r1", tags={"engine": "sync"}) >= 0
    assert len(recorder.metrics) == 1
    assert recorder.metrics[0].metric_type is MetricType.TIMER
    assert recorder.metrics[0].tags == {"engine": "sync"}

    manager.cancel_timer("parse_duration", "r2")
    assert manager.end_timer("parse_duration", "r2") == 0.0
    assert len(recorder.metrics) == 1


def test_missing_timer_warns(manager, caplog):
    with caplog.at_level(logging.WARNING, logger="financial_parser.observability"):
        assert manager.end_timer("never_started") == 0.0
    assert "was not started" in caplog.text


def test_events_reach_hooks(manager, recorder):
    manager.emit_event(EventType.PARSE_START, request_id="r1", details={"engine": "sync"})
    assert recorder.events[0].event_type is EventType.PARSE_START
    assert recorder.events[0].details == {"engine": "sync"}


def test_failing_hook_does_not_stop_others(recorder, caplog):
    manager = ObservabilityManager([ExplodingHook(), recorder])
    with caplog.at_level(logging.ERROR, logger="financial_parser.observability"):
        manager.counter("records_parsed")
        manager.emit_event(EventType.WORKER_READY)

    assert len(recorder.metrics) == 1
    assert len(recorder.events) == 1
    assert caplog.text.count("Error in observability hook") == 2


def test_register_hook(recorder):
    manager = ObservabilityManager()
    manager.register_hook(recorder)
    manager.emit_event(EventType.WORKER_FAILED)
    assert len(recorder.events) == 1


def test_logging_hook_levels(caplog):
    manager = ObservabilityManager([LoggingHook()])
    with caplog.at_level(logging.DEBUG, logger="financial_parser.observability"):
        manager.emit_event(EventType.PARSE_COMPLETE, request_id="r1")
        manager.emit_event(EventType.PARSE_ERROR, request_id="r2", details={"error": "bad"})
        manager.counter("records_parsed", 3)

    levels = {record.getMessage(): record.levelno for record in caplog.records}
    assert levels["EVENT: parse_complete request=r1"] == logging.INFO
    assert levels["EVENT: parse_error request=r2 error=bad"] == logging.WARNING
    assert levels["METRIC: records_parsed:3|counter|"] == logging.DEBUG


def test_logging_hook_can_be_muted(caplog):
    manager = ObservabilityManager([LoggingHook(log_metrics=False, log_events=False)])
    with caplog.at_level(logging.DEBUG, logger="financial_parser.observability"):
        manager.counter("records_parsed")
        manager.emit_event(EventType.PARSE_START)
    assert caplog.records == []


def test_prometheus_hook():
    prometheus_client = pytest.importorskip("prometheus_client")
    registry = prometheus_client.CollectorRegistry()
    manager = ObservabilityManager([PrometheusHook(registry=registry)])

    manager.counter("records_parsed", 3, tags={"engine": "sync"})
    manager.counter("records_parsed", 2, tags={"engine": "sync"})
    manager.gauge("pending", 4)
    manager.start_timer("parse_duration", "r1")
    manager.end_timer("parse_duration", "r1", tags={"engine": "offload"})

    assert registry.get_sample_value(
        "financial_parser_records_parsed_total", {"engine": "sync"}
    ) == 5
    assert registry.get_sample_value("financial_parser_pending") == 4
    assert registry.get_sample_value(
        "financial_parser_parse_duration_count", {"engine": "offload"}
    ) == 1
