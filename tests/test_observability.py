import io
import logging

import pytest

from graphgen.observability import MetricsRecorder


def _capture_logger_output(logger_name: str):
    logger = logging.getLogger(logger_name)
    buffer = io.StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger, handler, buffer


def test_metrics_recorder_logs_when_enabled() -> None:
    metrics = MetricsRecorder(enabled=True, namespace="graphgen.test")
    logger, handler, buffer = _capture_logger_output("graphgen.metrics")

    try:
        metrics.increment("graph.task.submitted", kind="graph")
        metrics.record_timing("graph.snapshot.persist_duration", 0.05, nodes=5)
    finally:
        logger.removeHandler(handler)

    output = buffer.getvalue()
    assert "graphgen.test.graph.task.submitted value=1 kind=graph" in output
    assert "graphgen.test.graph.snapshot.persist_duration duration_ms=50 nodes=5" in output


def test_metrics_recorder_disabled_suppresses_logs() -> None:
    metrics = MetricsRecorder(enabled=False)
    logger, handler, buffer = _capture_logger_output("graphgen.metrics")

    try:
        metrics.increment("graph.task.submitted", kind="graph")
        metrics.set_gauge("graph.pollers.active", 3)
        metrics.record_timing("graph.task.duration", 0.2)
    finally:
        logger.removeHandler(handler)

    assert buffer.getvalue() == ""


def test_prometheus_export_collects_series() -> None:
    metrics = MetricsRecorder(enabled=True, prometheus_enabled=True)

    metrics.increment("graph.poll.requests", kind="graph")
    metrics.increment("graph.poll.requests", kind="graph")
    metrics.set_gauge("graph.pollers.active", 2)
    metrics.record_timing("graph.task.duration", 0.25, kind="summary")

    output = metrics.render_prometheus().decode("utf-8")
    assert 'graphgen_graph_poll_requests_total{kind="graph"} 2.0' in output
    assert "graphgen_graph_pollers_active 2.0" in output
    assert 'graphgen_graph_task_duration_count{kind="summary"} 1.0' in output
    assert 'graphgen_graph_task_duration_sum{kind="summary"} 0.25' in output


def test_render_requires_prometheus() -> None:
    metrics = MetricsRecorder(enabled=True)

    assert metrics.prometheus_enabled is False
    with pytest.raises(RuntimeError):
        metrics.render_prometheus()
