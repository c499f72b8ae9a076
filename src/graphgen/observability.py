"""Metrics instrumentation emitted through logging and Prometheus."""

from __future__ import annotations

import logging
import re
from typing import Any, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter as PromCounter,
    Gauge as PromGauge,
    Histogram as PromHistogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")

_PROM_KINDS = {
    "counter": (PromCounter, "counter"),
    "gauge": (PromGauge, "gauge"),
    "histogram": (PromHistogram, "duration"),
}


class MetricsRecorder:
    """Emit structured metrics via logging and (optionally) Prometheus."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "graphgen",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "graphgen"
        self._logger = logger or logging.getLogger("graphgen.metrics")
        self._prometheus_enabled = bool(prometheus_enabled)
        if registry is None and self._prometheus_enabled:
            registry = CollectorRegistry()
        self._prom_registry = registry
        self._prom_collectors: dict[Tuple[str, str, Tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._prom_registry is not None

    @property
    def prometheus_registry(self) -> CollectorRegistry | None:
        return self._prom_registry

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._prom_registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        """Increment a counter metric."""

        if not self._enabled:
            return
        value = int(value)
        clean_tags = _clean(tags)
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        self._emit_prom("counter", metric, clean_tags, lambda c: c.inc(float(max(value, 0))))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        if not self._enabled:
            return
        clean_tags = _clean(tags)
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        self._emit_prom("gauge", metric, clean_tags, lambda g: g.set(float(value)))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Emit a timing metric, recording milliseconds to logs."""

        if not self._enabled:
            return
        duration_ms = max(duration_seconds * 1000.0, 0.0)
        clean_tags = _clean(tags)
        self._emit(metric, fields={"duration_ms": round(duration_ms, 4)}, tags=clean_tags)
        self._emit_prom(
            "histogram",
            metric,
            clean_tags,
            lambda h: h.observe(max(duration_seconds, 0.0)),
        )

    def _emit(self, metric: str, *, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = [f"{key}={self._stringify(value)}" for key, value in sorted(fields.items())]
        segments.extend(f"{key}={self._stringify(value)}" for key, value in sorted(tags.items()))
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {' '.join(segments)}"
        self._logger.info(message)

    def _emit_prom(self, kind: str, metric: str, tags: dict[str, Any], apply) -> None:
        if not self.prometheus_enabled:
            return
        label_keys = tuple(sorted(tags.keys()))
        label_names = tuple(self._sanitize_label(name) for name in label_keys)
        prom_key = (kind, metric, label_names)
        collector = self._prom_collectors.get(prom_key)
        if collector is None:
            factory, description = _PROM_KINDS[kind]
            collector = factory(
                self._prom_metric_name(metric),
                f"{metric} {description}",
                labelnames=list(label_names),
                registry=self._prom_registry,
            )
            self._prom_collectors[prom_key] = collector
        if label_names:
            label_values = {
                name: self._stringify(tags[key])
                for name, key in zip(label_names, label_keys)
            }
            collector = collector.labels(**label_values)
        apply(collector)

    def _prom_metric_name(self, metric: str) -> str:
        cleaned = _PROM_NAME_RE.sub("_", metric)
        return f"{_PROM_NAME_RE.sub('_', self._namespace)}_{cleaned}".strip("_")

    @staticmethod
    def _sanitize_label(label: str) -> str:
        sanitized = _PROM_NAME_RE.sub("_", label)
        return sanitized or "label"

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, float):
            return f"{value:.4f}" if not value.is_integer() else f"{int(value)}"
        return str(value)


def _clean(tags: dict[str, Any]) -> dict[str, Any]:
    return {key: val for key, val in tags.items() if val is not None}
