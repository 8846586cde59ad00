from __future__ import annotations

import json
import logging
from bisect import bisect_left
from collections import Counter
from threading import Lock
from typing import Any

import httpx


logger = logging.getLogger("campaign_ingest")

DEFAULT_BUCKETS: tuple[float, ...] = (1, 2, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)
OVERFLOW_LABEL_VALUE = "other"


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


class MetricsRegistry:
    """In-process metrics sink shared by the ingestion services.

    Label values are capped per (metric, label) pair; once ``max_label_values``
    distinct values have been seen, further values are folded into ``other``.
    """

    def __init__(self, *, max_label_values: int = 50, buckets: tuple[float, ...] = DEFAULT_BUCKETS):
        self._lock = Lock()
        self._max_label_values = max(1, max_label_values)
        self._buckets = tuple(sorted(buckets))
        self._counters: Counter[str] = Counter()
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, dict[str, Any]] = {}
        self._label_values: dict[tuple[str, str], set[str]] = {}

    def _bounded_labels(self, name: str, labels: dict[str, Any]) -> dict[str, Any]:
        bounded: dict[str, Any] = {}
        for label, raw in labels.items():
            value = str(_normalize(raw))
            seen = self._label_values.setdefault((name, label), set())
            if value not in seen and len(seen) >= self._max_label_values:
                value = OVERFLOW_LABEL_VALUE
            else:
                seen.add(value)
            bounded[label] = value
        return bounded

    def incr(self, name: str, value: int = 1, **labels: Any) -> None:
        with self._lock:
            key = metric_key(name, **self._bounded_labels(name, labels))
            self._counters[key] += value

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        with self._lock:
            key = metric_key(name, **self._bounded_labels(name, labels))
            self._gauges[key] = value

    def observe(self, name: str, value: float, **labels: Any) -> None:
        with self._lock:
            key = metric_key(name, **self._bounded_labels(name, labels))
            histogram = self._histograms.get(key)
            if histogram is None:
                histogram = {
                    "count": 0,
                    "sum": 0.0,
                    "min": None,
                    "max": None,
                    "buckets": [0] * (len(self._buckets) + 1),
                }
                self._histograms[key] = histogram
            histogram["count"] += 1
            histogram["sum"] += value
            histogram["min"] = value if histogram["min"] is None else min(histogram["min"], value)
            histogram["max"] = value if histogram["max"] is None else max(histogram["max"], value)
            histogram["buckets"][bisect_left(self._buckets, value)] += 1

    def counter_value(self, name: str, **labels: Any) -> int:
        with self._lock:
            if labels:
                return self._counters.get(metric_key(name, **{k: str(_normalize(v)) for k, v in labels.items()}), 0)
            return sum(v for k, v in self._counters.items() if k == name or k.startswith(f"{name}|"))

    def gauge_value(self, name: str, **labels: Any) -> float | None:
        with self._lock:
            return self._gauges.get(metric_key(name, **{k: str(_normalize(v)) for k, v in labels.items()}))

    def histogram(self, name: str, **labels: Any) -> dict[str, Any] | None:
        with self._lock:
            found = self._histograms.get(metric_key(name, **{k: str(_normalize(v)) for k, v in labels.items()}))
            return json.loads(json.dumps(found)) if found else None

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            histograms = {
                key: {
                    "count": h["count"],
                    "sum": h["sum"],
                    "min": h["min"],
                    "max": h["max"],
                    "buckets": {
                        **{f"le_{bound:g}": n for bound, n in zip(self._buckets, h["buckets"])},
                        "le_inf": h["buckets"][-1],
                    },
                }
                for key, h in self._histograms.items()
            }
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": histograms,
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._label_values.clear()


def persist_metrics_snapshot(
    *,
    metrics: MetricsRegistry,
    store: Any,
    source: str,
    request_id: str | None = None,
    reset_after_persist: bool = False,
    export_url: str | None = None,
    export_bearer_token: str | None = None,
    export_timeout_seconds: float = 3.0,
) -> bool:
    snapshot = metrics.snapshot()
    try:
        store.insert_metric_snapshot(
            source=source,
            request_id=request_id,
            counters=snapshot["counters"],
            histograms=snapshot["histograms"],
        )
    except Exception as exc:
        log_event(
            "metrics_snapshot_persist_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return False

    if export_url:
        headers = {"Content-Type": "application/json"}
        if export_bearer_token:
            headers["Authorization"] = f"Bearer {export_bearer_token}"
        payload = {
            "source": source,
            "request_id": request_id,
            **snapshot,
        }
        try:
            with httpx.Client(timeout=export_timeout_seconds) as client:
                response = client.post(export_url, headers=headers, json=payload)
            if response.status_code >= 400:
                log_event(
                    "metrics_snapshot_export_failed",
                    level=logging.WARNING,
                    request_id=request_id,
                    source=source,
                    export_url=export_url,
                    status_code=response.status_code,
                    response_text=response.text[:200],
                )
            else:
                log_event(
                    "metrics_snapshot_exported",
                    request_id=request_id,
                    source=source,
                    export_url=export_url,
                    status_code=response.status_code,
                )
        except httpx.HTTPError as exc:
            log_event(
                "metrics_snapshot_export_failed",
                level=logging.WARNING,
                request_id=request_id,
                source=source,
                export_url=export_url,
                error=str(exc),
            )

    log_event(
        "metrics_snapshot_persisted",
        request_id=request_id,
        source=source,
        counter_count=len(snapshot["counters"]),
        histogram_count=len(snapshot["histograms"]),
    )
    if reset_after_persist:
        metrics.reset()
    return True


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True))
