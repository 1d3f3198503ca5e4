import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextvars import ContextVar
from collections import defaultdict
from threading import Lock

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


class StructuredLogger:
    """
    Structured JSON logger for sync, transport and poller events.
    Every line carries the same base fields so logs can be filtered by event
    name and device.
    """

    def __init__(self, name: str = "smserver", level: Optional[str] = None):
        self.logger = logging.getLogger(name)
        level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
        self.logger.setLevel(_LEVELS.get(level_name, logging.INFO))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def _base_fields(self) -> Dict[str, Any]:
        return {
            "ts": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id_var.get(),
        }

    def log_event(
        self,
        event: str,
        level: str = "INFO",
        **fields
    ) -> None:
        """
        Log a structured event with additional fields.

        Args:
            event: Event name (e.g., "sync.sms.completed", "status.poll.offline")
            level: Log level (DEBUG, INFO, WARN, ERROR)
            **fields: Event-specific fields such as device_id or error
        """
        log_level = _LEVELS.get(level, logging.INFO)
        if not self.logger.isEnabledFor(log_level):
            return

        log_entry = self._base_fields()
        log_entry["level"] = level
        log_entry["event"] = event
        log_entry.update(fields)

        self.logger.log(log_level, json.dumps(log_entry, default=str, ensure_ascii=False))


class MetricsCollector:
    """
    In-memory counters and latency histograms exposed in Prometheus text format.
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[tuple, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: Dict[str, Dict[tuple, list]] = defaultdict(lambda: defaultdict(list))

        # Phone round trips over mobile radios regularly take seconds
        self.latency_buckets = [50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000]

    def inc_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._counters[metric_name][label_tuple] += value

    def observe_histogram(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._histograms[metric_name][label_tuple].append(value)

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> int:
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            return self._counters.get(metric_name, {}).get(label_tuple, 0)

    @staticmethod
    def _format_labels(labels: Dict[str, str]) -> str:
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    def get_prometheus_text(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""
        lines = []

        with self._lock:
            for metric_name, label_data in sorted(self._counters.items()):
                lines.append(f"# TYPE {metric_name} counter")
                for label_tuple, count in sorted(label_data.items()):
                    if label_tuple:
                        lines.append(f"{metric_name}{{{self._format_labels(dict(label_tuple))}}} {count}")
                    else:
                        lines.append(f"{metric_name} {count}")

            for metric_name, label_data in sorted(self._histograms.items()):
                lines.append(f"# TYPE {metric_name} histogram")
                for label_tuple, observations in sorted(label_data.items()):
                    label_dict = dict(label_tuple)

                    for bucket in self.latency_buckets:
                        count = sum(1 for obs in observations if obs <= bucket)
                        bucket_labels = {**label_dict, "le": str(bucket)}
                        lines.append(f"{metric_name}_bucket{{{self._format_labels(bucket_labels)}}} {count}")

                    inf_labels = {**label_dict, "le": "+Inf"}
                    lines.append(f"{metric_name}_bucket{{{self._format_labels(inf_labels)}}} {len(observations)}")

                    suffix = f"{{{self._format_labels(label_dict)}}}" if label_dict else ""
                    lines.append(f"{metric_name}_count{suffix} {len(observations)}")
                    lines.append(f"{metric_name}_sum{suffix} {sum(observations)}")

        return "\n".join(lines) + "\n"


structured_logger = StructuredLogger()
metrics = MetricsCollector()
