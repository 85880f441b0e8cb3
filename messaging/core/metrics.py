"""
In-process counters exposed in Prometheus text format.
"""
import time
from typing import Dict, List, Optional, Tuple

LabelSet = Tuple[Tuple[str, str], ...]

# Keep only the most recent durations per route
MAX_DURATIONS = 1000

_counters: Dict[str, Dict[LabelSet, float]] = {}
_durations: Dict[LabelSet, List[float]] = {}
_startup_time: Optional[float] = None

HELP = {
    "http_requests_total": "Total number of HTTP requests",
    "messages_created_total": "Messages persisted, by message type",
    "recipients_fanned_out_total": "Delivery records created",
    "messages_marked_read_total": "Delivery records transitioned to read",
    "messages_deleted_total": "Delete actions, by outcome",
}


def _labels(labels: Dict[str, str]) -> LabelSet:
    return tuple(sorted((key, str(value)) for key, value in labels.items()))


def increment(name: str, value: float = 1, **labels: str) -> None:
    """Add ``value`` to counter ``name`` for the given label set."""
    series = _counters.setdefault(name, {})
    key = _labels(labels)
    series[key] = series.get(key, 0) + value


def counter_value(name: str, **labels: str) -> float:
    return _counters.get(name, {}).get(_labels(labels), 0)


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an HTTP request metric."""
    increment("http_requests_total", method=method, path=path, status=str(status_code))

    durations = _durations.setdefault(_labels({"method": method, "path": path}), [])
    durations.append(duration)
    if len(durations) > MAX_DURATIONS:
        del durations[:-MAX_DURATIONS]


def set_startup_time() -> None:
    """Record application startup time."""
    global _startup_time
    _startup_time = time.time()


def _format_labels(labels: LabelSet) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f'{key}="{value}"' for key, value in labels) + "}"


def generate_prometheus_metrics(version: str) -> str:
    """Generate Prometheus-format metrics output."""
    lines = [
        "# HELP app_info Application information",
        "# TYPE app_info gauge",
        f'app_info{{version="{version}"}} 1',
        "",
    ]

    if _startup_time:
        lines.append("# HELP app_start_time_seconds Unix timestamp when the app started")
        lines.append("# TYPE app_start_time_seconds gauge")
        lines.append(f"app_start_time_seconds {_startup_time:.3f}")
        lines.append("")

    for name, series in sorted(_counters.items()):
        lines.append(f"# HELP {name} {HELP.get(name, name)}")
        lines.append(f"# TYPE {name} counter")
        for labels, value in series.items():
            lines.append(f"{name}{_format_labels(labels)} {value:g}")
        lines.append("")

    lines.append("# HELP http_request_duration_seconds HTTP request duration in seconds")
    lines.append("# TYPE http_request_duration_seconds summary")
    for labels, durations in _durations.items():
        if durations:
            label_text = _format_labels(labels)
            lines.append(f"http_request_duration_seconds_sum{label_text} {sum(durations):.6f}")
            lines.append(f"http_request_duration_seconds_count{label_text} {len(durations)}")

    return "\n".join(lines)


def reset() -> None:
    """Clear all series (used between tests)."""
    _counters.clear()
    _durations.clear()
