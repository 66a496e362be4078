"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_rate_limit_block_total: Dict[str, int] = defaultdict(int)
_battle_transitions_total: Dict[Tuple[str, str], int] = defaultdict(int)
_votes_recorded_total: int = 0
_vote_rejected_total: Dict[str, int] = defaultdict(int)
_moderation_decisions_total: Dict[Tuple[str, str], int] = defaultdict(int)
_monitoring_alerts_total: Dict[Tuple[str, str], int] = defaultdict(int)
_privileged_failures_total: Dict[Tuple[str, str], int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_rate_limit_block(*, procedure: str) -> None:
    with _lock:
        _rate_limit_block_total[_normalize_label(procedure)] += 1


def record_battle_transition(*, from_status: str, to_status: str) -> None:
    with _lock:
        _battle_transitions_total[(_normalize_label(from_status, fallback="none"), _normalize_label(to_status))] += 1


def record_vote_recorded(count: int = 1) -> None:
    global _votes_recorded_total
    if count <= 0:
        return
    with _lock:
        _votes_recorded_total += int(count)


def record_vote_rejected(*, code: str) -> None:
    with _lock:
        _vote_rejected_total[_normalize_label(code)] += 1


def record_moderation_decision(*, classification: str, status: str) -> None:
    with _lock:
        _moderation_decisions_total[(_normalize_label(classification), _normalize_label(status))] += 1


def record_monitoring_alert(*, event_type: str, severity: str) -> None:
    with _lock:
        _monitoring_alerts_total[(_normalize_label(event_type), _normalize_label(severity))] += 1


def record_privileged_failure(*, procedure: str, code: str) -> None:
    with _lock:
        _privileged_failures_total[(_normalize_label(procedure), _normalize_label(code))] += 1


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        rate_limit_total = dict(_rate_limit_block_total)
        transitions_total = dict(_battle_transitions_total)
        votes_recorded_total = _votes_recorded_total
        vote_rejected_total = dict(_vote_rejected_total)
        moderation_total = dict(_moderation_decisions_total)
        alerts_total = dict(_monitoring_alerts_total)
        privileged_failures_total = dict(_privileged_failures_total)

    lines = [
        "# HELP arena_build_info Build metadata.",
        "# TYPE arena_build_info gauge",
        (
            f'arena_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP arena_process_uptime_seconds Process uptime in seconds.",
        "# TYPE arena_process_uptime_seconds gauge",
        f"arena_process_uptime_seconds {uptime:.6f}",
        "# HELP arena_http_requests_total Total HTTP requests.",
        "# TYPE arena_http_requests_total counter",
    ]

    for (method, path, status), value in sorted(http_total.items()):
        lines.append(
            (
                f'arena_http_requests_total{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}",status="{_escape_label(status)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP arena_http_request_duration_seconds Request duration summary.",
            "# TYPE arena_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'arena_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'arena_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP arena_rate_limit_block_total Privileged calls denied by rate limiting.",
            "# TYPE arena_rate_limit_block_total counter",
        ]
    )
    for procedure, value in sorted(rate_limit_total.items()):
        lines.append(f'arena_rate_limit_block_total{{procedure="{_escape_label(procedure)}"}} {value}')

    lines.extend(
        [
            "# HELP arena_battle_transitions_total Battle status transitions.",
            "# TYPE arena_battle_transitions_total counter",
        ]
    )
    for (from_status, to_status), value in sorted(transitions_total.items()):
        lines.append(
            (
                f'arena_battle_transitions_total{{from_status="{_escape_label(from_status)}",'
                f'to_status="{_escape_label(to_status)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP arena_votes_recorded_total Total recorded votes.",
            "# TYPE arena_votes_recorded_total counter",
            f"arena_votes_recorded_total {votes_recorded_total}",
            "# HELP arena_vote_rejected_total Rejected vote attempts by error code.",
            "# TYPE arena_vote_rejected_total counter",
        ]
    )
    for code, value in sorted(vote_rejected_total.items()):
        lines.append(f'arena_vote_rejected_total{{code="{_escape_label(code)}"}} {value}')

    lines.extend(
        [
            "# HELP arena_moderation_decisions_total Comment moderation decisions.",
            "# TYPE arena_moderation_decisions_total counter",
        ]
    )
    for (classification, status), value in sorted(moderation_total.items()):
        lines.append(
            (
                f'arena_moderation_decisions_total{{classification="{_escape_label(classification)}",'
                f'status="{_escape_label(status)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP arena_monitoring_alerts_total Monitoring alerts raised.",
            "# TYPE arena_monitoring_alerts_total counter",
        ]
    )
    for (event_type, severity), value in sorted(alerts_total.items()):
        lines.append(
            (
                f'arena_monitoring_alerts_total{{event_type="{_escape_label(event_type)}",'
                f'severity="{_escape_label(severity)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP arena_privileged_failures_total Failed privileged operations by code.",
            "# TYPE arena_privileged_failures_total counter",
        ]
    )
    for (procedure, code), value in sorted(privileged_failures_total.items()):
        lines.append(
            (
                f'arena_privileged_failures_total{{procedure="{_escape_label(procedure)}",'
                f'code="{_escape_label(code)}"}} {value}'
            )
        )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at, _votes_recorded_total
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _rate_limit_block_total.clear()
        _battle_transitions_total.clear()
        _votes_recorded_total = 0
        _vote_rejected_total.clear()
        _moderation_decisions_total.clear()
        _monitoring_alerts_total.clear()
        _privileged_failures_total.clear()
    _started_at = time.time()
