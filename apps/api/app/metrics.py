from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

automation_dispatch_total = Counter(
    "automation_dispatch_total",
    "Total trigger dispatches by trigger and outcome",
    ["trigger", "outcome"],
)

automation_dispatch_duration_seconds = Histogram(
    "automation_dispatch_duration_seconds",
    "Trigger dispatch duration in seconds",
    ["trigger"],
)

automation_rule_matches_total = Counter(
    "automation_rule_matches_total",
    "Total rules whose conditions matched, by trigger",
    ["trigger"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Total executed automation actions by type and status",
    ["action_type", "status"],
)

automation_guardrail_blocks_total = Counter(
    "automation_guardrail_blocks_total",
    "Total automation guardrail blocks by reason",
    ["reason"],
)

automation_scheduler_ticks_total = Counter(
    "automation_scheduler_ticks_total",
    "Total scheduler ticks by status",
    ["status"],
)

history_write_failures_total = Counter(
    "history_write_failures_total",
    "Total failed history writes by change type",
    ["change_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_dispatch(trigger: str, outcome: str, duration: float) -> None:
    automation_dispatch_total.labels(trigger=trigger, outcome=outcome).inc()
    automation_dispatch_duration_seconds.labels(trigger=trigger).observe(duration)


def observe_rule_match(trigger: str) -> None:
    automation_rule_matches_total.labels(trigger=trigger).inc()


def observe_action(action_type: str, status: str) -> None:
    automation_actions_total.labels(action_type=action_type, status=status).inc()


def observe_guardrail_block(reason: str) -> None:
    automation_guardrail_blocks_total.labels(reason=reason).inc()


def observe_scheduler_tick(status: str) -> None:
    automation_scheduler_ticks_total.labels(status=status).inc()


def observe_history_write_failure(change_type: str) -> None:
    history_write_failures_total.labels(change_type=change_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
