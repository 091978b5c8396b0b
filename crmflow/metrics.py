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

crm_stage_automation_total = Counter(
    "crm_stage_automation_total",
    "Deal stage automation runs by trigger and outcome",
    ["trigger", "outcome"],
)

crm_document_conversions_total = Counter(
    "crm_document_conversions_total",
    "Document conversions by kind and outcome",
    ["kind", "outcome"],
)

crm_side_effect_failures_total = Counter(
    "crm_side_effect_failures_total",
    "Best-effort side effects that failed",
    ["name"],
)


_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")
# Collections whose next path segment is an entity id.
_ID_COLLECTIONS = frozenset({"deals", "quotes", "orders", "invoices", "pipelines", "stages"})


def _collapse_ids(path: str) -> str:
    segments = path.split("/")
    for index in range(1, len(segments)):
        if segments[index - 1] in _ID_COLLECTIONS and segments[index]:
            segments[index] = "{id}"
    return "/".join(segments)


def resolve_http_path_label(request: Request) -> str:
    """Route template with every parameter named ``{id}``; raw paths have ids collapsed."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return _PATH_PARAM_RE.sub("{id}", template)
    return _collapse_ids(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_automation(trigger: str, outcome: str) -> None:
    crm_stage_automation_total.labels(trigger=trigger, outcome=outcome).inc()


def observe_document_conversion(kind: str, outcome: str) -> None:
    crm_document_conversions_total.labels(kind=kind, outcome=outcome).inc()


def observe_side_effect_failure(name: str) -> None:
    crm_side_effect_failures_total.labels(name=name).inc()


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
