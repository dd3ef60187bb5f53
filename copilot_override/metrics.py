from __future__ import annotations

from collections import Counter

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
UNMATCHED_ROUTE = "unmatched"


class RequestMetrics:
    """In-process request counters rendered on ``/metrics``.

    Request series are keyed by ``(method, route template, status)`` so path
    tokens never become label values. Latency is measured until the response
    headers are sent.
    """

    def __init__(self) -> None:
        self._requests: Counter[tuple[str, str, str]] = Counter()
        self._latency_sum_seconds: dict[tuple[str, str, str], float] = {}
        self._upstream_retries: Counter[str] = Counter()
        self._upstream_failures: Counter[str] = Counter()

    def record_request(
        self,
        *,
        method: str,
        route: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        key = (method.upper(), route or UNMATCHED_ROUTE, str(int(status)))
        self._requests[key] += 1
        self._latency_sum_seconds[key] = self._latency_sum_seconds.get(key, 0.0) + max(
            0.0, duration_seconds
        )

    def record_upstream_retry(self, route: str) -> None:
        self._upstream_retries[route] += 1

    def record_upstream_failure(self, route: str) -> None:
        self._upstream_failures[route] += 1

    @property
    def requests(self) -> dict[tuple[str, str, str], int]:
        return dict(self._requests)

    @property
    def latency_sum_seconds(self) -> dict[tuple[str, str, str], float]:
        return dict(self._latency_sum_seconds)

    @property
    def upstream_retries(self) -> dict[str, int]:
        return dict(self._upstream_retries)

    @property
    def upstream_failures(self) -> dict[str, int]:
        return dict(self._upstream_failures)


def _prometheus_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prometheus_labels(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    rendered = ",".join(
        f'{key}="{_prometheus_escape(str(value))}"'
        for key, value in sorted(labels.items())
    )
    return "{" + rendered + "}"


def _append_prometheus_metric(
    lines: list[str],
    declared: set[str],
    *,
    name: str,
    metric_type: str,
    help_text: str,
    value: float | int,
    labels: dict[str, str] | None = None,
) -> None:
    if name not in declared:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        declared.add(name)
    lines.append(f"{name}{_prometheus_labels(labels)} {float(value):.6f}")


def render_prometheus_metrics(
    metrics: RequestMetrics,
    *,
    rate_limiter_tokens: float | None = None,
) -> str:
    lines: list[str] = []
    declared: set[str] = set()

    latency_sums = metrics.latency_sum_seconds
    for (method, route, status), count in sorted(metrics.requests.items()):
        labels = {"method": method, "route": route, "status": status}
        _append_prometheus_metric(
            lines,
            declared,
            name="copilot_override_http_requests_total",
            metric_type="counter",
            help_text="Inbound HTTP requests by method, route and status.",
            value=count,
            labels=labels,
        )
    for (method, route, status), count in sorted(metrics.requests.items()):
        labels = {"method": method, "route": route, "status": status}
        _append_prometheus_metric(
            lines,
            declared,
            name="copilot_override_http_request_duration_seconds_sum",
            metric_type="counter",
            help_text="Total seconds until response headers, by method, route and status.",
            value=latency_sums.get((method, route, status), 0.0),
            labels=labels,
        )
    for (method, route, status), count in sorted(metrics.requests.items()):
        labels = {"method": method, "route": route, "status": status}
        _append_prometheus_metric(
            lines,
            declared,
            name="copilot_override_http_request_duration_seconds_count",
            metric_type="counter",
            help_text="Requests observed for the duration sum.",
            value=count,
            labels=labels,
        )

    for route, count in sorted(metrics.upstream_retries.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="copilot_override_upstream_retries_total",
            metric_type="counter",
            help_text="Upstream transport failures that were retried.",
            value=count,
            labels={"route": route},
        )
    for route, count in sorted(metrics.upstream_failures.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="copilot_override_upstream_failures_total",
            metric_type="counter",
            help_text="Upstream exchanges that failed after every retry.",
            value=count,
            labels={"route": route},
        )

    if rate_limiter_tokens is not None:
        _append_prometheus_metric(
            lines,
            declared,
            name="copilot_override_rate_limiter_available_tokens",
            metric_type="gauge",
            help_text="Permits currently available in the shared rate limiter.",
            value=rate_limiter_tokens,
        )

    return "\n".join(lines) + "\n"
