from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

_metrics_enabled = True

TURNS_TOTAL = Counter(
    "chorus_turns_total",
    "Conversational turns processed by status",
    labelnames=("status",),
)

TURN_LATENCY_SECONDS = Histogram(
    "chorus_turn_latency_seconds",
    "End-to-end turn latency segmented by responder involvement",
    labelnames=("responder_count",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)

TURNS_ACTIVE_GAUGE = Gauge(
    "chorus_turns_active",
    "Turns currently in flight",
)

STRATEGY_SELECTIONS_TOTAL = Counter(
    "chorus_strategy_selections_total",
    "Strategy selections grouped by catalog and selection path",
    labelnames=("catalog", "strategy", "path"),
)

RESPONDER_INVOCATIONS_TOTAL = Counter(
    "chorus_responder_invocations_total",
    "Responder invocations grouped by outcome",
    labelnames=("responder", "outcome"),
)

RESPONDER_LATENCY_SECONDS = Histogram(
    "chorus_responder_latency_seconds",
    "Latency for each responder invocation including retries",
    labelnames=("responder",),
)

RESPONDER_RETRIES_TOTAL = Counter(
    "chorus_responder_retries_total",
    "Retry attempts scheduled by the retry policy",
    labelnames=("responder", "condition"),
)

PHASE_SKIPS_TOTAL = Counter(
    "chorus_phase_skips_total",
    "Phases skipped before execution grouped by reason",
    labelnames=("reason",),
)

ROUTING_EXECUTIONS_TOTAL = Counter(
    "chorus_routing_executions_total",
    "Routing rule executions grouped by outcome",
    labelnames=("rule", "outcome"),
)

AGGREGATION_QUALITY = Histogram(
    "chorus_aggregation_quality",
    "Overall quality score of aggregated results",
    labelnames=("strategy",),
    buckets=(0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

AGGREGATION_REPAIRS_TOTAL = Counter(
    "chorus_aggregation_repairs_total",
    "Quality repair passes grouped by whether they changed the response set",
    labelnames=("changed",),
)


def set_metrics_enabled(enabled: bool) -> None:
    global _metrics_enabled
    _metrics_enabled = enabled


def mark_turn_started() -> bool:
    """Count an active turn, returning whether it was counted."""
    if not _metrics_enabled:
        return False
    TURNS_ACTIVE_GAUGE.inc()
    return True


def mark_turn_completed(*, status: str, responder_count: int, latency: float, tracked: bool = True) -> None:
    if tracked:
        TURNS_ACTIVE_GAUGE.dec()
    if not _metrics_enabled:
        return
    TURNS_TOTAL.labels(status=status).inc()
    bucket = str(responder_count) if responder_count <= 5 else "5_plus"
    TURN_LATENCY_SECONDS.labels(responder_count=bucket).observe(max(0.0, latency))


def record_strategy_selection(*, catalog: str, strategy: str, path: str) -> None:
    if _metrics_enabled:
        STRATEGY_SELECTIONS_TOTAL.labels(catalog=catalog, strategy=strategy, path=path).inc()


def record_responder_invocation(*, responder: str, outcome: str, latency: float) -> None:
    if not _metrics_enabled:
        return
    RESPONDER_INVOCATIONS_TOTAL.labels(responder=responder, outcome=outcome).inc()
    RESPONDER_LATENCY_SECONDS.labels(responder=responder).observe(max(0.0, latency))


def increment_responder_retry(*, responder: str, condition: str) -> None:
    if _metrics_enabled:
        RESPONDER_RETRIES_TOTAL.labels(responder=responder, condition=condition).inc()


def increment_phase_skip(*, reason: str) -> None:
    if _metrics_enabled:
        PHASE_SKIPS_TOTAL.labels(reason=reason).inc()


def record_routing_execution(*, rule: str, success: bool) -> None:
    if _metrics_enabled:
        ROUTING_EXECUTIONS_TOTAL.labels(rule=rule, outcome="success" if success else "failure").inc()


def observe_aggregation_quality(*, strategy: str, score: float) -> None:
    if _metrics_enabled:
        AGGREGATION_QUALITY.labels(strategy=strategy).observe(max(0.0, min(1.0, score)))


def increment_aggregation_repair(*, changed: bool) -> None:
    if _metrics_enabled:
        AGGREGATION_REPAIRS_TOTAL.labels(changed=str(changed).lower()).inc()


__all__ = [
    "increment_aggregation_repair",
    "increment_phase_skip",
    "increment_responder_retry",
    "mark_turn_completed",
    "mark_turn_started",
    "observe_aggregation_quality",
    "record_responder_invocation",
    "record_routing_execution",
    "record_strategy_selection",
    "set_metrics_enabled",
]
