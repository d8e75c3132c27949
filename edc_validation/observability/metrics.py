"""
Prometheus metrics collection for the clinical validation engine

This module provides metrics instrumentation for rule evaluation,
fail-open rule content problems and discrepancy query creation.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram

# Global registry for metrics
REGISTRY = CollectorRegistry()


# =======================
# RULE EVALUATION METRICS
# =======================

rules_evaluated_total = Counter(
    name="edc_rules_evaluated_total",
    documentation="Total number of rule evaluations",
    labelnames=["rule_type", "outcome"],  # outcome: passed, failed, skipped
    registry=REGISTRY,
)

rule_fail_open_total = Counter(
    name="edc_rule_fail_open_total",
    documentation="Rule evaluations that passed because the rule content could not be evaluated",
    labelnames=["rule_type", "reason"],  # reason: bad_regex, expression_error, budget_exceeded
    registry=REGISTRY,
)

validation_issues_total = Counter(
    name="edc_validation_issues_total",
    documentation="Validation issues reported to callers",
    labelnames=["severity", "mode"],  # mode: form, field
    registry=REGISTRY,
)

validation_duration_seconds = Histogram(
    name="edc_validation_duration_seconds",
    documentation="Time spent validating a submission",
    labelnames=["mode"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
    registry=REGISTRY,
)


# =======================
# QUERY PIPELINE METRICS
# =======================

queries_total = Counter(
    name="edc_queries_total",
    documentation="Discrepancy query creation attempts by outcome",
    labelnames=["category", "outcome"],  # outcome: created, reused, failed
    registry=REGISTRY,
)

query_write_duration_seconds = Histogram(
    name="edc_query_write_duration_seconds",
    documentation="Duration of one query-creation transaction",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
    registry=REGISTRY,
)

collaborator_degraded_total = Counter(
    name="edc_collaborator_degraded_total",
    documentation="Lookups that continued without an unavailable collaborator",
    labelnames=["collaborator"],
    registry=REGISTRY,
)


# =======================
# HELPERS
# =======================

def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """
    Increment a counter metric

    Args:
        counter: Prometheus Counter metric
        value: Amount to increment by
        **labels: Label values for the metric
    """
    if labels:
        counter.labels(**labels).inc(value)
    else:
        counter.inc(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    """
    Observe a value in a histogram metric

    Args:
        histogram: Prometheus Histogram metric
        value: Value to observe
        **labels: Label values for the metric
    """
    if labels:
        histogram.labels(**labels).observe(value)
    else:
        histogram.observe(value)


def record_rule_outcome(rule_type: str, outcome: str) -> None:
    """Record one rule evaluation."""
    increment_counter(rules_evaluated_total, 1, rule_type=rule_type, outcome=outcome)


def record_fail_open(rule_type: str, reason: str) -> None:
    """Record a rule that passed because its content could not be evaluated."""
    increment_counter(rule_fail_open_total, 1, rule_type=rule_type, reason=reason)


def record_query_outcome(category: str, outcome: str) -> None:
    """Record a query-creation attempt."""
    increment_counter(queries_total, 1, category=category, outcome=outcome)


def record_degraded(collaborator: str) -> None:
    """Record a lookup that continued without a collaborator."""
    increment_counter(collaborator_degraded_total, 1, collaborator=collaborator)
