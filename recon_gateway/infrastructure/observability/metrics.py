"""Prometheus metrics for monitoring match rates, tier usage, and reasoning performance"""

from typing import Iterable
from prometheus_client import Counter, Histogram

# Run metrics
reconcile_run_counter = Counter(
    "recon_runs_total",
    "Total reconciliation runs",
    ["outcome"],  # completed | stopped_early | error
)

match_counter = Counter(
    "recon_matches_total",
    "Resolved transactions by tier and classification",
    ["tier", "classification"],  # tier: none | low | high
)

auto_confirm_counter = Counter(
    "recon_auto_confirmed_total",
    "Matches committed without human review",
    ["tier"],
)

run_duration_histogram = Histogram(
    "recon_run_duration_seconds",
    "Wall-clock time per reconciliation run",
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 240.0, 300.0],
)

# Reasoning API metrics
reasoning_latency_histogram = Histogram(
    "reasoning_latency_seconds",
    "Reasoning API response time",
    ["effort"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

reasoning_failure_counter = Counter(
    "reasoning_failures_total",
    "Failed reasoning API calls",
)

# Pattern memory
learning_failure_counter = Counter(
    "pattern_learning_failures_total",
    "Pattern updates that failed and were skipped",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_run(matches: Iterable, stopped_early: bool, duration_seconds: float) -> None:
    """Record run metrics for monitoring match rates and tier distribution"""
    outcome = "stopped_early" if stopped_early else "completed"
    reconcile_run_counter.labels(outcome=outcome).inc()
    run_duration_histogram.observe(duration_seconds)

    for match in matches:
        match_counter.labels(tier=match.thinking_level, classification=match.classification).inc()
        if match.auto_confirmed:
            auto_confirm_counter.labels(tier=match.thinking_level).inc()
