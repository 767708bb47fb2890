"""Prometheus metrics for identity resolution.

Provides:
- identity_resolutions_total / identity_resolution_duration_seconds:
  one observation per coordinator invocation, labelled by terminal status
- directory_lookups_total: per-email outcomes per directory service
- rate_limit_waits_total: how often a caller blocked on a rate limiter
- get_metrics_text(): exposition format for the external exporter
"""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

# ── Resolution Metrics ───────────────────────────────────────────────────────

identity_resolutions_total = Counter(
    "identity_resolutions_total",
    "Total identity resolution requests by terminal status",
    ["status"],
)

identity_resolution_duration_seconds = Histogram(
    "identity_resolution_duration_seconds",
    "Identity resolution wall-clock duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# ── Directory Metrics ────────────────────────────────────────────────────────

directory_lookups_total = Counter(
    "directory_lookups_total",
    "Per-email directory lookups by service and outcome",
    ["service", "outcome"],
)

rate_limit_waits_total = Counter(
    "rate_limit_waits_total",
    "Times a caller blocked on a rate limiter or Retry-After backoff",
    ["service", "reason"],
)


# ── Exposition ───────────────────────────────────────────────────────────────


def get_metrics_text() -> bytes:
    """Generate Prometheus exposition format output."""
    return generate_latest(REGISTRY)
