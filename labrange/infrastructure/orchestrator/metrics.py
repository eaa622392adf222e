"""
Prometheus metrics for the orchestrator.
"""

from prometheus_client import Counter, Gauge, Histogram

sessions_started = Counter(
    "labrange_sessions_started_total",
    "Sessions accepted by start_session",
)

sessions_ended = Counter(
    "labrange_sessions_ended_total",
    "Sessions that reached a terminal status",
    ["status", "reason"],
)

sessions_active = Gauge(
    "labrange_sessions_active",
    "Sessions currently starting or running",
)

provisioning_seconds = Histogram(
    "labrange_provisioning_seconds",
    "Time from start_session to running",
    buckets=(5, 10, 20, 30, 60, 90, 120, 180, 300),
)

flag_injections = Counter(
    "labrange_flag_injections_total",
    "Flag delivery outcomes",
    ["status"],
)

flag_submissions = Counter(
    "labrange_flag_submissions_total",
    "Flag submissions by flag and outcome",
    ["flag", "outcome"],
)

ports_allocated = Gauge(
    "labrange_nat_ports_allocated",
    "Host ports currently forwarded to session VMs",
)
