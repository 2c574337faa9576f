"""Métricas Prometheus del conector."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

UPLINKS = Counter(
    "connector_uplinks_total",
    "Uplink messages handled",
    ["status"],  # sent, control, unknown_device, send_failed, invalid
)
DOWNLINKS = Counter(
    "connector_downlinks_total",
    "Cloud-to-device commands handled",
    ["status"],  # published, rejected, publish_failed, duplicate, unknown_tenant
)
DOWNLINK_OUTCOMES = Counter(
    "connector_downlink_outcomes_total",
    "Downlink status messages resolved",
    ["kind", "result"],  # kind: queued/ack/nack/failed; result: resolved, pending, unknown, lock_lost, error
)
PROVISIONING = Counter(
    "connector_provisioning_total",
    "Device provisioning attempts",
    ["result"],  # provisioned, failed, unreachable, duplicate, disabled
)
DISPATCH_TASKS = Counter(
    "connector_dispatch_tasks_total",
    "Routing tasks handled by the dispatcher",
    ["task", "result"],  # task: uplink, c2d, queued, ack, nack, failed, session_lost; result: processed, dropped, error
)
DISPATCH_WAIT = Histogram(
    "connector_dispatch_wait_seconds",
    "Time a routing task spent queued before a worker picked it up",
    ["task"],
    buckets=(0.001, 0.01, 0.1, 0.5, 1, 5, 15, 60),
)
DEVICE_SESSIONS = Gauge(
    "connector_device_sessions",
    "Open cloud device sessions",
)
PENDING_CORRELATIONS = Gauge(
    "connector_pending_correlations",
    "Downlinks awaiting a delivery status",
)


def start_metrics_server(port: int) -> None:
    start_http_server(port)
    logger.info("[METRICS] Prometheus exporter listening on :%d", port)
