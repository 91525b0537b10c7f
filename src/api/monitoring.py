"""
Monitoring and metrics API endpoints.

This blueprint provides:
- /metrics: Prometheus-compatible metrics endpoint
- /metrics/json: JSON format metrics
- /health: Basic health check
- /health/live: Kubernetes liveness probe
- /health/ready: Kubernetes readiness probe
"""

import logging
import os
import time
from importlib.metadata import PackageNotFoundError, version

from flask import Blueprint, Response, jsonify

from api.utils import services
from monitoring import metrics
from retry import get_circuit_states
from settlement_errors import SettlementError
from storage.base import StorageError

logger = logging.getLogger(__name__)

# Create the blueprint
monitoring_bp = Blueprint("monitoring", __name__)

# Track startup time
_startup_time = time.time()


@monitoring_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    """Prometheus text exposition of all settlement metrics."""
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype="text/plain; charset=utf-8")


@monitoring_bp.route("/metrics/json", methods=["GET"])
def json_metrics():
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


@monitoring_bp.route("/health", methods=["GET"])
def health():
    """
    Service status with storage and chain checks.

    Degraded dependencies are reported, not failed; use /health/ready
    for a gate.
    """
    checks = {
        "storage": _check_storage(),
        "chain": _check_chain(),
        "treasury": {
            "configured": bool(services.settings and services.settings.treasury_wallet),
        },
    }
    status = "healthy" if all(c.get("status", "ok") == "ok" for c in checks.values()) else "degraded"

    return jsonify(
        {
            "status": status,
            "service": "RiftSettle",
            "version": _get_version(),
            "uptime_seconds": time.time() - _startup_time,
            "checks": checks,
            "circuit_breakers": get_circuit_states(),
            "environment": {
                "storage_backend": os.getenv("STORAGE_BACKEND", "json"),
                "chain_backend": services.settings.chain_backend if services.settings else None,
            },
        }
    )


@monitoring_bp.route("/health/live", methods=["GET"])
def liveness():
    """Returns 200 while the process is running."""
    return jsonify({"status": "alive"})


@monitoring_bp.route("/health/ready", methods=["GET"])
def readiness():
    """Returns 200 once services are wired and storage answers."""
    issues = []

    if not services.is_ready():
        issues.append("services: not initialized")
    else:
        storage = _check_storage()
        if storage["status"] != "ok":
            issues.append(f"storage: {storage.get('error', 'not available')}")

    if issues:
        return jsonify({"status": "not_ready", "issues": issues}), 503

    return jsonify({"status": "ready"})


def _get_version() -> str:
    try:
        return version("riftsettle")
    except PackageNotFoundError:
        return "0.1.0"


def _check_storage() -> dict:
    if services.store is None:
        return {"status": "error", "available": False, "error": "not initialized"}
    try:
        available = services.store.is_available()
    except StorageError as e:
        return {"status": "error", "available": False, "error": str(e)}
    return {
        "status": "ok" if available else "degraded",
        "available": available,
        "backend": services.store.__class__.__name__,
    }


def _check_chain() -> dict:
    if services.chain is None:
        return {"status": "error", "error": "not initialized"}
    try:
        result = services.chain.health_check()
    except SettlementError as e:
        return {"status": "degraded", "error": e.message}
    return {**result, "status": "ok" if result.get("status") == "ok" else "degraded"}


def _update_dynamic_metrics():
    """Refresh gauges before export."""
    if services.audit_log is not None:
        services.audit_log.queue_depth()
    if services.store is not None:
        try:
            metrics.set_gauge("storage_available", 1 if services.store.is_available() else 0)
        except StorageError:
            metrics.set_gauge("storage_available", 0)
