"""
Service Health Check.

Checks a running personalization service and can be executed via
`python -m automation.health_check`.
"""

import os
import sys
import json
import argparse
import logging
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List

import requests

from recsys.personalization.logging_utils import setup_service_logger


# =============================================================================
# Configuration
# =============================================================================

PROJECT_ROOT = Path(__file__).parent.parent

HEALTH_CONFIG = {
    "service_url": os.environ.get("SERVICE_URL", "http://localhost:8000"),
    "log_dir": str(PROJECT_ROOT / "logs" / "automation"),
    # Thresholds
    "max_model_age_days": 7,
    "max_error_rate": 0.05,
    "max_p95_latency_ms": 500.0,
    "service_timeout": 10,
}

STATUS_PRIORITY = {"critical": 3, "warning": 2, "degraded": 1, "healthy": 0}


def _get(path: str, session: Optional[requests.Session] = None, **params: Any) -> Dict[str, Any]:
    http = session or requests
    response = http.get(
        f"{HEALTH_CONFIG['service_url']}{path}",
        params=params or None,
        timeout=HEALTH_CONFIG["service_timeout"],
    )
    response.raise_for_status()
    return response.json()


# =============================================================================
# Health Check Functions
# =============================================================================

def check_service_health(logger: logging.Logger, session: Optional[requests.Session] = None) -> Dict[str, Any]:
    """
    Check reachability and model state via GET /health.

    Returns:
        Health check result
    """
    result: Dict[str, Any] = {
        "component": "service",
        "status": "unknown",
        "checks": [],
    }

    try:
        health_data = _get("/health", session)
    except requests.exceptions.ConnectionError:
        result["status"] = "critical"
        result["checks"].append({"name": "api_reachable", "passed": False, "message": "Service is not running"})
        return result
    except requests.exceptions.Timeout:
        result["status"] = "degraded"
        result["checks"].append({"name": "api_reachable", "passed": False, "message": "Service timeout"})
        return result
    except requests.exceptions.RequestException as e:
        result["status"] = "critical"
        result["checks"].append({"name": "api_reachable", "passed": False, "message": f"Error: {e}"})
        return result

    result["status"] = "healthy"
    result["service_info"] = health_data
    result["checks"].append({"name": "api_reachable", "passed": True, "message": "Service is reachable"})

    if health_data.get("status") == "healthy":
        result["checks"].append({
            "name": "model_trained",
            "passed": True,
            "message": f"Model v{health_data.get('model_version')} serves {health_data.get('num_items', 0)} items",
        })
    else:
        result["status"] = "degraded"
        result["checks"].append({"name": "model_trained", "passed": False, "message": "No trained model published"})

    last_trained = health_data.get("last_trained_at")
    if last_trained:
        trained_at = datetime.fromisoformat(last_trained)
        if trained_at.tzinfo is None:
            trained_at = trained_at.replace(tzinfo=timezone.utc)
        age = datetime.now(timezone.utc) - trained_at
        fresh = age <= timedelta(days=HEALTH_CONFIG["max_model_age_days"])
        result["checks"].append({
            "name": "model_freshness",
            "passed": fresh,
            "message": f"Last trained {age.days} days ago",
        })
        if not fresh:
            result["status"] = "warning"

    return result


def check_serving_health(logger: logging.Logger, session: Optional[requests.Session] = None) -> Dict[str, Any]:
    """Check error rate and latency of the last hour via GET /metrics."""
    result: Dict[str, Any] = {"component": "serving", "status": "healthy", "checks": []}

    try:
        metrics = _get("/metrics", session, time_range="1h")
    except requests.exceptions.RequestException as e:
        return {"component": "serving", "status": "critical",
                "checks": [{"name": "metrics_reachable", "passed": False, "message": f"Error: {e}"}]}

    requests_stats = metrics.get("requests", {})
    if not requests_stats.get("total"):
        result["checks"].append({"name": "traffic", "passed": True, "message": "No requests in the last hour"})
        return result

    error_rate = requests_stats.get("error_rate", 0.0)
    ok = error_rate <= HEALTH_CONFIG["max_error_rate"]
    result["checks"].append({"name": "error_rate", "passed": ok, "message": f"Error rate {error_rate:.2%}"})
    if not ok:
        result["status"] = "warning"

    p95 = requests_stats.get("p95_latency_ms", 0.0)
    ok = p95 <= HEALTH_CONFIG["max_p95_latency_ms"]
    result["checks"].append({"name": "latency_p95", "passed": ok, "message": f"p95 latency {p95:.1f}ms"})
    if not ok and result["status"] == "healthy":
        result["status"] = "degraded"

    return result


def run_health_check(
    components: Optional[List[str]] = None,
    logger: Optional[logging.Logger] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """
    Run health checks.

    Args:
        components: Components to check (None = all)
        logger: Logger instance

    Returns:
        Health check results with the worst component status as overall status
    """
    logger = logger or logging.getLogger(__name__)
    components = components or ["service", "serving"]

    result: Dict[str, Any] = {
        "timestamp": datetime.now().isoformat(),
        "overall_status": "healthy",
        "components": {},
    }

    check_functions = {
        "service": check_service_health,
        "serving": check_serving_health,
    }

    max_severity = 0
    for component in components:
        if component not in check_functions:
            continue
        logger.info("Checking %s...", component)
        check_result = check_functions[component](logger, session)
        result["components"][component] = check_result

        severity = STATUS_PRIORITY.get(check_result["status"], 3)
        if severity > max_severity:
            max_severity = severity
            result["overall_status"] = check_result["status"]

        for check in check_result.get("checks", []):
            status = "✓" if check.get("passed") else "✗"
            logger.info("  %s %s: %s", status, check["name"], check["message"])

    return result


# =============================================================================
# CLI
# =============================================================================

def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run health checks against the personalization service",
    )
    parser.add_argument(
        "--component",
        "-c",
        choices=["all", "service", "serving"],
        default="all",
        help="Which component to check",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON",
    )

    args = parser.parse_args()

    components = None if args.component == "all" else [args.component]
    logger = setup_service_logger("health_check", log_dir=HEALTH_CONFIG["log_dir"], console=not args.json)

    result = run_health_check(components=components, logger=logger)

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(f"\n{'=' * 60}")
        print(f"Health Check: {result['overall_status'].upper()}")
        print(f"{'=' * 60}")

        for component, data in result["components"].items():
            print(f"\n{component.upper()}: {data.get('status', 'unknown')}")
            for check in data.get("checks", []):
                icon = "  ✓" if check.get("passed") else "  ✗"
                print(f"{icon} {check['name']}: {check['message']}")

    exit_codes = {
        "healthy": 0,
        "warning": 1,
        "degraded": 1,
        "critical": 2,
    }
    sys.exit(exit_codes.get(result["overall_status"], 1))


if __name__ == "__main__":  # pragma: no cover - CLI guard
    main()
