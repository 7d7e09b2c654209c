"""
Model Training Trigger.

Starts a training job on a running personalization service and follows it
to completion. Executed via `python -m automation.model_training`.

Key Features:
- Full, incremental and clustering-only retraining
- Asynchronous job with status polling, or synchronous training
- Exit code reflects the final job status (0 completed, 1 failed, 2 unreachable)
"""

import os
import sys
import time
import argparse
import logging
from pathlib import Path
from typing import Dict, Any, Optional

import requests

from recsys.personalization.logging_utils import setup_service_logger


# =============================================================================
# Configuration
# =============================================================================

PROJECT_ROOT = Path(__file__).parent.parent

TRAINING_CONFIG = {
    "service_url": os.environ.get("SERVICE_URL", "http://localhost:8000"),
    "log_dir": str(PROJECT_ROOT / "logs" / "automation"),
    "request_timeout": 30,
    "poll_interval": 5.0,
    # Give up following a job after this many seconds
    "max_wait_seconds": 3600,
}

TERMINAL_STATUSES = ("completed", "failed")


class ServiceUnavailableError(Exception):
    """The service could not be reached or answered with a server error."""


# =============================================================================
# Service Calls
# =============================================================================

def start_training(
    service_url: str,
    mode: str = "incremental",
    batch_size: Optional[int] = None,
    k: Optional[int] = None,
    clear_cache: bool = False,
    run_async: bool = True,
    timeout_seconds: Optional[float] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """
    Submit a training job.

    Returns:
        Job dict as returned by the service (``job_id``, ``status``, ``job``)

    Raises:
        ServiceUnavailableError: connection failure or 5xx answer
        ValueError: the service rejected the request (4xx)
    """
    http = session or requests
    if mode == "clustering":
        url = f"{service_url}/clustering/retrain"
        payload: Dict[str, Any] = {"k": k, "async": run_async}
    else:
        url = f"{service_url}/train"
        payload = {
            "mode": mode,
            "batch_size": batch_size,
            "k": k,
            "async": run_async,
            "clear_cache": clear_cache,
            "notify": True,
            "timeout_seconds": timeout_seconds,
        }
    payload = {key: value for key, value in payload.items() if value is not None}

    try:
        response = http.post(url, json=payload, timeout=TRAINING_CONFIG["request_timeout"])
    except requests.exceptions.RequestException as e:
        raise ServiceUnavailableError(f"Cannot reach {url}: {e}") from e

    if response.status_code >= 500:
        raise ServiceUnavailableError(f"{url} answered {response.status_code}")
    if response.status_code >= 400:
        body = response.json()
        raise ValueError(f"Training rejected ({body.get('error_code')}): {body.get('error')}")
    return response.json()


def get_job_status(
    service_url: str,
    job_id: str,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    http = session or requests
    url = f"{service_url}/train/{job_id}"
    try:
        response = http.get(url, timeout=TRAINING_CONFIG["request_timeout"])
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise ServiceUnavailableError(f"Cannot read job {job_id}: {e}") from e
    return response.json()


def wait_for_job(
    service_url: str,
    job_id: str,
    poll_interval: float,
    max_wait_seconds: float,
    logger: logging.Logger,
    session: Optional[requests.Session] = None,
    sleep=time.sleep,
) -> Dict[str, Any]:
    """Poll a job until it reaches a terminal status or ``max_wait_seconds`` pass."""
    deadline = time.monotonic() + max_wait_seconds
    last_status = None
    while True:
        job = get_job_status(service_url, job_id, session=session)
        if job["status"] != last_status:
            logger.info(f"Job {job_id}: {job['status']}")
            last_status = job["status"]
        if job["status"] in TERMINAL_STATUSES:
            return job
        if time.monotonic() >= deadline:
            logger.warning(f"Stopped following job {job_id} after {max_wait_seconds}s")
            return job
        sleep(poll_interval)


# =============================================================================
# Pipeline
# =============================================================================

def run_training(
    mode: str = "incremental",
    batch_size: Optional[int] = None,
    k: Optional[int] = None,
    clear_cache: bool = False,
    sync: bool = False,
    service_url: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    poll_interval: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """
    Trigger training and wait for the outcome.

    Returns:
        {'status': 'completed' | 'failed' | 'rejected' | 'unreachable' | <in-progress status>,
         'job_id', 'job', 'error'}
    """
    logger = logger or logging.getLogger(__name__)
    service_url = service_url or TRAINING_CONFIG["service_url"]
    poll_interval = TRAINING_CONFIG["poll_interval"] if poll_interval is None else poll_interval

    logger.info("=" * 60)
    logger.info(f"MODEL TRAINING: mode={mode}, service={service_url}")
    logger.info("=" * 60)

    result: Dict[str, Any] = {"mode": mode, "status": "unknown", "job_id": None, "job": None, "error": None}
    try:
        submitted = start_training(
            service_url, mode=mode, batch_size=batch_size, k=k,
            clear_cache=clear_cache, run_async=not sync,
            timeout_seconds=timeout_seconds, session=session,
        )
        result["job_id"] = submitted["job_id"]
        logger.info(f"Submitted job {submitted['job_id']} ({submitted['status']})")

        job = submitted["job"]
        if job["status"] not in TERMINAL_STATUSES:
            job = wait_for_job(
                service_url, submitted["job_id"], poll_interval,
                TRAINING_CONFIG["max_wait_seconds"], logger, session=session,
            )
        result["job"] = job
        result["status"] = job["status"]
        if job.get("error"):
            result["error"] = job["error"].get("error")
    except ServiceUnavailableError as e:
        logger.error(str(e))
        result["status"] = "unreachable"
        result["error"] = str(e)
    except ValueError as e:
        logger.error(str(e))
        result["status"] = "rejected"
        result["error"] = str(e)

    if result["status"] == "completed":
        logger.info(f"✓ Training completed: model v{result['job'].get('model_version')}")
    else:
        logger.error(f"✗ Training did not complete: {result['status']} {result['error'] or ''}")
    return result


# =============================================================================
# CLI
# =============================================================================

def main() -> None:
    """CLI entry point for model training."""
    parser = argparse.ArgumentParser(
        description="Trigger and follow a training job on the personalization service",
    )
    parser.add_argument(
        "--mode",
        "-m",
        choices=["full", "incremental", "clustering"],
        default="incremental",
        help="Training mode",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="Vectorization batch size")
    parser.add_argument("--k", type=int, default=None, help="Number of clusters")
    parser.add_argument("--clear-cache", action="store_true", help="Clear caches after publishing")
    parser.add_argument("--sync", action="store_true", help="Train synchronously inside the request")
    parser.add_argument("--url", default=None, help="Service base URL (default $SERVICE_URL)")
    parser.add_argument("--timeout", type=float, default=None, help="Job timeout in seconds")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between status polls")
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    logger = setup_service_logger("model_training", log_dir=TRAINING_CONFIG["log_dir"])
    if args.verbose:
        for handler in logger.handlers:
            handler.setLevel(logging.DEBUG)

    result = run_training(
        mode=args.mode,
        batch_size=args.batch_size,
        k=args.k,
        clear_cache=args.clear_cache,
        sync=args.sync,
        service_url=args.url,
        timeout_seconds=args.timeout,
        poll_interval=args.poll_interval,
        logger=logger,
    )

    print(f"\n{'=' * 60}")
    print(f"Training Result: {result['status'].upper()}")
    print(f"{'=' * 60}")
    job = result.get("job") or {}
    if job:
        print(f"  Job: {job.get('job_id')}  mode={job.get('mode')}")
        print(f"  Model version: {job.get('model_version')}")
        for name, value in (job.get("quality_metrics") or {}).items():
            print(f"  {name}: {value}")
    if result.get("error"):
        print(f"  Error: {result['error']}")

    exit_codes = {"completed": 0, "unreachable": 2}
    sys.exit(exit_codes.get(result["status"], 1))


if __name__ == "__main__":  # pragma: no cover - CLI guard
    main()
