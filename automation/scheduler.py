"""
Personalization Automation Scheduler.

Runs the automation tasks on cron schedules. Every task is a module within
the automation package, started as `python -m automation.<task>`.

Usage:
    python -m automation.scheduler
"""

import os
import sys
import json
import logging
import subprocess
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, Optional, Callable

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
import pytz
import requests

from automation import health_check
from recsys.personalization.logging_utils import setup_service_logger

# =============================================================================
# Configuration
# =============================================================================

PROJECT_DIR = Path(os.environ.get("PROJECT_DIR", Path(__file__).parent.parent))
LOG_DIR = PROJECT_DIR / "logs" / "scheduler"
SERVICE_URL = os.environ.get("SERVICE_URL", "http://localhost:8000")
TIMEZONE = pytz.timezone(os.environ.get("TZ", "UTC"))
TASK_TIMEOUT_SECONDS = 3600

SCHEDULER_CONFIG = {
    "incremental_training": {
        "enabled": True,
        "description": "Daily incremental training (new and changed content)",
        "schedule": {"hour": 2, "minute": 0},  # 2:00 AM daily
        "module": "automation.model_training",
        "args": ["--mode", "incremental"],
        "requires_service": True,
    },
    "full_training": {
        "enabled": True,
        "description": "Weekly full retraining with cache clear",
        "schedule": {"day_of_week": "sun", "hour": 3, "minute": 0},  # Sunday 3:00 AM
        "module": "automation.model_training",
        "args": ["--mode", "full", "--clear-cache"],
        "requires_service": True,
    },
    "clustering_refresh": {
        "enabled": False,
        "description": "Mid-week clustering refresh",
        "schedule": {"day_of_week": "wed", "hour": 3, "minute": 30},
        "module": "automation.model_training",
        "args": ["--mode", "clustering"],
        "requires_service": True,
    },
    "health_check": {
        "enabled": True,
        "description": "Hourly health check",
        "schedule": {"minute": 0},  # Every hour at :00
        "module": "automation.health_check",
        "args": [],
    },
}

logger = logging.getLogger(__name__)


# =============================================================================
# Task Status Tracking
# =============================================================================

def update_task_status(
    task_name: str,
    status: str,
    exit_code: Optional[int] = None,
    log_file: Optional[str] = None,
    error: Optional[str] = None,
    log_dir: Path = LOG_DIR,
) -> None:
    """Record the last run of a task in task_status.json."""
    log_dir.mkdir(parents=True, exist_ok=True)
    status_file = log_dir / "task_status.json"

    if status_file.exists():
        with open(status_file, "r", encoding="utf-8") as f:
            all_status = json.load(f)
    else:
        all_status = {}

    all_status[task_name] = {
        "status": status,
        "timestamp": datetime.now().isoformat(),
        "exit_code": exit_code,
        "log_file": log_file,
        "error": error,
    }

    with open(status_file, "w", encoding="utf-8") as f:
        json.dump(all_status, f, indent=2, ensure_ascii=False)


# =============================================================================
# Task Execution
# =============================================================================

def build_command(config: Dict[str, Any]) -> list:
    return [sys.executable, "-m", config["module"]] + list(config.get("args", []))


def run_task(task_name: str, config: Dict[str, Any], log_dir: Path = LOG_DIR) -> Dict[str, Any]:
    """
    Execute a scheduled task in a subprocess.

    Args:
        task_name: Name of the task
        config: Task configuration

    Returns:
        Task result dict
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{task_name}_{timestamp}.log"

    logger.info("=" * 60)
    logger.info(f"TASK: {config['description']}")
    logger.info("=" * 60)

    result: Dict[str, Any] = {
        "task": task_name,
        "status": "running",
        "timestamp": datetime.now().isoformat(),
    }

    try:
        with open(log_file, "w", encoding="utf-8") as f:
            process = subprocess.run(
                build_command(config),
                cwd=str(PROJECT_DIR),
                stdout=f,
                stderr=subprocess.STDOUT,
                timeout=TASK_TIMEOUT_SECONDS,
                env={**os.environ, "PYTHONPATH": str(PROJECT_DIR), "SERVICE_URL": SERVICE_URL},
            )

        result["exit_code"] = process.returncode
        result["log_file"] = str(log_file)

        if process.returncode == 0:
            result["status"] = "success"
            logger.info(f"✓ Task completed: {task_name}")
        else:
            result["status"] = "failed"
            logger.error(f"✗ Task failed: {task_name} (exit code: {process.returncode})")

    except subprocess.TimeoutExpired:
        result["status"] = "timeout"
        result["error"] = f"Task timed out after {TASK_TIMEOUT_SECONDS}s"
        logger.error(f"✗ Task timed out: {task_name}")

    except OSError as e:
        result["status"] = "error"
        result["error"] = str(e)
        logger.error(f"✗ Task error: {task_name} - {e}")

    update_task_status(
        task_name,
        result["status"],
        result.get("exit_code"),
        result.get("log_file"),
        result.get("error"),
        log_dir=log_dir,
    )

    return result


def preflight(
    task_name: str,
    config: Dict[str, Any],
    session: Optional[requests.Session] = None,
) -> Optional[Dict[str, Any]]:
    """
    Check the service before a training task.

    Returns the config to run (incremental runs become full runs while no
    model is published), or None when the service is unreachable.
    """
    if not config.get("requires_service"):
        return config

    health = health_check.check_service_health(logger, session)
    if health["status"] == "critical":
        logger.warning(f"Skipping {task_name}: service unreachable")
        return None

    args = list(config.get("args", []))
    model_trained = any(c["name"] == "model_trained" and c["passed"] for c in health["checks"])
    if not model_trained and args[:2] in (["--mode", "incremental"], ["--mode", "clustering"]):
        logger.info(f"No published model; running {task_name} as full training")
        return {**config, "args": ["--mode", "full"] + args[2:]}
    return config


def create_task_wrapper(task_name: str, config: Dict[str, Any]) -> Callable[[], None]:
    """Job callable; a failing task must not stop the scheduler."""
    def wrapper() -> None:
        try:
            effective = preflight(task_name, config)
            if effective is None:
                update_task_status(task_name, "skipped", error="service unreachable")
                return
            result = run_task(task_name, effective)
            if result["status"] != "success":
                logger.warning(f"Task {task_name} failed: {result}")
        except Exception as e:
            logger.error(f"Unhandled error in task {task_name}: {e}", exc_info=True)

    return wrapper


# =============================================================================
# Scheduler Setup
# =============================================================================

def create_scheduler(tasks: Optional[Dict[str, Dict[str, Any]]] = None) -> BlockingScheduler:
    """Create the scheduler with one cron job per enabled task."""
    scheduler = BlockingScheduler(timezone=TIMEZONE)

    for task_name, config in (tasks or SCHEDULER_CONFIG).items():
        if not config.get("enabled", True):
            logger.info(f"Skipping disabled task: {task_name}")
            continue

        scheduler.add_job(
            create_task_wrapper(task_name, config),
            trigger=CronTrigger(**config["schedule"], timezone=TIMEZONE),
            id=task_name,
            name=config.get("description", task_name),
            replace_existing=True,
        )
        logger.info(f"✓ Registered job: {task_name}")

    return scheduler


# =============================================================================
# Main Entry Point
# =============================================================================

def main() -> None:
    """Main entry point for the scheduler."""
    global logger
    logger = setup_service_logger("scheduler", log_dir=str(LOG_DIR))

    logger.info("=" * 80)
    logger.info("PERSONALIZATION AUTOMATION SCHEDULER STARTING")
    logger.info(f"Project Directory: {PROJECT_DIR}")
    logger.info(f"Service URL: {SERVICE_URL}")
    logger.info("=" * 80)

    scheduler = create_scheduler()
    for job in scheduler.get_jobs():
        logger.info(f"  [{job.id}] - Trigger: {job.trigger}")

    try:
        logger.info("Press Ctrl+C to stop the scheduler")
        scheduler.start()
    except KeyboardInterrupt:
        logger.info("Scheduler stopped by user")


if __name__ == "__main__":
    main()
