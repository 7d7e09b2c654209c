"""
Automation package for the personalization service.

Operator tasks run against a live service:
- Model training (full, incremental, clustering-only)
- Service health checks
- Scheduler

Each task exposes a `main()` function suitable for CLI entry points.
Run any task via: python -m automation.<task_name>
"""

__all__ = [
    "model_training",
    "health_check",
    "scheduler",
]
