"""
Tests for the automation modules.

Service calls go through a fake ``requests`` session, so no service needs
to be running.

Run: pytest automation/test_modules.py
"""

import importlib
import json
import logging

import pytest
import requests

from automation import health_check, model_training, scheduler


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code}")


class FakeSession:
    """Answers by (method, path suffix); records every call."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def _answer(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        for (route_method, suffix), answer in self.routes.items():
            if route_method == method and url.endswith(suffix):
                if isinstance(answer, Exception):
                    raise answer
                if isinstance(answer, list):
                    return answer.pop(0)
                return answer
        return FakeResponse(404, {"error": "not found"})

    def get(self, url, **kwargs):
        return self._answer("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._answer("POST", url, **kwargs)


def _job(status, model_version=None, error=None):
    return {"job_id": "job-1", "mode": "incremental", "status": status,
            "model_version": model_version, "error": error, "quality_metrics": {}}


LOGGER = logging.getLogger("automation.tests")


def test_imports():
    """Every automation task exposes main()."""
    for module_name in ("automation.scheduler", "automation.model_training", "automation.health_check"):
        module = importlib.import_module(module_name)
        assert callable(getattr(module, "main", None)), module_name


# =============================================================================
# model_training
# =============================================================================

def test_training_polls_until_completed():
    session = FakeSession({
        ("POST", "/train"): FakeResponse(200, {"job_id": "job-1", "status": "idle", "job": _job("idle")}),
        ("GET", "/train/job-1"): [
            FakeResponse(200, _job("training")),
            FakeResponse(200, _job("completed", model_version=3)),
        ],
    })
    result = model_training.run_training(
        mode="incremental", service_url="http://svc", poll_interval=0, logger=LOGGER, session=session
    )

    assert result["status"] == "completed"
    assert result["job"]["model_version"] == 3
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "http://svc/train")
    assert kwargs["json"]["mode"] == "incremental"
    assert kwargs["json"]["async"] is True
    assert "batch_size" not in kwargs["json"]


def test_training_sync_job_needs_no_polling():
    session = FakeSession({
        ("POST", "/train"): FakeResponse(200, {"job_id": "job-1", "status": "completed",
                                               "job": _job("completed", model_version=2)}),
    })
    result = model_training.run_training(mode="full", sync=True, service_url="http://svc",
                                         logger=LOGGER, session=session)
    assert result["status"] == "completed"
    assert len(session.calls) == 1
    assert session.calls[0][2]["json"]["async"] is False


def test_training_failed_job_reports_error():
    failed = _job("failed", error={"error": "Insufficient content_vectors", "error_code": "INSUFFICIENT_DATA"})
    session = FakeSession({
        ("POST", "/train"): FakeResponse(200, {"job_id": "job-1", "status": "failed", "job": failed}),
    })
    result = model_training.run_training(service_url="http://svc", logger=LOGGER, session=session)
    assert result["status"] == "failed"
    assert "Insufficient" in result["error"]


def test_training_clustering_mode_uses_retrain_endpoint():
    session = FakeSession({
        ("POST", "/clustering/retrain"): FakeResponse(200, {"job_id": "job-1", "status": "completed",
                                                            "job": _job("completed", 4)}),
    })
    result = model_training.run_training(mode="clustering", k=5, service_url="http://svc",
                                         logger=LOGGER, session=session)
    assert result["status"] == "completed"
    assert session.calls[0][2]["json"] == {"k": 5, "async": True}


def test_training_rejected_and_unreachable():
    rejected = FakeSession({
        ("POST", "/train"): FakeResponse(422, {"error": "bad mode", "error_code": "INVALID_PARAMETER"}),
    })
    result = model_training.run_training(service_url="http://svc", logger=LOGGER, session=rejected)
    assert result["status"] == "rejected"
    assert "INVALID_PARAMETER" in result["error"]

    offline = FakeSession({("POST", "/train"): requests.exceptions.ConnectionError("refused")})
    result = model_training.run_training(service_url="http://svc", logger=LOGGER, session=offline)
    assert result["status"] == "unreachable"


def test_wait_for_job_gives_up_after_deadline():
    session = FakeSession({("GET", "/train/job-1"): FakeResponse(200, _job("training"))})
    job = model_training.wait_for_job("http://svc", "job-1", poll_interval=0, max_wait_seconds=0,
                                      logger=LOGGER, session=session, sleep=lambda s: None)
    assert job["status"] == "training"


# =============================================================================
# health_check
# =============================================================================

def test_health_check_healthy(monkeypatch):
    monkeypatch.setitem(health_check.HEALTH_CONFIG, "service_url", "http://svc")
    session = FakeSession({
        ("GET", "/health"): FakeResponse(200, {"status": "healthy", "model_version": 2, "num_items": 40,
                                               "last_trained_at": None}),
        ("GET", "/metrics"): FakeResponse(200, {"requests": {"total": 10, "error_rate": 0.0,
                                                             "p95_latency_ms": 12.0}}),
    })
    result = health_check.run_health_check(logger=LOGGER, session=session)
    assert result["overall_status"] == "healthy"
    assert set(result["components"]) == {"service", "serving"}


def test_health_check_degraded_without_trained_model(monkeypatch):
    monkeypatch.setitem(health_check.HEALTH_CONFIG, "service_url", "http://svc")
    session = FakeSession({
        ("GET", "/health"): FakeResponse(200, {"status": "degraded", "model_version": 0, "num_items": 0}),
    })
    result = health_check.run_health_check(components=["service"], logger=LOGGER, session=session)
    assert result["overall_status"] == "degraded"


def test_health_check_offline_is_critical(monkeypatch):
    monkeypatch.setitem(health_check.HEALTH_CONFIG, "service_url", "http://svc")
    session = FakeSession({
        ("GET", "/health"): requests.exceptions.ConnectionError("refused"),
        ("GET", "/metrics"): requests.exceptions.ConnectionError("refused"),
    })
    result = health_check.run_health_check(logger=LOGGER, session=session)
    assert result["overall_status"] == "critical"


def test_health_check_flags_high_error_rate(monkeypatch):
    monkeypatch.setitem(health_check.HEALTH_CONFIG, "service_url", "http://svc")
    session = FakeSession({
        ("GET", "/metrics"): FakeResponse(200, {"requests": {"total": 100, "error_rate": 0.2,
                                                             "p95_latency_ms": 10.0}}),
    })
    result = health_check.run_health_check(components=["serving"], logger=LOGGER, session=session)
    assert result["overall_status"] == "warning"


# =============================================================================
# scheduler
# =============================================================================

def test_scheduler_registers_enabled_tasks():
    sched = scheduler.create_scheduler()
    job_ids = {job.id for job in sched.get_jobs()}
    enabled = {name for name, cfg in scheduler.SCHEDULER_CONFIG.items() if cfg.get("enabled", True)}
    assert job_ids == enabled
    assert "clustering_refresh" not in job_ids


def test_scheduler_tasks_point_at_automation_modules():
    for name, config in scheduler.SCHEDULER_CONFIG.items():
        command = scheduler.build_command(config)
        assert command[1:3] == ["-m", config["module"]]
        importlib.import_module(config["module"])


def test_update_task_status_keeps_other_tasks(tmp_path):
    scheduler.update_task_status("health_check", "success", 0, log_dir=tmp_path)
    scheduler.update_task_status("full_training", "failed", 1, error="boom", log_dir=tmp_path)

    with open(tmp_path / "task_status.json", encoding="utf-8") as f:
        status = json.load(f)
    assert status["health_check"]["status"] == "success"
    assert status["full_training"]["error"] == "boom"


def test_main_exit_code_reflects_result(monkeypatch):
    monkeypatch.setattr(model_training, "run_training", lambda **kwargs: {"status": "failed", "job": None,
                                                                          "error": "x"})
    monkeypatch.setattr(model_training, "setup_service_logger", lambda *a, **k: LOGGER)
    monkeypatch.setattr("sys.argv", ["model_training", "--mode", "full"])
    with pytest.raises(SystemExit) as exc:
        model_training.main()
    assert exc.value.code == 1


def test_preflight_skips_when_service_down():
    session = FakeSession({("GET", "/health"): requests.exceptions.ConnectionError()})
    config = scheduler.SCHEDULER_CONFIG["full_training"]
    assert scheduler.preflight("full_training", config, session) is None


def test_preflight_upgrades_incremental_without_model():
    session = FakeSession({("GET", "/health"): FakeResponse(200, {"status": "degraded", "model_version": 0})})
    config = scheduler.SCHEDULER_CONFIG["incremental_training"]

    effective = scheduler.preflight("incremental_training", config, session)

    assert effective["args"] == ["--mode", "full"]
    assert config["args"] == ["--mode", "incremental"]


def test_preflight_passes_through_healthy_and_untracked_tasks():
    session = FakeSession({("GET", "/health"): FakeResponse(200, {"status": "healthy", "model_version": 3,
                                                                  "num_items": 10})})
    config = scheduler.SCHEDULER_CONFIG["incremental_training"]
    assert scheduler.preflight("incremental_training", config, session) is config

    health = scheduler.SCHEDULER_CONFIG["health_check"]
    assert scheduler.preflight("health_check", health) is health
