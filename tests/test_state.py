import os

import pytest

from fleet.db import Store
from fleet.settings import Settings, load_settings
from fleet.state import (
    BUILDING,
    FAILED,
    HEALTHY,
    PARTIAL_FAILURE,
    ROLLED_BACK,
    RUNNING,
    SKIPPED,
    DeploymentRecord,
)


def test_transitions_are_monotonic():
    record = DeploymentRecord(deployment_id="20261019_120000")
    record.transition("coder", BUILDING)
    record.transition("coder", RUNNING, container_id="abc")
    record.transition("coder", HEALTHY)
    record.transition("coder", ROLLED_BACK)

    assert record.service_states["coder"].container_id == "abc"
    with pytest.raises(ValueError):
        record.transition("coder", RUNNING)

    record.transition("vision", SKIPPED, reason="model unavailable")
    with pytest.raises(ValueError):
        record.transition("vision", BUILDING)

    with pytest.raises(ValueError):
        record.transition("voice", HEALTHY)


def test_failed_is_terminal():
    record = DeploymentRecord(deployment_id="x")
    record.transition("agent", BUILDING)
    record.transition("agent", FAILED, error_kind="BuildError")
    with pytest.raises(ValueError):
        record.transition("agent", ROLLED_BACK)


def test_finalize_freezes_record():
    record = DeploymentRecord(deployment_id="20261019_120000")
    record.transition("coder", SKIPPED, reason="model unavailable")
    record.finalize(PARTIAL_FAILURE)

    assert record.completed_at is not None
    with pytest.raises(ValueError):
        record.finalize(PARTIAL_FAILURE)
    with pytest.raises(ValueError):
        record.add_error("BuildError", "late")

    again = DeploymentRecord.from_dict(record.to_dict())
    assert again == record


def test_load_settings_from_env(tmp_path):
    env = {
        "FLEET_VAULT_DIR": str(tmp_path / "v"),
        "FLEET_HEALTH_ATTEMPTS": "5",
        "FLEET_HEALTH_INTERVAL_S": "0.5",
        "FLEET_BACKUP_KEEP_LAST": "not-a-number",
        "FLEET_BACKUP_INCLUDE_MODELS": "yes",
        "FLEET_SERVICE_HOST": "localhost",
        "FLEET_MIN_MEMORY_GB": "0",
        "FLEET_KEEP_DEPLOYMENT_LOGS": "3",
    }
    s = load_settings(env)

    assert s.vault_dir == str(tmp_path / "v")
    assert s.health_attempts == 5
    assert s.health_interval_s == 0.5
    assert s.backup_keep_last == 5
    assert s.service_host == "localhost"
    assert s.min_memory_gb == 0
    assert s.keep_deployment_logs == 3
    assert s.meminfo_path == "/proc/meminfo"
    assert s.backup_excludes() == ("backups", "logs")
    assert s.backups_dir == os.path.join(str(tmp_path / "v"), "backups")


def test_settings_naming():
    s = Settings()
    assert s.container_name("coder") == "qwen-coder"
    assert s.image_name("coder") == "qwen-coder:latest"
    assert s.unit_name("coder") == "qwen-coder.service"
    assert "models" in s.backup_excludes()


def test_store_events_and_directory_path(tmp_path):
    os.makedirs(tmp_path / "logs")
    store = Store(str(tmp_path / "logs"))
    assert store.db_path == str(tmp_path / "logs" / "fleet.db")

    store.log_event("warn", "voice service not ready", service_name="voice")
    store.log_event("info", "Starting deployment", deployment_id="20261019_120000")

    events = store.latest_events(10)
    assert [e["message"] for e in events] == ["Starting deployment", "voice service not ready"]
    assert events[1]["level"] == "WARN"
    assert store.latest_events(10, deployment_id="20261019_120000")[0]["deployment_id"] == "20261019_120000"
    assert store.get_deployment("missing") is None
