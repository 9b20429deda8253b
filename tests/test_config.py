"""
Tests for configuration module.
"""
import pytest

from opsguard.config import OpsGuardConfig
from opsguard.exceptions import InvalidConfigError
from opsguard.models import ActionKind

from test_config_loader import ENV_VARS


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_config_defaults() -> None:
    """Test default configuration values."""
    config = OpsGuardConfig()

    assert config.max_tier == 3
    assert config.dry_run is False
    assert config.executor_workers == 8
    assert config.state_db == "opsguard.db"
    assert config.redact_env_prefix == "OPSGUARD_CRED_"
    assert config.access_map_file is None
    config.validate()


def test_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test configuration from environment variables."""
    monkeypatch.setenv("OPSGUARD_MAX_TIER", "2")
    monkeypatch.setenv("OPSGUARD_DRY_RUN", "true")
    monkeypatch.setenv("OPSGUARD_ACCESS_MAP", "/etc/opsguard/hosts.yaml")
    monkeypatch.setenv("OPSGUARD_LOG_LEVEL", "DEBUG")

    config = OpsGuardConfig.from_env()

    assert config.max_tier == 2
    assert config.dry_run is True
    assert config.access_map_file == "/etc/opsguard/hosts.yaml"
    assert config.log_level == "DEBUG"


def test_config_invalid_int_uses_default(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that invalid integers use defaults."""
    monkeypatch.setenv("OPSGUARD_MAX_TIER", "three")

    assert OpsGuardConfig.from_env().max_tier == 3


@pytest.mark.parametrize("changes,message", [
    ({"max_tier": 0}, "max_tier"),
    ({"max_tier": 4}, "max_tier"),
    ({"max_tier": True}, "max_tier"),
    ({"executor_workers": 0}, "executor_workers"),
    ({"state_db": ""}, "state_db"),
    ({"redact_env_prefix": ""}, "redact_env_prefix"),
    ({"log_level": "LOUD"}, "log_level"),
    ({"policy_overrides": {"reboot": {"max_occurrences": 1}}}, "reboot"),
    ({"policy_overrides": {"restart": {"max_occurrences": "lots"}}}, "restart"),
])
def test_config_validation(changes, message) -> None:
    config = OpsGuardConfig(**changes)

    with pytest.raises(InvalidConfigError, match=message):
        config.validate()


def test_config_validation_collects_errors() -> None:
    config = OpsGuardConfig(max_tier=9, executor_workers=-1)

    with pytest.raises(InvalidConfigError) as exc_info:
        config.validate()

    assert "max_tier" in str(exc_info.value)
    assert "executor_workers" in str(exc_info.value)


def test_config_policies_apply_overrides() -> None:
    config = OpsGuardConfig(policy_overrides={"restart": {"max_occurrences": 5, "window_hours": 1}})

    policy = config.policies().get(ActionKind.RESTART)

    assert policy.max_occurrences == 5
    assert policy.window.total_seconds() == 3600


def test_config_from_file(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "opsguard.yaml"
    config_file.write_text("""
remediation:
  max_tier: 2
storage:
  state_db: /var/lib/opsguard/state.db
policies:
  redeploy:
    window_hours: 48
""")
    monkeypatch.setenv("OPSGUARD_STATE_DB", str(tmp_path / "env.db"))

    config = OpsGuardConfig.from_file(str(config_file))

    assert config.max_tier == 2
    assert config.state_db == str(tmp_path / "env.db")
    assert config.policy_overrides == {"redeploy": {"window_hours": 48}}
    config.validate()


def test_config_load_without_file(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPSGUARD_EXECUTOR_WORKERS", "2")

    config = OpsGuardConfig.load(use_file=False)

    assert config.executor_workers == 2
