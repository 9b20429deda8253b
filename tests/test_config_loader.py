"""
Tests for configuration file loader.
"""
import logging
from pathlib import Path

import pytest

from opsguard.config_loader import (
    deep_merge,
    find_config_file,
    flatten_config,
    get_env_config,
    load_config_file,
    load_config_with_overrides,
    load_toml_file,
    load_yaml_file,
    merge_config,
)
from opsguard.exceptions import InvalidConfigError, MissingConfigError

ENV_VARS = [
    "OPSGUARD_MAX_TIER",
    "OPSGUARD_DRY_RUN",
    "OPSGUARD_EXECUTOR_WORKERS",
    "OPSGUARD_ACCESS_MAP",
    "OPSGUARD_STATE_DB",
    "OPSGUARD_REDACT_PREFIX",
    "OPSGUARD_WEBHOOK_URL",
    "OPSGUARD_LOG_LEVEL",
    "OPSGUARD_LOG_FILE",
    "OPSGUARD_JSON_LOGS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadYAMLFile:
    """Tests for YAML file loading."""

    def test_load_valid_yaml(self, tmp_path):
        """Test loading a valid YAML file."""
        config_file = tmp_path / "opsguard.yaml"
        config_file.write_text("""
remediation:
  max_tier: 2
  dry_run: true
policies:
  restart:
    max_occurrences: 3
""")

        config = load_yaml_file(config_file)

        assert config["remediation"]["max_tier"] == 2
        assert config["remediation"]["dry_run"] is True
        assert config["policies"]["restart"]["max_occurrences"] == 3

    def test_load_empty_yaml(self, tmp_path):
        """Test loading an empty YAML file."""
        config_file = tmp_path / "opsguard.yaml"
        config_file.write_text("")

        assert load_yaml_file(config_file) == {}

    def test_load_nonexistent_yaml(self, tmp_path):
        with pytest.raises(MissingConfigError):
            load_yaml_file(tmp_path / "nonexistent.yaml")

    def test_load_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "opsguard.yaml"
        config_file.write_text("remediation: [unclosed")

        with pytest.raises(InvalidConfigError, match="YAML"):
            load_yaml_file(config_file)

    def test_load_non_mapping_yaml(self, tmp_path):
        config_file = tmp_path / "opsguard.yaml"
        config_file.write_text("- a\n- b\n")

        with pytest.raises(InvalidConfigError, match="mapping"):
            load_yaml_file(config_file)


class TestLoadTOMLFile:
    """Tests for TOML file loading."""

    def test_load_valid_toml(self, tmp_path):
        """Test loading a valid TOML file."""
        config_file = tmp_path / "opsguard.toml"
        config_file.write_text("""
[storage]
state_db = "/var/lib/opsguard/state.db"

[policies.rotate_key]
window_hours = 2
""")

        config = load_toml_file(config_file)

        assert config["storage"]["state_db"] == "/var/lib/opsguard/state.db"
        assert config["policies"]["rotate_key"]["window_hours"] == 2

    def test_load_invalid_toml(self, tmp_path):
        config_file = tmp_path / "opsguard.toml"
        config_file.write_text("[storage\nstate_db = ")

        with pytest.raises(InvalidConfigError, match="TOML"):
            load_toml_file(config_file)


def test_load_config_file_dispatches_on_suffix(tmp_path):
    yml = tmp_path / "opsguard.yml"
    yml.write_text("logging:\n  level: DEBUG\n")

    assert load_config_file(yml) == {"logging": {"level": "DEBUG"}}
    assert load_config_file(str(yml)) == {"logging": {"level": "DEBUG"}}


class TestFindConfigFile:
    """Tests for the config file search path."""

    def test_finds_file_in_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path / "home"))
        (tmp_path / "opsguard.toml").write_text("")
        (tmp_path / "opsguard.yaml").write_text("")

        assert find_config_file() == tmp_path / "opsguard.yaml"

    def test_finds_file_in_home(self, tmp_path, monkeypatch):
        home = tmp_path / "home"
        home.mkdir()
        (home / ".opsguard.yaml").write_text("")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: home))

        assert find_config_file() == home / ".opsguard.yaml"


class TestEnvConfig:
    """Tests for OPSGUARD_* environment variables."""

    def test_empty_env(self, clean_env):
        assert get_env_config() == {}

    def test_env_values(self, clean_env):
        clean_env.setenv("OPSGUARD_MAX_TIER", "2")
        clean_env.setenv("OPSGUARD_DRY_RUN", "yes")
        clean_env.setenv("OPSGUARD_STATE_DB", "/tmp/state.db")
        clean_env.setenv("OPSGUARD_JSON_LOGS", "0")

        config = get_env_config()

        assert config == {
            "remediation": {"max_tier": 2, "dry_run": True},
            "storage": {"state_db": "/tmp/state.db"},
            "logging": {"json": False},
        }

    def test_invalid_int_is_ignored(self, clean_env):
        clean_env.setenv("OPSGUARD_EXECUTOR_WORKERS", "many")

        assert get_env_config() == {}

    def test_credentials_are_not_config(self, clean_env):
        clean_env.setenv("OPSGUARD_CRED_ROOT_PW", "hunter22")

        assert "hunter22" not in str(get_env_config())


def test_deep_merge():
    base = {"remediation": {"max_tier": 3, "dry_run": False}, "storage": {"state_db": "a.db"}}
    override = {"remediation": {"dry_run": True}}

    merged = deep_merge(base, override)

    assert merged == {
        "remediation": {"max_tier": 3, "dry_run": True},
        "storage": {"state_db": "a.db"},
    }
    assert base["remediation"]["dry_run"] is False


class TestFlattenConfig:
    """Tests for mapping file sections onto config fields."""

    def test_flatten(self):
        flat = flatten_config({
            "remediation": {"max_tier": 2, "executor_workers": 4},
            "access": {"map_file": "hosts.yaml"},
            "escalation": {"webhook_url": "https://hooks.example.com/x"},
            "logging": {"level": "DEBUG", "json": True},
            "policies": {"restart": {"max_occurrences": 3}},
        })

        assert flat == {
            "max_tier": 2,
            "executor_workers": 4,
            "access_map_file": "hosts.yaml",
            "webhook_url": "https://hooks.example.com/x",
            "log_level": "DEBUG",
            "json_logs": True,
            "policy_overrides": {"restart": {"max_occurrences": 3}},
        }

    def test_unknown_keys_are_ignored(self, caplog):
        with caplog.at_level(logging.WARNING, logger="opsguard.config_loader"):
            flat = flatten_config({"remediation": {"retries": 5}, "llm": "gpt"})

        assert flat == {}
        assert "remediation.retries" in caplog.text

    def test_policies_must_be_mapping(self):
        with pytest.raises(InvalidConfigError):
            flatten_config({"policies": ["restart"]})


def test_merge_config_env_wins():
    merged = merge_config(
        {"remediation": {"max_tier": 3}, "storage": {"state_db": "file.db"}},
        {"storage": {"state_db": "env.db"}},
    )

    assert merged == {"max_tier": 3, "state_db": "env.db"}


class TestLoadConfigWithOverrides:
    """Tests for the full load path."""

    def test_explicit_file_with_env_override(self, tmp_path, clean_env):
        config_file = tmp_path / "opsguard.yaml"
        config_file.write_text("remediation:\n  max_tier: 3\n  dry_run: false\n")
        clean_env.setenv("OPSGUARD_DRY_RUN", "true")

        config = load_config_with_overrides(str(config_file))

        assert config == {"max_tier": 3, "dry_run": True}

    def test_explicit_missing_file(self, tmp_path, clean_env):
        with pytest.raises(MissingConfigError):
            load_config_with_overrides(str(tmp_path / "missing.yaml"))

    def test_no_file_found(self, tmp_path, clean_env):
        clean_env.chdir(tmp_path)
        clean_env.setattr(Path, "home", classmethod(lambda cls: tmp_path))
        clean_env.setattr("opsguard.config_loader.find_config_file", lambda: None)

        assert load_config_with_overrides() == {}
