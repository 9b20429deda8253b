"""
Tests for host access resolution.
"""
import json

import pytest

from opsguard.exceptions import AccessDenied, InvalidConfigError, NoAccessMapEntry
from opsguard.models import AccessMethod, ActionKind, HostAccessMap
from opsguard.policy import PolicyTable
from opsguard.remediation.access import INSUFFICIENT_ACCESS, AccessResolver


@pytest.fixture
def resolver(access_map):
    return AccessResolver(access_map)


def test_resolve_root_host(resolver):
    """Test that root hosts resolve with no prefix."""
    access = resolver.resolve("web-01")

    assert access.method == AccessMethod.ROOT
    assert access.user == "root"
    assert access.prefix == ""
    assert access.executable
    assert access.target == "root@10.0.0.5"
    assert access.wrap("systemctl restart api") == "systemctl restart api"


def test_resolve_sudo_host_defaults_prefix(resolver):
    """Test that sudo hosts without a prefix get 'sudo'."""
    access = resolver.resolve("app-01")

    assert access.method == AccessMethod.SUDO
    assert access.prefix == "sudo"
    assert access.wrap("systemctl restart api") == "sudo systemctl restart api"


def test_explicit_prefix_is_kept():
    access_map = HostAccessMap.from_dict({
        "db-01": {"user": "ops", "method": "sudo", "prefix": "sudo -n -u postgres"},
    })

    access = AccessResolver(access_map).resolve("db-01")

    assert access.prefix == "sudo -n -u postgres"
    assert access.target == "ops@db-01"


def test_limited_host_is_not_executable(resolver):
    access = resolver.resolve("nas")

    assert access.method == AccessMethod.LIMITED
    assert not access.executable


def test_unknown_host_raises(resolver):
    """Test that hosts missing from the map raise NoAccessMapEntry."""
    with pytest.raises(NoAccessMapEntry) as exc_info:
        resolver.resolve("mystery-box")

    assert isinstance(exc_info.value, AccessDenied)
    assert exc_info.value.policy == "access"
    assert exc_info.value.host_id == "mystery-box"


@pytest.mark.parametrize("kind", [ActionKind.RESTART, ActionKind.REDEPLOY, ActionKind.ROTATE_KEY])
def test_limited_host_denies_every_write_kind(resolver, kind):
    """Test that write actions against limited hosts are categorically denied."""
    policy = PolicyTable.default().get(kind)

    with pytest.raises(AccessDenied) as exc_info:
        resolver.authorize("nas", policy)

    assert exc_info.value.reason == INSUFFICIENT_ACCESS


def test_limited_host_permits_read_only_kind(resolver):
    policy = PolicyTable.default().get(ActionKind.INSPECT_LOGS)

    access = resolver.authorize("nas", policy)

    assert access.host_id == "nas"


def test_method_is_case_insensitive():
    access_map = HostAccessMap.from_dict({"h": {"method": "SUDO"}})

    assert access_map.get("h").method == AccessMethod.SUDO


def test_invalid_method_rejected():
    with pytest.raises(ValueError):
        HostAccessMap.from_dict({"h": {"method": "superuser"}})


class TestAccessMapFiles:
    """Tests for loading access maps from disk."""

    def test_from_yaml_with_hosts_key(self, tmp_path):
        path = tmp_path / "hosts.yaml"
        path.write_text("""
hosts:
  web-01:
    address: 10.0.0.5
    user: deploy
    method: sudo
  nas:
    user: admin
    method: limited
""")

        access_map = HostAccessMap.from_file(path)

        assert len(access_map) == 2
        assert "web-01" in access_map
        assert access_map.get("nas").method == AccessMethod.LIMITED

    def test_from_json(self, tmp_path):
        path = tmp_path / "hosts.json"
        path.write_text(json.dumps({"web-01": {"method": "root"}}))

        access_map = HostAccessMap.from_file(path)

        assert access_map.get("web-01").user == "root"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            HostAccessMap.from_file(tmp_path / "nope.yaml")

    def test_invalid_entry(self, tmp_path):
        path = tmp_path / "hosts.yaml"
        path.write_text("web-01:\n  method: wizard\n")

        with pytest.raises(InvalidConfigError):
            HostAccessMap.from_file(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "hosts.yaml"
        path.write_text("- web-01\n- web-02\n")

        with pytest.raises(InvalidConfigError, match="mapping"):
            HostAccessMap.from_file(path)

    def test_map_is_frozen(self, access_map):
        with pytest.raises(Exception):
            access_map.hosts = {}
