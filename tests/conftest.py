"""
Shared fixtures for OpsGuard tests.
"""
from datetime import datetime, timedelta, timezone

import pytest

from opsguard.models import HostAccessMap, PlaybookDescriptor
from opsguard.storage.state_store import MemoryStateStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic time source; call it to read, advance() to move."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def access_map():
    return HostAccessMap.from_dict({
        "web-01": {"address": "10.0.0.5", "user": "root", "method": "root"},
        "app-01": {"address": "10.0.0.6", "user": "deploy", "method": "sudo"},
        "nas": {"address": "10.0.0.9", "user": "admin", "method": "limited"},
    })


def make_playbook(kind: str, min_tier: int = 1, name: str = None, **kwargs) -> PlaybookDescriptor:
    return PlaybookDescriptor(
        name=name or f"{kind}-playbook",
        min_tier=min_tier,
        action_kind=kind,
        **kwargs,
    )
