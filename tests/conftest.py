"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.approvals import (  # noqa: E402
    ApprovalEngine,
    EngineConfig,
    InMemoryRoleDirectory,
    RecordingEventSink,
    SubjectRef,
)


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Clear cached settings and APPROVALS_* overrides around each test."""
    from src.settings import get_settings

    for var in ("APPROVALS_LOG_LEVEL", "APPROVALS_LOG_FORMAT", "APPROVALS_USE_DATABASE"):
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def directory():
    """Role directory for org "acme" with two finance members and one legal member."""
    return InMemoryRoleDirectory({
        ("acme", "finance"): {"fiona", "frank"},
        ("acme", "legal"): {"lena"},
    })


@pytest.fixture
def sink():
    return RecordingEventSink()


@pytest.fixture
def engine(directory, sink):
    return ApprovalEngine(
        directory=directory,
        event_sink=sink,
        config=EngineConfig(lock_timeout_seconds=5.0),
    )


@pytest.fixture
def subject():
    return SubjectRef(
        entity_type="bid",
        entity_id="bid-42",
        title="Harbour dredging bid",
        description="Final price sign-off",
    )
