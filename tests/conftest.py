"""
Shared pytest fixtures for stepwise tests.

This module provides:
- A controllable clock for breaker/monitor/status tests
- Fresh connection registries wired to that clock
- Collaborator doubles for every step kind
- Settings cache reset between tests

Usage:
    Fixtures are auto-discovered by pytest; request them by name.

    def test_breaker_opens(clock, registry):
        ...
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from stepwise.core.settings import get_settings
from stepwise.execution.collaborators import EchoCollaborator
from stepwise.execution.connections import ConnectionRegistry, TargetDefinition
from stepwise.orchestration.models import StepKind


# =============================================================================
# Markers
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without an explicit marker as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache(monkeypatch, tmp_path: Path):
    """Isolate every test from the developer's environment and .env file."""
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Manually advanced clock; call it to read the time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Registry and collaborators
# =============================================================================


@pytest.fixture
def registry(clock: FakeClock) -> ConnectionRegistry:
    """Registry with a low breaker threshold and a 10 second open window."""
    return ConnectionRegistry(failure_threshold=3, open_duration=10.0, clock=clock)


@pytest.fixture
def populated_registry(registry: ConnectionRegistry) -> ConnectionRegistry:
    """Registry with three targets of overlapping capabilities."""
    registry.register(TargetDefinition("revit", capabilities=("elements", "parameters", "views")))
    registry.register(TargetDefinition("autocad", capabilities=("elements", "layers")))
    registry.register(TargetDefinition("s3", capabilities=("storage",)))
    return registry


@pytest.fixture
def echo() -> EchoCollaborator:
    return EchoCollaborator()


@pytest.fixture
def collaborators(echo: EchoCollaborator) -> dict[StepKind, EchoCollaborator]:
    """The same echo double for every step kind."""
    return {kind: echo for kind in StepKind}
