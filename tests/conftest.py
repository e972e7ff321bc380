"""Shared fixtures: settings on tmp paths, a fake Docker client and a project store."""

import pytest

from autoforge.config import PersistenceSettings, RetryDelaySettings, SandboxSettings, Settings
from autoforge.persistence import ProjectStore
from autoforge.sandbox_manager import SandboxManager
from tests.fakes import FakeDockerClient


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in tmp_path with zero retry delays."""
    return Settings(
        sandbox=SandboxSettings(temp_host_dir=str(tmp_path / "sandbox"), default_command_timeout_ms=5000),
        persistence=PersistenceSettings(projects_base_path=str(tmp_path / "projects"), lock_timeout_ms=5000),
        retry_delay=RetryDelaySettings(base_ms=0, modified_ms=0),
    )


@pytest.fixture
def docker_client():
    return FakeDockerClient()


@pytest.fixture
def sandbox_manager(settings, docker_client):
    manager = SandboxManager(settings.sandbox, client=docker_client)
    yield manager
    manager.destroy_all()


@pytest.fixture
def store(settings):
    return ProjectStore.from_settings(settings)
