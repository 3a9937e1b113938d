"""Shared test fixtures and configuration for winlab tests."""

import os
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from winlab.capabilities import DiskRef, HypervisorCapabilities, InstanceHandle
from winlab.config import Settings


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep WINLAB_* variables and any local .env file out of the tests."""
    for key in list(os.environ):
        if key.startswith("WINLAB_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing every path into the test directory."""
    return Settings(
        template_dir=tmp_path / "templates",
        stage_file=tmp_path / "state" / "stage.json",
        log_dir=tmp_path / "logs",
        engine_version="test-1.0",
    )


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    """Environment for CLI invocations."""
    env = {
        "WINLAB_TEMPLATE_DIR": str(tmp_path / "templates"),
        "WINLAB_STAGE_FILE": str(tmp_path / "state" / "stage.json"),
        "WINLAB_LOG_DIR": str(tmp_path / "logs"),
        "WINLAB_ENGINE_VERSION": "test-1.0",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture
def ticking_clock():
    """Clock that advances one second per call."""
    start = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
    calls = {"count": 0}

    def clock() -> datetime:
        value = start + timedelta(seconds=calls["count"])
        calls["count"] += 1
        return value

    return clock


@pytest.fixture
def mock_capabilities():
    """Mock hypervisor with one existing VM and two virtual switches."""
    caps = mock.MagicMock(spec=HypervisorCapabilities)
    caps.list_instance_names.return_value = {"DC01"}
    caps.list_networks.return_value = ["External", "Internal"]
    caps.create_instance.side_effect = lambda name, generation, memory, network: InstanceHandle(
        name=name, instance_id="0d5c1f3e-0000-4000-8000-000000000001"
    )
    caps.create_disk.side_effect = lambda name, size: DiskRef(path=f"D:\\Disks\\{name}.vhdx", size_bytes=size)
    return caps


@pytest.fixture
def call_names():
    """Names of the capability methods called on a mock, in order."""

    def names(caps: mock.MagicMock) -> list:
        return [name for name, _args, _kwargs in caps.mock_calls]

    return names
