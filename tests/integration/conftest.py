"""
Pytest configuration and fixtures for the failover harness tests.

This module provides:
- Test configuration and custom markers
- Shared coordination directories and cluster configurations
- Participant process cleanup
"""

from pathlib import Path
from typing import Any, Dict, Generator

import pytest

from failover_harness.config import create_cluster_config
from failover_harness.markers import FileSignalStore
from failover_harness.processes import ProcessOrchestrator


@pytest.fixture
def coordinate_dir(tmp_path: Path) -> Path:
    """Empty shared directory for marker files."""
    directory = tmp_path / "coordination"
    directory.mkdir()
    return directory


@pytest.fixture
def signal_store(coordinate_dir: Path) -> FileSignalStore:
    return FileSignalStore(coordinate_dir)


@pytest.fixture
def cluster_config(tmp_path: Path) -> Dict[str, Any]:
    """File-backed cluster configuration rooted in the test's temp directory."""
    return create_cluster_config(tmp_path / "ha", slots=2)


@pytest.fixture
def orchestrator(tmp_path: Path) -> Generator[ProcessOrchestrator, None, None]:
    """Provide a process orchestrator that kills whatever it spawned."""
    with ProcessOrchestrator(tmp_path / "work") as orchestrator:
        yield orchestrator


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "recovery: marks tests that kill and replace the leading coordinator"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers to test items based on their names."""
    for item in items:
        if "recovery" in item.name:
            item.add_marker(pytest.mark.recovery)
        if "integration" in item.name:
            item.add_marker(pytest.mark.integration)
