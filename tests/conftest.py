"""Shared test fixtures."""

from collections.abc import Generator
import logging
import pathlib

import pytest

from gitops_loop.cluster import InMemoryCluster
from gitops_loop.store import InMemoryStore
from gitops_loop.task import TaskService, task_service_context

_LOGGER = logging.getLogger(__name__)

TESTDATA_DIR = pathlib.Path(__file__).parent / "testdata"


@pytest.fixture(autouse=True)
def task_service() -> Generator[TaskService, None, None]:
    """Install a fresh task service for each test."""
    with task_service_context() as service:
        yield service


@pytest.fixture
def store() -> InMemoryStore:
    """Create an in-memory store for testing."""
    return InMemoryStore()


@pytest.fixture
def cluster() -> InMemoryCluster:
    """Create an empty in-memory cluster."""
    return InMemoryCluster()


@pytest.fixture
def testdata_dir() -> pathlib.Path:
    """Directory holding test manifests and configuration."""
    return TESTDATA_DIR
