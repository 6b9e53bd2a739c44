"""Shared fixtures for adlsync tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from adlsync.client.store import Database, ObservationStore
from adlsync.core.config import TenantConfig
from tests.factories import make_tenant


@pytest.fixture
def tenant() -> TenantConfig:
    """Default test tenant."""
    return make_tenant()


@pytest.fixture
def db(tmp_path: Path) -> Iterator[Database]:
    """Create a Database in a temporary directory."""
    database = Database(tmp_path / "adlsync.db")
    yield database
    database.close()


@pytest.fixture
def store(db: Database) -> ObservationStore:
    """Create an ObservationStore on the test database."""
    return ObservationStore(db)


@pytest.fixture(autouse=True)
def reset_adlsync_logger() -> Iterator[None]:
    """Undo CLI logging setup so later tests can capture log records."""
    yield
    adlsync_logger = logging.getLogger("adlsync")
    for handler in adlsync_logger.handlers[:]:
        adlsync_logger.removeHandler(handler)
    adlsync_logger.setLevel(logging.NOTSET)
    adlsync_logger.propagate = True
