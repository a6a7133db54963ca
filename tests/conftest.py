from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from punch_sync import (
    ConnectivityMonitor,
    ControlChannel,
    QueueStore,
    SyncConfig,
    SyncWorker,
)
from tests.helpers import BASE_URL, DummySession


@pytest.fixture
def store(tmp_path: Path) -> QueueStore:
    return QueueStore(tmp_path / "queue.db")


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def channel() -> ControlChannel:
    return ControlChannel()


@pytest.fixture
def session() -> DummySession:
    return DummySession()


@pytest.fixture
def config(tmp_path: Path) -> SyncConfig:
    return SyncConfig.from_options({"base_url": BASE_URL, "store_path": str(tmp_path / "queue.db")})


@pytest_asyncio.fixture
async def worker(config, store, monitor, channel, session):
    worker = SyncWorker(config, store, monitor, channel, session=session)
    await worker.async_start()
    yield worker
    await worker.async_stop()
