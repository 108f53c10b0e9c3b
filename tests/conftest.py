"""
Pytest configuration and shared fixtures.
"""
import pytest

from syncengine.config import (
    AppConfig,
    MonitorConfig,
    ReconciliationConfig,
    RemoteConfig,
    RetryPolicy,
    StoreConfig,
    SyncConfig,
)
from syncengine.events import EventBus
from syncengine.store import MEMORY, EntityStore
from tests.fakes import FakeClock, FakeRemote


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> EntityStore:
    """In-memory DuckDB store on the fake clock (connects lazily)."""
    return EntityStore(MEMORY, clock=clock)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def sync_config() -> SyncConfig:
    """Fast retries so backoff tests finish in milliseconds."""
    return SyncConfig(
        workers=2,
        retry=RetryPolicy(base_delay=0.01, multiplier=2.0, max_retries=3),
        call_timeout=1.0,
        verify_checksums=True,
    )


@pytest.fixture
def app_config(sync_config, tmp_path) -> AppConfig:
    return AppConfig(
        remote=RemoteConfig(api_key="test-key", base_url="http://remote.test/api"),
        store=StoreConfig(db_path=MEMORY),
        sync=sync_config,
        reconciliation=ReconciliationConfig(batch_size=50),
        monitor=MonitorConfig(webhook_url="", min_samples=5),
    )
