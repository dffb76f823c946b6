import pytest

from fakes import InMemoryStore
from utils.snapshot_cache import SnapshotCache, snapshot_cache


@pytest.fixture(autouse=True)
def clear_global_snapshot_cache():
    snapshot_cache.clear()
    yield
    snapshot_cache.clear()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def cache():
    """Disabled cache so every read recomputes."""
    return SnapshotCache(ttl_seconds=0)

