import pytest

from proxy_traffic_mcp.core.cache import LiveCache
from proxy_traffic_mcp.core.store import ArchiveStore, PrimaryStore

from helpers import T0

@pytest.fixture
def primary(tmp_path):
    return PrimaryStore(tmp_path / "traffic.db")

@pytest.fixture
def archive(tmp_path):
    return ArchiveStore(tmp_path / "traffic_archive.db")

@pytest.fixture
def cache():
    return LiveCache()

@pytest.fixture
def t0():
    return T0
