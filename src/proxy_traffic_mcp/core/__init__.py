"""
Core modules: ingestion, write-behind persistence and merge/archive.

Keep source protocol details in source.py and SQL in store.py.
"""

from .models import ConnectionRecord, RawConnection, Snapshot
from .cache import LiveCache
from .flusher import Flusher
from .merge import MergeArchiveEngine
from .pipeline import TrafficPipeline
from .poller import Poller
from .server import TrafficMCPServer
from .shutdown import ShutdownCoordinator
from .store import ArchiveStore, PrimaryStore

__all__ = [
    "ConnectionRecord",
    "RawConnection",
    "Snapshot",
    "LiveCache",
    "Flusher",
    "MergeArchiveEngine",
    "TrafficPipeline",
    "Poller",
    "TrafficMCPServer",
    "ShutdownCoordinator",
    "ArchiveStore",
    "PrimaryStore",
]
