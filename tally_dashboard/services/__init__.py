# Services Package
# Sync engine: Tally client, cache store, orchestrator

from .tally_service import TallyService
from .cache_store import CacheStore
from .sync_service import SyncService
from .notifier import ChangeNotifier
from .scheduler_service import SchedulerService
from .health_service import HealthService

__all__ = [
    "TallyService",
    "CacheStore",
    "SyncService",
    "ChangeNotifier",
    "SchedulerService",
    "HealthService"
]
