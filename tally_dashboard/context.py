"""
Application Context
Wires the sync engine together for one process

One AppContext per FastAPI app (or per test). Nothing here is a module
global, so tests can build as many independent engines as they need.
"""

from typing import Optional

import httpx

from .config import AppConfig
from .services.cache_store import CacheStore
from .services.health_service import HealthService
from .services.notifier import ChangeNotifier
from .services.scheduler_service import SchedulerService
from .services.sync_service import SyncService
from .services.tally_service import TallyService
from .utils.logger import logger


class AppContext:
    def __init__(
        self,
        config: AppConfig,
        store: CacheStore,
        client: TallyService,
        notifier: ChangeNotifier,
        scheduler: SchedulerService,
        sync: SyncService,
    ):
        self.config = config
        self.store = store
        self.client = client
        self.notifier = notifier
        self.scheduler = scheduler
        self.sync = sync
        self.health = HealthService(client, store)

    @classmethod
    def create(cls, config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> "AppContext":
        """Build every component from configuration

        ``transport`` replaces the network for the Tally client (tests pass
        an httpx.MockTransport).
        """
        store = CacheStore(config.database.path)
        client = TallyService(config.tally, receipt_kinds=config.voucher_types.receipt, transport=transport)
        notifier = ChangeNotifier()
        scheduler = SchedulerService()
        sync = SyncService(store, client, notifier, scheduler, config.sync)
        return cls(config, store, client, notifier, scheduler, sync)

    async def open(self) -> None:
        await self.store.connect()
        await self.sync.load_state()

    async def close(self) -> None:
        self.sync.stop()
        await self.client.close()
        await self.store.disconnect()
        logger.info("Application context closed")
