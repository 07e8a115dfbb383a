"""
Health Service Module
Handles health checks for Tally and the local cache
"""

from typing import Any, Dict

import aiosqlite

from ..utils.constants import HealthStatus
from ..utils.helpers import get_current_timestamp
from .cache_store import CacheStore
from .tally_service import TallyService


class HealthService:
    """Reports on the two things sync depends on"""

    def __init__(self, client: TallyService, store: CacheStore):
        self.client = client
        self.store = store

    async def check_all(self) -> Dict[str, Any]:
        """Check health of all components"""
        tally_health = await self.check_tally()
        database_health = await self.check_database()

        statuses = {tally_health["status"], database_health["status"]}
        if statuses == {HealthStatus.HEALTHY}:
            overall_status = HealthStatus.HEALTHY
        elif statuses == {HealthStatus.UNHEALTHY}:
            overall_status = HealthStatus.UNHEALTHY
        else:
            overall_status = HealthStatus.DEGRADED

        return {
            "status": overall_status,
            "timestamp": get_current_timestamp(),
            "components": {
                "tally": tally_health,
                "database": database_health
            }
        }

    async def check_tally(self) -> Dict[str, Any]:
        result = await self.client.check_connectivity()
        return {
            "status": HealthStatus.HEALTHY if result.connected else HealthStatus.UNHEALTHY,
            "server": self.client.server,
            "port": self.client.port,
            "companies": result.companies,
            "message": "Connected" if result.connected else (result.error or "Connection failed"),
        }

    async def check_database(self) -> Dict[str, Any]:
        try:
            await self.store.ping()
            counts = await self.store.get_table_counts()
        except aiosqlite.Error as e:
            return {
                "status": HealthStatus.UNHEALTHY,
                "path": self.store.db_path,
                "message": str(e)
            }
        return {
            "status": HealthStatus.HEALTHY,
            "path": self.store.db_path,
            "tables": counts,
            "total_rows": sum(counts.values()),
            "message": "Connected"
        }
