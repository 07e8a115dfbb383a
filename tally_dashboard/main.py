"""
Tally Dashboard Sync
Main Application Entry Point
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import AppConfig, load_config
from .context import AppContext
from .controllers.health_controller import router as health_router
from .controllers.sync_controller import router as sync_router
from .controllers.voucher_controller import router as voucher_router
from .utils.constants import APP_NAME, APP_VERSION
from .utils.logger import logger, setup_logger


def create_app(config: Optional[AppConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the FastAPI application around a fresh AppContext"""
    config = config or load_config(os.environ.get("TALLY_DASHBOARD_CONFIG", "config.yaml"))
    setup_logger(config.logging)
    context = AppContext.create(config, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        logger.info(f"{APP_NAME} starting...")
        logger.info(f"Tally at {context.client.url}, cache at {config.database.path}")
        await context.open()

        startup = None
        if config.sync.autostart:
            # Startup sync is throttled and can take minutes; serve requests meanwhile
            startup = asyncio.create_task(context.sync.start())
        yield
        logger.info(f"{APP_NAME} shutting down...")
        if startup is not None and not startup.done():
            startup.cancel()
        await context.close()

    app = FastAPI(
        title=APP_NAME,
        description="Mirror Tally vouchers into a local cache for the dashboard",
        version=APP_VERSION,
        lifespan=lifespan
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync_router, prefix="/api/sync", tags=["Sync"])
    app.include_router(voucher_router, prefix="/api/vouchers", tags=["Vouchers"])
    app.include_router(health_router, prefix="/api/health", tags=["Health"])

    @app.get("/")
    async def root():
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "status": "running",
            "docs": "/docs"
        }

    @app.get("/api/info")
    async def info():
        """System information"""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "tally": {
                "server": config.tally.server,
                "port": config.tally.port,
                "company": config.tally.company
            },
            "database": {
                "path": config.database.path
            },
            "sync": {
                "poll_interval": config.sync.poll_interval,
                "master_interval": config.sync.master_interval,
                "reconciliation_interval": config.sync.reconciliation_interval
            }
        }

    return app
