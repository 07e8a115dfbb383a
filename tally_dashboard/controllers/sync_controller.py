"""
Sync Controller
===============
API endpoints for driving the sync engine.

ENDPOINTS:
---------
GET  /api/sync/status               - Run state, last error, scheduled jobs
POST /api/sync/start                - Check Tally, sync masters, start polling
POST /api/sync/stop                 - Stop polling
POST /api/sync/incremental          - Pull vouchers changed since the cursor
POST /api/sync/range                - Pull vouchers in a date window
POST /api/sync/reconcile            - Detect deletions and conversions
POST /api/sync/masters              - Stock items, parties, pending vouchers
POST /api/sync/full-history         - Start a batched history backfill
POST /api/sync/full-history/resume  - Resume an interrupted backfill
GET  /api/sync/full-history         - Backfill progress
WS   /api/sync/events               - Live sync events

SINGLE FLIGHT:
-------------
Only one pass runs at a time. A trigger while a pass is running returns
{"success": false, "error": "already syncing"} straight away.

BACKGROUND TASKS:
----------------
The history backfill can run for a long time, so it is started with
BackgroundTasks. Use GET /api/sync/full-history to monitor progress.
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from ..context import AppContext
from ..utils.constants import ALREADY_SYNCING
from ..utils.helpers import get_current_timestamp
from ..utils.logger import logger
from .dependencies import get_context

router = APIRouter()


class RangeRequest(BaseModel):
    from_date: date
    to_date: date


class ReconcileRequest(BaseModel):
    kinds: Optional[List[str]] = None


class FullHistoryRequest(BaseModel):
    start_date: Optional[date] = None
    batch_days: Optional[int] = Field(default=None, ge=1)


@router.get("/status")
async def get_sync_status(context: AppContext = Depends(get_context)):
    """Get current sync status"""
    return context.sync.get_status()


@router.post("/start")
async def start_sync(context: AppContext = Depends(get_context)):
    started = await context.sync.start()
    return {"success": started, **context.sync.get_status()}


@router.post("/stop")
async def stop_sync(context: AppContext = Depends(get_context)):
    context.sync.stop()
    return {"success": True, **context.sync.get_status()}


@router.post("/incremental")
async def trigger_incremental_sync(context: AppContext = Depends(get_context)):
    """Pull vouchers changed since the stored cursor"""
    logger.info("Incremental sync requested")
    return await context.sync.run_incremental_sync()


@router.post("/range")
async def trigger_range_sync(request: RangeRequest, context: AppContext = Depends(get_context)):
    logger.info(f"Range sync requested: {request.from_date} to {request.to_date}")
    return await context.sync.run_range_sync(request.from_date, request.to_date)


@router.post("/reconcile")
async def trigger_reconciliation(
    request: Optional[ReconcileRequest] = None, context: AppContext = Depends(get_context)
):
    """Mark vouchers that disappeared from Tally as deleted or converted"""
    kinds = request.kinds if request else None
    return await context.sync.run_deletion_reconciliation(kinds)


@router.post("/masters")
async def trigger_master_sync(context: AppContext = Depends(get_context)):
    return await context.sync.run_master_data_sync()


@router.post("/full-history")
async def trigger_full_history_sync(
    background_tasks: BackgroundTasks,
    request: Optional[FullHistoryRequest] = None,
    context: AppContext = Depends(get_context),
):
    """Start a batched backfill from start_date (default: one year back) to today"""
    if context.sync.is_syncing:
        return {"success": False, "error": ALREADY_SYNCING}
    request = request or FullHistoryRequest()
    logger.info(f"Full history sync requested from {request.start_date or 'one year back'}")
    background_tasks.add_task(context.sync.run_full_history_sync, request.start_date, request.batch_days)
    return {"success": True, "status": "started", "message": "Full history sync started"}


@router.post("/full-history/resume")
async def resume_full_history_sync(background_tasks: BackgroundTasks, context: AppContext = Depends(get_context)):
    if context.sync.is_syncing:
        return {"success": False, "error": ALREADY_SYNCING}
    background_tasks.add_task(context.sync.resume_full_history_sync)
    return {"success": True, "status": "started", "message": "Full history sync resuming"}


@router.get("/full-history")
async def get_full_history_status(context: AppContext = Depends(get_context)):
    return await context.sync.get_full_sync_status()


@router.websocket("/events")
async def sync_events(websocket: WebSocket):
    """Stream {event, data, timestamp} messages until the client disconnects"""
    context: AppContext = websocket.app.state.context
    await websocket.accept()

    async def forward(event):
        await websocket.send_json(jsonable_encoder(event))

    context.notifier.subscribe(forward)
    logger.info(f"Event listener connected ({context.notifier.listener_count} total)")
    try:
        await forward({"event": "connected", "data": context.sync.get_status(), "timestamp": get_current_timestamp()})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Event listener disconnected")
    finally:
        context.notifier.unsubscribe(forward)
