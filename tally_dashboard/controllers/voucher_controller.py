"""
Voucher Controller
==================
Cached vouchers and the write operations the dashboard performs on them.

ENDPOINTS:
---------
POST   /api/vouchers                      - Create a voucher in Tally (queued if offline)
GET    /api/vouchers/{global_id}          - Cached voucher with local status
DELETE /api/vouchers/{global_id}          - Delete in Tally and soft-delete locally
GET    /api/vouchers/{global_id}/items    - Cached line items
PUT    /api/vouchers/{global_id}/items    - Replace line items in Tally and the cache
POST   /api/vouchers/{global_id}/refresh  - Re-read line items from Tally
PATCH  /api/vouchers/{global_id}/status   - Payment, dispatch and audit status
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..context import AppContext
from ..models.voucher import LineItem, LocalStatusUpdate, VoucherDraft
from .dependencies import get_context

router = APIRouter()


class ItemsRequest(BaseModel):
    items: List[LineItem]


@router.post("")
async def create_voucher(draft: VoucherDraft, context: AppContext = Depends(get_context)):
    return await context.sync.create_voucher(draft)


@router.get("/{global_id}")
async def get_voucher(global_id: str, context: AppContext = Depends(get_context)):
    voucher = await context.store.get_voucher_by_global_id(global_id)
    if voucher is None:
        raise HTTPException(status_code=404, detail=f"Voucher {global_id} not found")
    return {
        "voucher": voucher.model_dump(),
        "local_status": await context.store.get_local_status(global_id)
    }


@router.delete("/{global_id}")
async def delete_voucher(global_id: str, context: AppContext = Depends(get_context)):
    return await context.sync.delete_voucher(global_id)


@router.get("/{global_id}/items")
async def get_line_items(global_id: str, context: AppContext = Depends(get_context)):
    items = await context.store.get_line_items(global_id)
    return {"global_id": global_id, "items": [item.model_dump() for item in items], "count": len(items)}


@router.put("/{global_id}/items")
async def update_line_items(global_id: str, request: ItemsRequest, context: AppContext = Depends(get_context)):
    return await context.sync.update_voucher_items(global_id, request.items)


@router.post("/{global_id}/refresh")
async def refresh_line_items(global_id: str, context: AppContext = Depends(get_context)):
    return await context.sync.refresh_line_items(global_id)


@router.patch("/{global_id}/status")
async def update_local_status(
    global_id: str, update: LocalStatusUpdate, context: AppContext = Depends(get_context)
):
    return await context.sync.update_local_status(global_id, update)
