"""
Health Controller
Handles health check API endpoints
"""

from fastapi import APIRouter, Depends

from ..context import AppContext
from .dependencies import get_context

router = APIRouter()


@router.get("")
async def health_check(context: AppContext = Depends(get_context)):
    """Complete health check"""
    return await context.health.check_all()


@router.get("/tally")
async def tally_health(context: AppContext = Depends(get_context)):
    """Tally connection health check"""
    return await context.health.check_tally()


@router.get("/database")
async def database_health(context: AppContext = Depends(get_context)):
    """Database health check"""
    return await context.health.check_database()
