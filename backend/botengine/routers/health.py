"""Health check router."""

from fastapi import APIRouter

from ..services.scheduler import bot_scheduler

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "botengine",
        "version": "1.0.0",
        "running_bots": len([b for b in bot_scheduler.registered_bot_ids() if bot_scheduler.is_running(b)]),
    }
