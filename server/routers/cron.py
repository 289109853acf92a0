"""Scheduled workflow sweep entrypoint for external cron callers."""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import ORJSONResponse

from core.config import Settings
from core.container import container
from core.logging import get_logger
from services.scheduler import SchedulerLoop

logger = get_logger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"])


def _authorized(settings: Settings, authorization: Optional[str]) -> bool:
    if not settings.cron_secret:
        return True
    expected = f"Bearer {settings.cron_secret}"
    return hmac.compare_digest((authorization or "").encode(), expected.encode())


@router.api_route("/scheduled-workflows", methods=["GET", "POST"])
async def run_scheduled_workflows(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(lambda: container.settings()),
    scheduler: SchedulerLoop = Depends(lambda: container.scheduler())
):
    """Run one sweep over due schedules."""
    if not _authorized(settings, authorization):
        logger.warning("Rejected cron sweep: bad credentials")
        return ORJSONResponse(status_code=401, content={"ok": False, "error": "Unauthorized"})

    summary = await scheduler.sweep()
    logger.info("Cron sweep finished", processed=summary["processed"])
    return {
        "ok": True,
        "processed": summary["processed"],
        "results": summary["results"],
        "timestamp": summary["timestamp"],
    }
