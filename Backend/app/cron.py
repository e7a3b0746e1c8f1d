"""
Periodic trigger endpoint.

An external scheduler calls GET /cron/appointment-reminders at least
hourly. When CRON_SECRET is set the call must carry
Authorization: Bearer <CRON_SECRET>.
"""

import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.db import get_session
from .notifications import NotificationSender, get_notifier
from .reminders import run_reminder_pass

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


async def verify_cron_secret(request: Request) -> None:
    secret = get_settings().cron_secret
    if not secret:
        return
    presented = request.headers.get("Authorization", "")
    if not hmac.compare_digest(presented.encode(), f"Bearer {secret}".encode()):
        logger.warning("Rejected reminder trigger with a bad or missing cron secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.get("/appointment-reminders", dependencies=[Depends(verify_cron_secret)])
async def appointment_reminders(
    session: AsyncSession = Depends(get_session),
    sender: NotificationSender = Depends(get_notifier),
):
    report = await run_reminder_pass(session, sender=sender)
    return {"success": True, **report.to_dict()}
