"""
Cron Router - scheduler-triggered jobs

Called by an external scheduler (Vercel Cron, GitHub Actions) with
`Authorization: Bearer $CRON_SECRET`. The Inngest cron function runs the
same refresh on the 1st of every month.
"""

import os
import hmac
import logging
from typing import Optional
from fastapi import APIRouter, HTTPException, Header

from app.models.credits import RefreshResult
from app.services.monthly_refresher import refresh_monthly_credits
from app.utils.errors import UnauthorizedRefresh, handle_exception, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


def verify_cron_secret(authorization: Optional[str]) -> None:
    """Raise UnauthorizedRefresh unless the bearer token matches CRON_SECRET."""
    cron_secret = os.getenv("CRON_SECRET", "")
    if not cron_secret:
        logger.error("[REFRESH] CRON_SECRET not configured - refusing cron call")
        raise UnauthorizedRefresh()

    if not authorization or not hmac.compare_digest(authorization.encode(), f"Bearer {cron_secret}".encode()):
        logger.warning("[REFRESH] Unauthorized cron call")
        raise UnauthorizedRefresh()


@router.api_route("/monthly-credits", methods=["GET", "POST"], response_model=RefreshResult)
async def monthly_credits(authorization: Optional[str] = Header(None)):
    """
    Refresh free-plan credits for the current month

    GET is accepted too so the job can be triggered by hand.
    """
    try:
        verify_cron_secret(authorization)
    except UnauthorizedRefresh as e:
        raise to_http_exception(e)

    try:
        return await refresh_monthly_credits()
    except HTTPException:
        raise
    except Exception as e:
        raise handle_exception(e, "monthly_credits_refresh")
