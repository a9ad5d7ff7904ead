"""Internal job trigger — lets an external cron run the scheduled jobs over HTTP."""

import hmac
import logging

from fastapi import APIRouter, Header, HTTPException, Request

from kentra.config import get_settings
from kentra.scheduler_tasks import SCHEDULED_JOBS, run_scheduled_job

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/internal/jobs", tags=["internal"])


@router.post("/{job}")
async def trigger_job(
    job: str,
    request: Request,
    x_cron_secret: str | None = Header(default=None),
):
    settings = get_settings()
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.cron_secret):
        logger.warning("Rejected job trigger for %s: bad cron secret", job)
        raise HTTPException(status_code=401, detail="Unauthorized")
    if job not in SCHEDULED_JOBS:
        raise HTTPException(status_code=404, detail=f"Unknown job '{job}'")

    summary = await run_scheduled_job(job, getattr(request.app.state, "arq_redis", None))
    return {"success": True, "job": job, "summary": summary}
