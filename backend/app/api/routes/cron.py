"""
Cron Endpoints

Entry points for the external scheduler. Both accept GET and POST and
require the cron secret as a bearer token before any work is done.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.dependencies import OrchestratorDep, verify_cron_secret
from app.domain.subscription import SweepStatus
from app.infrastructure.services.run_coordinator import RunAdmission


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", dependencies=[Depends(verify_cron_secret)])


@router.api_route("/billing", methods=["GET", "POST"])
async def run_billing(orchestrator: OrchestratorDep):
    """
    Run one billing sweep.

    Returns 200 with the sweep counts, 409 when a sweep is already running,
    or 429 when the previous sweep started too recently.
    """
    result = await orchestrator.run_billing_sweep()

    if result.status == SweepStatus.SKIPPED:
        admission = RunAdmission(result.reason)
        return JSONResponse(
            status_code=admission.http_status,
            content=result.model_dump(mode="json"),
        )

    return result.model_dump(mode="json")


@router.api_route("/webhook-cleanup", methods=["GET", "POST"])
async def cleanup_webhook_events(orchestrator: OrchestratorDep):
    """Purge webhook dedup records past the retention window."""
    deleted = await orchestrator.purge_webhook_events()
    return {"deleted": deleted}
