"""HTTP cron triggers (`?secret=CRON_SECRET`).

For hosts without the ARQ worker: an external scheduler hits these on the
same cadence the worker uses (follow-ups hourly, DM queue every minute).
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from dmtobuy.database import get_db
from dmtobuy.deps import require_cron_secret
from dmtobuy.schemas import CronRunResponse
from dmtobuy.services.followup_service import process_followups
from dmtobuy.services.instagram_client import DmSender, get_dm_sender
from dmtobuy.services.outbound_queue import process_queue, reset_stuck_processing

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(require_cron_secret)])


@router.get("/followups", response_model=CronRunResponse)
def run_followups(db: Session = Depends(get_db), sender: DmSender = Depends(get_dm_sender)):
    result = process_followups(db, sender)
    return CronRunResponse(result=result.to_dict())


@router.get("/dm-queue", response_model=CronRunResponse)
def run_dm_queue(db: Session = Depends(get_db), sender: DmSender = Depends(get_dm_sender)):
    released = reset_stuck_processing(db)
    result = process_queue(db, sender)
    return CronRunResponse(result={**result.to_dict(), "released": released})
