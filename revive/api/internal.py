"""
Internal endpoints - periodic triggers (cron) and the operator views.
All routes require the X-Cron-Secret header.
"""
import logging
import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from revive.api.deps import get_engine, require_cron_secret
from revive.database import get_db
from revive.engine import Engine, LeadNotFound
from revive.schemas.api_responses import (
    AutopilotTickResponse,
    DeadLetterItem,
    DeadLetterListResponse,
    FollowupEnrollResponse,
    FollowupTickResponse,
    GateEvaluationResponse,
    IntroResponse,
    QueueStatsResponse,
    RequeueResponse,
    WorkerTickResponse,
)
from revive.schemas.block_reasons import load_block_reason
from revive.services import compliance, send_queue
from revive.utils.dead_letter import dead_letter_count, list_dead_letters, requeue_dead_letter

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/internal",
    tags=["internal"],
    dependencies=[Depends(require_cron_secret)],
)


def _parse_uuid(value: str, what: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"{what} not found")


@router.post("/autopilot/tick/{account_id}", response_model=AutopilotTickResponse)
async def autopilot_tick(account_id: str, engine: Engine = Depends(get_engine)):
    result = await engine.tick(_parse_uuid(account_id, "Account"))
    return AutopilotTickResponse(**asdict(result))


@router.post("/queue/worker", response_model=WorkerTickResponse)
async def queue_worker(batch_size: int | None = None, engine: Engine = Depends(get_engine)):
    if batch_size is not None and not 1 <= batch_size <= 100:
        raise HTTPException(status_code=400, detail="batch_size must be between 1 and 100")
    result = await engine.run_worker(batch_size)
    return WorkerTickResponse(**asdict(result))


@router.post("/followups/enroll", response_model=FollowupEnrollResponse)
async def followups_enroll(engine: Engine = Depends(get_engine)):
    result = await engine.enroll_followups()
    return FollowupEnrollResponse(**result)


@router.post("/followups/tick", response_model=FollowupTickResponse)
async def followups_tick(engine: Engine = Depends(get_engine)):
    result = await engine.run_followups()
    return FollowupTickResponse(**asdict(result))


@router.get("/queue/dead-letter", response_model=DeadLetterListResponse)
async def dead_letter_items(limit: int = 50, db: AsyncSession = Depends(get_db)):
    if not 1 <= limit <= 200:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 200")
    items = await list_dead_letters(db, limit=limit)
    return DeadLetterListResponse(
        items=[
            DeadLetterItem(
                item_id=str(item.id),
                lead_id=str(item.lead_id),
                account_id=str(item.account_id),
                category=item.category,
                attempt=item.attempt,
                error_code=item.error_code,
                last_error=item.last_error,
                failed_at=item.failed_at,
            )
            for item in items
        ],
        total=await dead_letter_count(db),
    )


@router.post("/queue/dead-letter/{item_id}/requeue", response_model=RequeueResponse)
async def requeue_dead_letter_item(
    item_id: str,
    db: AsyncSession = Depends(get_db),
    engine: Engine = Depends(get_engine),
):
    requeued = await requeue_dead_letter(db, _parse_uuid(item_id, "Item"), engine.now())
    if not requeued:
        raise HTTPException(status_code=404, detail="Dead-lettered item not found")
    return RequeueResponse(status="queued", item_id=item_id)


@router.get("/leads/{lead_id}/last-gate", response_model=GateEvaluationResponse)
async def last_gate_evaluation(lead_id: str, db: AsyncSession = Depends(get_db)):
    """Why didn't lead X get a message: the most recent gate decision."""
    evaluation = await compliance.last_evaluation(db, _parse_uuid(lead_id, "Lead"))
    if evaluation is None:
        raise HTTPException(status_code=404, detail="No gate evaluation for lead")

    reason = load_block_reason(evaluation.reason)
    return GateEvaluationResponse(
        lead_id=str(evaluation.lead_id),
        decision=evaluation.decision,
        reason_code=evaluation.reason_code,
        reason=evaluation.reason,
        message=reason.message if reason is not None else None,
        needs_footer=evaluation.needs_footer,
        context=evaluation.context,
        evaluated_at=evaluation.evaluated_at,
    )


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(db: AsyncSession = Depends(get_db)):
    counts = await send_queue.queue_stats(db)
    return QueueStatsResponse(counts=counts, dead_letter=await dead_letter_count(db))


@router.post("/leads/{lead_id}/intro", response_model=IntroResponse)
async def queue_lead_intro(lead_id: str, engine: Engine = Depends(get_engine)):
    try:
        result = await engine.queue_intro(_parse_uuid(lead_id, "Lead"))
    except LeadNotFound:
        raise HTTPException(status_code=404, detail="Lead not found")
    return IntroResponse(
        queued=result.queued,
        reason=result.reason,
        item_id=str(result.item_id) if result.item_id else None,
    )
