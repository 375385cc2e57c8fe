"""
API response schemas for the webhook and internal cron endpoints.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class InboundResponse(BaseModel):
    status: str = "received"
    action: Optional[str] = None  # revoke, grant, help, pause, resume
    reply: Optional[str] = None


class StatusCallbackResponse(BaseModel):
    status: str = "ok"
    updated: bool = False


class WorkerTickResponse(BaseModel):
    picked: int = 0
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    suppressed: int = 0


class AutopilotTickResponse(BaseModel):
    ran: bool
    reason: Optional[str] = None
    enqueued: int = 0
    skipped: int = 0
    blocked: dict[str, int] = Field(default_factory=dict)
    remaining: int = 0


class FollowupEnrollResponse(BaseModel):
    enrolled: int = 0
    accounts: int = 0


class FollowupTickResponse(BaseModel):
    due: int = 0
    enqueued: int = 0
    deferred: int = 0
    stopped: int = 0
    skipped: int = 0


class GateEvaluationResponse(BaseModel):
    lead_id: str
    decision: str
    reason_code: Optional[str] = None
    reason: Optional[dict] = None
    message: Optional[str] = None
    needs_footer: bool = False
    context: str
    evaluated_at: datetime


class QueueStatsResponse(BaseModel):
    counts: dict[str, int] = Field(default_factory=dict)
    dead_letter: int = 0


class RequeueResponse(BaseModel):
    status: str
    item_id: str


class IntroResponse(BaseModel):
    queued: bool
    reason: Optional[str] = None
    item_id: Optional[str] = None


class DeadLetterItem(BaseModel):
    item_id: str
    lead_id: str
    account_id: str
    category: str
    attempt: int
    error_code: Optional[str] = None
    last_error: Optional[str] = None
    failed_at: Optional[datetime] = None


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterItem] = Field(default_factory=list)
    total: int = 0
