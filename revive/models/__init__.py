"""
Database models - import all models here so Alembic can discover them.
"""
from revive.models.account import Account
from revive.models.lead import Lead
from revive.models.consent import ConsentEvent
from revive.models.outbound import OutboundMessage
from revive.models.followup import FollowupCursor
from revive.models.gate_evaluation import GateEvaluation

__all__ = [
    "Account",
    "Lead",
    "ConsentEvent",
    "OutboundMessage",
    "FollowupCursor",
    "GateEvaluation",
]
