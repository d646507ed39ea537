from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from core.models import new_id, utc_now


class DisputeStatus(str, Enum):
    AWAITING_EVIDENCE = "awaiting_evidence"
    AWAITING_RESPONSE = "awaiting_response"
    IN_MEDIATION = "in_mediation"
    ESCALATED_TO_MODERATION = "escalated_to_moderation"
    RESOLVED = "resolved"
    CLOSED_AUTOMATICALLY = "closed_automatically"


OPEN_DISPUTE_STATUSES = frozenset({
    DisputeStatus.AWAITING_EVIDENCE,
    DisputeStatus.AWAITING_RESPONSE,
    DisputeStatus.IN_MEDIATION,
    DisputeStatus.ESCALATED_TO_MODERATION,
})


class DisputeType(str, Enum):
    ITEM_NOT_RECEIVED = "item-not-received"
    SIGNIFICANTLY_NOT_AS_DESCRIBED = "significantly-not-as-described"
    COUNTERFEIT = "counterfeit"
    SHIPPING_DAMAGE = "shipping-damage"


class DisputeResolution(str, Enum):
    TRADE_UPHELD = "trade-upheld"
    FULL_REFUND = "full-refund"
    PARTIAL_REFUND = "partial-refund"
    TRADE_REVERSAL = "trade-reversal"


class Evidence(BaseModel):
    statement: str = ""
    attachments: List[str] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=utc_now)


class MediationMessage(BaseModel):
    sender_id: str
    text: str
    timestamp: datetime = Field(default_factory=utc_now)


class DisputeTicket(BaseModel):
    id: str = Field(default_factory=new_id)
    trade_id: str
    initiator_id: str
    respondent_id: str
    status: DisputeStatus = DisputeStatus.AWAITING_EVIDENCE
    dispute_type: DisputeType
    initiator_evidence: Evidence
    respondent_evidence: Optional[Evidence] = None
    mediation_log: List[MediationMessage] = Field(default_factory=list)
    resolution: Optional[DisputeResolution] = None
    refund_amount: Optional[int] = None
    moderator_notes: Optional[str] = None
    moderator_id: Optional[str] = None
    deadline_for_next_action: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_DISPUTE_STATUSES

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.initiator_id, self.respondent_id)

    def touch(self, now: datetime) -> None:
        if now > self.updated_at:
            self.updated_at = now
