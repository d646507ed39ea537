from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4
from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class TradeStatus(str, Enum):
    PENDING_ACCEPTANCE = "pending_acceptance"
    PAYMENT_PENDING = "payment_pending"
    ESCROW_FUNDED = "escrow_funded"
    SHIPPING_PENDING = "shipping_pending"
    IN_TRANSIT = "in_transit"
    DELIVERED_AWAITING_VERIFICATION = "delivered_awaiting_verification"
    COMPLETED_AWAITING_RATING = "completed_awaiting_rating"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COUNTERED = "countered"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"


# Statuses in which a trade no longer holds its offered items. A settled
# trade releases them too, whatever its status.
CLOSED_STATUSES = frozenset({
    TradeStatus.REJECTED,
    TradeStatus.CANCELLED,
    TradeStatus.COUNTERED,
    TradeStatus.COMPLETED,
    TradeStatus.DISPUTE_RESOLVED,
})

DISPUTABLE_STATUSES = frozenset({
    TradeStatus.DELIVERED_AWAITING_VERIFICATION,
    TradeStatus.COMPLETED,
})


class TradeAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"


class PartyRole(str, Enum):
    PROPOSER = "proposer"
    RECEIVER = "receiver"


class User(BaseModel):
    id: str
    name: str = ""
    cash_balance: int = 0
    valuation_reputation_score: int = 100
    net_trade_surplus: int = 0
    version: int = 0


class Item(BaseModel):
    id: str
    owner_id: str
    name: str = ""
    estimated_market_value: int = 0
    version: int = 0


class Trade(BaseModel):
    id: str = Field(default_factory=new_id)
    proposer_id: str
    receiver_id: str
    proposer_item_ids: List[str] = Field(default_factory=list)
    receiver_item_ids: List[str] = Field(default_factory=list)
    proposer_cash: int = 0
    receiver_cash: int = 0
    status: TradeStatus = TradeStatus.PENDING_ACCEPTANCE
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    parent_trade_id: Optional[str] = None
    dispute_ticket_id: Optional[str] = None

    # Logistics
    proposer_submitted_tracking: bool = False
    receiver_submitted_tracking: bool = False
    proposer_tracking_number: Optional[str] = None
    receiver_tracking_number: Optional[str] = None
    proposer_carrier: Optional[str] = None
    receiver_carrier: Optional[str] = None
    proposer_delivered: bool = False
    receiver_delivered: bool = False

    # Verification
    proposer_verified_satisfaction: bool = False
    receiver_verified_satisfaction: bool = False
    settled_at: Optional[datetime] = None

    # Rating bookkeeping
    proposer_rated: bool = False
    receiver_rated: bool = False
    rating_deadline: Optional[datetime] = None
    rating_round: int = 0

    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.settled_at is None and self.status not in CLOSED_STATUSES

    @property
    def has_cash(self) -> bool:
        return self.proposer_cash > 0 or self.receiver_cash > 0

    @property
    def item_ids(self) -> List[str]:
        return self.proposer_item_ids + self.receiver_item_ids

    def role_of(self, user_id: str) -> Optional[PartyRole]:
        if user_id == self.proposer_id:
            return PartyRole.PROPOSER
        if user_id == self.receiver_id:
            return PartyRole.RECEIVER
        return None

    def other_party(self, user_id: str) -> str:
        return self.receiver_id if user_id == self.proposer_id else self.proposer_id

    def touch(self, now: datetime) -> None:
        # updated_at never moves backwards
        if now > self.updated_at:
            self.updated_at = now


class CashDifferential(BaseModel):
    amount: int
    payer_id: Optional[str] = None
    payee_id: Optional[str] = None
    description: str
    proposer_total: int
    receiver_total: int
