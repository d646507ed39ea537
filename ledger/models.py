from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field

from core.models import new_id, utc_now


class EscrowStatus(str, Enum):
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class EscrowEntryType(str, Enum):
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


class EscrowHold(BaseModel):
    trade_id: str
    payer_id: str
    payee_id: str
    amount: int
    released_amount: int = 0
    refunded_amount: int = 0
    status: EscrowStatus = EscrowStatus.FUNDED
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    @property
    def remaining(self) -> int:
        return self.amount - self.released_amount - self.refunded_amount


class EscrowEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    trade_id: str
    user_id: str
    amount: int
    entry_type: EscrowEntryType
    created_at: datetime = Field(default_factory=utc_now)
    version: int = 0
