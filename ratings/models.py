from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from core.models import new_id, utc_now

MIN_SCORE = 1
MAX_SCORE = 5


class RatingScores(BaseModel):
    overall_score: int
    item_accuracy_score: int
    communication_score: int
    shipping_speed_score: int


class TradeRating(BaseModel):
    id: str = Field(default_factory=new_id)
    trade_id: str
    rater_id: str
    ratee_id: str
    overall_score: int
    item_accuracy_score: int
    communication_score: int
    shipping_speed_score: int
    public_comment: Optional[str] = None
    private_feedback: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    is_revealed: bool = False
    revealed_at: Optional[datetime] = None
    round: int = 0
    version: int = 0
