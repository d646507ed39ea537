"""Ratings API endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, status
from pydantic import BaseModel

from core.exceptions import TradeError
from database.exceptions import ConcurrentModificationError
from engine import TradeEngine
from ratings import TradeRating, RatingScores
from ..deps import get_engine, get_user_id
from ..errors import http_error

# Create router
router = APIRouter(
    prefix="/ratings",
    tags=["Ratings"]
)


class SubmitRatingRequest(RatingScores):
    """Request model for rating the other party of a trade."""
    public_comment: Optional[str] = None
    private_feedback: Optional[str] = None


@router.post("/trade/{trade_id}", response_model=TradeRating, status_code=status.HTTP_201_CREATED)
async def submit_rating(
    trade_id: str,
    request: SubmitRatingRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Rate the other party. The rating stays hidden until both have rated."""
    scores = RatingScores(**request.model_dump(include=set(RatingScores.model_fields)))
    try:
        return await engine.ratings.submit_rating(
            trade_id,
            user_id,
            scores,
            public_comment=request.public_comment,
            private_feedback=request.private_feedback
        )
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.get("/trade/{trade_id}", response_model=List[TradeRating])
async def get_trade_ratings(
    trade_id: str,
    x_user_id: Optional[str] = Header(None),
    engine: TradeEngine = Depends(get_engine)
):
    """Ratings on a trade visible to the caller."""
    try:
        return await engine.ratings.get_ratings_for_trade(trade_id, x_user_id)
    except TradeError as e:
        raise http_error(e)


@router.get("/user/{user_id}", response_model=List[TradeRating])
async def get_user_ratings(user_id: str, engine: TradeEngine = Depends(get_engine)):
    """Revealed ratings a user has received."""
    return await engine.ratings.get_ratings_for_user(user_id)
