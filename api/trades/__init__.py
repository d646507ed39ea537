"""Trades API endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from core.exceptions import TradeError
from core.models import Trade, TradeStatus, CashDifferential
from database.exceptions import ConcurrentModificationError
from engine import TradeEngine
from shipping import TrackingEvent
from ..deps import get_engine, get_user_id
from ..errors import http_error

# Create router
router = APIRouter(
    prefix="/trades",
    tags=["Trades"]
)


class ProposeTradeRequest(BaseModel):
    """Request model for proposing a trade."""
    receiver_id: str
    proposer_item_ids: List[str] = Field(default_factory=list)
    receiver_item_ids: List[str] = Field(default_factory=list)
    proposer_cash: int = 0
    receiver_cash: int = 0


class RespondRequest(BaseModel):
    """Request model for accepting, rejecting or cancelling a trade."""
    action: str


class CounterOfferRequest(BaseModel):
    """Request model for countering a trade, from the caller's side."""
    offered_item_ids: List[str] = Field(default_factory=list)
    requested_item_ids: List[str] = Field(default_factory=list)
    offered_cash: int = 0
    requested_cash: int = 0


class TrackingRequest(BaseModel):
    """Request model for submitting a tracking number."""
    tracking_number: str


@router.post("", response_model=Trade, status_code=status.HTTP_201_CREATED)
async def propose_trade(
    request: ProposeTradeRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Propose a trade to another user."""
    try:
        return await engine.trades.propose(
            proposer_id=user_id,
            receiver_id=request.receiver_id,
            proposer_item_ids=request.proposer_item_ids,
            receiver_item_ids=request.receiver_item_ids,
            proposer_cash=request.proposer_cash,
            receiver_cash=request.receiver_cash
        )
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.get("", response_model=List[Trade])
async def list_trades(
    trade_status: Optional[TradeStatus] = Query(None, alias="status"),
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """List the caller's trades, newest first."""
    return await engine.trades.list_trades_for_user(user_id, trade_status)


@router.post("/tracking-events", response_model=Optional[Trade])
async def record_tracking_event(event: TrackingEvent, engine: TradeEngine = Depends(get_engine)):
    """Carrier webhook for shipment status updates."""
    try:
        return await engine.shipping.record_tracking_event(event)
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.get("/{trade_id}", response_model=Trade)
async def get_trade(
    trade_id: str,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Get trade details. Only the two parties may see a trade."""
    try:
        trade = await engine.trades.get_trade(trade_id)
    except TradeError as e:
        raise http_error(e)
    if trade.role_of(user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"User {user_id} is not a party to trade {trade_id}"
        )
    return trade


@router.post("/{trade_id}/respond", response_model=Trade)
async def respond_to_trade(
    trade_id: str,
    request: RespondRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Accept, reject or cancel a pending trade."""
    try:
        return await engine.trades.respond(trade_id, user_id, request.action)
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.post("/{trade_id}/counter", response_model=Trade, status_code=status.HTTP_201_CREATED)
async def counter_trade(
    trade_id: str,
    request: CounterOfferRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Answer a pending trade with new terms."""
    try:
        return await engine.trades.counter_offer(
            trade_id,
            user_id,
            request.offered_item_ids,
            request.requested_item_ids,
            request.offered_cash,
            request.requested_cash
        )
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.get("/{trade_id}/differential", response_model=CashDifferential)
async def get_cash_differential(trade_id: str, engine: TradeEngine = Depends(get_engine)):
    """Who pays whom, and how much, for a trade."""
    try:
        return await engine.escrow.compute_cash_differential(trade_id)
    except TradeError as e:
        raise http_error(e)


@router.get("/{trade_id}/escrow")
async def get_escrow_status(trade_id: str, engine: TradeEngine = Depends(get_engine)):
    """Escrow hold and cash differential for a trade."""
    try:
        return await engine.escrow.get_escrow_status(trade_id)
    except TradeError as e:
        raise http_error(e)


@router.post("/{trade_id}/escrow/fund", response_model=Trade)
async def fund_escrow(
    trade_id: str,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Pay the cash differential into escrow."""
    try:
        return await engine.escrow.fund_escrow(trade_id, user_id)
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.post("/{trade_id}/tracking", response_model=Trade)
async def submit_tracking(
    trade_id: str,
    request: TrackingRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Submit the tracking number for the caller's shipment."""
    try:
        return await engine.shipping.submit_tracking(trade_id, user_id, request.tracking_number)
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.post("/{trade_id}/delivered", response_model=Trade)
async def mark_delivered(trade_id: str, engine: TradeEngine = Depends(get_engine)):
    """Mark an in-transit trade as delivered."""
    try:
        return await engine.shipping.mark_delivered(trade_id)
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.post("/{trade_id}/verify", response_model=Trade)
async def verify_satisfaction(
    trade_id: str,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Confirm the caller is satisfied with what they received."""
    try:
        return await engine.shipping.verify_satisfaction(trade_id, user_id)
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)
