"""Disputes API endpoints."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from core.exceptions import TradeError
from database.exceptions import ConcurrentModificationError
from disputes import DisputeTicket, DisputeStatus, MediationMessage
from engine import TradeEngine
from ..deps import get_engine, get_user_id
from ..errors import http_error

# Create router
router = APIRouter(
    prefix="/disputes",
    tags=["Disputes"]
)


class OpenDisputeRequest(BaseModel):
    """Request model for opening a dispute."""
    trade_id: str
    dispute_type: str
    statement: str


class EvidenceRequest(BaseModel):
    """Request model for the initiator's evidence."""
    attachments: List[str] = Field(default_factory=list)


class ResponseRequest(BaseModel):
    """Request model for the respondent's side of the dispute."""
    statement: str
    attachments: List[str] = Field(default_factory=list)


class MessageRequest(BaseModel):
    """Request model for a mediation message."""
    text: str


class ResolveRequest(BaseModel):
    """Request model for a moderator's resolution."""
    resolution: str
    moderator_notes: str
    refund_amount: Optional[int] = None


@router.post("", response_model=DisputeTicket, status_code=status.HTTP_201_CREATED)
async def open_dispute(
    request: OpenDisputeRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Open a dispute on a delivered or completed trade."""
    try:
        return await engine.disputes.open_dispute(
            request.trade_id,
            user_id,
            request.dispute_type,
            request.statement
        )
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.get("", response_model=List[DisputeTicket])
async def list_disputes(
    dispute_status: Optional[DisputeStatus] = Query(None, alias="status"),
    engine: TradeEngine = Depends(get_engine)
):
    """List dispute tickets, optionally by status (the moderation queue)."""
    return await engine.disputes.list_tickets(dispute_status)


@router.get("/{ticket_id}", response_model=DisputeTicket)
async def get_dispute(ticket_id: str, engine: TradeEngine = Depends(get_engine)):
    """Get dispute ticket details."""
    try:
        return await engine.disputes.get_ticket(ticket_id)
    except TradeError as e:
        raise http_error(e)


@router.post("/{ticket_id}/evidence", response_model=DisputeTicket)
async def submit_evidence(
    ticket_id: str,
    request: EvidenceRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Submit the initiator's evidence."""
    try:
        return await engine.disputes.submit_evidence(ticket_id, request.attachments, user_id)
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.post("/{ticket_id}/response", response_model=DisputeTicket)
async def submit_response(
    ticket_id: str,
    request: ResponseRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Submit the respondent's side and move to mediation."""
    try:
        return await engine.disputes.submit_response(
            ticket_id,
            request.statement,
            request.attachments,
            user_id
        )
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.post("/{ticket_id}/messages", response_model=MediationMessage, status_code=status.HTTP_201_CREATED)
async def send_message(
    ticket_id: str,
    request: MessageRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Post a mediation message."""
    try:
        return await engine.disputes.send_mediation_message(ticket_id, user_id, request.text)
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.get("/{ticket_id}/messages", response_model=List[MediationMessage])
async def get_messages(
    ticket_id: str,
    since: Optional[datetime] = None,
    engine: TradeEngine = Depends(get_engine)
):
    """Poll mediation messages, optionally only those after `since`."""
    try:
        return await engine.disputes.get_mediation_messages(ticket_id, since)
    except TradeError as e:
        raise http_error(e)


@router.post("/{ticket_id}/escalate", response_model=DisputeTicket)
async def escalate_dispute(
    ticket_id: str,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Escalate a mediated dispute to moderation."""
    try:
        return await engine.disputes.escalate(ticket_id, user_id)
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)


@router.post("/{ticket_id}/resolve", response_model=DisputeTicket)
async def resolve_dispute(
    ticket_id: str,
    request: ResolveRequest,
    user_id: str = Depends(get_user_id),
    engine: TradeEngine = Depends(get_engine)
):
    """Resolve an escalated dispute. The caller is recorded as moderator and
    must not be a party to it."""
    try:
        return await engine.disputes.resolve(
            ticket_id,
            request.resolution,
            request.moderator_notes,
            user_id,
            request.refund_amount
        )
    except (TradeError, ConcurrentModificationError) as e:
        raise http_error(e)
