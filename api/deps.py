"""Request dependencies shared by the routers."""
from fastapi import Header, Request

from engine import TradeEngine


def get_engine(request: Request) -> TradeEngine:
    return request.app.state.engine


def get_user_id(x_user_id: str = Header(..., description="Id of the calling user")) -> str:
    """Caller identity.

    Authentication happens in front of the engine; the gateway forwards the
    authenticated user's id in the X-User-Id header.
    """
    return x_user_id
