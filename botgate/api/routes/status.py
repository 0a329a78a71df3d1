"""
GET /status — gateway health and bot link states.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from botgate.api.deps import get_context
from botgate.context import GatewayContext

router = APIRouter()
logger = logging.getLogger(__name__)


class BotState(BaseModel):
    state: str
    users: int


class StatusResponse(BaseModel):
    status: str
    bots: dict[str, BotState]
    sessions: int


@router.get("/status", response_model=StatusResponse)
def get_status(context: GatewayContext = Depends(get_context)) -> StatusResponse:
    """
    Returns the gateway status and the state of each bot link.

    - **status**: always ``"ok"`` while the server is up.
    - **bots**: per bot, the link state (``closed``, ``connecting``,
      ``discovering``, ``ready`` or ``grace``) and the number of sessions
      holding it.
    - **sessions**: number of connected WebSocket clients.
    """
    bots = {
        bot.name: BotState(state=bot.state, users=bot.ref_count)
        for bot in context.registry
    }
    return StatusResponse(status="ok", bots=bots, sessions=context.sessions.count())
