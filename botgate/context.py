"""
Process-scoped gateway context.

Built once by the application lifespan and stored on ``app.state.context``;
routes reach it through :func:`botgate.api.deps.get_context`.
"""

from dataclasses import dataclass, field

from botgate.config import Settings
from botgate.session import SessionTracker
from botgate.switchbot import BotRegistry


@dataclass
class GatewayContext:
    settings: Settings
    registry: BotRegistry
    sessions: SessionTracker = field(default_factory=SessionTracker)
