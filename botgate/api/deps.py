"""
Shared FastAPI dependencies.
"""

import logging
import secrets

from fastapi import Depends
from fastapi.requests import HTTPConnection

from botgate.context import GatewayContext

logger = logging.getLogger(__name__)


def get_context(connection: HTTPConnection) -> GatewayContext:
    """Return the gateway context built by the application lifespan."""
    return connection.app.state.context


def token_is_valid(token: str, context: GatewayContext = Depends(get_context)) -> bool:
    """
    Compare the ``token`` path segment with the configured auth token.

    The token is the only credential the gateway has, so the comparison is
    constant-time.
    """
    expected = context.settings.server.auth_token
    valid = secrets.compare_digest(token.encode(), expected.encode())
    if not valid:
        logger.warning("Invalid auth token in request path")
    return valid
