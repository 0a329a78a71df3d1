"""
WebSocket endpoints for remote control of the bots.

WebSocket /{token}/ws     gate and garage
WebSocket /{token}/mono   gate only
-----------------------------------------

``token`` is the configured ``authToken``; a connection with any other value
is refused during the handshake with close code 1008.

Server → client
    ``gateconnect`` / ``gateerror``, ``garageconnect`` / ``garageerror``
        once per session, as soon as each bot is opened (or failed to open)
    ``ping``
        every second; the client treats a missing ping as a lost connection
    ``gate:<answer>`` / ``garage:<answer>``
        result of a press, ``<answer>`` is one of ``ok``, ``busy``, ``low``,
        ``error``

Client → server
    ``gate`` / ``garage``
        press the bot.  ``garage`` on a ``/mono`` session is ignored.

Usage
-----
    import websockets

    async with websockets.connect("ws://localhost:8080/<token>/ws") as ws:
        print(await ws.recv())          # "gateconnect"
        await ws.send("gate")
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from botgate.api.deps import get_context, token_is_valid
from botgate.context import GatewayContext
from botgate.session import Session
from botgate.switchbot import GARAGE, GATE

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/{token}/ws")
async def dual_endpoint(
    websocket: WebSocket,
    authorized: bool = Depends(token_is_valid),
    context: GatewayContext = Depends(get_context),
) -> None:
    """Session controlling both the gate and the garage."""
    await _serve(websocket, authorized, context, (GATE, GARAGE))


@router.websocket("/{token}/mono")
async def mono_endpoint(
    websocket: WebSocket,
    authorized: bool = Depends(token_is_valid),
    context: GatewayContext = Depends(get_context),
) -> None:
    """Session controlling the gate only."""
    await _serve(websocket, authorized, context, (GATE,))


async def _serve(
    websocket: WebSocket,
    authorized: bool,
    context: GatewayContext,
    entitled: tuple[str, ...],
) -> None:
    if not authorized:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()

    session = Session(
        websocket,
        context.registry,
        entitled,
        heartbeat_interval=context.settings.link.heartbeat_interval,
    )
    await context.sessions.add(session)
    session.start()

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("WebSocket client disconnected")
                break
            text = message.get("text")
            if text is None:
                logger.info("Skipped non-text message")
                continue
            await session.handle_message(text)

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    except Exception as exc:
        logger.error("WebSocket error: %s", exc)
    finally:
        # Bots must be released even if the server cancels this handler.
        await asyncio.shield(_end_session(session, context))


async def _end_session(session: Session, context: GatewayContext) -> None:
    await session.close()
    await context.sessions.remove(session)
