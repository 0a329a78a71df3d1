"""
Client sessions — one per WebSocket connection.

A session bridges a client to the bots it is entitled to control:

- On start every entitled bot is acquired in its own task and the outcome is
  reported as ``<name>connect`` or ``<name>error`` as soon as it is known.
- ``gate`` / ``garage`` text frames press the matching bot and are answered
  with ``<name>:<ok|busy|low|error>``.
- A heartbeat sends ``ping`` every second.  The first failed send means the
  client is gone: the websocket is closed, the session ends and every bot it
  acquired is released exactly once.

All writes to the websocket go through the session's send lock, because the
heartbeat, the acquisition tasks and the command loop share the connection.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from botgate.switchbot import Bot, BotError, BotRegistry

logger = logging.getLogger(__name__)

PING = "ping"
CONNECT_SUFFIX = "connect"
ERROR_SUFFIX = "error"

# Seconds between two pings
HEARTBEAT_INTERVAL: float = 1.0


class Session:
    def __init__(
        self,
        websocket: Any,
        registry: BotRegistry,
        entitled: Iterable[str],
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.websocket = websocket
        self.entitled: tuple[str, ...] = tuple(entitled)
        self.started_at = datetime.now(timezone.utc)
        self.alive = True

        self._registry = registry
        self._heartbeat_interval = heartbeat_interval
        self._send_lock = asyncio.Lock()
        self._acquired: list[Bot] = []
        self._open_tasks: list[asyncio.Task] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._closing = False
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"<Session {self.id} {'+'.join(self.entitled)}>"

    @property
    def acquired(self) -> tuple[str, ...]:
        return tuple(bot.name for bot in self._acquired)

    async def send(self, text: str) -> None:
        async with self._send_lock:
            await self.websocket.send_text(text)

    def start(self) -> None:
        """Begin acquiring the entitled bots and start the heartbeat."""
        for name in self.entitled:
            self._open_tasks.append(
                asyncio.create_task(self._open(name), name=f"session-{self.id}-{name}")
            )
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat(), name=f"session-{self.id}-heartbeat"
        )
        logger.info("Session %s started for %s", self.id, ", ".join(self.entitled))

    async def _open(self, name: str) -> None:
        bot = self._registry.get(name)
        try:
            await bot.acquire()
        except BotError as exc:
            logger.warning("Session %s could not open %s: %s", self.id, name, exc)
            message = name + ERROR_SUFFIX
        except Exception:
            logger.exception("Unexpected error opening %s for session %s", name, self.id)
            message = name + ERROR_SUFFIX
        else:
            self._acquired.append(bot)
            message = name + CONNECT_SUFFIX

        try:
            await self.send(message)
        except Exception as exc:
            logger.info("Session %s gone before %r was sent: %s", self.id, message, exc)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self.send(PING)
            except Exception as exc:
                logger.info("Ping failed for session %s: %s", self.id, exc)
                break
        await self._close_websocket()
        await self.close()

    async def _close_websocket(self) -> None:
        """Close a connection the heartbeat found dead so the receive loop ends."""
        try:
            async with self._send_lock:
                await self.websocket.close()
        except Exception as exc:
            logger.debug("Closing websocket of session %s failed: %s", self.id, exc)

    async def handle_message(self, message: str) -> None:
        """Dispatch one text frame from the client."""
        if not self.alive:
            logger.debug("Session %s closed, ignoring %r", self.id, message)
            return
        if message not in self._registry:
            logger.warning("Unexpected message %r on session %s", message, self.id)
            return
        if message not in self.entitled:
            logger.warning("Session %s is not allowed to use %s", self.id, message)
            return

        bot = self._registry.get(message)
        status = await bot.press()
        answer = status.answer
        logger.info('%s says "%s"', bot.name.capitalize(), answer)
        await self.send(f"{bot.name}:{answer}")

    async def close(self) -> None:
        """
        End the session and release every bot it holds.

        Safe to call more than once and from the heartbeat itself; later
        callers wait until the first one has finished releasing.
        """
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        self.alive = False

        heartbeat = self._heartbeat_task
        if heartbeat is not None and heartbeat is not asyncio.current_task():
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        # Acquisitions are never interrupted; wait for them so a late success
        # is released too.
        if self._open_tasks:
            await asyncio.gather(*self._open_tasks, return_exceptions=True)

        acquired, self._acquired = self._acquired, []
        for bot in acquired:
            await bot.release()
        self._closed.set()
        logger.info("Session %s ended", self.id)


class SessionTracker:
    """Registry of live sessions, used for diagnostics."""

    def __init__(self) -> None:
        self._sessions: set[Session] = set()
        self._lock = asyncio.Lock()

    async def add(self, session: Session) -> None:
        async with self._lock:
            self._sessions.add(session)
        logger.info("Client connected: %s (total: %d)", session.id, len(self._sessions))

    async def remove(self, session: Session) -> None:
        async with self._lock:
            if session in self._sessions:
                self._sessions.remove(session)
                logger.info(
                    "Client disconnected: %s (remaining: %d)",
                    session.id,
                    len(self._sessions),
                )

    def count(self) -> int:
        return len(self._sessions)
