"""
Bot — connection lifecycle for one BLE push-button actuator.

One ``Bot`` exists per configured actuator for the lifetime of the registry.
Sessions share it through reference counting:

    await bot.acquire()      # connect on first use, or reuse the open link
    status = await bot.press()
    await bot.release()      # last holder starts the grace-period close

Design
------
- Every operation that touches the transport runs under the bot's
  ``asyncio.Lock``, so opening, pressing and closing never interleave and only
  one command is ever in flight.
- The connection state is a tagged variant (``Closed`` / ``Connecting`` /
  ``Discovering`` / ``Ready``).  The client, service and both characteristics
  only exist inside ``Ready``.
- Answers arrive as notifications.  The notification callback pushes every
  payload into a single-item ``ResponseSlot``; the command waits on that slot.
  There is no sequence numbering, so the slot is emptied right before each
  command is written.
- When the last holder releases the bot, the link is kept open for
  ``grace_period`` seconds.  The deferred close re-checks the reference count
  under the lock, so a reacquire that races with the timer always wins.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from botgate.switchbot.adapter import TransportError
from botgate.switchbot.status import BotStatus

logger = logging.getLogger(__name__)

SERVICE_UUID = "cba20d00-224d-11e6-9fb8-0002a5d5c51b"

ACTION_PRESS = bytes([0x57, 0x01, 0x00])
ACTION_GET_INFO = bytes([0x57, 0x02, 0x00])

DEFAULT_CONNECT_TRIES: int = 3
DEFAULT_DISCOVER_SERVICE_TRIES: int = 3
DEFAULT_DISCOVER_CHARACTERISTICS_TRIES: int = 3

# Seconds an unreferenced link stays open before it is torn down
GRACE_PERIOD: float = 15.0

# Seconds to wait for the notification answering a command
PRESS_TIMEOUT: float = 10.0

# Seconds between get-info requests on a held, idle link
KEEPALIVE_INTERVAL: float = 90.0

T = TypeVar("T")


class BotError(Exception):
    """Base class for bot failures."""


class BotOpenError(BotError):
    """Raised when a bot cannot be opened after exhausting its retries."""

    def __init__(self, address: str, step: str) -> None:
        super().__init__(f"{address}: failed {step}")
        self.address = address
        self.step = step


@dataclass
class BotOpenOptions:
    """Retry budgets for each step of opening a bot; ``0`` means default."""

    connect_tries: int = 0
    discover_service_tries: int = 0
    discover_characteristics_tries: int = 0

    def resolved(self) -> tuple[int, int, int]:
        return (
            self.connect_tries if self.connect_tries > 0 else DEFAULT_CONNECT_TRIES,
            self.discover_service_tries
            if self.discover_service_tries > 0
            else DEFAULT_DISCOVER_SERVICE_TRIES,
            self.discover_characteristics_tries
            if self.discover_characteristics_tries > 0
            else DEFAULT_DISCOVER_CHARACTERISTICS_TRIES,
        )


# ── Connection states ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Closed:
    name = "closed"


@dataclass(frozen=True)
class Connecting:
    name = "connecting"


@dataclass(frozen=True)
class Discovering:
    client: Any
    name = "discovering"


@dataclass(frozen=True)
class Ready:
    client: Any
    service: Any
    write_char: Any
    notify_char: Any
    name = "ready"


BotState = Closed | Connecting | Discovering | Ready


class ResponseSlot:
    """
    Single-item rendezvous channel between the notification callback and the
    task waiting for a command's answer.

    ``put`` never blocks: a payload nobody read yet is dropped in favour of
    the newer one.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=1)

    def put(self, payload: bytes) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.debug("Dropping unread notification %s", dropped.hex())
        self._queue.put_nowait(payload)

    async def get(self) -> bytes:
        return await self._queue.get()

    def clear(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    def empty(self) -> bool:
        return self._queue.empty()


class Bot:
    """A shared, reference-counted link to one actuator."""

    def __init__(
        self,
        name: str,
        address: str,
        adapter: Any,
        *,
        open_options: BotOpenOptions | None = None,
        grace_period: float = GRACE_PERIOD,
        press_timeout: float | None = PRESS_TIMEOUT,
        keepalive_interval: float | None = KEEPALIVE_INTERVAL,
    ) -> None:
        self.name = name
        self.address = address
        self._adapter = adapter
        self._open_options = open_options or BotOpenOptions()
        self._grace_period = grace_period
        self._press_timeout = press_timeout
        self._keepalive_interval = keepalive_interval

        self._lock = asyncio.Lock()
        self._state: BotState = Closed()
        self._ref_count = 0
        self._closing_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._responses = ResponseSlot()

    def __repr__(self) -> str:
        return f"<Bot {self.name} {self.address} {self.state} users={self._ref_count}>"

    # ── Introspection ────────────────────────────────────────────────────────

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def ready(self) -> bool:
        return isinstance(self._state, Ready)

    @property
    def closing_pending(self) -> bool:
        return self._closing_task is not None and not self._closing_task.done()

    @property
    def state(self) -> str:
        """Current state name; ``grace`` while an unreferenced link waits to close."""
        if self.ready and self.closing_pending:
            return "grace"
        return self._state.name

    def snapshot(self) -> dict[str, Any]:
        return {"name": self.name, "state": self.state, "users": self._ref_count}

    # ── Public operations ────────────────────────────────────────────────────

    async def acquire(self, options: BotOpenOptions | None = None) -> None:
        """
        Take a reference on the bot, opening the link if needed.

        Raises :class:`BotOpenError` when the link cannot be established; the
        reference taken by this call is given back in that case.
        """
        async with self._lock:
            self._ref_count += 1
            self._cancel_closing()

            if isinstance(self._state, Ready):
                if self._adapter.is_connected(self._state.client):
                    logger.info("Bot %s already open. Users: %d", self.name, self._ref_count)
                    self._start_keepalive()
                    return
                logger.info("Bot %s terminated connection, reconnecting", self.name)
                await self._teardown()

            try:
                await self._open(options or self._open_options)
            except BaseException:
                self._ref_count -= 1
                raise

            self._start_keepalive()
            logger.info("Bot %s opened. Users: %d", self.name, self._ref_count)

    async def press(self) -> BotStatus:
        """Press the button and return the status the bot answered with."""
        async with self._lock:
            logger.info("Pressing %s", self.name)
            status = await self._command(ACTION_PRESS)
            logger.info("Bot %s answered %s", self.name, status.name)
            self._restart_keepalive()
            return status

    async def release(self) -> None:
        """Drop a reference; the last one schedules the deferred close."""
        async with self._lock:
            if self._ref_count == 0:
                logger.warning("Bot %s released more often than acquired", self.name)
                return
            self._ref_count -= 1
            logger.info("Bot %s abandoned. Users: %d", self.name, self._ref_count)
            if self._ref_count > 0:
                return
            self._stop_keepalive()
            if isinstance(self._state, Closed):
                return
            self._closing_task = asyncio.create_task(
                self._close_later(), name=f"bot-close-{self.name}"
            )
            logger.info("Bot %s closing in %.1fs", self.name, self._grace_period)

    async def aclose(self) -> None:
        """Tear the link down now, whoever still holds it."""
        async with self._lock:
            self._cancel_closing()
            await self._teardown()

    # ── Opening ──────────────────────────────────────────────────────────────

    async def _open(self, options: BotOpenOptions) -> None:
        connect_tries, service_tries, chars_tries = options.resolved()

        self._state = Connecting()
        try:
            client = await self._retry(
                "connecting", connect_tries, self._adapter.connect, self.address
            )
        except BaseException:
            self._state = Closed()
            raise

        self._state = Discovering(client)
        try:
            service = await self._retry(
                "discovering services",
                service_tries,
                self._adapter.discover_service,
                client,
                SERVICE_UUID,
            )
            notify_char, write_char = await self._retry(
                "discovering characteristics",
                chars_tries,
                self._discover_characteristics,
                service,
            )
            self._responses.clear()
            try:
                await self._adapter.subscribe(client, notify_char, self._on_notification)
            except TransportError as exc:
                logger.warning("Enabling notifications failed for %s: %s", self.name, exc)
                raise BotOpenError(self.address, "enabling notifications") from exc
        except BaseException:
            await self._disconnect(client)
            self._state = Closed()
            raise

        self._state = Ready(client, service, write_char, notify_char)

    async def _discover_characteristics(self, service: Any) -> tuple[Any, Any]:
        chars = await self._adapter.discover_characteristics(service)
        if len(chars) != 2:
            raise TransportError(f"expected 2 characteristics, got {len(chars)}")
        return chars[0], chars[1]

    async def _retry(
        self, step: str, tries: int, func: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        for attempt in range(1, tries + 1):
            logger.info("Bot %s %s, try %d/%d", self.name, step, attempt, tries)
            try:
                return await func(*args)
            except TransportError as exc:
                logger.warning("Bot %s %s error: %s", self.name, step, exc)
        logger.error("Bot %s failed %s after %d tries", self.name, step, tries)
        raise BotOpenError(self.address, step)

    def _on_notification(self, _sender: Any, data: bytearray) -> None:
        self._responses.put(bytes(data))

    # ── Commands ─────────────────────────────────────────────────────────────

    async def _command(self, action: bytes) -> BotStatus:
        """Write ``action`` and wait for its answer.  Caller holds the lock."""
        state = self._state
        if not isinstance(state, Ready):
            logger.warning("Bot %s is not connected", self.name)
            return BotStatus.WRITE_ERROR

        self._responses.clear()
        try:
            await self._adapter.write(state.client, state.write_char, action)
        except TransportError as exc:
            logger.warning("Failed writing to %s: %s", self.name, exc)
            return BotStatus.WRITE_ERROR

        try:
            payload = await asyncio.wait_for(self._responses.get(), self._press_timeout)
        except asyncio.TimeoutError:
            logger.warning("Bot %s did not answer within %ss", self.name, self._press_timeout)
            return BotStatus.TIMEOUT

        if not payload:
            return BotStatus.ERROR
        return BotStatus.from_byte(payload[0])

    # ── Keep-alive ───────────────────────────────────────────────────────────

    def _start_keepalive(self) -> None:
        if self._keepalive_interval is None:
            return
        if self._keepalive_task is not None and not self._keepalive_task.done():
            return
        self._keepalive_task = asyncio.create_task(
            self._keepalive(), name=f"bot-keepalive-{self.name}"
        )

    def _stop_keepalive(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    def _restart_keepalive(self) -> None:
        """A press counts as traffic, so the next get-info waits a full interval."""
        if self._keepalive_task is None:
            return
        self._stop_keepalive()
        self._start_keepalive()

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            async with self._lock:
                if not isinstance(self._state, Ready):
                    return
                logger.debug("Getting info from %s", self.name)
                status = await self._command(ACTION_GET_INFO)
            if status is not BotStatus.OK:
                logger.warning("Keep-alive for %s answered %s", self.name, status.name)

    # ── Closing ──────────────────────────────────────────────────────────────

    def _cancel_closing(self) -> None:
        if self._closing_task is not None:
            self._closing_task.cancel()
            self._closing_task = None
            logger.info("Bot %s close cancelled", self.name)

    async def _close_later(self) -> None:
        await asyncio.sleep(self._grace_period)
        async with self._lock:
            if self._closing_task is not asyncio.current_task():
                return
            self._closing_task = None
            if self._ref_count > 0:
                return
            await self._teardown()

    async def _teardown(self) -> None:
        """Release every transport resource.  Caller holds the lock."""
        self._stop_keepalive()
        state = self._state
        self._state = Closed()
        self._responses.clear()

        if isinstance(state, Ready):
            try:
                await self._adapter.unsubscribe(state.client, state.notify_char)
            except TransportError as exc:
                logger.warning("Disabling notifications failed for %s: %s", self.name, exc)
            await self._disconnect(state.client)
            logger.info("Bot %s closed", self.name)
        elif isinstance(state, Discovering):
            await self._disconnect(state.client)

    async def _disconnect(self, client: Any) -> None:
        try:
            await self._adapter.disconnect(client)
        except TransportError as exc:
            logger.warning("Disconnecting %s failed: %s", self.name, exc)
