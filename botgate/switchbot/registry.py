"""
Bot registry — owns the gateway's two bots and the startup discovery sweep.

The registry is built once per process (see ``botgate.context``) and resolves
actuator names to their :class:`Bot`.  ``enable()`` turns the adapter on
and ``discover()`` scans until every configured address has been seen once,
which warms the adapter's device cache so later connects need no fresh scan.
There is no scan timeout: if a bot is never seen, scanning keeps running.
"""

import asyncio
import logging
from typing import Any, Iterator

from botgate.config import Settings
from botgate.switchbot.bot import Bot, BotOpenOptions

logger = logging.getLogger(__name__)

GATE = "gate"
GARAGE = "garage"
BOT_NAMES: tuple[str, ...] = (GATE, GARAGE)


def _log_connection_state(address: str, connected: bool) -> None:
    logger.info("Device %s %s", address, "connected" if connected else "disconnected")


class BotRegistry:
    def __init__(self, adapter: Any, bots: dict[str, Bot]) -> None:
        self.adapter = adapter
        self._bots = dict(bots)

    @classmethod
    def from_settings(cls, settings: Settings, adapter: Any) -> "BotRegistry":
        link = settings.link
        options = BotOpenOptions(
            connect_tries=link.connect_tries,
            discover_service_tries=link.discover_service_tries,
            discover_characteristics_tries=link.discover_characteristics_tries,
        )
        addresses = {GATE: settings.bots.gate, GARAGE: settings.bots.garage}
        bots = {
            name: Bot(
                name,
                address,
                adapter,
                open_options=options,
                grace_period=link.grace_period,
                press_timeout=link.press_timeout,
                keepalive_interval=link.keepalive_interval,
            )
            for name, address in addresses.items()
        }
        return cls(adapter, bots)

    def __contains__(self, name: object) -> bool:
        return name in self._bots

    def __iter__(self) -> Iterator[Bot]:
        return iter(self._bots.values())

    def get(self, name: str) -> Bot:
        """Return the bot called ``name``; raises ``KeyError`` if unknown."""
        return self._bots[name]

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._bots)

    async def enable(self) -> None:
        """Enable the adapter and install the connection-state logger."""
        await self.adapter.enable()
        self.adapter.set_connect_handler(_log_connection_state)

    async def discover(self) -> None:
        """Scan until every configured address has been found once."""
        found = {bot.address.upper(): False for bot in self}
        remaining = len(found)
        done = asyncio.Event()

        def _on_device(device: Any, _advertisement: Any) -> None:
            nonlocal remaining
            if remaining == 0:
                return
            address = device.address.upper()
            if found.get(address, True):
                return
            found[address] = True
            remaining -= 1
            logger.info("Found device %s", address)
            if remaining == 0:
                done.set()

        await self.adapter.scan(_on_device)
        try:
            await done.wait()
        finally:
            await self.adapter.stop_scan()
        logger.info("Found all devices")

    async def close(self) -> None:
        for bot in self:
            await bot.aclose()
