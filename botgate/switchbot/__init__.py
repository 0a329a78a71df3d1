# SwitchBot link management
from botgate.switchbot.adapter import BleakAdapter, TransportError
from botgate.switchbot.bot import Bot, BotError, BotOpenError, BotOpenOptions
from botgate.switchbot.registry import BOT_NAMES, GARAGE, GATE, BotRegistry
from botgate.switchbot.status import BotStatus

__all__ = [
    "BleakAdapter",
    "TransportError",
    "Bot",
    "BotError",
    "BotOpenError",
    "BotOpenOptions",
    "BotRegistry",
    "BotStatus",
    "BOT_NAMES",
    "GATE",
    "GARAGE",
]
