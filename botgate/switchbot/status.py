"""
Command outcome codes reported by the bots.

The first byte of every notification the bot sends after a command is a raw
status code.  ``WRITE_ERROR`` and ``TIMEOUT`` never come from the device: they
are produced locally when the command could not be written or no answer
arrived in time.
"""

from enum import IntEnum


class BotStatus(IntEnum):
    TIMEOUT = -1
    WRITE_ERROR = 0
    OK = 1
    ERROR = 2
    BUSY = 3
    VERSION_INCOMPATIBLE = 4
    UNSUPPORTED_COMMAND = 5
    LOW_BATTERY = 6
    DEVICE_ENCRYPTED = 7
    DEVICE_UNENCRYPTED = 8
    PASSWORD_ERROR = 9
    UNSUPPORTED_ENCRYPTION = 10
    NO_NEARBY_DEVICE = 11
    NO_NETWORK = 12

    @classmethod
    def from_byte(cls, raw: int) -> "BotStatus":
        """Map a raw status byte to its code; unknown bytes are ``ERROR``."""
        return _RAW_STATUS.get(raw, cls.ERROR)

    @property
    def answer(self) -> str:
        """Short word sent to clients: ``ok``, ``busy``, ``low`` or ``error``."""
        return _ANSWERS.get(self, "error")


_RAW_STATUS: dict[int, BotStatus] = {
    0x01: BotStatus.OK,
    0x02: BotStatus.ERROR,
    0x03: BotStatus.BUSY,
    0x04: BotStatus.VERSION_INCOMPATIBLE,
    0x05: BotStatus.UNSUPPORTED_COMMAND,
    0x06: BotStatus.LOW_BATTERY,
    0x07: BotStatus.DEVICE_ENCRYPTED,
    0x08: BotStatus.DEVICE_UNENCRYPTED,
    0x09: BotStatus.PASSWORD_ERROR,
    0x0A: BotStatus.UNSUPPORTED_ENCRYPTION,
    0x0B: BotStatus.NO_NEARBY_DEVICE,
    0x0C: BotStatus.NO_NETWORK,
}

_ANSWERS: dict[BotStatus, str] = {
    BotStatus.OK: "ok",
    BotStatus.BUSY: "busy",
    BotStatus.LOW_BATTERY: "low",
}
