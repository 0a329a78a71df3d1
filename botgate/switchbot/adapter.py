"""
BLE adapter — thin wrapper around bleak.

The bots only talk to the radio through this class, so tests can swap in an
in-memory adapter with the same coroutine interface.  Every transport failure
is re-raised as :class:`TransportError`; callers never see bleak exceptions.

Devices seen during a scan are cached by address.  On BlueZ a peripheral that
has not been seen recently cannot be connected to by bare address, so
``connect()`` prefers the cached ``BLEDevice`` when there is one.
"""

import asyncio
import logging
from typing import Any, Callable

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.backends.service import BleakGATTService
from bleak.exc import BleakError

logger = logging.getLogger(__name__)

# Seconds bleak waits for a single connection attempt
CONNECT_TIMEOUT: float = 10.0

ConnectHandler = Callable[[str, bool], None]
ScanCallback = Callable[[BLEDevice, AdvertisementData], None]
NotifyCallback = Callable[[Any, bytearray], None]

_TRANSPORT_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


class TransportError(Exception):
    """Raised when the BLE transport fails (connect, discovery, I/O)."""


class BleakAdapter:
    """The gateway's single BLE adapter."""

    def __init__(self, connect_timeout: float = CONNECT_TIMEOUT) -> None:
        self._connect_timeout = connect_timeout
        self._devices: dict[str, BLEDevice] = {}
        self._scanner: BleakScanner | None = None
        self._scan_callback: ScanCallback | None = None
        self._on_connection_change: ConnectHandler | None = None

    async def enable(self) -> None:
        """
        Make sure a scanner can be created on this host.

        bleak powers the controller on by itself; creating the scanner is
        enough to surface a missing adapter or backend at startup.
        """
        try:
            self._scanner = BleakScanner(detection_callback=self._on_detection)
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"BLE adapter unavailable: {exc}") from exc
        logger.info("BLE adapter enabled")

    def set_connect_handler(self, handler: ConnectHandler) -> None:
        self._on_connection_change = handler

    def _notify_connection_change(self, address: str, connected: bool) -> None:
        if self._on_connection_change is not None:
            self._on_connection_change(address, connected)

    def cached_device(self, address: str) -> BLEDevice | None:
        return self._devices.get(address.upper())

    # ── Scanning ─────────────────────────────────────────────────────────────

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        self._devices[device.address.upper()] = device
        if self._scan_callback is not None:
            self._scan_callback(device, advertisement)

    async def scan(self, callback: ScanCallback) -> None:
        """Start scanning; ``callback`` is invoked for every advertisement."""
        if self._scanner is None:
            raise TransportError("Adapter not enabled")
        self._scan_callback = callback
        try:
            await self._scanner.start()
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"Failed scanning: {exc}") from exc

    async def stop_scan(self) -> None:
        if self._scanner is None:
            return
        self._scan_callback = None
        try:
            await self._scanner.stop()
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"Failed stopping scan: {exc}") from exc

    # ── Connection ───────────────────────────────────────────────────────────

    async def connect(self, address: str) -> BleakClient:
        target: BLEDevice | str = self.cached_device(address) or address

        def _disconnected(_client: BleakClient) -> None:
            self._notify_connection_change(address, False)

        try:
            client = BleakClient(
                target,
                disconnected_callback=_disconnected,
                timeout=self._connect_timeout,
            )
            await client.connect()
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"Failed connecting to {address}: {exc}") from exc
        self._notify_connection_change(address, True)
        return client

    async def disconnect(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"Failed disconnecting: {exc}") from exc

    def is_connected(self, client: BleakClient) -> bool:
        return client.is_connected

    # ── GATT ─────────────────────────────────────────────────────────────────

    async def discover_service(self, client: BleakClient, uuid: str) -> BleakGATTService:
        """Return the first service matching ``uuid``."""
        try:
            service = client.services.get_service(uuid)
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"Failed discovering services: {exc}") from exc
        if service is None:
            raise TransportError(f"Service {uuid} not found")
        return service

    async def discover_characteristics(
        self, service: BleakGATTService
    ) -> list[BleakGATTCharacteristic]:
        return list(service.characteristics)

    async def write(
        self, client: BleakClient, characteristic: BleakGATTCharacteristic, data: bytes
    ) -> None:
        try:
            await client.write_gatt_char(characteristic, data, response=True)
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"Failed writing characteristic: {exc}") from exc

    async def subscribe(
        self,
        client: BleakClient,
        characteristic: BleakGATTCharacteristic,
        callback: NotifyCallback,
    ) -> None:
        try:
            await client.start_notify(characteristic, callback)
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"Failed enabling notifications: {exc}") from exc

    async def unsubscribe(
        self, client: BleakClient, characteristic: BleakGATTCharacteristic
    ) -> None:
        try:
            await client.stop_notify(characteristic)
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"Failed disabling notifications: {exc}") from exc
