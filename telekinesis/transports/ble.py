"""In-process Bluetooth LE transport using bleak.

Only devices speaking the Lovense text protocol are recognised; everything
else seen during a scan is ignored.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from telekinesis.core.errors import TransportSendError, TransportUnavailableError
from telekinesis.core.model import VIBRATE, DeviceInfo
from telekinesis.transports.base import BackendListener

LOGGER = logging.getLogger(__name__)

LOVENSE_PREFIX = "LVS-"
# (service, write characteristic) pairs, newest protocol first
LOVENSE_UUIDS = (
    ("5a300001-0023-4bd4-bbd5-a6920e4c5653", "5a300002-0023-4bd4-bbd5-a6920e4c5653"),
    ("0000fff0-0000-1000-8000-00805f9b34fb", "0000fff2-0000-1000-8000-00805f9b34fb"),
)
LOVENSE_MAX_LEVEL = 20


def is_supported_name(name: str | None) -> bool:
    return bool(name) and name.upper().startswith(LOVENSE_PREFIX)


def lovense_level(speed: float) -> int:
    return max(0, min(LOVENSE_MAX_LEVEL, round(speed * LOVENSE_MAX_LEVEL)))


@dataclass
class _Peer:
    info: DeviceInfo
    address: str
    client: Any | None = None
    write_char_uuid: str | None = None


class BleakBackend:
    def __init__(self, *, connect_timeout: float = 10.0) -> None:
        self.connect_timeout = connect_timeout
        self._listener: BackendListener | None = None
        self._scanner: BleakScanner | None = None
        self._peers: dict[int, _Peer] = {}
        self._by_address: dict[str, int] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._next_index = 0

    def bind(self, listener: BackendListener) -> None:
        self._listener = listener

    async def connect(self) -> None:
        # Nothing to open up front; adapter problems surface on the first scan.
        LOGGER.info("Using in-process Bluetooth LE backend")

    async def disconnect(self) -> None:
        await self._stop_scanner()
        for task in list(self._tasks):
            task.cancel()
        for peer in list(self._peers.values()):
            if peer.client is not None:
                with contextlib.suppress(BleakError, OSError, asyncio.TimeoutError):
                    await peer.client.disconnect()
        self._peers.clear()
        self._by_address.clear()

    async def start_scanning(self) -> None:
        if self._scanner is not None:
            return
        scanner = BleakScanner(detection_callback=self._on_detected)
        try:
            await scanner.start()
        except (BleakError, OSError) as exc:
            raise TransportUnavailableError(f"Bluetooth scan failed: {exc}") from exc
        self._scanner = scanner
        LOGGER.info("Started Bluetooth LE device scan")

    async def stop_scanning(self) -> None:
        await self._stop_scanner()
        if self._listener is not None:
            self._listener.scanning_finished()

    async def vibrate(self, index: int, speed: float) -> None:
        await self._write(index, f"Vibrate:{lovense_level(speed)};")

    async def stop(self, index: int) -> None:
        await self._write(index, "Vibrate:0;")

    async def _stop_scanner(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except (BleakError, OSError) as exc:
            LOGGER.warning("Error stopping scanner: %s", exc)
        LOGGER.info("Stopped Bluetooth LE device scan")

    async def _write(self, index: int, command: str) -> None:
        peer = self._peers.get(index)
        if peer is None or peer.client is None or peer.write_char_uuid is None:
            raise TransportSendError(f"Device {index} is not connected")
        try:
            await peer.client.write_gatt_char(peer.write_char_uuid, command.encode("utf-8"), response=False)
        except (BleakError, OSError) as exc:
            raise TransportSendError(f"BLE write to {peer.info.name} failed: {exc}") from exc
        LOGGER.debug("Sent %s to %s", command, peer.info.name)

    def _on_detected(self, device: Any, advertisement_data: Any) -> None:
        name = device.name or getattr(advertisement_data, "local_name", None)
        if not is_supported_name(name) or device.address in self._by_address:
            return
        index = self._next_index
        self._next_index += 1
        info = DeviceInfo(name=name, index=index, capabilities=(VIBRATE,))
        self._peers[index] = _Peer(info=info, address=device.address)
        self._by_address[device.address] = index
        if self._listener is not None:
            self._listener.device_connecting(info)
        task = asyncio.get_running_loop().create_task(self._connect_peer(device, index))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _connect_peer(self, device: Any, index: int) -> None:
        peer = self._peers[index]
        client = BleakClient(
            device,
            timeout=self.connect_timeout,
            disconnected_callback=lambda _client: self._on_lost(index),
        )
        try:
            await client.connect()
            peer.write_char_uuid = _find_write_char(client)
            if peer.write_char_uuid is None:
                await client.disconnect()
                raise TransportSendError("no Lovense service found")
        except (BleakError, OSError, asyncio.TimeoutError, TransportSendError) as exc:
            LOGGER.warning("Could not connect to %s: %s", peer.info.name, exc)
            self._forget(index)
            if self._listener is not None:
                self._listener.device_failed(index, str(exc))
            return
        peer.client = client
        LOGGER.info("Connected to %s (%s)", peer.info.name, peer.address)
        if self._listener is not None:
            self._listener.device_added(peer.info)

    def _on_lost(self, index: int) -> None:
        peer = self._forget(index)
        if peer is not None and peer.client is not None and self._listener is not None:
            self._listener.device_removed(index)

    def _forget(self, index: int) -> _Peer | None:
        peer = self._peers.pop(index, None)
        if peer is not None:
            self._by_address.pop(peer.address, None)
        return peer


def _find_write_char(client: Any) -> str | None:
    uuids = {service.uuid.lower() for service in client.services}
    for service_uuid, write_uuid in LOVENSE_UUIDS:
        if service_uuid in uuids:
            return write_uuid
    return None
