"""Buttplug v3 client transport over websockets (Intiface Central and friends)."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from telekinesis.core.errors import (
    TransportSendError,
    TransportTimeoutError,
    TransportUnavailableError,
)
from telekinesis.core.model import POSITION, ROTATE, VIBRATE, DeviceInfo
from telekinesis.transports.base import BackendListener

LOGGER = logging.getLogger(__name__)

MESSAGE_VERSION = 3
DEFAULT_ENDPOINT = "127.0.0.1:12345"


def endpoint_url(endpoint: str) -> str:
    if endpoint.startswith(("ws://", "wss://")):
        return endpoint
    return f"ws://{endpoint}"


def device_info_from_message(body: dict[str, Any]) -> tuple[DeviceInfo, tuple[int, ...]]:
    """Build a DeviceInfo and the indices of its vibrate actuators."""
    messages = body.get("DeviceMessages", {}) or {}
    capabilities: list[str] = []
    vibrators: list[int] = []
    for idx, scalar in enumerate(messages.get("ScalarCmd", []) or []):
        actuator = scalar.get("ActuatorType", VIBRATE)
        capabilities.append(actuator)
        if actuator == VIBRATE:
            vibrators.append(idx)
    capabilities.extend(POSITION for _ in messages.get("LinearCmd", []) or [])
    capabilities.extend(ROTATE for _ in messages.get("RotateCmd", []) or [])
    index = int(body["DeviceIndex"])
    name = body.get("DeviceName") or f"Device {index}"
    return DeviceInfo(name=name, index=index, capabilities=tuple(capabilities)), tuple(vibrators)


class ButtplugWebsocketBackend:
    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        *,
        client_name: str = "Telekinesis",
        connect_timeout: float = 5.0,
        request_timeout: float = 5.0,
    ) -> None:
        self.url = endpoint_url(endpoint)
        self.client_name = client_name
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self._listener: BackendListener | None = None
        self._ws: Any | None = None
        self._reader: asyncio.Task[None] | None = None
        self._msg_id = 0
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._names: dict[int, str] = {}
        self._vibrators: dict[int, tuple[int, ...]] = {}
        self._closing = False

    def bind(self, listener: BackendListener) -> None:
        self._listener = listener

    # ---------------- session ----------------

    async def connect(self) -> None:
        LOGGER.info("Connecting websocket: %s", self.url)
        self._closing = False
        try:
            self._ws = await websockets.connect(
                self.url,
                open_timeout=self.connect_timeout,
                ping_interval=20,
                ping_timeout=10,
                max_size=1_000_000,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportUnavailableError(f"Could not reach Buttplug server at {self.url}: {exc}") from exc

        self._reader = asyncio.get_running_loop().create_task(self._read_loop())
        reply = await self._request("RequestServerInfo", {
            "ClientName": self.client_name,
            "MessageVersion": MESSAGE_VERSION,
        })
        if "ServerInfo" not in reply:
            raise TransportUnavailableError(f"Unexpected handshake reply: {reply}")
        LOGGER.info("Connected to %s", reply["ServerInfo"].get("ServerName", "Buttplug server"))

        await self._sync_devices()

    async def _sync_devices(self) -> None:
        listing = await self._request("RequestDeviceList", {})
        for body in listing.get("DeviceList", {}).get("Devices", []):
            self._on_device_added(body)

    async def disconnect(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_pending(TransportUnavailableError("Session closed"))

    # ---------------- commands ----------------

    async def start_scanning(self) -> None:
        await self._request("StartScanning", {})
        # the server only announces new devices; re-list to recover failed ones
        await self._sync_devices()

    async def stop_scanning(self) -> None:
        await self._request("StopScanning", {})

    async def vibrate(self, index: int, speed: float) -> None:
        vibrators = self._vibrators.get(index, ())
        if not vibrators:
            raise TransportSendError(f"Device {index} has no vibrate actuator")
        await self._request("ScalarCmd", {
            "DeviceIndex": index,
            "Scalars": [
                {"Index": i, "Scalar": float(speed), "ActuatorType": VIBRATE} for i in vibrators
            ],
        })

    async def stop(self, index: int) -> None:
        await self._request("StopDeviceCmd", {"DeviceIndex": index})

    # ---------------- wire helpers ----------------

    def _next_id(self) -> int:
        self._msg_id += 1
        return self._msg_id

    async def _request(self, kind: str, body: dict[str, Any]) -> dict[str, Any]:
        ws = self._ws
        if ws is None:
            raise TransportUnavailableError("Not connected")
        msg_id = self._next_id()
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        # Buttplug frames are JSON arrays of messages
        payload = json.dumps([{kind: {"Id": msg_id, **body}}], separators=(",", ":"))
        try:
            await ws.send(payload)
            LOGGER.debug(">> %s", payload)
            reply = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"No reply to {kind} within {self.request_timeout}s") from exc
        except (ConnectionClosed, OSError) as exc:
            raise TransportUnavailableError(f"Connection lost while sending {kind}: {exc}") from exc
        finally:
            self._pending.pop(msg_id, None)
        if "Error" in reply:
            message = reply["Error"].get("ErrorMessage", "unknown error")
            raise TransportSendError(f"{kind} failed: {message}")
        return reply

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                self._on_message(raw)
        except ConnectionClosed as exc:
            LOGGER.warning("Websocket closed: %s", exc)
        finally:
            self._fail_pending(TransportUnavailableError("Connection closed"))
            if not self._closing and self._listener is not None:
                self._listener.disconnected()

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    def _on_message(self, raw: str | bytes) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="ignore")
        LOGGER.debug("<< %s", raw)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring malformed server message: %r", raw)
            return
        items = data if isinstance(data, list) else [data]
        for item in items:
            if not isinstance(item, dict) or not item:
                continue
            kind, body = next(iter(item.items()))
            body = body if isinstance(body, dict) else {}
            msg_id = body.get("Id", 0)
            future = self._pending.get(msg_id) if msg_id else None
            if future is not None:
                if not future.done():
                    future.set_result({kind: body})
                continue
            self._on_server_event(kind, body)

    def _on_server_event(self, kind: str, body: dict[str, Any]) -> None:
        listener = self._listener
        if kind == "DeviceAdded":
            self._on_device_added(body)
        elif kind == "DeviceRemoved":
            index = body.get("DeviceIndex")
            name = self._names.pop(index, None)
            self._vibrators.pop(index, None)
            if name is not None and listener is not None:
                listener.device_removed(index)
        elif kind == "ScanningFinished":
            if listener is not None:
                listener.scanning_finished()
        elif kind == "Error":
            message = body.get("ErrorMessage", "unknown error")
            LOGGER.error("Server error: %s", message)
            if listener is not None:
                listener.error(message)
        else:
            LOGGER.debug("Unhandled server message %s", kind)

    def _on_device_added(self, body: dict[str, Any]) -> None:
        try:
            info, vibrators = device_info_from_message(body)
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Ignoring malformed device message %r: %s", body, exc)
            return
        self._names[info.index] = info.name
        self._vibrators[info.index] = vibrators
        if self._listener is not None:
            self._listener.device_added(info)
