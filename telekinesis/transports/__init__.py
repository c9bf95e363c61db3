"""Backend transports and the factory that picks one from settings."""

from __future__ import annotations

from telekinesis.core.model import ConnectionSettings
from telekinesis.transports.base import Backend


def build_backend(connection: ConnectionSettings) -> Backend:
    if connection.type == "in_process":
        from telekinesis.transports.ble import BleakBackend

        return BleakBackend()

    from telekinesis.transports.websocket import ButtplugWebsocketBackend

    return ButtplugWebsocketBackend(connection.endpoint)
