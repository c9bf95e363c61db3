"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol

from telekinesis.core.model import DeviceInfo


class BackendListener(Protocol):
    """Receives asynchronous signals from a backend, on the loop thread."""

    def device_connecting(self, info: DeviceInfo) -> None: ...

    def device_added(self, info: DeviceInfo) -> None: ...

    def device_removed(self, index: int) -> None: ...

    def device_failed(self, index: int, reason: str) -> None: ...

    def scanning_finished(self) -> None: ...

    def error(self, message: str) -> None: ...

    def disconnected(self) -> None: ...


class Backend(Protocol):
    """Asynchronous device backend driven by the connector's event loop."""

    def bind(self, listener: BackendListener) -> None:
        """Attach the listener that receives device and scan signals."""

    async def connect(self) -> None:
        """Open the backend session. Raises TransportUnavailableError."""

    async def disconnect(self) -> None:
        """Close the session; must be safe to call more than once."""

    async def start_scanning(self) -> None: ...

    async def stop_scanning(self) -> None: ...

    async def vibrate(self, index: int, speed: float) -> None:
        """Set every vibrator of a device to ``speed`` in [0.0, 1.0]."""

    async def stop(self, index: int) -> None: ...
