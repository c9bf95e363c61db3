"""Backend session lifecycle and the background loop that drives it.

The host calls into :class:`TransportConnector` from its own (single) thread.
Those calls only enqueue requests; the work happens on a private asyncio
loop running in a daemon thread, and results come back through the
:class:`~telekinesis.core.events.EventChannel`.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass

from telekinesis.core.dispatcher import CommandDispatcher
from telekinesis.core.errors import InvalidTransitionError, TelekinesisError, TransportError
from telekinesis.core.events import EventChannel
from telekinesis.core.model import (
    Command,
    ConnectionStatus,
    DeviceInfo,
    EventKind,
    SessionState,
)
from telekinesis.core.patterns import PatternLibrary
from telekinesis.core.registry import DeviceRegistry
from telekinesis.transports.base import Backend

LOGGER = logging.getLogger(__name__)

REQUEST_QUEUE_SIZE = 256


@dataclass(frozen=True)
class _ScanRequest:
    start: bool


class TransportConnector:
    def __init__(
        self,
        backend: Backend,
        registry: DeviceRegistry,
        channel: EventChannel,
        *,
        patterns: PatternLibrary | None = None,
        command_timeout: float = 2.0,
        queue_size: int = REQUEST_QUEUE_SIZE,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.channel = channel
        self.dispatcher = CommandDispatcher(
            backend, registry, channel, patterns=patterns, command_timeout=command_timeout
        )
        self.command_timeout = command_timeout
        self.state = SessionState.UNINIT
        self.status = ConnectionStatus.NOT_CONNECTED
        self.status_detail: str | None = None

        self._lifecycle = threading.Lock()
        self._ready = threading.Event()
        self._requests: queue.Queue[Command | _ScanRequest] = queue.Queue(maxsize=queue_size)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._wakeup: asyncio.Event | None = None
        self._shutdown_indices: list[int] | None = None
        self._scan_lock: asyncio.Lock | None = None
        self._scan_tasks: set[asyncio.Task[None]] = set()

    # ---------------- public API (host thread) ----------------

    def connect(self, timeout: float | None = None) -> bool:
        """Start the session; with ``timeout`` wait for the backend handshake."""
        with self._lifecycle:
            if self.state is SessionState.CLOSED:
                LOGGER.warning("Connect refused: session already closed")
                return False
            if self.state is SessionState.UNINIT:
                self._start()

        if timeout is None:
            return self.status is not ConnectionStatus.FAILED
        self._ready.wait(timeout)
        return self.status is ConnectionStatus.CONNECTED

    def scan_start(self) -> bool:
        LOGGER.info("Sending command: scan for devices")
        return self._submit(_ScanRequest(start=True))

    def scan_stop(self) -> bool:
        LOGGER.info("Sending command: stop scan")
        return self._submit(_ScanRequest(start=False))

    def submit(self, command: Command) -> bool:
        return self._submit(command)

    def close(self) -> bool:
        with self._lifecycle:
            if self.state is SessionState.CLOSED:
                return False
            previous = self.state
            self.state = SessionState.CLOSED
            self._set_status(ConnectionStatus.CLOSED)
            indices = [device.index for device in self.registry.snapshot() if device.connected]
            self.registry.clear()
            self.channel.close()
            if previous is SessionState.ACTIVE:
                self._shutdown_indices = indices
                self._wake()
        LOGGER.info("Session closed")
        return True

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    # ---------------- loop/thread ----------------

    def _start(self) -> None:
        self.state = SessionState.ACTIVE
        self.status = ConnectionStatus.CONNECTING
        self._loop = asyncio.new_event_loop()
        self._wakeup = asyncio.Event()
        self._thread = threading.Thread(target=self._thread_main, name="Telekinesis", daemon=True)
        self._thread.start()

    def _thread_main(self) -> None:
        loop = self._loop
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._main())
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()
            LOGGER.info("Background loop stopped")

    def _submit(self, request: Command | _ScanRequest) -> bool:
        if self.state is not SessionState.ACTIVE:
            LOGGER.error("Cannot queue %s: session is %s", type(request).__name__, self.state.value)
            return False
        try:
            self._requests.put_nowait(request)
        except queue.Full:
            LOGGER.error("Dropped %s, request queue is full", type(request).__name__)
            return False
        return self._wake()

    def _wake(self) -> bool:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None:
            return False
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            LOGGER.error("Background loop is not running")
            return False
        return True

    async def _main(self) -> None:
        LOGGER.info("Main loop started")
        self._scan_lock = asyncio.Lock()
        self.backend.bind(self)
        try:
            await self.backend.connect()
        except TransportError as exc:
            LOGGER.error("Could not connect backend: %s", exc)
            self._set_status(ConnectionStatus.FAILED, str(exc))
            self.channel.push(EventKind.ERROR, detail=str(exc))
        else:
            if self.state is SessionState.ACTIVE:
                self._set_status(ConnectionStatus.CONNECTED)
                LOGGER.info("Connected backend")
        finally:
            self._ready.set()

        try:
            await self._serve()
        finally:
            await self._teardown()

    async def _serve(self) -> None:
        wakeup = self._wakeup
        while self._shutdown_indices is None:
            await wakeup.wait()
            wakeup.clear()
            while self._shutdown_indices is None:
                try:
                    request = self._requests.get_nowait()
                except queue.Empty:
                    break
                await self._handle(request)

    async def _handle(self, request: Command | _ScanRequest) -> None:
        try:
            if isinstance(request, _ScanRequest):
                task = asyncio.get_running_loop().create_task(self._scan(request.start))
                self._scan_tasks.add(task)
                task.add_done_callback(self._scan_tasks.discard)
            else:
                await self.dispatcher.execute(request)
        except TelekinesisError as exc:
            LOGGER.error("Request %s failed: %s", request, exc)
            self.channel.push(EventKind.ERROR, detail=str(exc))

    async def _scan(self, start: bool) -> None:
        async with self._scan_lock:
            try:
                if start:
                    await asyncio.wait_for(self.backend.start_scanning(), timeout=self.command_timeout)
                    self.channel.push(EventKind.SCAN_STARTED)
                else:
                    await asyncio.wait_for(self.backend.stop_scanning(), timeout=self.command_timeout)
            except (TransportError, asyncio.TimeoutError) as exc:
                action = "start" if start else "stop"
                LOGGER.error("Failed to %s scan: %s", action, exc)
                self.channel.push(EventKind.ERROR, detail=f"Scan {action} failed: {exc}")

    async def _teardown(self) -> None:
        for task in list(self._scan_tasks):
            task.cancel()
        await self.dispatcher.shutdown(self._shutdown_indices or [])
        try:
            await asyncio.wait_for(self.backend.stop_scanning(), timeout=self.command_timeout)
        except (TransportError, asyncio.TimeoutError) as exc:
            LOGGER.debug("Stop scan during close failed: %s", exc)
        await self.backend.disconnect()
        LOGGER.info("Disconnected backend")

    def _set_status(self, status: ConnectionStatus, detail: str | None = None) -> None:
        self.status = status
        self.status_detail = detail

    # ---------------- backend listener (loop thread) ----------------

    def device_connecting(self, info: DeviceInfo) -> None:
        try:
            if self.registry.discovered(info):
                LOGGER.info("Connecting to device '%s'", info.name)
        except InvalidTransitionError as exc:
            LOGGER.warning("%s", exc)

    def device_added(self, info: DeviceInfo) -> None:
        if not self.active:
            return
        try:
            self.registry.discovered(info)
            if self.registry.connected(info.index):
                actuators = ", ".join(info.capabilities) or "no actuators"
                LOGGER.info("Device '%s' (%d) connected with %s", info.name, info.index, actuators)
                self.channel.push(EventKind.DEVICE_CONNECTED, info.name)
        except InvalidTransitionError as exc:
            LOGGER.warning("%s", exc)

    def device_removed(self, index: int) -> None:
        self.dispatcher.discard(index)
        device = self.registry.at(index)
        if device is not None and self.registry.disconnected(index):
            LOGGER.info("Device '%s' (%d) disconnected", device.name, index)
            self.channel.push(EventKind.DEVICE_DISCONNECTED, device.name)

    def device_failed(self, index: int, reason: str) -> None:
        self.dispatcher.discard(index)
        device = self.registry.at(index)
        self.registry.failed(index)
        self.channel.push(EventKind.ERROR, device.name if device is not None else None, reason)

    def scanning_finished(self) -> None:
        LOGGER.info("Scan finished")
        self.channel.push(EventKind.SCAN_ENDED)

    def error(self, message: str) -> None:
        self.channel.push(EventKind.ERROR, detail=message)

    def disconnected(self) -> None:
        if not self.active:
            return
        LOGGER.error("Lost connection to backend")
        self._set_status(ConnectionStatus.FAILED, "Connection lost")
        self.dispatcher.discard_all()
        for device in self.registry.disconnect_all():
            self.channel.push(EventKind.DEVICE_DISCONNECTED, device.name)
        self.channel.push(EventKind.ERROR, detail="Connection to backend lost")
