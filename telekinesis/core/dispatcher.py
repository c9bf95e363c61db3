"""Turns vibrate/pattern/stop intents into per-device backend calls.

Everything here runs on the connector's event loop. Each device has at most
one pending actuation task; a newer command for the same device cancels the
older task (including its scheduled stop) and waits for it to unwind before
talking to the device, so the last writer wins and nothing is stacked.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
import time
from collections.abc import Awaitable, Callable, Iterable

from telekinesis.core.device_match import matches_events, vibrate_capable
from telekinesis.core.errors import (
    CommandRejectedError,
    DeviceDisabledError,
    DeviceDisconnectedError,
    DeviceUnknownError,
    TelekinesisError,
    TransportError,
    TransportTimeoutError,
)
from telekinesis.core.events import EventChannel
from telekinesis.core.model import (
    Command,
    Device,
    EventKind,
    PatternAction,
    Scope,
    StopAction,
    VibrateAction,
)
from telekinesis.core.patterns import Pattern, PatternLibrary
from telekinesis.core.registry import DeviceRegistry
from telekinesis.transports.base import Backend

LOGGER = logging.getLogger(__name__)

MIN_SPEED = 0.0
MAX_SPEED = 1.0

_TaskFactory = Callable[[asyncio.Task[None] | None], Awaitable[None]]


def clamp_speed(speed: float) -> float:
    return max(MIN_SPEED, min(MAX_SPEED, float(speed)))


def holds(duration: float) -> bool:
    """Only an infinite duration keeps a device running until superseded."""
    return math.isinf(duration) and duration > 0


def failure_reason(exc: TelekinesisError) -> str:
    if isinstance(exc, DeviceUnknownError):
        return "DeviceUnknown"
    if isinstance(exc, DeviceDisabledError):
        return "DeviceDisabled"
    if isinstance(exc, DeviceDisconnectedError):
        return "DeviceDisconnected"
    if isinstance(exc, CommandRejectedError):
        return exc.reason
    if isinstance(exc, TransportTimeoutError):
        return f"TransportTimeout: {exc}"
    return f"TransportFailure: {exc}"


async def _settle(task: asyncio.Task[None] | None) -> None:
    # asyncio.wait does not re-raise the awaited task's cancellation
    if task is not None and not task.done():
        await asyncio.wait({task})


class CommandDispatcher:
    def __init__(
        self,
        backend: Backend,
        registry: DeviceRegistry,
        channel: EventChannel,
        *,
        patterns: PatternLibrary | None = None,
        command_timeout: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._channel = channel
        self._patterns = patterns
        self.command_timeout = command_timeout
        self._clock = clock
        self._tasks: dict[int, asyncio.Task[None]] = {}

    @property
    def pending(self) -> dict[int, asyncio.Task[None]]:
        return dict(self._tasks)

    async def execute(self, command: Command) -> None:
        if command.expired(self._clock()):
            LOGGER.info("Dropping expired command for %s", command.scope)
            self._channel.push(EventKind.COMMAND_FAILED, command.scope.device, "Expired")
            return
        action = command.action
        if isinstance(action, VibrateAction):
            self.vibrate(action.speed, action.duration, command.scope)
        elif isinstance(action, PatternAction):
            await self.play(action.pattern, action.duration, command.scope)
        elif isinstance(action, StopAction):
            if command.scope.is_single:
                await self.stop(command.scope.device)
            else:
                await self.stop_all()

    # ---------------- scope ----------------

    def resolve(self, scope: Scope) -> list[Device]:
        """Concrete devices a scope refers to.

        Single-device scopes raise on unknown, disabled or disconnected
        targets; broadcast and tagged scopes skip them. Every device
        sharing the requested name is included.
        """
        if scope.is_single:
            devices = self._registry.require(scope.device)
            if not self._registry.is_enabled(scope.device):
                raise DeviceDisabledError(f"Device '{scope.device}' is disabled")
            connected = [device for device in devices if device.connected]
            if not connected:
                raise DeviceDisconnectedError(f"Device '{scope.device}' is {devices[0].status.value}")
            vibrators = [device for device in connected if vibrate_capable(device.capabilities)]
            if not vibrators:
                raise CommandRejectedError("NoVibrator")
            return vibrators

        selected: list[Device] = []
        for device in self._registry.snapshot():
            if not (device.connected and device.enabled and vibrate_capable(device.capabilities)):
                continue
            if not matches_events(device.events, scope.events):
                continue
            selected.append(device)
        return selected

    def _targets(self, scope: Scope) -> list[Device] | None:
        try:
            devices = self.resolve(scope)
        except TelekinesisError as exc:
            LOGGER.info("Command rejected for '%s': %s", scope.device, exc)
            self._channel.push(EventKind.COMMAND_FAILED, scope.device, failure_reason(exc))
            return None
        if not devices:
            LOGGER.debug("No device matched %s", scope)
        return devices

    # ---------------- vibrate ----------------

    def vibrate(self, speed: float, duration: float, scope: Scope) -> int:
        """Schedule a timed actuation on every device in scope; returns how many."""
        if math.isnan(speed) or math.isnan(duration):
            self._channel.push(EventKind.COMMAND_FAILED, scope.device, "InvalidArgument")
            return 0
        clamped = clamp_speed(speed)
        note = ""
        if clamped != speed:
            LOGGER.info("Clamped speed %s to %s", speed, clamped)
            note = f" clamped_from={speed:g}"

        devices = self._targets(scope)
        if devices is None:
            return 0
        for device in devices:
            self._schedule(device.index, functools.partial(self._actuate, device, clamped, duration, note))
        return len(devices)

    async def _actuate(
        self,
        device: Device,
        speed: float,
        duration: float,
        note: str,
        previous: asyncio.Task[None] | None,
    ) -> None:
        await _settle(previous)
        if not await self._apply(device, speed):
            return
        self._channel.push(EventKind.COMMAND_ACCEPTED, device.name, f"speed={speed:g} duration={duration:g}{note}")
        if holds(duration):
            return
        await asyncio.sleep(max(duration, 0.0))
        await self._finish(device)

    # ---------------- patterns ----------------

    async def play(self, name: str, duration: float, scope: Scope) -> int:
        """Load pattern ``name`` and loop it on every device in scope."""
        if math.isnan(duration):
            self._channel.push(EventKind.COMMAND_FAILED, scope.device, "InvalidArgument")
            return 0
        try:
            if self._patterns is None:
                raise CommandRejectedError("PatternUnknown")
            pattern = await asyncio.to_thread(self._patterns.load, name)
        except CommandRejectedError as exc:
            LOGGER.warning("Pattern '%s' unavailable: %s", name, exc.reason)
            self._channel.push(EventKind.COMMAND_FAILED, scope.device, exc.reason)
            return 0
        return self.play_pattern(pattern, duration, scope)

    def play_pattern(self, pattern: Pattern, duration: float, scope: Scope) -> int:
        devices = self._targets(scope)
        if devices is None:
            return 0
        for device in devices:
            self._schedule(device.index, functools.partial(self._play, device, pattern, duration))
        return len(devices)

    async def _play(
        self,
        device: Device,
        pattern: Pattern,
        duration: float,
        previous: asyncio.Task[None] | None,
    ) -> None:
        await _settle(previous)
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + max(duration, 0.0)
        accepted = False
        for at, speed in pattern.timeline(start, deadline):
            await asyncio.sleep(max(0.0, at - loop.time()))
            if not await self._apply(device, speed):
                return
            if not accepted:
                accepted = True
                self._channel.push(
                    EventKind.COMMAND_ACCEPTED, device.name, f"pattern={pattern.name} duration={duration:g}"
                )
        if holds(duration):
            return
        await asyncio.sleep(max(0.0, deadline - loop.time()))
        await self._finish(device)

    # ---------------- stop ----------------

    async def stop(self, name: str) -> None:
        devices = self._registry.named(name)
        if not devices:
            self._channel.push(EventKind.COMMAND_FAILED, name, "DeviceUnknown")
            return
        for device in devices:
            task = self._tasks.pop(device.index, None)
            if task is not None:
                task.cancel()
                await _settle(task)
        await asyncio.gather(*(self._stop_device(device) for device in devices if device.connected))

    async def stop_all(self) -> None:
        await self.cancel_pending()
        devices = [device for device in self._registry.snapshot() if device.connected]
        await asyncio.gather(*(self._stop_device(device) for device in devices))
        LOGGER.info("Stopped %d devices", len(devices))

    async def cancel_pending(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    def discard(self, index: int) -> None:
        """Cancel a device's pending actuation without talking to it."""
        task = self._tasks.pop(index, None)
        if task is not None:
            task.cancel()

    def discard_all(self) -> None:
        for index in list(self._tasks):
            self.discard(index)

    async def shutdown(self, indices: Iterable[int]) -> None:
        """Cancel everything and stop the given backend devices, best effort."""
        await self.cancel_pending()
        await asyncio.gather(*(self._stop_index(index) for index in indices))

    async def _stop_device(self, device: Device) -> bool:
        try:
            await self._call(self._backend.stop(device.index))
        except TransportError as exc:
            self._fail(device, exc)
            return False
        return True

    async def _stop_index(self, index: int) -> None:
        try:
            await self._call(self._backend.stop(index))
        except TransportError as exc:
            LOGGER.debug("Stop of device %d during shutdown failed: %s", index, exc)

    # ---------------- helpers ----------------

    def _schedule(self, index: int, factory: _TaskFactory) -> None:
        previous = self._tasks.get(index)
        if previous is not None:
            previous.cancel()
        task = asyncio.get_running_loop().create_task(factory(previous))
        self._tasks[index] = task
        task.add_done_callback(functools.partial(self._forget, index))

    def _forget(self, index: int, task: asyncio.Task[None]) -> None:
        if self._tasks.get(index) is task:
            del self._tasks[index]

    async def _apply(self, device: Device, speed: float) -> bool:
        current = self._registry.at(device.index)
        if current is None or current.name != device.name:
            # cleared on close, or the index now belongs to another device
            return False
        try:
            await self._call(self._backend.vibrate(device.index, speed))
        except TransportError as exc:
            self._fail(device, exc)
            return False
        self._registry.touch(device.index, self._clock())
        return True

    async def _finish(self, device: Device) -> None:
        if await self._stop_device(device):
            self._channel.push(EventKind.COMMAND_COMPLETED, device.name)

    async def _call(self, awaitable: Awaitable[None]) -> None:
        try:
            await asyncio.wait_for(awaitable, timeout=self.command_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"Device did not answer within {self.command_timeout}s") from exc

    def _fail(self, device: Device, exc: TransportError) -> None:
        LOGGER.warning("Command to '%s' (%d) failed: %s", device.name, device.index, exc)
        # a slow answer does not mean the device is gone
        if not isinstance(exc, TransportTimeoutError):
            self._registry.failed(device.index)
        self._channel.push(EventKind.COMMAND_FAILED, device.name, failure_reason(exc))
