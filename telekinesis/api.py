"""Stable public API for hosts driving telekinesis.

:class:`Client` is the call surface a frame-driven host (a game scripting
layer, a UI) uses. Every method returns immediately with a plain value:
booleans, strings or lists of strings. Nothing here raises into the host and
nothing blocks beyond enqueueing a request or draining already produced
events. Device activity is reported asynchronously through
:meth:`Client.poll_events`.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from telekinesis.core.device_match import capability_tags, sanitize_events
from telekinesis.core.errors import (
    CommandRejectedError,
    DeviceDisabledError,
    DeviceDisconnectedError,
    DeviceUnknownError,
    InvalidTransitionError,
    PatternError,
    PersistenceError,
    SettingsValidationError,
    TelekinesisError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
    TransportUnavailableError,
)
from telekinesis.core.connector import TransportConnector
from telekinesis.core.events import EventChannel
from telekinesis.core.model import (
    Command,
    ConnectionSettings,
    ConnectionStatus,
    Device,
    DeviceStatus,
    Event,
    EventKind,
    PatternAction,
    Scope,
    SessionState,
    StopAction,
    VibrateAction,
)
from telekinesis.core.patterns import PatternLibrary
from telekinesis.core.registry import DeviceRegistry
from telekinesis.core.settings import SettingsStore
from telekinesis.transports import build_backend
from telekinesis.transports.base import Backend

__all__ = [
    "TelekinesisError",
    "TransportError",
    "TransportUnavailableError",
    "TransportSendError",
    "TransportTimeoutError",
    "DeviceUnknownError",
    "DeviceDisabledError",
    "DeviceDisconnectedError",
    "CommandRejectedError",
    "PersistenceError",
    "SettingsValidationError",
    "InvalidTransitionError",
    "PatternError",
    "ConnectionSettings",
    "ConnectionStatus",
    "Device",
    "DeviceStatus",
    "Event",
    "EventKind",
    "Backend",
    "Client",
]

LOGGER = logging.getLogger(__name__)

BackendFactory = Callable[[ConnectionSettings], Backend]


class Client:
    """Public client wrapping one backend session.

    A closed client stays closed: every call afterwards fails or returns an
    empty result. Create a new ``Client`` to start over.
    """

    def __init__(
        self,
        *,
        settings_path: Path | None = None,
        settings: SettingsStore | None = None,
        backend_factory: BackendFactory | None = None,
        command_timeout: float = 2.0,
        command_ttl: float | None = None,
    ) -> None:
        self._settings = settings or SettingsStore.load(settings_path)
        self._channel = EventChannel()
        self._registry = DeviceRegistry(self._settings)
        self._patterns = PatternLibrary(self._settings.pattern_path)
        backend = (backend_factory or build_backend)(self._settings.connection)
        self._connector = TransportConnector(
            backend,
            self._registry,
            self._channel,
            patterns=self._patterns,
            command_timeout=command_timeout,
        )
        self.command_ttl = command_ttl

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._settings.warnings

    @property
    def closed(self) -> bool:
        return self._connector.state is SessionState.CLOSED

    # ---------------- session ----------------

    def connect(self, timeout: float | None = None) -> bool:
        LOGGER.info("Received: Connect")
        return self._connector.connect(timeout)

    def scan_for_devices(self) -> bool:
        return self._connector.scan_start()

    def stop_scan(self) -> bool:
        return self._connector.scan_stop()

    def close(self) -> bool:
        LOGGER.info("Received: Close")
        return self._connector.close()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the background loop to finish after :meth:`close`."""
        self._connector.join(timeout)

    def get_connection_status(self) -> str:
        status = self._connector.status
        detail = self._connector.status_detail
        return f"{status.value}: {detail}" if detail else status.value

    # ---------------- devices ----------------

    def get_devices(self) -> list[str]:
        if self.closed:
            return []
        names = self._registry.names()
        for name in self._settings.known_devices():
            if name not in names:
                names.append(name)
        return names

    def get_device_capabilities(self, name: str) -> list[str]:
        return list(capability_tags(self._registry.capabilities(name)))

    def get_device_connected(self, name: str) -> bool:
        return self._registry.is_connected(name)

    def get_device(self, name: str) -> Device | None:
        return self._registry.get(name)

    # ---------------- commands ----------------

    def vibrate(self, speed: float, duration: float) -> bool:
        LOGGER.info("Received: Vibrate speed=%s duration=%s", speed, duration)
        return self._send(Scope.all(), VibrateAction(speed=speed, duration=duration))

    def vibrate_events(self, speed: float, duration: float, events: Sequence[str]) -> bool:
        LOGGER.info("Received: Vibrate events=%s speed=%s duration=%s", list(events), speed, duration)
        return self._send(Scope.tagged(sanitize_events(events)), VibrateAction(speed=speed, duration=duration))

    def vibrate_device(self, name: str, speed: float, duration: float) -> bool:
        LOGGER.info("Received: Vibrate device=%s speed=%s duration=%s", name, speed, duration)
        return self._send(Scope.single(name), VibrateAction(speed=speed, duration=duration))

    def vibrate_pattern(self, pattern: str, duration: float) -> bool:
        LOGGER.info("Received: Vibrate Pattern %s duration=%s", pattern, duration)
        return self._send(Scope.all(), PatternAction(pattern=pattern, duration=duration))

    def vibrate_events_pattern(self, pattern: str, duration: float, events: Sequence[str]) -> bool:
        LOGGER.info("Received: Vibrate Pattern %s events=%s duration=%s", pattern, list(events), duration)
        return self._send(Scope.tagged(sanitize_events(events)), PatternAction(pattern=pattern, duration=duration))

    def get_patterns(self) -> list[str]:
        """Names of the patterns found in the pattern directory."""
        if self.closed:
            return []
        return self._patterns.names()

    def stop(self, name: str) -> bool:
        LOGGER.info("Received: Stop device=%s", name)
        return self._send(Scope.single(name), StopAction())

    def stop_all(self) -> bool:
        LOGGER.info("Received: Stop All")
        return self._send(Scope.all(), StopAction())

    def _send(self, scope: Scope, action: VibrateAction | PatternAction | StopAction) -> bool:
        issued_at = time.monotonic()
        expires_at = issued_at + self.command_ttl if self.command_ttl is not None else None
        return self._connector.submit(
            Command(scope=scope, action=action, issued_at=issued_at, expires_at=expires_at)
        )

    # ---------------- events ----------------

    def poll(self) -> list[Event]:
        return self._channel.poll()

    def poll_events(self) -> list[str]:
        return [event.as_string() for event in self._channel.poll()]

    # ---------------- settings ----------------

    def settings_get_enabled(self, name: str) -> bool:
        if self.closed:
            return False
        return self._settings.get_enabled(name)

    def settings_set_enabled(self, name: str, enabled: bool) -> None:
        if self.closed:
            LOGGER.warning("Ignoring settings change for '%s' on closed client", name)
            return
        LOGGER.info("Setting '%s'.enabled=%s", name, enabled)
        self._settings.set_enabled(name, enabled)

    def settings_get_events(self, name: str) -> list[str]:
        if self.closed:
            return []
        return list(self._settings.get_events(name))

    def settings_set_events(self, name: str, events: Sequence[str]) -> None:
        if self.closed:
            LOGGER.warning("Ignoring settings change for '%s' on closed client", name)
            return
        LOGGER.info("Setting '%s'.events=%s", name, list(events))
        self._settings.set_events(name, events)

    def settings_store(self) -> bool:
        if self.closed:
            return False
        try:
            self._settings.store()
        except PersistenceError as exc:
            LOGGER.error("%s", exc)
            return False
        return True
