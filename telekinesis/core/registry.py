"""In-memory table of known devices.

Entries are keyed by backend index so that two devices reporting the same
name are still driven separately; the name stays the identity settings and
the host API use. Only the connector mutates the registry; everybody else
receives frozen :class:`~telekinesis.core.model.Device` snapshots.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from telekinesis.core.errors import DeviceUnknownError, InvalidTransitionError
from telekinesis.core.model import Device, DeviceInfo, DeviceStatus
from telekinesis.core.settings import SettingsStore

LOGGER = logging.getLogger(__name__)

_ALLOWED: dict[DeviceStatus, frozenset[DeviceStatus]] = {
    DeviceStatus.DISCONNECTED: frozenset({DeviceStatus.CONNECTING}),
    DeviceStatus.CONNECTING: frozenset({DeviceStatus.CONNECTED, DeviceStatus.ERROR}),
    DeviceStatus.CONNECTED: frozenset({DeviceStatus.DISCONNECTED, DeviceStatus.ERROR}),
    DeviceStatus.ERROR: frozenset({DeviceStatus.DISCONNECTED}),
}


def can_transition(current: DeviceStatus, target: DeviceStatus) -> bool:
    return target in _ALLOWED[current]


@dataclass
class _Entry:
    name: str
    index: int
    capabilities: tuple[str, ...]
    status: DeviceStatus = DeviceStatus.DISCONNECTED
    last_command_at: float | None = None


class DeviceRegistry:
    def __init__(self, settings: SettingsStore) -> None:
        self._settings = settings
        self._lock = threading.RLock()
        self._entries: dict[int, _Entry] = {}

    # ---- reads ----

    def get(self, name: str) -> Device | None:
        """First device carrying ``name``, preferring a connected one."""
        devices = self.named(name)
        for device in devices:
            if device.connected:
                return device
        return devices[0] if devices else None

    def named(self, name: str) -> list[Device]:
        with self._lock:
            return [self._snapshot(entry) for entry in self._entries.values() if entry.name == name]

    def require(self, name: str) -> list[Device]:
        devices = self.named(name)
        if not devices:
            raise DeviceUnknownError(f"Unknown device '{name}'")
        return devices

    def at(self, index: int) -> Device | None:
        with self._lock:
            entry = self._entries.get(index)
            return self._snapshot(entry) if entry is not None else None

    def names(self) -> list[str]:
        with self._lock:
            names: list[str] = []
            for entry in self._entries.values():
                if entry.name not in names:
                    names.append(entry.name)
            return names

    def snapshot(self) -> list[Device]:
        with self._lock:
            return [self._snapshot(entry) for entry in self._entries.values()]

    def capabilities(self, name: str) -> tuple[str, ...]:
        device = self.get(name)
        return device.capabilities if device is not None else ()

    def is_connected(self, name: str) -> bool:
        return any(device.connected for device in self.named(name))

    def is_enabled(self, name: str) -> bool:
        return self._settings.get_enabled(name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ---- mutations (connector only) ----

    def discovered(self, info: DeviceInfo) -> bool:
        """Record a device the backend started connecting to.

        Returns False when the device is already connecting or connected.
        """
        with self._lock:
            entry = self._entries.get(info.index)
            if entry is None or entry.name != info.name:
                # a backend may hand a freed index to another device
                entry = _Entry(name=info.name, index=info.index, capabilities=info.capabilities)
                self._entries[info.index] = entry
            elif info.capabilities:
                entry.capabilities = info.capabilities
            if entry.status in (DeviceStatus.CONNECTING, DeviceStatus.CONNECTED):
                return False
            if entry.status is DeviceStatus.ERROR:
                self._move(entry, DeviceStatus.DISCONNECTED)
            self._move(entry, DeviceStatus.CONNECTING)
            return True

    def connected(self, index: int) -> bool:
        with self._lock:
            entry = self._entry(index)
            if entry.status is DeviceStatus.CONNECTED:
                return False
            self._move(entry, DeviceStatus.CONNECTED)
            return True

    def failed(self, index: int) -> bool:
        with self._lock:
            entry = self._entries.get(index)
            if entry is None or entry.status in (DeviceStatus.ERROR, DeviceStatus.DISCONNECTED):
                return False
            self._move(entry, DeviceStatus.ERROR)
            return True

    def disconnected(self, index: int) -> bool:
        with self._lock:
            entry = self._entries.get(index)
            if entry is None or entry.status is DeviceStatus.DISCONNECTED:
                return False
            if entry.status is DeviceStatus.CONNECTING:
                self._move(entry, DeviceStatus.ERROR)
            self._move(entry, DeviceStatus.DISCONNECTED)
            return True

    def disconnect_all(self) -> list[Device]:
        with self._lock:
            changed = [index for index in list(self._entries) if self.disconnected(index)]
            return [self._snapshot(self._entries[index]) for index in changed]

    def touch(self, index: int, when: float) -> None:
        with self._lock:
            entry = self._entries.get(index)
            if entry is not None:
                entry.last_command_at = when

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # ---- internals ----

    def _entry(self, index: int) -> _Entry:
        entry = self._entries.get(index)
        if entry is None:
            raise DeviceUnknownError(f"Unknown device index {index}")
        return entry

    def _move(self, entry: _Entry, target: DeviceStatus) -> None:
        if not can_transition(entry.status, target):
            raise InvalidTransitionError(
                f"Device '{entry.name}' ({entry.index}) cannot go from {entry.status.value} to {target.value}"
            )
        LOGGER.debug("Device '%s' (%d): %s -> %s", entry.name, entry.index, entry.status.value, target.value)
        entry.status = target

    def _snapshot(self, entry: _Entry) -> Device:
        return Device(
            name=entry.name,
            index=entry.index,
            capabilities=entry.capabilities,
            status=entry.status,
            enabled=self._settings.get_enabled(entry.name),
            events=self._settings.get_events(entry.name),
            last_command_at=entry.last_command_at,
        )
