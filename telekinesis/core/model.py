"""Core data models shared by the registry, dispatcher, connector and API."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum


class DeviceStatus(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


class ConnectionStatus(str, Enum):
    NOT_CONNECTED = "NotConnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    FAILED = "Failed"
    CLOSED = "Closed"


class SessionState(str, Enum):
    UNINIT = "Uninit"
    ACTIVE = "Active"
    CLOSED = "Closed"


class EventKind(str, Enum):
    DEVICE_CONNECTED = "DeviceConnected"
    DEVICE_DISCONNECTED = "DeviceDisconnected"
    SCAN_STARTED = "ScanStarted"
    SCAN_ENDED = "ScanEnded"
    COMMAND_ACCEPTED = "CommandAccepted"
    COMMAND_COMPLETED = "CommandCompleted"
    COMMAND_FAILED = "CommandFailed"
    ERROR = "Error"


VIBRATE = "Vibrate"
ROTATE = "Rotate"
POSITION = "Position"


@dataclass(frozen=True)
class DeviceInfo:
    """What a backend knows about a device when it reports it."""

    name: str
    index: int
    capabilities: tuple[str, ...] = ()


@dataclass(frozen=True)
class Device:
    """Read-only snapshot of a registry entry.

    ``name`` is the identity settings are keyed by; several devices can share
    it, ``index`` tells them apart.
    """

    name: str
    index: int
    capabilities: tuple[str, ...]
    status: DeviceStatus
    enabled: bool
    events: tuple[str, ...] = ()
    last_command_at: float | None = None

    @property
    def connected(self) -> bool:
        return self.status is DeviceStatus.CONNECTED


@dataclass(frozen=True)
class Scope:
    """Which devices a command targets.

    ``device`` set means a single device; ``events`` set means the devices
    subscribed to any of those event tags; neither means every device.
    """

    device: str | None = None
    events: tuple[str, ...] = ()

    @classmethod
    def all(cls) -> Scope:
        return cls()

    @classmethod
    def single(cls, device: str) -> Scope:
        return cls(device=device)

    @classmethod
    def tagged(cls, events: tuple[str, ...]) -> Scope:
        return cls(events=events)

    @property
    def is_single(self) -> bool:
        return self.device is not None


@dataclass(frozen=True)
class VibrateAction:
    speed: float
    duration: float


@dataclass(frozen=True)
class PatternAction:
    """Play a named pattern from the pattern directory for ``duration`` seconds."""

    pattern: str
    duration: float


@dataclass(frozen=True)
class StopAction:
    pass


@dataclass(frozen=True)
class Command:
    scope: Scope
    action: VibrateAction | PatternAction | StopAction
    issued_at: float
    expires_at: float | None = None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass(frozen=True)
class Event:
    kind: EventKind
    seq: int
    device: str | None = None
    detail: str | None = None

    def as_string(self) -> str:
        payload: dict[str, object] = {"seq": self.seq, "event": self.kind.value}
        if self.device is not None:
            payload["device"] = self.device
        if self.detail is not None:
            payload["detail"] = self.detail
        return json.dumps(payload, separators=(",", ":"))


@dataclass(frozen=True)
class ConnectionSettings:
    type: str = "websocket"
    endpoint: str = "127.0.0.1:12345"


@dataclass(frozen=True)
class DeviceSettings:
    name: str
    enabled: bool
    events: tuple[str, ...] = field(default_factory=tuple)
