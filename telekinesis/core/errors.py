"""Domain-specific errors for telekinesis."""


class TelekinesisError(Exception):
    """Base error for telekinesis."""


class TransportError(TelekinesisError):
    """Base transport error."""


class TransportUnavailableError(TransportError):
    """Raised when the device backend cannot be reached."""


class TransportSendError(TransportError):
    """Raised when a command could not be delivered to a device."""


class TransportTimeoutError(TransportError):
    """Raised when a device does not answer in time."""


class DeviceUnknownError(TelekinesisError):
    """Raised when a single-target lookup names a device nobody has seen."""


class DeviceDisabledError(TelekinesisError):
    """Raised when a command targets a device disabled in settings."""


class DeviceDisconnectedError(TelekinesisError):
    """Raised when a command targets a device that is not connected."""


class CommandRejectedError(TelekinesisError):
    """Raised when a command cannot be accepted for dispatch."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PersistenceError(TelekinesisError):
    """Raised when settings cannot be written to disk."""


class SettingsValidationError(TelekinesisError):
    """Raised when a settings file does not conform to schema."""


class InvalidTransitionError(TelekinesisError):
    """Raised on a device status change the lifecycle does not allow."""


class PatternError(CommandRejectedError):
    """Raised when a named pattern is missing or malformed."""
