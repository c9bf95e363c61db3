"""Device-control bridge for haptic hardware."""

__version__ = "0.3.0"
