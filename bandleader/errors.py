"""Exception hierarchy for bandleader."""

from __future__ import annotations


class PlayerError(Exception):
    """Base exception for all bandleader errors."""


class RuleError(PlayerError, ValueError):
    """Malformed mix rule string (missing '=', non-numeric channel id, ...)."""


class ConfigError(PlayerError):
    """Invalid configuration: bad limits, unknown channel references, duplicate rules."""


class DecodeError(PlayerError):
    """The MIDI file could not be read."""


class DeviceError(PlayerError):
    """Device discovery, connection or batch transmission failed."""


class PlaybackError(PlayerError):
    """A device task failed during playback. ``__cause__`` holds the device error."""

    def __init__(self, message: str, device: str = "") -> None:
        super().__init__(message)
        self.device = device
