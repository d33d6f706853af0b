"""Shared error types for the shipyard package."""


class ShipyardError(Exception):
    """Base exception for shipyard errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class ConfigError(ShipyardError):
    """Daemon configuration is missing or invalid."""

    pass


class StateError(ShipyardError):
    """A persisted document could not be read or has an unexpected shape."""

    pass


class TrackerError(ShipyardError):
    """An issue tracker command failed."""

    pass


class SpawnError(ShipyardError):
    """A job process could not be started."""

    pass
