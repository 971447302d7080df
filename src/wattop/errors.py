"""Error types for wattop."""


class WattopError(Exception):
    """Base class for all wattop errors."""


class ConfigError(WattopError):
    """Invalid configuration detected at startup. Fatal."""


class TelemetryError(WattopError):
    """A telemetry collaborator could not deliver a reading."""


class TelemetryUnavailable(TelemetryError):
    """No usable data this tick (empty or malformed output)."""


class ProviderFailure(TelemetryError):
    """The collaborator itself is broken (tool missing, timeout, OS error)."""


class PersistenceError(WattopError):
    """A sample log could not be opened or written."""
