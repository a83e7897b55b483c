from __future__ import annotations


class OverheadError(Exception):
    """Base class for every failure raised by the overhead harness."""


class ConfigurationError(OverheadError, ValueError):
    """Raised when an agent or run configuration violates its invariants."""


class ResolutionError(OverheadError):
    """Raised when an agent artifact cannot be fetched or copied."""


class ProvisioningError(OverheadError):
    """Raised when a backing dependency does not become ready or fails to stop."""


class StartupError(OverheadError):
    """Raised when the target application is not healthy within its timeout."""


class RecordingError(OverheadError):
    """Raised when a profiling command issued to the target exits abnormally."""


class LoadToolError(OverheadError):
    """Raised when the load tool exits abnormally or times out."""


class ShutdownError(OverheadError):
    """Raised when the target does not stop gracefully within its timeout."""


class CollectionError(OverheadError):
    """Raised when an expected result artifact is missing or malformed."""


class PersistenceError(OverheadError):
    """Raised when an output directory or file cannot be written."""


__all__ = [
    "OverheadError",
    "ConfigurationError",
    "ResolutionError",
    "ProvisioningError",
    "StartupError",
    "RecordingError",
    "LoadToolError",
    "ShutdownError",
    "CollectionError",
    "PersistenceError",
]
