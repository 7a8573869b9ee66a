"""Domain-specific errors for driverstage."""

from __future__ import annotations


class DriverStageError(Exception):
    """Base error for driverstage."""


class ConfigurationError(DriverStageError):
    """Raised when required identifying settings cannot be resolved."""


class DeviceEnumerationError(DriverStageError):
    """Raised when a device enumerator cannot produce a device list."""


class CatalogDataError(DriverStageError):
    """Raised when catalog data cannot be interpreted as driver records."""


class PrivilegeError(DriverStageError):
    """Raised when an elevated operation is attempted without elevation."""


class TransportError(DriverStageError):
    """Base transport error."""


class CatalogQueryError(TransportError):
    """Raised when a catalog match or driver-detail query fails."""


class ContentLookupError(TransportError):
    """Raised when a content mapping lookup fails for a catalog item."""


class DownloadError(TransportError):
    """Raised when a content package download fails."""


class InstallError(TransportError):
    """Raised when the driver installation utility reports a failure."""


class BatchError(TransportError):
    """Raised after a parallel batch completes with one or more failed siblings."""

    def __init__(self, operation: str, failures: dict[str, Exception]) -> None:
        self.operation = operation
        self.failures = dict(failures)
        detail = "; ".join(f"{key}: {exc}" for key, exc in sorted(self.failures.items()))
        super().__init__(f"{len(self.failures)} {operation} operation(s) failed: {detail}")


class StageError(DriverStageError):
    """Raised when a pipeline stage cannot complete."""

    def __init__(self, stage: str, cause: Exception) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")
