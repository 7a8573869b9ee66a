"""Stable public API for building tooling on top of driverstage.

This module is the supported integration surface for third-party callers
(task sequence steps, deployment scripts, services). Avoid importing from
internal modules unless intentionally depending on non-stable internals.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from driverstage.core.config import Settings, load_settings
from driverstage.core.errors import (
    BatchError,
    CatalogDataError,
    CatalogQueryError,
    ConfigurationError,
    ContentLookupError,
    DeviceEnumerationError,
    DownloadError,
    DriverStageError,
    InstallError,
    PrivilegeError,
    StageError,
    TransportError,
)
from driverstage.core.hardware import render_request_xml
from driverstage.core.model import (
    EXIT_FAILED,
    EXIT_NO_DRIVERS,
    EXIT_OK,
    Capabilities,
    CandidateDriver,
    Device,
    HardwareRequest,
    InstalledComparison,
    PipelineResult,
    PipelineState,
    RunOptions,
)
from driverstage.core.service import DriverStageService, build_service

__all__ = [
    "BatchError",
    "CatalogDataError",
    "CatalogQueryError",
    "ConfigurationError",
    "ContentLookupError",
    "DeviceEnumerationError",
    "DownloadError",
    "DriverStageError",
    "InstallError",
    "PrivilegeError",
    "StageError",
    "TransportError",
    "EXIT_FAILED",
    "EXIT_NO_DRIVERS",
    "EXIT_OK",
    "Capabilities",
    "CandidateDriver",
    "Device",
    "HardwareRequest",
    "InstalledComparison",
    "PipelineResult",
    "PipelineState",
    "RunOptions",
    "Settings",
    "Client",
]


class Client:
    """Public client running the driver staging pipeline.

    A `Client` resolves settings once, probes host capabilities once, and
    reuses the wired pipeline for every call.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        capabilities: Capabilities | None = None,
        service: DriverStageService | None = None,
    ) -> None:
        self.settings = settings
        self._service = service or build_service(settings, capabilities)

    @classmethod
    def from_sources(
        cls,
        config_path: Path | None = None,
        overrides: Mapping[str, Any] | None = None,
        *,
        capabilities: Capabilities | None = None,
    ) -> Client:
        return cls(load_settings(config_path, overrides), capabilities=capabilities)

    @property
    def capabilities(self) -> Capabilities:
        return self._service.capabilities

    def list_devices(self) -> tuple[tuple[Device, ...], tuple[str, ...]]:
        _, devices, warnings = self._service.describe(self.settings.options)
        return devices, warnings

    def build_request(self) -> HardwareRequest:
        request, _, _ = self._service.describe(self.settings.options)
        return request

    def request_xml(self) -> str:
        return render_request_xml(self.build_request())

    def run(self) -> PipelineResult:
        return self._service.run(self.settings.options)
