"""Collaborator interfaces consumed by the pipeline."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

from driverstage.core.model import Device, HardwareRequest, InstalledDriver


class DeviceEnumerator(Protocol):
    def list_devices(self) -> list[Device]:
        """Return local devices, raising DeviceEnumerationError when unavailable."""


class InstalledDriverSource(Protocol):
    def list_installed(self) -> list[InstalledDriver]:
        """Return drivers currently bound to local hardware."""


class CatalogClient(Protocol):
    def match(self, request: HardwareRequest) -> list[Any]:
        """Return the raw match response for a hardware request."""

    def driver_details(self, ci_ids: Sequence[int]) -> list[dict[str, Any]]:
        """Return raw driver-detail rows for the given catalog item ids."""

    def content_ids(self, ci_id: int) -> list[str]:
        """Return content package ids mapped to one catalog item."""


class ContentFetcher(Protocol):
    def fetch(self, content_id: str, destination: Path) -> Path:
        """Download one content package under destination and return its directory."""


class Installer(Protocol):
    def install(self, package_dirs: Sequence[Path], *, allow_restart: bool = False) -> None:
        """Apply drivers found in the package directories to the running OS."""
