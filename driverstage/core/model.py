"""Core data models used across the builder, reconciler, pipeline, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path


@dataclass(frozen=True)
class Device:
    name: str
    hardware_ids: tuple[str, ...]
    present: bool = True
    instance_id: str | None = None

    @property
    def hardware_id(self) -> str | None:
        """Most specific hardware identifier, or None when the device reports none."""
        for value in self.hardware_ids:
            if value and value.strip():
                return value.strip()
        return None


@dataclass(frozen=True)
class HardwareRequest:
    categories: tuple[str, ...]
    wildcard: bool
    hardware_ids: tuple[str, ...]


@dataclass(frozen=True)
class CatalogMatch:
    ci_id: int
    hardware_id: str | None = None


@dataclass(frozen=True)
class CandidateDriver:
    ci_id: int
    inf_file: str
    version: str
    driver_type: str | None = None
    date: date | None = None
    driver_class: str | None = None
    provider: str | None = None
    signed: bool = False
    boot_critical: bool = False
    hardware_ids: tuple[str, ...] = ()

    @property
    def group_key(self) -> tuple[str, str, str]:
        """Identity of the logical driver this row is a version of."""
        return (
            self.inf_file.casefold(),
            (self.driver_class or "").casefold(),
            (self.provider or "").casefold(),
        )


@dataclass(frozen=True)
class InstalledDriver:
    hardware_id: str
    version: str
    inf_name: str | None = None
    date: date | None = None
    driver_class: str | None = None
    provider: str | None = None


@dataclass(frozen=True)
class InstalledComparison:
    driver: CandidateDriver
    installed_version: str | None
    newer: bool


@dataclass(frozen=True)
class ContentMapping:
    ci_id: int
    content_ids: tuple[str, ...]


@dataclass(frozen=True)
class FetchResult:
    content_id: str
    path: Path


@dataclass(frozen=True)
class Capabilities:
    """Host capabilities probed once at startup."""

    elevated: bool = False


@dataclass(frozen=True)
class RunOptions:
    categories: tuple[str, ...] = ()
    wildcard: bool = False
    find_all: bool = False
    hardware_must_be_present: bool = False
    update_only_dated_drivers: bool = False
    download: bool = True
    install: bool = False
    allow_restart: bool = False
    max_workers: int = 4
    audit_dir: Path | None = None


class PipelineState(str, Enum):
    INITIALIZING = "Initializing"
    DESCRIBING = "Describing"
    MATCHING = "Matching"
    RECONCILING = "Reconciling"
    RESOLVING = "Resolving"
    FETCHING = "Fetching"
    INSTALLING = "Installing"
    COMPLETE = "Complete"
    NO_DRIVERS = "NoDrivers"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.COMPLETE, PipelineState.NO_DRIVERS, PipelineState.FAILED)


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NO_DRIVERS = 3


@dataclass(frozen=True)
class StageFailure:
    stage: str
    message: str
    error_type: str


@dataclass(frozen=True)
class PipelineResult:
    state: PipelineState
    options: RunOptions
    halted_at: PipelineState | None = None
    failure: StageFailure | None = None
    devices: tuple[Device, ...] = ()
    candidates: tuple[CandidateDriver, ...] = ()
    targets: tuple[CandidateDriver, ...] = ()
    comparison: tuple[InstalledComparison, ...] | None = None
    content_ids: tuple[str, ...] = ()
    fetched: tuple[FetchResult, ...] = ()
    installed: bool = False
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def exit_code(self) -> int:
        if self.state is PipelineState.COMPLETE:
            return EXIT_OK
        if self.state is PipelineState.NO_DRIVERS:
            return EXIT_NO_DRIVERS
        return EXIT_FAILED
