"""Pipeline orchestration used by the CLI and the public API."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from driverstage.core import audit
from driverstage.core.batch import run_batch
from driverstage.core.catalog_rows import matched_ci_ids, parse_driver_rows, parse_match_response
from driverstage.core.config import Settings
from driverstage.core.content import resolve_content
from driverstage.core.errors import CatalogQueryError, ConfigurationError, DriverStageError, StageError
from driverstage.core.hardware import build_request, degrade_for_fallback, enumerate_devices
from driverstage.core.model import (
    Capabilities,
    CandidateDriver,
    CatalogMatch,
    Device,
    FetchResult,
    HardwareRequest,
    InstalledComparison,
    PipelineResult,
    PipelineState,
    RunOptions,
    StageFailure,
)
from driverstage.core.privilege import detect_capabilities
from driverstage.core.reconcile import apply_dated_policy, compare_installed, select_targets, unidentified_targets
from driverstage.transports.base import (
    CatalogClient,
    ContentFetcher,
    DeviceEnumerator,
    InstalledDriverSource,
    Installer,
)
from driverstage.transports.catalog_file import FileCatalog
from driverstage.transports.catalog_http import HttpCatalogClient
from driverstage.transports.content_http import HttpContentFetcher
from driverstage.transports.pnp import PnputilEnumerator, PowerShellPnpEnumerator, SignedDriverInspector
from driverstage.transports.pnputil import PnputilInstaller

LOGGER = logging.getLogger(__name__)

_EMPTY_REQUEST = HardwareRequest(categories=(), wildcard=False, hardware_ids=())


@dataclass
class _Run:
    """Working set of a single pipeline run."""

    options: RunOptions
    state: PipelineState = PipelineState.INITIALIZING
    warnings: list[str] = field(default_factory=list)
    devices: tuple[Device, ...] = ()
    request: HardwareRequest = _EMPTY_REQUEST
    matches: tuple[CatalogMatch, ...] = ()
    candidates: tuple[CandidateDriver, ...] = ()
    targets: tuple[CandidateDriver, ...] = ()
    comparison: tuple[InstalledComparison, ...] | None = None
    content_ids: tuple[str, ...] = ()
    fetched: tuple[FetchResult, ...] = ()
    installed: bool = False

    def warn(self, message: str) -> None:
        LOGGER.warning(message)
        self.warnings.append(message)


class _Halt(Exception):
    """Clean early stop: the catalog had nothing for this hardware.

    Raised from the stage that found nothing, which becomes ``halted_at``. An
    empty match response halts at Matching, since Matching never hands over
    to Reconciling; matched items without detail rows halt at Reconciling.
    """


class DriverStageService:
    def __init__(
        self,
        *,
        catalog: CatalogClient,
        enumerator: DeviceEnumerator,
        fallback_enumerator: DeviceEnumerator,
        fetcher: ContentFetcher,
        installer: Installer | None = None,
        installed_source: InstalledDriverSource | None = None,
        target_path: Path,
        capabilities: Capabilities | None = None,
    ) -> None:
        self.catalog = catalog
        self.enumerator = enumerator
        self.fallback_enumerator = fallback_enumerator
        self.fetcher = fetcher
        self.installer = installer
        self.installed_source = installed_source
        self.target_path = Path(target_path)
        self.capabilities = capabilities or Capabilities()

    def describe(self, options: RunOptions) -> tuple[HardwareRequest, tuple[Device, ...], tuple[str, ...]]:
        """Enumerate devices and build the request, without contacting the catalog."""
        run = _Run(options=options)
        self._describe(run)
        return run.request, run.devices, tuple(run.warnings)

    def run(self, options: RunOptions) -> PipelineResult:
        run = _Run(options=options)
        halted_at: PipelineState | None = None
        failure: StageFailure | None = None
        try:
            self._stage(run, PipelineState.DESCRIBING, self._describe)
            self._stage(run, PipelineState.MATCHING, self._match)
            self._stage(run, PipelineState.RECONCILING, self._reconcile)
            self._stage(run, PipelineState.RESOLVING, self._resolve)
            if self._should_fetch(run):
                self._stage(run, PipelineState.FETCHING, self._fetch)
            if run.options.install:
                self._stage(run, PipelineState.INSTALLING, self._install)
            self._transition(run, PipelineState.COMPLETE)
        except _Halt as halt:
            halted_at = run.state
            run.warn(str(halt))
            self._transition(run, PipelineState.NO_DRIVERS)
        except StageError as exc:
            failure = StageFailure(
                stage=exc.stage,
                message=str(exc.cause),
                error_type=type(exc.cause).__name__,
            )
            halted_at = run.state
            LOGGER.error("%s", exc)
            self._transition(run, PipelineState.FAILED)

        return PipelineResult(
            state=run.state,
            options=run.options,
            halted_at=halted_at,
            failure=failure,
            devices=run.devices,
            candidates=run.candidates,
            targets=run.targets,
            comparison=run.comparison,
            content_ids=run.content_ids,
            fetched=run.fetched,
            installed=run.installed,
            warnings=tuple(run.warnings),
        )

    def _transition(self, run: _Run, state: PipelineState) -> None:
        LOGGER.info("%s -> %s", run.state.value, state.value)
        run.state = state

    def _stage(self, run: _Run, state: PipelineState, step: Callable[[_Run], None]) -> None:
        self._transition(run, state)
        try:
            step(run)
        except _Halt:
            raise
        except DriverStageError as exc:
            raise StageError(state.value, exc) from exc
        except Exception as exc:
            LOGGER.exception("Unexpected fault during %s", state.value)
            raise StageError(state.value, exc) from exc

    def _describe(self, run: _Run) -> None:
        outcome = enumerate_devices(self.enumerator, self.fallback_enumerator)
        run.devices = outcome.devices
        run.warnings.extend(outcome.warnings)
        if outcome.reduced:
            run.options, forced = degrade_for_fallback(run.options)
            run.warnings.extend(forced)

        if run.options.audit_dir is not None:
            audit.dump_devices(run.options.audit_dir, run.devices)

        run.request = build_request(
            run.devices,
            run.options.categories,
            wildcard=run.options.wildcard,
            require_present=run.options.hardware_must_be_present,
        )
        LOGGER.info(
            "Describing %d of %d device(s), categories: %s",
            len(run.request.hardware_ids),
            len(run.devices),
            ", ".join(run.request.categories) or "<all>",
        )

    def _match(self, run: _Run) -> None:
        """Query the catalog; an empty or marker-only answer halts the run at Matching."""
        try:
            raw = self.catalog.match(run.request)
        except DriverStageError:
            raise
        except Exception as exc:
            raise CatalogQueryError(f"Catalog match query failed: {exc}") from exc
        run.matches = tuple(parse_match_response(raw))
        if not run.matches:
            raise _Halt("No matching drivers found in the catalog for this hardware")
        LOGGER.info("Catalog matched %d hardware/driver pair(s)", len(run.matches))

    def _reconcile(self, run: _Run) -> None:
        ci_ids = matched_ci_ids(run.matches)
        try:
            rows = self.catalog.driver_details(ci_ids)
        except DriverStageError:
            raise
        except Exception as exc:
            raise CatalogQueryError(f"Driver detail query for {len(ci_ids)} CI_ID(s) failed: {exc}") from exc
        run.candidates = tuple(parse_driver_rows(rows, run.matches))
        if not run.candidates:
            raise _Halt("Catalog returned no driver details for the matched items")

        selected = select_targets(run.candidates, find_all=run.options.find_all)
        LOGGER.info("Selected %d of %d candidate driver(s)", len(selected), len(run.candidates))

        run.comparison = self._compare(run, selected)
        run.targets = tuple(
            apply_dated_policy(selected, run.comparison, only_dated=run.options.update_only_dated_drivers)
        )

        if run.options.audit_dir is not None:
            audit.dump_drivers(run.options.audit_dir, "matched", "Matched drivers", run.candidates)
            audit.dump_drivers(run.options.audit_dir, "targets", "Target drivers", run.targets)
            if run.comparison is not None:
                audit.dump_comparison(run.options.audit_dir, run.comparison)

    def _compare(self, run: _Run, selected: list[CandidateDriver]) -> tuple[InstalledComparison, ...] | None:
        reason: str | None = None
        unidentified = unidentified_targets(selected)
        if not self.capabilities.elevated:
            reason = "not running elevated"
        elif self.installed_source is None:
            reason = "no installed-driver source configured"
        elif unidentified:
            reason = "no hardware identity for CI_ID(s) " + ", ".join(str(ci_id) for ci_id in unidentified)
        else:
            try:
                installed = self.installed_source.list_installed()
            except DriverStageError as exc:
                reason = f"installed driver inspection failed: {exc}"
            else:
                comparison = tuple(compare_installed(selected, installed))
                LOGGER.info(
                    "%d of %d target(s) are newer than the installed driver",
                    sum(1 for entry in comparison if entry.newer),
                    len(comparison),
                )
                return comparison

        if run.options.update_only_dated_drivers:
            run.warn(f"UpdateOnlyDatedDrivers disabled: {reason}")
            run.options = dataclasses.replace(run.options, update_only_dated_drivers=False)
        else:
            LOGGER.info("Skipping installed driver comparison: %s", reason)
        return None

    def _resolve(self, run: _Run) -> None:
        ci_ids = [driver.ci_id for driver in run.targets]
        _, content_ids = resolve_content(self.catalog, ci_ids, max_workers=run.options.max_workers)
        run.content_ids = tuple(content_ids)
        LOGGER.info("Resolved %d content package(s) for %d driver(s)", len(content_ids), len(ci_ids))

    def _should_fetch(self, run: _Run) -> bool:
        if not run.content_ids:
            LOGGER.info("Nothing to download")
            return False
        if not run.options.download:
            LOGGER.info("Downloading disabled, skipping %d package(s)", len(run.content_ids))
            return False
        return True

    def _fetch(self, run: _Run) -> None:
        paths = run_batch(
            "download",
            lambda content_id: self.fetcher.fetch(content_id, self.target_path),
            list(run.content_ids),
            max_workers=run.options.max_workers,
        )
        run.fetched = tuple(
            FetchResult(content_id=content_id, path=paths[content_id])
            for content_id in run.content_ids
        )

    def _install(self, run: _Run) -> None:
        if not self.capabilities.elevated:
            run.warn("Installation skipped: not running elevated")
            return
        if self.installer is None:
            run.warn("Installation skipped: no installer configured")
            return

        if run.fetched:
            package_dirs = [result.path for result in run.fetched]
        else:
            package_dirs = [
                self.target_path / content_id
                for content_id in run.content_ids
                if (self.target_path / content_id).is_dir()
            ]
        if not package_dirs:
            LOGGER.info("No staged packages to install")
            return

        self.installer.install(package_dirs, allow_restart=run.options.allow_restart)
        run.installed = True


def build_service(settings: Settings, capabilities: Capabilities | None = None) -> DriverStageService:
    """Wire the default transports for a settings object."""
    capabilities = capabilities or detect_capabilities()
    catalog: CatalogClient
    if settings.catalog_file is not None:
        catalog = FileCatalog(settings.catalog_file)
    elif settings.catalog_server and settings.database:
        catalog = HttpCatalogClient(
            settings.catalog_server,
            settings.database,
            use_https=settings.use_https,
            verify_tls=settings.verify_tls,
            credentials=settings.credentials,
            timeout_s=settings.timeout_s,
        )
    else:
        raise ConfigurationError("A catalog file or a catalog server and database are required")
    return DriverStageService(
        catalog=catalog,
        enumerator=PowerShellPnpEnumerator(),
        fallback_enumerator=PnputilEnumerator(),
        installed_source=SignedDriverInspector(),
        fetcher=HttpContentFetcher(
            settings.distribution_endpoint,
            use_https=settings.use_https,
            verify_tls=settings.verify_tls,
            credentials=settings.credentials,
            timeout_s=settings.timeout_s,
        ),
        installer=PnputilInstaller(elevated=capabilities.elevated),
        target_path=settings.target_path,
        capabilities=capabilities,
    )
