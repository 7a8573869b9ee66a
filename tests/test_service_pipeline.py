from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from driverstage.core.catalog_rows import NO_DRIVERS_MARKER
from driverstage.core.config import Settings
from driverstage.core.errors import (
    ConfigurationError,
    ContentLookupError,
    DeviceEnumerationError,
    DownloadError,
    InstallError,
)
from driverstage.core.model import (
    EXIT_FAILED,
    EXIT_NO_DRIVERS,
    EXIT_OK,
    Capabilities,
    Device,
    HardwareRequest,
    InstalledDriver,
    PipelineState,
    RunOptions,
)
from driverstage.core.service import DriverStageService, build_service

NIC = "PCI\\VEN_8086&DEV_15F3"
GPU = "PCI\\VEN_10DE&DEV_1F95"
DOCK = "USB\\VID_17EF&PID_A387"


class FakeEnumerator:
    def __init__(self, devices: list[Device] | None = None, error: Exception | None = None) -> None:
        self.devices = devices if devices is not None else []
        self.error = error

    def list_devices(self) -> list[Device]:
        if self.error is not None:
            raise self.error
        return list(self.devices)


class FakeCatalog:
    def __init__(
        self,
        matches: list[Any] | None = None,
        rows: list[Any] | None = None,
        content: dict[int, list[str]] | None = None,
        failing_content: set[int] | None = None,
        match_error: Exception | None = None,
    ) -> None:
        self.matches = matches if matches is not None else []
        self.rows = rows if rows is not None else []
        self.content = content or {}
        self.failing_content = failing_content or set()
        self.match_error = match_error
        self.requests: list[HardwareRequest] = []
        self.detail_calls: list[list[int]] = []

    def match(self, request: HardwareRequest) -> list[Any]:
        self.requests.append(request)
        if self.match_error is not None:
            raise self.match_error
        return list(self.matches)

    def driver_details(self, ci_ids: Sequence[int]) -> list[dict[str, Any]]:
        self.detail_calls.append(list(ci_ids))
        return [row for row in self.rows if not isinstance(row, dict) or row.get("CI_ID") in ci_ids]

    def content_ids(self, ci_id: int) -> list[str]:
        if ci_id in self.failing_content:
            raise ContentLookupError(f"no content service for {ci_id}")
        return self.content.get(ci_id, [])


class FakeFetcher:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, content_id: str, destination: Path) -> Path:
        with self._lock:
            self.calls.append(content_id)
        if content_id in self.failing:
            raise DownloadError(f"HTTP 404 for {content_id}")
        package_dir = destination / content_id
        package_dir.mkdir(parents=True, exist_ok=True)
        (package_dir / "driver.inf").write_text("[Version]\n", encoding="utf-8")
        return package_dir


class FakeInstaller:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[list[Path], bool]] = []

    def install(self, package_dirs: Sequence[Path], *, allow_restart: bool = False) -> None:
        self.calls.append((list(package_dirs), allow_restart))
        if self.error is not None:
            raise self.error


class FakeInstalledSource:
    def __init__(self, drivers: list[InstalledDriver] | None = None, error: Exception | None = None) -> None:
        self.drivers = drivers or []
        self.error = error
        self.calls = 0

    def list_installed(self) -> list[InstalledDriver]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.drivers)


def _row(ci_id: int, inf: str, version: str, day: str, *, cls: str = "Net", provider: str = "Intel") -> dict[str, Any]:
    return {
        "CI_ID": ci_id,
        "DriverType": "PnP",
        "DriverINFFile": inf,
        "DriverDate": day,
        "DriverVersion": version,
        "DriverClass": cls,
        "DriverProvider": provider,
        "DriverSigned": True,
        "DriverBootCritical": False,
    }


def _devices() -> list[Device]:
    return [
        Device(name="Ethernet", hardware_ids=(NIC,), present=True),
        Device(name="GPU", hardware_ids=(GPU,), present=True),
        Device(name="Dock NIC", hardware_ids=(DOCK,), present=False),
    ]


def _catalog(**overrides: Any) -> FakeCatalog:
    values: dict[str, Any] = {
        "matches": [
            {"CI_ID": 1, "HardwareID": NIC},
            {"CI_ID": 2, "HardwareID": NIC},
            {"CI_ID": 3, "HardwareID": GPU},
        ],
        "rows": [
            _row(1, "e1d.inf", "12.0.0.1", "2023-01-01"),
            _row(2, "e1d.inf", "12.19.1.37", "2024-01-01"),
            _row(3, "nv.inf", "31.0.15.5222", "2024-02-01", cls="Display", provider="NVIDIA"),
        ],
        "content": {1: ["Content_old"], 2: ["Content_net"], 3: ["Content_gpu"]},
    }
    values.update(overrides)
    return FakeCatalog(**values)


def _service(
    tmp_path: Path,
    *,
    catalog: FakeCatalog | None = None,
    enumerator: FakeEnumerator | None = None,
    fallback: FakeEnumerator | None = None,
    fetcher: FakeFetcher | None = None,
    installer: FakeInstaller | None = None,
    installed: FakeInstalledSource | None = None,
    elevated: bool = False,
) -> DriverStageService:
    return DriverStageService(
        catalog=catalog or _catalog(),
        enumerator=enumerator or FakeEnumerator(_devices()),
        fallback_enumerator=fallback or FakeEnumerator([Device(name="Fallback NIC", hardware_ids=(NIC,))]),
        fetcher=fetcher or FakeFetcher(),
        installer=installer,
        installed_source=installed,
        target_path=tmp_path / "staged",
        capabilities=Capabilities(elevated=elevated),
    )


def test_full_run_stages_newest_drivers(tmp_path: Path) -> None:
    fetcher = FakeFetcher()
    service = _service(tmp_path, fetcher=fetcher)

    result = service.run(RunOptions())

    assert result.state is PipelineState.COMPLETE
    assert result.exit_code == EXIT_OK
    assert result.failure is None
    assert [d.ci_id for d in result.targets] == [2, 3]
    assert len(result.candidates) == 3
    assert result.content_ids == ("Content_gpu", "Content_net")
    assert sorted(fetcher.calls) == ["Content_gpu", "Content_net"]
    assert {f.content_id: f.path for f in result.fetched}["Content_net"] == tmp_path / "staged" / "Content_net"
    assert (tmp_path / "staged" / "Content_net" / "driver.inf").exists()


def test_matched_hardware_ids_reach_the_targets(tmp_path: Path) -> None:
    result = _service(tmp_path).run(RunOptions())
    nic = next(d for d in result.targets if d.ci_id == 2)
    assert nic.hardware_ids == (NIC,)


def test_request_honours_presence_and_categories(tmp_path: Path) -> None:
    catalog = _catalog()
    _service(tmp_path, catalog=catalog).run(
        RunOptions(categories=("Win11",), wildcard=True, hardware_must_be_present=True)
    )
    [request] = catalog.requests
    assert request.hardware_ids == (NIC, GPU)
    assert request.categories == ("Win11",)
    assert request.wildcard is True


@pytest.mark.parametrize("matches", [[], [NO_DRIVERS_MARKER]])
def test_no_matches_stops_cleanly(tmp_path: Path, matches: list[Any]) -> None:
    catalog = _catalog(matches=matches)
    fetcher = FakeFetcher()
    result = _service(tmp_path, catalog=catalog, fetcher=fetcher).run(RunOptions())

    assert result.state is PipelineState.NO_DRIVERS
    assert result.exit_code == EXIT_NO_DRIVERS
    assert result.halted_at is PipelineState.MATCHING
    assert result.failure is None
    assert fetcher.calls == []
    assert catalog.detail_calls == []
    assert any("No matching drivers" in w for w in result.warnings)


def test_no_detail_rows_stops_cleanly(tmp_path: Path) -> None:
    fetcher = FakeFetcher()
    result = _service(tmp_path, catalog=_catalog(rows=[]), fetcher=fetcher).run(RunOptions())
    assert result.state is PipelineState.NO_DRIVERS
    assert result.halted_at is PipelineState.RECONCILING
    assert fetcher.calls == []


def test_dated_policy_forced_off_without_elevation(tmp_path: Path) -> None:
    installed = FakeInstalledSource([InstalledDriver(hardware_id=NIC, version="99.0")])
    result = _service(tmp_path, installed=installed, elevated=False).run(
        RunOptions(update_only_dated_drivers=True)
    )

    assert result.state is PipelineState.COMPLETE
    assert installed.calls == 0
    assert result.comparison is None
    assert result.options.update_only_dated_drivers is False
    assert [d.ci_id for d in result.targets] == [2, 3]
    assert any("UpdateOnlyDatedDrivers disabled" in w for w in result.warnings)


def test_dated_policy_keeps_only_newer_drivers_when_elevated(tmp_path: Path) -> None:
    installed = FakeInstalledSource(
        [
            InstalledDriver(hardware_id=NIC, version="12.19.1.37"),
            InstalledDriver(hardware_id=GPU, version="30.0.14.9649"),
        ]
    )
    result = _service(tmp_path, installed=installed, elevated=True).run(RunOptions(update_only_dated_drivers=True))

    assert result.comparison is not None
    assert {c.driver.ci_id: c.newer for c in result.comparison} == {2: False, 3: True}
    assert [d.ci_id for d in result.targets] == [3]
    assert result.content_ids == ("Content_gpu",)


def test_comparison_without_dated_policy_leaves_targets_untouched(tmp_path: Path) -> None:
    installed = FakeInstalledSource([InstalledDriver(hardware_id=NIC, version="99.0")])
    result = _service(tmp_path, installed=installed, elevated=True).run(RunOptions())
    assert result.comparison is not None
    assert [d.ci_id for d in result.targets] == [2, 3]


def test_failed_inspection_skips_comparison_entirely(tmp_path: Path) -> None:
    installed = FakeInstalledSource(error=DeviceEnumerationError("WMI unavailable"))
    result = _service(tmp_path, installed=installed, elevated=True).run(RunOptions(update_only_dated_drivers=True))
    assert result.state is PipelineState.COMPLETE
    assert result.comparison is None
    assert result.options.update_only_dated_drivers is False
    assert [d.ci_id for d in result.targets] == [2, 3]


def test_enumeration_fallback_forces_policies_off(tmp_path: Path) -> None:
    catalog = _catalog()
    fallback = FakeEnumerator(
        [
            Device(name="NIC", hardware_ids=(NIC,), present=True),
            Device(name="Dock", hardware_ids=(DOCK,), present=False),
        ]
    )
    service = _service(
        tmp_path,
        catalog=catalog,
        enumerator=FakeEnumerator(error=DeviceEnumerationError("Get-PnpDevice not available")),
        fallback=fallback,
        installed=FakeInstalledSource([InstalledDriver(hardware_id=NIC, version="99.0")]),
        elevated=True,
    )

    result = service.run(RunOptions(hardware_must_be_present=True, update_only_dated_drivers=True))

    assert result.state is PipelineState.COMPLETE
    assert result.options.hardware_must_be_present is False
    assert result.options.update_only_dated_drivers is False
    assert catalog.requests[0].hardware_ids == (NIC, DOCK)
    assert [d.ci_id for d in result.targets] == [2, 3]
    assert any("fallback" in w for w in result.warnings)


def test_enumeration_failure_without_fallback_fails_describing(tmp_path: Path) -> None:
    service = _service(
        tmp_path,
        enumerator=FakeEnumerator(error=DeviceEnumerationError("primary")),
        fallback=FakeEnumerator(error=DeviceEnumerationError("pnputil missing")),
    )
    result = service.run(RunOptions())
    assert result.state is PipelineState.FAILED
    assert result.exit_code == EXIT_FAILED
    assert result.failure is not None
    assert result.failure.stage == "Describing"
    assert result.failure.error_type == "DeviceEnumerationError"


def test_catalog_transport_fault_fails_matching(tmp_path: Path) -> None:
    catalog = _catalog(match_error=ConnectionError("connection reset"))
    result = _service(tmp_path, catalog=catalog).run(RunOptions())
    assert result.state is PipelineState.FAILED
    assert result.halted_at is PipelineState.MATCHING
    assert result.failure.error_type == "CatalogQueryError"
    assert "connection reset" in result.failure.message


def test_uninterpretable_details_fail_reconciling(tmp_path: Path) -> None:
    bad_rows = [{"CI_ID": 1, "DriverINFFile": "e1d.inf"}]
    result = _service(tmp_path, catalog=_catalog(rows=bad_rows)).run(RunOptions())
    assert result.state is PipelineState.FAILED
    assert result.failure.stage == "Reconciling"
    assert result.failure.error_type == "CatalogDataError"


def test_content_lookup_failure_fails_resolving_after_siblings(tmp_path: Path) -> None:
    fetcher = FakeFetcher()
    catalog = _catalog(failing_content={3})
    result = _service(tmp_path, catalog=catalog, fetcher=fetcher).run(RunOptions())
    assert result.state is PipelineState.FAILED
    assert result.failure.stage == "Resolving"
    assert result.failure.error_type == "BatchError"
    assert fetcher.calls == []


def test_download_failure_is_reported_after_all_downloads(tmp_path: Path) -> None:
    fetcher = FakeFetcher(failing={"Content_gpu"})
    installer = FakeInstaller()
    result = _service(tmp_path, fetcher=fetcher, installer=installer, elevated=True).run(
        RunOptions(install=True, max_workers=1)
    )
    assert result.state is PipelineState.FAILED
    assert result.failure.stage == "Fetching"
    assert "Content_gpu" in result.failure.message
    assert sorted(fetcher.calls) == ["Content_gpu", "Content_net"]
    assert installer.calls == []


def test_download_disabled_skips_fetching(tmp_path: Path) -> None:
    fetcher = FakeFetcher()
    result = _service(tmp_path, fetcher=fetcher).run(RunOptions(download=False))
    assert result.state is PipelineState.COMPLETE
    assert fetcher.calls == []
    assert result.fetched == ()
    assert result.content_ids == ("Content_gpu", "Content_net")


def test_no_content_skips_fetching(tmp_path: Path) -> None:
    fetcher = FakeFetcher()
    result = _service(tmp_path, catalog=_catalog(content={}), fetcher=fetcher).run(RunOptions())
    assert result.state is PipelineState.COMPLETE
    assert result.content_ids == ()
    assert fetcher.calls == []


def test_install_without_elevation_is_skipped_not_failed(tmp_path: Path) -> None:
    installer = FakeInstaller()
    result = _service(tmp_path, installer=installer, elevated=False).run(RunOptions(install=True))
    assert result.state is PipelineState.COMPLETE
    assert result.installed is False
    assert installer.calls == []
    assert any("not running elevated" in w for w in result.warnings)


def test_install_applies_downloaded_packages(tmp_path: Path) -> None:
    installer = FakeInstaller()
    result = _service(tmp_path, installer=installer, elevated=True).run(
        RunOptions(install=True, allow_restart=True)
    )
    assert result.state is PipelineState.COMPLETE
    assert result.installed is True
    [(dirs, allow_restart)] = installer.calls
    assert sorted(p.name for p in dirs) == ["Content_gpu", "Content_net"]
    assert allow_restart is True


def test_install_uses_prestaged_content_when_download_disabled(tmp_path: Path) -> None:
    (tmp_path / "staged" / "Content_net").mkdir(parents=True)
    installer = FakeInstaller()
    result = _service(tmp_path, installer=installer, elevated=True).run(RunOptions(install=True, download=False))
    assert result.installed is True
    [(dirs, _)] = installer.calls
    assert dirs == [tmp_path / "staged" / "Content_net"]


def test_not_requesting_install_never_calls_installer(tmp_path: Path) -> None:
    installer = FakeInstaller()
    result = _service(tmp_path, installer=installer, elevated=True).run(RunOptions())
    assert result.state is PipelineState.COMPLETE
    assert installer.calls == []


def test_installer_failure_fails_installing(tmp_path: Path) -> None:
    installer = FakeInstaller(error=InstallError("pnputil exit 5"))
    result = _service(tmp_path, installer=installer, elevated=True).run(RunOptions(install=True))
    assert result.state is PipelineState.FAILED
    assert result.failure.stage == "Installing"


def test_find_all_stages_every_version(tmp_path: Path) -> None:
    result = _service(tmp_path).run(RunOptions(find_all=True))
    assert sorted(d.ci_id for d in result.targets) == [1, 2, 3]
    assert result.content_ids == ("Content_gpu", "Content_net", "Content_old")


def test_audit_tables_written(tmp_path: Path) -> None:
    audit_dir = tmp_path / "logs"
    installed = FakeInstalledSource([InstalledDriver(hardware_id=NIC, version="1.0")])
    _service(tmp_path, installed=installed, elevated=True).run(RunOptions(audit_dir=audit_dir))
    for name in ("devices", "matched", "targets", "compared"):
        assert (audit_dir / f"{name}.txt").is_file()
    assert "e1d.inf" in (audit_dir / "targets.txt").read_text(encoding="utf-8")
    assert "Dock NIC" in (audit_dir / "devices.txt").read_text(encoding="utf-8")


def test_describe_does_not_contact_catalog(tmp_path: Path) -> None:
    catalog = _catalog()
    request, devices, warnings = _service(tmp_path, catalog=catalog).describe(RunOptions())
    assert request.hardware_ids == (NIC, GPU, DOCK)
    assert len(devices) == 3
    assert warnings == ()
    assert catalog.requests == []


def test_bare_match_ids_cannot_drive_the_dated_policy(tmp_path: Path) -> None:
    catalog = _catalog(
        matches=[10],
        rows=[_row(10, "e1d.inf", "1.0", "2020-01-01")],
        content={10: ["Content_old"]},
    )
    installed = FakeInstalledSource([InstalledDriver(hardware_id=NIC, version="99.0")])
    result = _service(tmp_path, catalog=catalog, installed=installed, elevated=True).run(
        RunOptions(update_only_dated_drivers=True)
    )

    assert result.state is PipelineState.COMPLETE
    assert installed.calls == 0
    assert result.comparison is None
    assert result.options.update_only_dated_drivers is False
    assert [d.ci_id for d in result.targets] == [10]
    assert any("no hardware identity for CI_ID(s) 10" in w for w in result.warnings)


def test_skipped_stages_are_never_entered(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="driverstage.core.service"):
        result = _service(tmp_path).run(RunOptions(download=False))
    assert result.state is PipelineState.COMPLETE
    assert "Resolving -> Complete" in caplog.text
    assert "-> Fetching" not in caplog.text
    assert "-> Installing" not in caplog.text


def test_fetching_and_installing_are_entered_when_requested(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.INFO, logger="driverstage.core.service"):
        _service(tmp_path, installer=FakeInstaller(), elevated=True).run(RunOptions(install=True))
    assert "Resolving -> Fetching" in caplog.text
    assert "Fetching -> Installing" in caplog.text
    assert "Installing -> Complete" in caplog.text


def test_build_service_requires_a_catalog_source(tmp_path: Path) -> None:
    settings = Settings(target_path=tmp_path, distribution_endpoint="dp01", catalog_server="cm01")
    with pytest.raises(ConfigurationError, match="catalog"):
        build_service(settings, Capabilities(elevated=False))
