"""Human-readable audit tables written alongside the run log."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

from rich.console import Console
from rich.table import Table

from driverstage.core.model import CandidateDriver, Device, InstalledComparison

LOGGER = logging.getLogger(__name__)

_DRIVER_COLUMNS = ("CI_ID", "INF", "Date", "Version", "Class", "Provider", "Type", "Signed", "BootCritical")


def _driver_row(driver: CandidateDriver) -> tuple[str, ...]:
    return (
        str(driver.ci_id),
        driver.inf_file,
        driver.date.isoformat() if driver.date else "",
        driver.version,
        driver.driver_class or "",
        driver.provider or "",
        driver.driver_type or "",
        "yes" if driver.signed else "no",
        "yes" if driver.boot_critical else "no",
    )


def render_table(title: str, columns: Sequence[str], rows: Iterable[Sequence[str]]) -> Table:
    table = Table(title=title, show_lines=False)
    for column in columns:
        table.add_column(column, overflow="fold")
    for row in rows:
        table.add_row(*row)
    return table


def write_table(directory: Path, name: str, table: Table) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.txt"
    with path.open("w", encoding="utf-8") as handle:
        console = Console(file=handle, width=200, color_system=None, force_terminal=False)
        console.print(table)
    LOGGER.debug("Wrote audit table %s", path)
    return path


def dump_devices(directory: Path, devices: Sequence[Device]) -> Path:
    rows = (
        (device.name, device.hardware_id or "", "yes" if device.present else "no", device.instance_id or "")
        for device in devices
    )
    table = render_table(f"Devices ({len(devices)})", ("Name", "HardwareID", "Present", "InstanceID"), rows)
    return write_table(directory, "devices", table)


def dump_drivers(directory: Path, name: str, title: str, drivers: Sequence[CandidateDriver]) -> Path:
    table = render_table(f"{title} ({len(drivers)})", _DRIVER_COLUMNS, (_driver_row(d) for d in drivers))
    return write_table(directory, name, table)


def dump_comparison(directory: Path, comparison: Sequence[InstalledComparison]) -> Path:
    rows = (
        (
            str(entry.driver.ci_id),
            entry.driver.inf_file,
            entry.driver.version,
            entry.installed_version or "<none>",
            "yes" if entry.newer else "no",
        )
        for entry in comparison
    )
    table = render_table(
        f"Installed comparison ({len(comparison)})",
        ("CI_ID", "INF", "Catalog", "Installed", "Newer"),
        rows,
    )
    return write_table(directory, "compared", table)
