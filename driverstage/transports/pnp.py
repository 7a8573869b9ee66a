"""Local device and installed-driver discovery through PowerShell and pnputil."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from collections.abc import Sequence
from typing import Any

from driverstage.core.catalog_rows import parse_driver_date
from driverstage.core.errors import CatalogDataError, DeviceEnumerationError
from driverstage.core.model import Device, InstalledDriver

LOGGER = logging.getLogger(__name__)

_PNP_DEVICE_SCRIPT = (
    "Get-PnpDevice | Select-Object FriendlyName, InstanceId, Present, HardwareID "
    "| ConvertTo-Json -Depth 3 -Compress"
)
_SIGNED_DRIVER_SCRIPT = (
    "Get-CimInstance Win32_PnPSignedDriver | Where-Object { $_.HardWareID -and $_.DriverVersion } "
    "| Select-Object HardWareID, InfName, DriverVersion, DeviceClass, DriverProviderName, "
    "@{n='DriverDate';e={ if ($_.DriverDate) { $_.DriverDate.ToString('yyyy-MM-dd') } }} "
    "| ConvertTo-Json -Depth 2 -Compress"
)
_PNPUTIL_FIELD_RE = re.compile(r"^([A-Za-z][A-Za-z ]+):\s*(.*)$")


def _run_command(cmd: Sequence[str], timeout_s: float) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except FileNotFoundError:
        return None


def _run_powershell_json(powershell: str, script: str, timeout_s: float, what: str) -> list[dict[str, Any]]:
    cmd = [powershell, "-NoProfile", "-NonInteractive", "-Command", script]
    try:
        result = _run_command(cmd, timeout_s)
    except subprocess.TimeoutExpired as exc:
        raise DeviceEnumerationError(f"{what} timed out after {timeout_s}s") from exc
    if result is None:
        raise DeviceEnumerationError(f"{what} unavailable: '{powershell}' not found")
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise DeviceEnumerationError(f"{what} failed with exit code {result.returncode}: {stderr}")

    output = (result.stdout or "").strip()
    if not output:
        return []
    try:
        data = json.loads(output)
    except json.JSONDecodeError as exc:
        raise DeviceEnumerationError(f"{what} returned invalid JSON: {exc}") from exc
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise DeviceEnumerationError(f"{what} returned unexpected data")
    return [item for item in data if isinstance(item, dict)]


def _as_id_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    return tuple(str(v).strip() for v in value if v and str(v).strip())


class PowerShellPnpEnumerator:
    """Full-capability enumerator: every known device with its presence flag."""

    def __init__(self, *, powershell: str = "powershell", timeout_s: float = 120.0) -> None:
        self._powershell = powershell
        self._timeout_s = timeout_s

    def list_devices(self) -> list[Device]:
        items = _run_powershell_json(self._powershell, _PNP_DEVICE_SCRIPT, self._timeout_s, "Get-PnpDevice")
        devices: list[Device] = []
        for item in items:
            devices.append(
                Device(
                    name=item.get("FriendlyName") or "<unnamed-device>",
                    hardware_ids=_as_id_tuple(item.get("HardwareID")),
                    present=bool(item.get("Present")),
                    instance_id=item.get("InstanceId"),
                )
            )
        LOGGER.debug("Get-PnpDevice returned %d device(s)", len(devices))
        return devices


class PnputilEnumerator:
    """Reduced-capability enumerator parsing ``pnputil /enum-devices /ids``.

    Only currently attached devices are listed, so every device is reported
    present.
    """

    def __init__(self, *, pnputil: str = "pnputil", timeout_s: float = 120.0) -> None:
        self._pnputil = pnputil
        self._timeout_s = timeout_s

    def list_devices(self) -> list[Device]:
        cmd = [self._pnputil, "/enum-devices", "/ids"]
        try:
            result = _run_command(cmd, self._timeout_s)
        except subprocess.TimeoutExpired as exc:
            raise DeviceEnumerationError(f"pnputil timed out after {self._timeout_s}s") from exc
        if result is None:
            raise DeviceEnumerationError(f"Device enumeration unavailable: '{self._pnputil}' not found")
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise DeviceEnumerationError(f"{' '.join(cmd)} -> exit {result.returncode}: {stderr}")
        return parse_pnputil_devices(result.stdout or "")


def parse_pnputil_devices(output: str) -> list[Device]:
    devices: list[Device] = []
    block: dict[str, list[str]] = {}
    current: str | None = None

    def _flush() -> None:
        if not block:
            return
        name = (block.get("device description") or ["<unnamed-device>"])[0]
        instance = (block.get("instance id") or [None])[0]
        devices.append(
            Device(
                name=name,
                hardware_ids=tuple(block.get("hardware ids", ())),
                present=True,
                instance_id=instance,
            )
        )
        block.clear()

    for raw_line in output.splitlines():
        line = raw_line.rstrip()
        if not line.strip():
            continue
        match = _PNPUTIL_FIELD_RE.match(line)
        if match and not raw_line[:1].isspace():
            current = match.group(1).strip().lower()
            if current == "instance id":
                _flush()
            value = match.group(2).strip()
            block.setdefault(current, [])
            if value:
                block[current].append(value)
        elif current is not None and raw_line[:1].isspace():
            block.setdefault(current, []).append(line.strip())
    _flush()
    return devices


class SignedDriverInspector:
    """Reads drivers bound to local hardware from Win32_PnPSignedDriver."""

    def __init__(self, *, powershell: str = "powershell", timeout_s: float = 120.0) -> None:
        self._powershell = powershell
        self._timeout_s = timeout_s

    def list_installed(self) -> list[InstalledDriver]:
        items = _run_powershell_json(
            self._powershell,
            _SIGNED_DRIVER_SCRIPT,
            self._timeout_s,
            "Win32_PnPSignedDriver query",
        )
        installed: list[InstalledDriver] = []
        for item in items:
            hardware_id = item.get("HardWareID")
            version = item.get("DriverVersion")
            if not hardware_id or not version:
                continue
            try:
                driver_date = parse_driver_date(item.get("DriverDate"), context=str(hardware_id))
            except CatalogDataError:
                driver_date = None
            installed.append(
                InstalledDriver(
                    hardware_id=str(hardware_id),
                    version=str(version),
                    inf_name=item.get("InfName"),
                    date=driver_date,
                    driver_class=item.get("DeviceClass"),
                    provider=item.get("DriverProviderName"),
                )
            )
        return installed
