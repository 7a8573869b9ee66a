"""Driver installation through pnputil."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from driverstage.core.errors import InstallError, PrivilegeError

LOGGER = logging.getLogger(__name__)

SUCCESS_CODES = frozenset({0, 3010})


class PnputilInstaller:
    def __init__(self, *, elevated: bool, pnputil: str = "pnputil", timeout_s: float = 1800.0) -> None:
        self._elevated = elevated
        self._pnputil = pnputil
        self._timeout_s = timeout_s

    def command_for(self, package_dir: Path, *, allow_restart: bool) -> list[str]:
        cmd = [self._pnputil, "/add-driver", str(package_dir / "*.inf"), "/subdirs", "/install"]
        if allow_restart:
            cmd.append("/reboot")
        return cmd

    def install(self, package_dirs: Sequence[Path], *, allow_restart: bool = False) -> None:
        if not self._elevated:
            raise PrivilegeError("Driver installation requires an elevated session")

        for package_dir in package_dirs:
            cmd = self.command_for(package_dir, allow_restart=allow_restart)
            LOGGER.info("Installing drivers from %s", package_dir)
            try:
                result = subprocess.run(
                    cmd,
                    check=False,
                    capture_output=True,
                    text=True,
                    timeout=self._timeout_s,
                )
            except FileNotFoundError as exc:
                raise InstallError(f"'{self._pnputil}' not found") from exc
            except subprocess.TimeoutExpired as exc:
                raise InstallError(f"pnputil timed out installing {package_dir}") from exc

            if result.returncode not in SUCCESS_CODES:
                detail = (result.stderr or result.stdout or "").strip()
                raise InstallError(f"pnputil exit {result.returncode} for {package_dir}: {detail}")
            if result.returncode == 3010:
                LOGGER.warning("Drivers from %s require a restart to finish installing", package_dir)
