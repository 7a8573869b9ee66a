"""Settings resolution: settings file, environment auto-discovery, then explicit overrides."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from driverstage.core.documents import read_yaml, validate_document
from driverstage.core.errors import ConfigurationError
from driverstage.core.model import RunOptions

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "DRIVERSTAGE_"
_ENV_FIELDS = (
    "target_path",
    "catalog_server",
    "database",
    "catalog_file",
    "distribution_endpoint",
    "username",
    "password",
    "log_dir",
)
_POLICY_FIELDS = (
    "categories",
    "wildcard",
    "find_all",
    "hardware_must_be_present",
    "update_only_dated_drivers",
    "download",
    "install",
    "allow_restart",
    "max_workers",
    "audit",
)


@dataclass(frozen=True)
class Settings:
    target_path: Path
    distribution_endpoint: str
    catalog_server: str | None = None
    database: str | None = None
    catalog_file: Path | None = None
    username: str | None = None
    password: str | None = None
    use_https: bool = True
    verify_tls: bool = True
    timeout_s: float = 60.0
    log_dir: Path | None = None
    options: RunOptions = field(default_factory=RunOptions)

    @property
    def scheme(self) -> str:
        return "https" if self.use_https else "http"

    @property
    def credentials(self) -> tuple[str, str] | None:
        if self.username and self.password:
            return (self.username, self.password)
        return None


def default_config_path(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    xdg_config = Path(env.get("XDG_CONFIG_HOME") or Path.home() / ".config")
    return xdg_config / "driverstage" / "config.yaml"


def _read_settings_file(path: Path) -> dict[str, Any]:
    doc = read_yaml(path, error_cls=ConfigurationError)
    validate_document(doc, "settings.schema.json", source=str(path), error_cls=ConfigurationError)
    flat = {key: value for key, value in doc.items() if key != "policy"}
    flat.update(doc.get("policy", {}))
    return flat


def _from_environment(env: Mapping[str, str]) -> dict[str, Any]:
    found: dict[str, Any] = {}
    for name in _ENV_FIELDS:
        value = env.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None and value.strip():
            found[name] = value.strip()
    return found


def load_settings(
    config_path: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Settings:
    env = os.environ if env is None else env
    merged: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.is_file():
            raise ConfigurationError(f"Settings file not found: {config_path}")
        merged.update(_read_settings_file(config_path))
    else:
        default_path = default_config_path(env)
        if default_path.is_file():
            LOGGER.debug("Using settings file %s", default_path)
            merged.update(_read_settings_file(default_path))

    merged.update(_from_environment(env))
    merged.update({key: value for key, value in (overrides or {}).items() if value is not None})
    return build_settings(merged)


def build_settings(values: Mapping[str, Any]) -> Settings:
    missing: list[str] = []
    for name in ("target_path", "distribution_endpoint"):
        if not values.get(name):
            missing.append(name)
    if not values.get("catalog_file"):
        for name in ("catalog_server", "database"):
            if not values.get(name):
                missing.append(name)
    if missing:
        raise ConfigurationError(
            "Unresolved required settings: "
            + ", ".join(missing)
            + f". Provide them in the settings file, as {ENV_PREFIX}* environment variables, or as options."
        )

    if bool(values.get("username")) != bool(values.get("password")):
        raise ConfigurationError("username and password must be provided together")

    max_workers = int(values.get("max_workers", 4))
    if not 1 <= max_workers <= 32:
        raise ConfigurationError(f"max_workers must be between 1 and 32, got {max_workers}")

    log_dir = Path(values["log_dir"]) if values.get("log_dir") else None
    options = RunOptions(
        categories=tuple(values.get("categories") or ()),
        wildcard=bool(values.get("wildcard", False)),
        find_all=bool(values.get("find_all", False)),
        hardware_must_be_present=bool(values.get("hardware_must_be_present", False)),
        update_only_dated_drivers=bool(values.get("update_only_dated_drivers", False)),
        download=bool(values.get("download", True)),
        install=bool(values.get("install", False)),
        allow_restart=bool(values.get("allow_restart", False)),
        max_workers=max_workers,
        audit_dir=log_dir if values.get("audit", True) else None,
    )

    unknown = set(values) - set(_ENV_FIELDS) - set(_POLICY_FIELDS) - {"use_https", "verify_tls", "timeout_s"}
    if unknown:
        LOGGER.debug("Ignoring unknown settings: %s", ", ".join(sorted(unknown)))

    return Settings(
        target_path=Path(values["target_path"]),
        distribution_endpoint=str(values["distribution_endpoint"]).rstrip("/"),
        catalog_server=values.get("catalog_server"),
        database=values.get("database"),
        catalog_file=Path(values["catalog_file"]) if values.get("catalog_file") else None,
        username=values.get("username") or None,
        password=values.get("password") or None,
        use_https=bool(values.get("use_https", True)),
        verify_tls=bool(values.get("verify_tls", True)),
        timeout_s=float(values.get("timeout_s", 60.0)),
        log_dir=log_dir,
        options=options,
    )
