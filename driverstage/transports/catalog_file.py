"""Catalog client backed by an exported YAML catalog, for offline prestaging."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from driverstage.core.catalog_rows import NO_DRIVERS_MARKER
from driverstage.core.documents import read_yaml, validate_document
from driverstage.core.errors import CatalogQueryError, ContentLookupError
from driverstage.core.model import HardwareRequest

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class _CatalogEntry:
    row: dict[str, Any]
    hardware_ids: tuple[str, ...]
    categories: tuple[str, ...]
    content_ids: tuple[str, ...]


def _category_matches(wanted: Sequence[str], have: Sequence[str], wildcard: bool) -> bool:
    if not wanted:
        return True
    have_folded = [c.casefold() for c in have]
    for category in wanted:
        folded = category.casefold()
        if wildcard and any(folded in c for c in have_folded):
            return True
        if folded in have_folded:
            return True
    return False


class FileCatalog:
    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._entries = self._load()

    def _load(self) -> dict[int, _CatalogEntry]:
        doc = read_yaml(self._path, error_cls=CatalogQueryError)
        validate_document(doc, "catalog.schema.json", source=str(self._path), error_cls=CatalogQueryError)

        entries: dict[int, _CatalogEntry] = {}
        for item in doc["drivers"]:
            ci_id = item["ci_id"]
            if ci_id in entries:
                raise CatalogQueryError(f"Duplicate ci_id {ci_id} in catalog {self._path}")
            entries[ci_id] = _CatalogEntry(
                row={
                    "CI_ID": ci_id,
                    "DriverType": item.get("type"),
                    "DriverINFFile": item["inf_file"],
                    "DriverDate": item.get("date"),
                    "DriverVersion": item["version"],
                    "DriverClass": item.get("class"),
                    "DriverProvider": item.get("provider"),
                    "DriverSigned": item.get("signed", False),
                    "DriverBootCritical": item.get("boot_critical", False),
                },
                hardware_ids=tuple(item["hardware_ids"]),
                categories=tuple(item.get("categories", ())),
                content_ids=tuple(item.get("content_ids", ())),
            )
        LOGGER.debug("Loaded %d catalog item(s) from %s", len(entries), self._path)
        return entries

    def match(self, request: HardwareRequest) -> list[Any]:
        wanted = {hardware_id.upper(): hardware_id for hardware_id in request.hardware_ids}
        matches: list[dict[str, Any]] = []
        for ci_id, entry in self._entries.items():
            if not _category_matches(request.categories, entry.categories, request.wildcard):
                continue
            for hardware_id in entry.hardware_ids:
                requested = wanted.get(hardware_id.upper())
                if requested is not None:
                    matches.append({"CI_ID": ci_id, "HardwareID": requested})
        return matches or [NO_DRIVERS_MARKER]

    def driver_details(self, ci_ids: Sequence[int]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for ci_id in ci_ids:
            entry = self._entries.get(ci_id)
            if entry is None:
                raise CatalogQueryError(f"Unknown CI_ID {ci_id} in catalog {self._path}")
            rows.append(dict(entry.row))
        return rows

    def content_ids(self, ci_id: int) -> list[str]:
        entry = self._entries.get(ci_id)
        if entry is None:
            raise ContentLookupError(f"Unknown CI_ID {ci_id} in catalog {self._path}")
        return list(entry.content_ids)
