"""Catalog response interpretation: raw match and detail rows into typed records."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

from driverstage.core.documents import validate_document
from driverstage.core.errors import CatalogDataError
from driverstage.core.model import CandidateDriver, CatalogMatch

NO_DRIVERS_MARKER = "NoDriversFound"


def parse_match_response(raw: Sequence[Any] | None) -> list[CatalogMatch]:
    """Interpret a match response.

    Entries may be bare catalog item ids or mappings with ``CI_ID`` and
    ``HardwareID``. An empty response, or one led by the no-drivers marker,
    yields no matches.
    """
    if not raw:
        return []
    first = raw[0]
    if isinstance(first, str) and first.strip().lower() == NO_DRIVERS_MARKER.lower():
        return []

    matches: list[CatalogMatch] = []
    for index, entry in enumerate(raw):
        if isinstance(entry, dict):
            ci_id = _coerce_ci_id(entry.get("CI_ID"), context=f"match[{index}].CI_ID")
            hardware_id = entry.get("HardwareID")
            if hardware_id is not None and not isinstance(hardware_id, str):
                raise CatalogDataError(f"match[{index}].HardwareID must be a string")
            matches.append(CatalogMatch(ci_id=ci_id, hardware_id=hardware_id))
        else:
            matches.append(CatalogMatch(ci_id=_coerce_ci_id(entry, context=f"match[{index}]")))
    return matches


def matched_ci_ids(matches: Iterable[CatalogMatch]) -> list[int]:
    """Distinct catalog item ids, in first-seen order."""
    seen: set[int] = set()
    ordered: list[int] = []
    for match in matches:
        if match.ci_id not in seen:
            seen.add(match.ci_id)
            ordered.append(match.ci_id)
    return ordered


def parse_driver_rows(
    rows: Any,
    matches: Iterable[CatalogMatch] = (),
) -> list[CandidateDriver]:
    if not isinstance(rows, list):
        raise CatalogDataError(
            f"Driver detail response must be a list of rows, got {type(rows).__name__}"
        )

    hardware_by_ci: dict[int, list[str]] = {}
    for match in matches:
        if match.hardware_id:
            ids = hardware_by_ci.setdefault(match.ci_id, [])
            if match.hardware_id not in ids:
                ids.append(match.hardware_id)

    drivers: list[CandidateDriver] = []
    for index, row in enumerate(rows):
        validate_document(row, "driver_row.schema.json", source=f"driver row {index}", error_cls=CatalogDataError)
        ci_id = row["CI_ID"]
        drivers.append(
            CandidateDriver(
                ci_id=ci_id,
                driver_type=row.get("DriverType"),
                inf_file=row["DriverINFFile"],
                date=parse_driver_date(row.get("DriverDate"), context=f"driver row {index}"),
                version=row["DriverVersion"].strip(),
                driver_class=row.get("DriverClass"),
                provider=row.get("DriverProvider"),
                signed=bool(row.get("DriverSigned")),
                boot_critical=bool(row.get("DriverBootCritical")),
                hardware_ids=tuple(hardware_by_ci.get(ci_id, ())),
            )
        )
    return drivers


def parse_driver_date(value: Any, *, context: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise CatalogDataError(f"{context}: invalid driver date '{value}'") from exc
    raise CatalogDataError(f"{context}: invalid driver date {value!r}")


def _coerce_ci_id(value: Any, *, context: str) -> int:
    if isinstance(value, bool):
        raise CatalogDataError(f"{context} must be an integer catalog item id")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise CatalogDataError(f"{context} must be an integer catalog item id, got {value!r}")
