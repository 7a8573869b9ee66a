"""Driver reconciliation: ranking, deduplication, and installed-version comparison."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from datetime import date

from driverstage.core.errors import CatalogDataError
from driverstage.core.model import CandidateDriver, InstalledComparison, InstalledDriver

LOGGER = logging.getLogger(__name__)

_LEADING_DIGITS_RE = re.compile(r"^\s*(\d+)")
_VERSION_PARTS = 4


def version_key(version: str | None) -> tuple[int, ...]:
    """Numeric sort key for dotted driver versions ("31.0.101.4502").

    Missing parts count as zero so "1.2" equals "1.2.0.0"; a part without
    leading digits counts as zero.
    """
    if not version or not version.strip():
        return (0,) * _VERSION_PARTS
    parts: list[int] = []
    for piece in version.strip().split("."):
        match = _LEADING_DIGITS_RE.match(piece)
        parts.append(int(match.group(1)) if match else 0)
    while len(parts) < _VERSION_PARTS:
        parts.append(0)
    return tuple(parts)


def compare_versions(left: str | None, right: str | None) -> int:
    left_key = version_key(left)
    right_key = version_key(right)
    width = max(len(left_key), len(right_key))
    left_key = left_key + (0,) * (width - len(left_key))
    right_key = right_key + (0,) * (width - len(right_key))
    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


def sort_candidates(candidates: Iterable[CandidateDriver]) -> list[CandidateDriver]:
    """Order by INF file ascending, then date and version descending.

    Passes run least significant first; each sort is stable, so rows that tie
    on all three keys keep their catalog order.
    """
    ordered = sorted(candidates, key=lambda d: version_key(d.version), reverse=True)
    ordered.sort(key=lambda d: d.date or date.min, reverse=True)
    ordered.sort(key=lambda d: d.inf_file.casefold())
    return ordered


def select_targets(candidates: Iterable[CandidateDriver], *, find_all: bool = False) -> list[CandidateDriver]:
    """Keep the newest row of every logical driver group, or everything with find_all."""
    ordered = sort_candidates(candidates)
    if find_all:
        return ordered

    accepted: list[CandidateDriver] = []
    seen: set[tuple[str, str, str]] = set()
    for candidate in ordered:
        if candidate.group_key in seen:
            LOGGER.debug(
                "Skipping CI_ID %s (%s %s): newer version already selected",
                candidate.ci_id,
                candidate.inf_file,
                candidate.version,
            )
            continue
        seen.add(candidate.group_key)
        accepted.append(candidate)
    return accepted


def unidentified_targets(targets: Iterable[CandidateDriver]) -> list[int]:
    """CI_IDs of targets that carry no hardware id and so cannot be compared."""
    return [driver.ci_id for driver in targets if not driver.hardware_ids]


def compare_installed(
    targets: Sequence[CandidateDriver],
    installed: Iterable[InstalledDriver],
) -> list[InstalledComparison]:
    """Mark each target newer than what is bound to its hardware today.

    A target whose hardware has no installed driver counts as newer. Every
    target must carry its matched hardware ids.
    """
    unidentified = unidentified_targets(targets)
    if unidentified:
        raise CatalogDataError(
            "Cannot compare drivers without hardware ids: CI_ID(s) " + ", ".join(str(c) for c in unidentified)
        )

    by_hardware: dict[str, list[InstalledDriver]] = {}
    for item in installed:
        by_hardware.setdefault(item.hardware_id.upper(), []).append(item)

    results: list[InstalledComparison] = []
    for driver in targets:
        local_versions = [
            item.version
            for hardware_id in driver.hardware_ids
            for item in by_hardware.get(hardware_id.upper(), ())
        ]
        if not local_versions:
            results.append(InstalledComparison(driver=driver, installed_version=None, newer=True))
            continue
        current = max(local_versions, key=version_key)
        newer = compare_versions(driver.version, current) > 0
        results.append(InstalledComparison(driver=driver, installed_version=current, newer=newer))
    return results


def apply_dated_policy(
    targets: Sequence[CandidateDriver],
    comparison: Sequence[InstalledComparison] | None,
    *,
    only_dated: bool,
) -> list[CandidateDriver]:
    if not only_dated or comparison is None:
        return list(targets)
    return [entry.driver for entry in comparison if entry.newer]
