"""Content resolution: catalog item ids to the content packages that carry them."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from driverstage.core.batch import run_batch
from driverstage.core.errors import ContentLookupError, DriverStageError
from driverstage.core.model import ContentMapping
from driverstage.transports.base import CatalogClient

LOGGER = logging.getLogger(__name__)


def resolve_content(
    client: CatalogClient,
    ci_ids: Iterable[int],
    *,
    max_workers: int = 4,
) -> tuple[list[ContentMapping], list[str]]:
    """Look up content ids for each distinct catalog item.

    Returns the per-item mappings in ci_id order and the sorted union of
    content ids. Items without content contribute nothing.
    """
    distinct = sorted(set(ci_ids))

    def _lookup(ci_id: int) -> tuple[str, ...]:
        try:
            raw = client.content_ids(ci_id)
        except DriverStageError:
            raise
        except Exception as exc:
            raise ContentLookupError(f"Content lookup failed for CI_ID {ci_id}: {exc}") from exc
        return tuple(content_id.strip() for content_id in raw or () if content_id and content_id.strip())

    found = run_batch("content lookup", _lookup, distinct, max_workers=max_workers)

    mappings = [ContentMapping(ci_id=ci_id, content_ids=found[ci_id]) for ci_id in distinct]
    for mapping in mappings:
        if not mapping.content_ids:
            LOGGER.info("CI_ID %s has no downloadable content", mapping.ci_id)
    return mappings, sorted({content_id for m in mappings for content_id in m.content_ids})
