"""Catalog client for a catalog web service fronting the site database."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import requests

from driverstage.core.errors import CatalogDataError, CatalogQueryError, ContentLookupError, TransportError
from driverstage.core.hardware import render_request_xml
from driverstage.core.model import HardwareRequest

LOGGER = logging.getLogger(__name__)


class HttpCatalogClient:
    def __init__(
        self,
        server: str,
        database: str,
        *,
        use_https: bool = True,
        verify_tls: bool = True,
        credentials: tuple[str, str] | None = None,
        timeout_s: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        scheme = "https" if use_https else "http"
        self._base_url = f"{scheme}://{server.strip('/')}/catalog/{database}"
        self._timeout_s = timeout_s
        self._session = session or requests.Session()
        self._session.verify = verify_tls
        if credentials:
            self._session.auth = credentials

    @property
    def base_url(self) -> str:
        return self._base_url

    def match(self, request: HardwareRequest) -> list[Any]:
        LOGGER.debug("Matching %d hardware id(s) against %s", len(request.hardware_ids), self._base_url)
        payload = self._call(
            "POST",
            "/match",
            CatalogQueryError,
            data=render_request_xml(request).encode("utf-8"),
            headers={"Content-Type": "application/xml"},
        )
        return self._expect_list(payload, "match")

    def driver_details(self, ci_ids: Sequence[int]) -> list[dict[str, Any]]:
        if not ci_ids:
            return []
        payload = self._call("POST", "/drivers", CatalogQueryError, json={"ci_ids": [int(c) for c in ci_ids]})
        return self._expect_list(payload, "drivers")

    def content_ids(self, ci_id: int) -> list[str]:
        payload = self._call("GET", f"/content/{int(ci_id)}", ContentLookupError)
        values = self._expect_list(payload, f"content/{ci_id}")
        if not all(isinstance(value, str) for value in values):
            raise CatalogDataError(f"content/{ci_id} must return a list of content id strings")
        return values

    def _call(self, method: str, path: str, error_cls: type[TransportError], **kwargs: Any) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout_s, **kwargs)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise error_cls(f"{method} {url} failed: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise CatalogDataError(f"{method} {url} returned a non-JSON body") from exc

    @staticmethod
    def _expect_list(payload: Any, what: str) -> list[Any]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise CatalogDataError(f"Catalog '{what}' response must be a JSON list, got {type(payload).__name__}")
        return payload
