"""Content package download from a distribution endpoint over HTTP(S)."""

from __future__ import annotations

import logging
import shutil
import zipfile
from pathlib import Path

import requests

from driverstage.core.errors import DownloadError

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 256


class HttpContentFetcher:
    def __init__(
        self,
        endpoint: str,
        *,
        use_https: bool = True,
        verify_tls: bool = True,
        credentials: tuple[str, str] | None = None,
        timeout_s: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        scheme = "https" if use_https else "http"
        host = endpoint.split("://", 1)[-1].strip("/")
        self._base_url = f"{scheme}://{host}/SMS_DP_SMSPKG$"
        self._timeout_s = timeout_s
        self._session = session or requests.Session()
        self._session.verify = verify_tls
        if credentials:
            self._session.auth = credentials

    def url_for(self, content_id: str) -> str:
        return f"{self._base_url}/{content_id}"

    def fetch(self, content_id: str, destination: Path) -> Path:
        url = self.url_for(content_id)
        destination.mkdir(parents=True, exist_ok=True)
        temp_path = destination / f"{content_id}.download"
        package_dir = destination / content_id
        LOGGER.debug("Downloading %s to %s", url, package_dir)
        try:
            with self._session.get(url, stream=True, timeout=self._timeout_s) as response:
                response.raise_for_status()
                with temp_path.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
        except (requests.RequestException, OSError) as exc:
            temp_path.unlink(missing_ok=True)
            raise DownloadError(f"Download failed for {content_id} from {url}: {exc}") from exc

        try:
            if package_dir.exists():
                shutil.rmtree(package_dir)
            package_dir.mkdir(parents=True)
            if zipfile.is_zipfile(temp_path):
                with zipfile.ZipFile(temp_path) as archive:
                    archive.extractall(package_dir)
                temp_path.unlink()
            else:
                temp_path.replace(package_dir / f"{content_id}.bin")
        except (OSError, zipfile.BadZipFile) as exc:
            temp_path.unlink(missing_ok=True)
            raise DownloadError(f"Could not unpack {content_id}: {exc}") from exc
        return package_dir
