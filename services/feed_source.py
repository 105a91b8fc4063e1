"""
Feed sources.

A feed source lists the Traveltek JSON files of one sync and reads them one
at a time. Listing problems are run-fatal (FeedUnavailableError); reading
problems affect one file (FeedDownloadError).
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import requests
import structlog

from config import settings
from exceptions import CredentialError, FeedDownloadError, FeedUnavailableError
from models.sync import SyncOptions
from services.credential_service import ProviderCredentials, get_credential_service

logger = structlog.get_logger(__name__)

MANIFEST_NAME = "manifest.json"


def is_within(root, path) -> bool:
    """True when path, with symlinks and .. resolved, is root or lies under it."""
    return Path(path).expanduser().resolve().is_relative_to(Path(root).expanduser().resolve())


@dataclass(frozen=True)
class FeedFile:
    """One feed file. path is relative to the source root, with forward slashes."""
    path: str
    size: Optional[int] = None


class FeedSource:
    """Interface shared by the local and HTTP sources."""

    name = "base"

    def list_files(self, only: Optional[list[str]] = None) -> list[FeedFile]:
        raise NotImplementedError

    def read(self, feed_file: FeedFile) -> bytes:
        raise NotImplementedError

    def describe(self) -> str:
        return self.name


class LocalFeedSource(FeedSource):
    """*.json files under a directory, recursively (year/month/line/ship/ layout)."""

    name = "local"

    def __init__(self, root: str):
        self.root = Path(root).expanduser()

    def describe(self) -> str:
        return str(self.root)

    def list_files(self, only: Optional[list[str]] = None) -> list[FeedFile]:
        if not self.root.is_dir():
            raise FeedUnavailableError(
                f"Feed directory not found: {self.root}",
                details={"source": self.name}
            )

        if only:
            return [self._feed_file(self.root / entry) for entry in only]

        try:
            paths = sorted(p for p in self.root.rglob("*.json") if p.is_file())
        except OSError as e:
            raise FeedUnavailableError(f"Cannot list feed directory {self.root}: {e}")

        files = [self._feed_file(p) for p in paths]
        logger.info("feed_files_listed", source=self.name, root=str(self.root), count=len(files))
        return files

    def _feed_file(self, path: Path) -> FeedFile:
        try:
            relative = path.relative_to(self.root).as_posix()
        except ValueError:
            relative = path.as_posix()
        try:
            size = path.stat().st_size
        except OSError:
            size = None
        return FeedFile(path=relative, size=size)

    def read(self, feed_file: FeedFile) -> bytes:
        path = self.root / feed_file.path
        if not is_within(self.root, path):
            raise FeedDownloadError(f"Refusing to read {feed_file.path}: outside {self.root}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise FeedDownloadError(f"Cannot read {feed_file.path}: {e.strerror or e}")


class HttpFeedSource(FeedSource):
    """
    Feed files served over HTTP.

    GET {base}/manifest.json returns either a list of paths or
    {"files": [{"path": ..., "size": ...}]}; each file is then fetched with
    GET {base}/{path}. Basic auth uses the provider's stored credentials.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        credentials: Optional[ProviderCredentials] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if credentials is not None:
            self.session.auth = (credentials.username, credentials.password.get_secret_value())

    def describe(self) -> str:
        return self.base_url

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{quote(path.lstrip('/'))}"

    def list_files(self, only: Optional[list[str]] = None) -> list[FeedFile]:
        if only:
            return [FeedFile(path=p) for p in only]

        url = self._url(MANIFEST_NAME)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("feed_manifest_request_failed", url=url, error=str(e))
            raise FeedUnavailableError(f"Feed unreachable: {e}", details={"url": url})

        if response.status_code in (401, 403):
            raise CredentialError(settings.feed_provider, f"Feed rejected credentials (HTTP {response.status_code})")
        if not response.ok:
            raise FeedUnavailableError(
                f"Feed manifest returned HTTP {response.status_code}",
                details={"url": url}
            )

        try:
            manifest = response.json()
        except ValueError:
            raise FeedUnavailableError("Feed manifest is not valid JSON", details={"url": url})

        entries = manifest.get("files", []) if isinstance(manifest, dict) else manifest
        if not isinstance(entries, list):
            raise FeedUnavailableError("Feed manifest has no file list", details={"url": url})

        files = []
        for entry in entries:
            if isinstance(entry, str):
                files.append(FeedFile(path=entry))
            elif isinstance(entry, dict) and entry.get("path"):
                size = entry.get("size")
                files.append(FeedFile(path=str(entry["path"]), size=size if isinstance(size, int) else None))

        logger.info("feed_files_listed", source=self.name, url=self.base_url, count=len(files))
        return files

    def read(self, feed_file: FeedFile) -> bytes:
        url = self._url(feed_file.path)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise FeedDownloadError(f"Download failed for {feed_file.path}: {e}")
        return response.content


def build_feed_source(options: SyncOptions) -> FeedSource:
    """
    Pick the feed source for a run.

    An explicit source_dir always means a local directory.

    Raises:
        CredentialError: HTTP source without usable credentials
        FeedUnavailableError: HTTP source without a base URL
    """
    if options.source_dir or settings.feed_source == "local":
        return LocalFeedSource(options.source_dir or settings.feed_local_dir)

    if not settings.feed_http_base_url:
        raise FeedUnavailableError("FEED_HTTP_BASE_URL is not configured")

    credentials = get_credential_service().get_provider_credentials(settings.feed_provider)
    return HttpFeedSource(
        settings.feed_http_base_url,
        credentials=credentials,
        timeout=settings.feed_http_timeout_seconds,
    )
