"""Source image lookup: in-memory buffer, then object storage, then a URL."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol
from urllib.parse import quote

import requests

from .config import Settings, get_settings
from .errors import OriginalNotFoundError

logger = logging.getLogger(__name__)


class AssetFetcher(Protocol):
    """Anything able to return raw bytes for a storage object or a URL.

    Implementations return ``None`` when the asset is missing.
    """

    def download(self, bucket: str, key: str) -> Optional[bytes]:
        ...

    def fetch_url(self, url: str) -> Optional[bytes]:
        ...


class HttpAssetFetcher:
    """Fetch assets over HTTP with ``requests``.

    Storage objects are read from ``{storage_base_url}/{bucket}/{key}``.
    """

    def __init__(self, storage_base_url: Optional[str] = None, timeout: float = 30,
                 session: Optional[requests.Session] = None):
        self.storage_base_url = storage_base_url.rstrip("/") if storage_base_url else None
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpAssetFetcher":
        return cls(settings.storage_base_url, settings.fetch_timeout_seconds)

    def _get(self, url: str) -> Optional[bytes]:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning(f"Fetch failed for {url}: {exc}")
            return None
        return response.content or None

    def download(self, bucket: str, key: str) -> Optional[bytes]:
        if not self.storage_base_url:
            logger.warning("No storage base URL configured, skipping storage download")
            return None
        return self._get(f"{self.storage_base_url}/{quote(bucket)}/{quote(key.lstrip('/'))}")

    def fetch_url(self, url: str) -> Optional[bytes]:
        return self._get(url)


@dataclass(frozen=True)
class ResolvedAsset:
    buffer: bytes
    origin: dict = field(default_factory=dict)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def resolve_original_asset(
    *,
    original_buffer: Optional[bytes] = None,
    original_object_key: Optional[str] = None,
    original_bucket: Optional[str] = None,
    original_url: Optional[str] = None,
    asset_fetcher: Optional[AssetFetcher] = None,
    rid: Optional[str] = None,
    diag_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> ResolvedAsset:
    """Return the first non-empty source, in buffer → storage → URL order.

    Raises:
        OriginalNotFoundError: when every available source came back empty.
    """
    settings = settings or get_settings()
    key = _clean(original_object_key)
    bucket = _clean(original_bucket) or settings.uploads_bucket
    url = _clean(original_url)
    tag = f"[{diag_id or '-'}|{rid or '-'}]"

    if original_buffer:
        logger.info(f"{tag} Using in-memory original ({len(original_buffer)} bytes)")
        return ResolvedAsset(bytes(original_buffer), {"type": "buffer"})

    fetcher = asset_fetcher or HttpAssetFetcher.from_settings(settings)

    if key:
        try:
            data = fetcher.download(bucket, key)
        except (requests.RequestException, OSError) as exc:
            logger.error(f"{tag} Storage download raised for {bucket}/{key}: {exc}")
            data = None
        if data:
            logger.info(f"{tag} Fetched original from storage {bucket}/{key} ({len(data)} bytes)")
            return ResolvedAsset(bytes(data), {"type": "storage", "bucket": bucket, "key": key})
        logger.warning(f"{tag} Original not in storage at {bucket}/{key}")
    else:
        logger.warning(f"{tag} No original object key supplied")

    if url:
        try:
            data = fetcher.fetch_url(url)
        except (requests.RequestException, OSError) as exc:
            logger.error(f"{tag} URL fetch raised for {url}: {exc}")
            data = None
        if data:
            logger.info(f"{tag} Fetched original from URL ({len(data)} bytes)")
            return ResolvedAsset(bytes(data), {"type": "url", "url": url})
        logger.warning(f"{tag} Original not available at {url}")

    raise OriginalNotFoundError(
        "Original image could not be fetched from any source",
        original_object_key=key,
        original_bucket=bucket,
        original_url=url,
        rid=rid,
        diag_id=diag_id,
    )
