"""Local mirror for generated images.

Generated image URLs from the upstream provider expire after a short
window, so every image is downloaded (or decoded, for inline base64
payloads) into a locally owned directory and served from ``/images``.

The storage root is resolved once at startup: the primary directory if it
can be created, otherwise the fallback directory, for the whole process
lifetime. Files are written under a temporary name and renamed into place,
then checked for existence and non-zero size before a reference is handed
out.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import quote, urlparse

import httpx
from werkzeug.utils import secure_filename

from citybingo.services.errors import (
    EmptyResult,
    FetchFailure,
    FetchTimeout,
    InvalidPayloadFormat,
    StorageFailure,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPIRING_HOSTS = ("oaidalleapiprodscus.blob.core.windows.net",)
PROXY_PATH = "/api/v1/image-proxy"
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; BingoAppProxy/1.0)"
# Items showing this are treated as having no image
PLACEHOLDER_MARKER = "/api/placeholder-image"

_DATA_URI_HEADER = re.compile(r"^data:image/[A-Za-z0-9.+-]+;base64$")


# ── Storage root (one-shot resolution) ────────────────────────────────

@dataclass(frozen=True)
class StorageRoot:
    path: Path
    is_fallback: bool = False


def resolve_storage_root(
    primary: Path | str,
    fallback: Path | str,
    mkdir: Callable[[Path], None] | None = None,
) -> StorageRoot:
    """Create the primary directory, or fall back when that is not allowed.

    Raises ``StorageFailure`` (chained to the primary error) if neither
    directory can be created.
    """
    make = mkdir or (lambda p: p.mkdir(parents=True, exist_ok=True))
    primary, fallback = Path(primary), Path(fallback)
    try:
        make(primary)
        logger.info("Image storage root: %s", primary)
        return StorageRoot(path=primary)
    except OSError as primary_error:
        logger.warning(
            "Cannot create image directory %s (%s); falling back to %s",
            primary, primary_error, fallback,
        )
        try:
            make(fallback)
        except OSError as fallback_error:
            logger.error("Cannot create fallback image directory %s: %s", fallback, fallback_error)
            raise StorageFailure(
                f"No usable image directory ({primary}, {fallback})",
                detail=str(fallback_error),
            ) from primary_error
        return StorageRoot(path=fallback, is_fallback=True)


# ── Display rewriting ─────────────────────────────────────────────────

def is_expiring_url(url: str | None, hosts: tuple[str, ...] | list[str] = DEFAULT_EXPIRING_HOSTS) -> bool:
    """True for http(s) URLs served from a host whose links expire."""
    if not url or not url.startswith(("http://", "https://")):
        return False
    host = (urlparse(url).hostname or "").lower()
    return any(host == h or host.endswith("." + h) for h in hosts)


def rewrite_for_display(
    url: str | None,
    hosts: tuple[str, ...] | list[str] = DEFAULT_EXPIRING_HOSTS,
    proxy_path: str = PROXY_PATH,
) -> str | None:
    """Route expiring upstream URLs through the image proxy; pass everything else."""
    if not url:
        return url
    if url.startswith(proxy_path):
        return url
    if is_expiring_url(url, hosts):
        return f"{proxy_path}?url={quote(url, safe='')}"
    return url


# ── Asset cache ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Artifact:
    source_ref: str
    local_path: Path
    byte_size: int
    public_ref: str
    reused: bool = False


def _safe(part: str) -> str:
    return secure_filename(part.lower()) or "item"


def content_hash(city_id: str, item_id: str, item_text: str) -> str:
    return hashlib.md5(f"{city_id}-{item_id}-{item_text}".encode("utf-8")).hexdigest()[:10]


class AssetCache:
    """Stores images under a resolved ``StorageRoot`` and hands out public refs."""

    def __init__(
        self,
        root: StorageRoot,
        http_client: Callable[[], httpx.AsyncClient] | httpx.AsyncClient | None = None,
        public_prefix: str = "/images",
        fetch_timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        clock: Callable[[], float] = time.time,
    ):
        self.root = root
        self._http_client = http_client
        self.public_prefix = public_prefix.rstrip("/")
        self.fetch_timeout = fetch_timeout
        self.user_agent = user_agent
        self._clock = clock

    # ── Naming ─────────────────────────────────────────────────────────

    def canonical_filename(self, city_id: str, item_id: str, item_text: str) -> str:
        return f"{_safe(city_id)}-{_safe(item_id)}-{content_hash(city_id, item_id, item_text)}.png"

    def versioned_filename(self, city_id: str, item_id: str, item_text: str) -> str:
        stamp = int(self._clock() * 1000)
        return f"{_safe(city_id)}-{_safe(item_id)}-{stamp}-{content_hash(city_id, item_id, item_text)}.png"

    def public_ref_for(self, filename: str) -> str:
        return f"{self.public_prefix}/{filename}"

    def local_path_for(self, public_ref: str | None) -> Path | None:
        """Map ``/images/<name>`` back to a file in the active root."""
        if not public_ref or not public_ref.startswith(self.public_prefix + "/"):
            return None
        name = public_ref[len(self.public_prefix) + 1:].split("?", 1)[0]
        if not name or name != os.path.basename(name):
            return None
        return self.root.path / name

    def has_valid_file(self, public_ref: str | None) -> bool:
        path = self.local_path_for(public_ref)
        return path is not None and _non_empty(path)

    # ── Lookup ─────────────────────────────────────────────────────────

    def lookup(self, city_id: str, item_id: str, item_text: str) -> str | None:
        """Return the public ref of a stored image for this item, if any."""
        canonical = self.canonical_filename(city_id, item_id, item_text)
        if _non_empty(self.root.path / canonical):
            return self.public_ref_for(canonical)

        digest = content_hash(city_id, item_id, item_text)
        pattern = f"{_safe(city_id)}-{_safe(item_id)}-*-{digest}.png"
        candidates = [p for p in self.root.path.glob(pattern) if _non_empty(p)]
        if not candidates:
            return None
        newest = max(candidates, key=lambda p: p.stat().st_mtime)
        return self.public_ref_for(newest.name)

    # ── Store ──────────────────────────────────────────────────────────

    async def store(
        self,
        raw_source: str,
        city_id: str,
        item_id: str,
        item_text: str,
        force_new: bool = False,
    ) -> Artifact:
        """Mirror *raw_source* (data URI or http(s) URL) into local storage."""
        if not raw_source:
            raise EmptyResult("No image data to store")

        if not force_new:
            canonical = self.canonical_filename(city_id, item_id, item_text)
            existing = self.root.path / canonical
            size = await asyncio.to_thread(_file_size, existing)
            if size:
                logger.info("Image already stored at %s", existing)
                return Artifact(
                    source_ref=raw_source,
                    local_path=existing,
                    byte_size=size,
                    public_ref=self.public_ref_for(canonical),
                    reused=True,
                )
            filename = canonical
        else:
            filename = self.versioned_filename(city_id, item_id, item_text)

        if raw_source.startswith("data:"):
            data = decode_data_uri(raw_source)
        elif raw_source.startswith(("http://", "https://")):
            data = await self._fetch(raw_source)
        else:
            raise InvalidPayloadFormat(
                "Image source is neither a data URI nor an http(s) URL",
                detail=raw_source[:40],
            )

        if not data:
            raise EmptyResult("Image payload is empty")

        target = self.root.path / filename
        await asyncio.to_thread(self._write_atomic, target, data)
        logger.info("Saved image to %s (%d bytes)", target, len(data))
        return Artifact(
            source_ref=raw_source,
            local_path=target,
            byte_size=len(data),
            public_ref=self.public_ref_for(filename),
        )

    # ── Internal helpers ───────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            from citybingo.services.http_client_manager import get_http_client
            return get_http_client("images")
        if isinstance(self._http_client, httpx.AsyncClient):
            return self._http_client
        return self._http_client()

    async def _fetch(self, url: str) -> bytes:
        logger.info("Downloading image from %s...", url[:50])
        try:
            resp = await self._client().get(
                url,
                headers={"User-Agent": self.user_agent},
                timeout=self.fetch_timeout,
                follow_redirects=True,
            )
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise FetchTimeout(
                f"Image download timed out after {self.fetch_timeout:.0f}s", detail=url[:80],
            ) from e
        except httpx.HTTPStatusError as e:
            raise FetchFailure(
                f"Failed to download image: HTTP {e.response.status_code}", detail=url[:80],
            ) from e
        except httpx.HTTPError as e:
            raise FetchFailure(f"Failed to download image: {type(e).__name__}", detail=str(e)) from e
        return resp.content

    def _write_atomic(self, target: Path, data: bytes) -> None:
        tmp = target.with_name(f".{target.name}.{os.getpid()}.tmp")
        try:
            self.root.path.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        except OSError as e:
            _remove_quietly(tmp)
            raise StorageFailure(f"Could not write image {target.name}", detail=str(e)) from e

        if not _non_empty(target):
            _remove_quietly(target)
            raise StorageFailure(f"Image {target.name} missing or empty after write")


def decode_data_uri(raw: str) -> bytes:
    """Decode ``data:image/<type>;base64,<payload>`` strictly."""
    header, sep, payload = raw.partition(",")
    if not sep or not _DATA_URI_HEADER.match(header):
        raise InvalidPayloadFormat("Malformed inline image header", detail=header[:40])
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidPayloadFormat("Inline image payload is not valid base64") from e


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size if path.is_file() else 0
    except OSError:
        return 0


def _non_empty(path: Path) -> bool:
    return _file_size(path) > 0


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
