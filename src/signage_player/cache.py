"""File-based video cache with LRU eviction.

Videos are downloaded into a single cache directory and indexed by a JSON
manifest (``_manifest.json``) that maps each remote URL to its local file,
size and last access time. The manifest is the source of truth for what is
cached: it is loaded once, rewritten after every mutation, and repaired
lazily when a file turns out to be missing.

Caching is best-effort throughout. Every network or filesystem failure
degrades to "not cached" so that playback can fall back to streaming.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path
from urllib.parse import urlsplit
from uuid import uuid4

import httpx

from signage_player.models import CacheEntry

log = logging.getLogger(__name__)

MANIFEST_NAME = "_manifest.json"

# Seconds to wait for the server between bytes (not for the whole file)
_DOWNLOAD_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

_CHUNK_SIZE = 1024 * 1024


def _now_ms() -> int:
    return int(time.time() * 1000)


def url_to_filename(url: str) -> str:
    """Deterministic cache filename for a URL: hash plus the URL's extension."""
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
    basename = urlsplit(url).path.rsplit("/", 1)[-1]
    ext = basename.rsplit(".", 1)[-1].lower() if "." in basename else ""
    if not ext or not ext.isalnum() or len(ext) > 5:
        ext = "mp4"
    return f"{digest}.{ext}"


class ContentCache:
    """Size-bounded local store of remote video files, addressed by URL."""

    def __init__(
        self,
        cache_dir: str | Path,
        max_bytes: int,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.max_bytes = max_bytes
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._entries: list[CacheEntry] = []
        self._initialized = False
        self._downloads: dict[str, asyncio.Task[str | None]] = {}

    @property
    def manifest_path(self) -> Path:
        return self.cache_dir / MANIFEST_NAME

    @property
    def entries(self) -> list[CacheEntry]:
        """Snapshot of the manifest entries in insertion order."""
        return list(self._entries)

    # ----- Lifecycle -----

    def init(self) -> None:
        """Create the cache directory and load the manifest. Idempotent."""
        if self._initialized:
            return
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.error("Cannot create cache directory %s: %s", self.cache_dir, exc)
        self._load_manifest()
        self._initialized = True
        log.info(
            "Cache ready: %d entries, %.1f MB of %.1f MB",
            len(self._entries),
            self.get_cache_size() / 1048576,
            self.max_bytes / 1048576,
        )

    async def close(self) -> None:
        """Close the HTTP client if this cache created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True, timeout=_DOWNLOAD_TIMEOUT)
        return self._client

    # ----- Lookup -----

    def _find(self, url: str) -> CacheEntry | None:
        for entry in self._entries:
            if entry.url == url:
                return entry
        return None

    def get_cached_path(self, url: str) -> str | None:
        """Return the local path for *url*, or None if it is not cached.

        An entry whose file has disappeared is dropped from the manifest.
        A hit refreshes the entry's access time.
        """
        self.init()
        entry = self._find(url)
        if entry is None:
            return None

        path = self.cache_dir / entry.filename
        if not path.is_file():
            log.warning("Cached file for %s is missing, dropping entry", url)
            self._entries.remove(entry)
            self._save_manifest()
            return None

        entry.accessed_at = self._clock()
        self._save_manifest()
        return str(path)

    def get_cache_size(self) -> int:
        """Total size in bytes of all manifest entries."""
        return sum(entry.size for entry in self._entries)

    # ----- Download -----

    async def prefetch_video(self, url: str) -> str | None:
        """Return a local path for *url*, downloading it if necessary.

        Concurrent calls for the same URL share a single download. The
        download is shielded, so a cancelled caller does not abort it.

        Returns:
            The local file path, or None if the video could not be cached.
        """
        existing = self.get_cached_path(url)
        if existing:
            return existing

        task = self._downloads.get(url)
        if task is None:
            task = asyncio.ensure_future(self._download(url))
            self._downloads[url] = task
            task.add_done_callback(lambda t: self._forget_download(url, t))
        return await asyncio.shield(task)

    def _forget_download(self, url: str, task: asyncio.Task) -> None:
        if self._downloads.get(url) is task:
            del self._downloads[url]

    @property
    def pending_downloads(self) -> int:
        """Number of downloads currently in flight."""
        return len(self._downloads)

    async def _download(self, url: str) -> str | None:
        filename = url_to_filename(url)
        final_path = self.cache_dir / filename
        tmp_path = self.cache_dir / f".{filename}.{uuid4().hex}.part"

        try:
            async with self._get_client().stream("GET", url) as response:
                if not response.is_success:
                    log.warning("Download of %s failed with status %d", url, response.status_code)
                    return None
                with tmp_path.open("wb") as f:
                    async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                        f.write(chunk)
            tmp_path.replace(final_path)
            size = final_path.stat().st_size
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as exc:
            log.warning("Download of %s failed: %s", url, exc)
            return None
        finally:
            self._remove_file(tmp_path)

        # A stale record for the same URL would double-count its size
        stale = self._find(url)
        if stale is not None:
            self._entries.remove(stale)
        entry = CacheEntry(url=url, filename=filename, size=size, accessed_at=self._clock())
        self._entries.append(entry)
        self._save_manifest()
        log.info("Cached %s (%.1f MB)", url, size / 1048576)

        self.evict_old_videos()

        if entry not in self._entries:
            log.warning("%s is larger than the cache budget, not kept", url)
            return None
        return str(final_path)

    # ----- Eviction -----

    def evict_old_videos(self) -> None:
        """Remove least-recently-used entries until the cache fits its budget.

        Ties on access time are broken by manifest order (oldest insert first).
        """
        total = self.get_cache_size()
        if total <= self.max_bytes:
            return

        # sorted() is stable, so equal timestamps keep insertion order
        for entry in sorted(self._entries, key=lambda e: e.accessed_at):
            if total <= self.max_bytes:
                break
            self._remove_file(self.cache_dir / entry.filename)
            self._entries.remove(entry)
            total -= entry.size
            log.info("Evicted %s (%.1f MB)", entry.url, entry.size / 1048576)

        self._save_manifest()

    def clear_all(self) -> None:
        """Delete every cached file and start over with an empty manifest."""
        try:
            if self.cache_dir.exists():
                shutil.rmtree(self.cache_dir)
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.error("Failed to clear cache directory: %s", exc)
        self._entries = []
        self._initialized = True
        log.info("Cache cleared")

    # ----- Helpers -----

    @staticmethod
    def _remove_file(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            log.warning("Could not remove %s: %s", path, exc)

    def _load_manifest(self) -> None:
        try:
            if not self.manifest_path.is_file():
                self._entries = []
                return
            data = json.loads(self.manifest_path.read_text(encoding="utf-8"))
            self._entries = [CacheEntry.from_json(item) for item in data["entries"]]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("Cache manifest unreadable, starting empty: %s", exc)
            self._entries = []

    def _save_manifest(self) -> None:
        data = {"entries": [entry.to_json() for entry in self._entries]}
        try:
            self.manifest_path.write_text(json.dumps(data), encoding="utf-8")
        except OSError as exc:
            log.error("Failed to write cache manifest: %s", exc)
