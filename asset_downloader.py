"""Resolve remote assets referenced by rendered frames before muxing."""
from __future__ import annotations

import hashlib
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence
from urllib.parse import unquote, urlparse

import requests

from logging_utils import get_logger
from pipeline_errors import AssetDownloadError
from progress_aggregator import AssetDownloadProgress, DownloadProgressed
from render_job import AssetReference

logger = get_logger(__name__)

_DEFAULT_HEADERS = {"User-Agent": "frame-render-pipeline/0.1"}

DownloadListener = Callable[[DownloadProgressed], None]


class DownloadCancelled(RuntimeError):
    pass


class AssetDownloader:
    """Download http(s) assets in parallel; local paths resolve in place."""

    def __init__(
        self,
        download_dir: Path,
        *,
        session: Optional[requests.Session] = None,
        max_workers: int = 4,
        timeout_connect: float = 5.0,
        timeout_read: float = 60.0,
        chunk_size: int = 1 << 16,
    ) -> None:
        self.download_dir = download_dir
        self.max_workers = max(1, max_workers)
        self.timeout = (timeout_connect, timeout_read)
        self.chunk_size = chunk_size
        if session is None:
            session = requests.Session()
            session.headers.update(_DEFAULT_HEADERS)
        self._session = session
        self._cache: Dict[str, Path] = {}
        self._cache_lock = threading.Lock()
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    def resolve_all(
        self,
        assets: Sequence[AssetReference],
        on_progress: Optional[DownloadListener] = None,
    ) -> Dict[str, Path]:
        """Return ``{asset.id: local_path}`` for every asset that resolved.

        Optional assets that fail are logged and left out; the first required
        failure cancels the remaining downloads and raises.
        """
        if not assets:
            return {}
        # A previous call may have cancelled its own stragglers
        self._cancelled.clear()

        resolved: Dict[str, Path] = {}
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="asset-download")
        try:
            futures = {executor.submit(self._resolve_one, asset, on_progress): asset for asset in assets}
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [f for f in done if _is_required_failure(f, futures[f])]
            if failed:
                self._cancelled.set()
                for future in futures:
                    future.cancel()
            else:
                wait(futures)

            for future, asset in futures.items():
                if future.cancelled():
                    continue
                error = future.exception()
                if error is None:
                    resolved[asset.id] = future.result()
                    continue
                if isinstance(error, DownloadCancelled) and failed:
                    continue
                if asset.optional:
                    logger.warning("Optional asset %s could not be resolved: %s", asset.src, error)
                    continue
                raise AssetDownloadError(asset.src, error) from error
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return resolved

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve_one(self, asset: AssetReference, on_progress: Optional[DownloadListener]) -> Path:
        parsed = urlparse(asset.src)
        if parsed.scheme in ("http", "https"):
            return self._download(asset, on_progress)
        if parsed.scheme == "file":
            local = Path(unquote(parsed.path))
        else:
            local = Path(asset.src).expanduser()
        if not local.exists():
            raise FileNotFoundError(f"Asset not found: {local}")
        return local.resolve()

    def _target_path(self, url: str) -> Path:
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
        name = Path(urlparse(url).path).name or "asset"
        return self.download_dir / f"{digest}-{name}"

    def _download(self, asset: AssetReference, on_progress: Optional[DownloadListener]) -> Path:
        url = asset.src
        with self._cache_lock:
            cached = self._cache.get(url)
        if cached is not None and cached.exists():
            logger.debug("Asset cache hit: %s", url)
            self._report(on_progress, asset, 1.0, done=True)
            return cached

        target = self._target_path(url)
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")

        logger.info("Downloading asset %s", url)
        self._report(on_progress, asset, 0.0)
        with self._session.get(url, stream=True, timeout=self.timeout, allow_redirects=True) as response:
            response.raise_for_status()
            total = int(response.headers.get("Content-Length") or 0)
            received = 0
            try:
                with partial.open("wb") as fh:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if self._cancelled.is_set():
                            raise DownloadCancelled(url)
                        if not chunk:
                            continue
                        fh.write(chunk)
                        received += len(chunk)
                        if total:
                            self._report(on_progress, asset, min(received / total, 1.0))
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
        partial.replace(target)

        with self._cache_lock:
            self._cache[url] = target
        self._report(on_progress, asset, 1.0, done=True)
        logger.info("Downloaded %s (%d bytes)", url, received)
        return target

    @staticmethod
    def _report(
        on_progress: Optional[DownloadListener],
        asset: AssetReference,
        progress: float,
        *,
        done: bool = False,
    ) -> None:
        if on_progress is None:
            return
        on_progress(
            DownloadProgressed(
                AssetDownloadProgress(id=asset.id, name=asset.name, progress=progress, done=done)
            )
        )


def _is_required_failure(future: Future, asset: AssetReference) -> bool:
    error = future.exception()
    return error is not None and not isinstance(error, DownloadCancelled) and not asset.optional
