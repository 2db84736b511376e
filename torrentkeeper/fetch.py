import os
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from . import PKG_NAME, logger
from .utils import humansize, silent_unlink

# Torrent files are small; anything larger is not a torrent.
MAX_TORRENT_SIZE = 20 * 1024**2


@dataclass
class FetchResult:
    url: str
    path: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Fetcher:
    """
    Downloads remote '.torrent' files to temporary files in worker threads.
    Each result is passed to `callback` from the worker thread; on failure no
    temporary file is left behind.
    """

    def __init__(
        self,
        callback: Callable[[FetchResult], None],
        *,
        timeout: float = 30,
        max_workers: int = 2,
    ) -> None:
        self.callback = callback
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers["User-Agent"] = PKG_NAME
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="fetch"
        )

    def download(self, url: str) -> Future:
        logger.info("Downloading %s", url)
        future = self._pool.submit(self.fetch, url)
        future.add_done_callback(lambda f: self._deliver(url, f))
        return future

    def _deliver(self, url: str, future: Future) -> None:
        err = future.exception()
        if err is None:
            self.callback(future.result())
        else:
            logger.error("Unexpected error downloading %s: %s", url, err)
            self.callback(FetchResult(url, error=str(err)))

    def fetch(self, url: str) -> FetchResult:
        """Download `url` synchronously. Never raises on network errors."""
        path = None
        try:
            fd, path = tempfile.mkstemp(prefix=PKG_NAME + "-", suffix=".torrent")
            with os.fdopen(fd, "wb") as f, self._session.get(
                url, timeout=self.timeout, stream=True
            ) as res:
                res.raise_for_status()
                size = 0
                for chunk in res.iter_content(chunk_size=65536):
                    size += len(chunk)
                    if size > MAX_TORRENT_SIZE:
                        raise ValueError(
                            f"File is too large for a torrent ({humansize(size)})."
                        )
                    f.write(chunk)
        except (requests.RequestException, OSError, ValueError) as e:
            if path is not None:
                silent_unlink(path)
            logger.debug("Download of %s failed: %s", url, e)
            return FetchResult(url, error=str(e))
        logger.debug("Downloaded %s to %s (%s)", url, path, humansize(size))
        return FetchResult(url, path=path)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        self._session.close()
