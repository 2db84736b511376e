from collections import deque
from typing import Deque, Dict, Iterable

from . import logger
from .engine import EngineError, TorrentHandle

ETA_UNKNOWN = -1


class EtaEstimator:
    """
    Smooths per-torrent time-remaining estimates with a moving average over
    the most recent samples, damping bursty transfer rates.
    """

    def __init__(self, window: int = 8) -> None:
        if window < 1:
            raise ValueError("window must be positive.")
        self.window = window
        self._samples: Dict[str, Deque[int]] = {}
        self._etas: Dict[str, int] = {}

    def get(self, info_hash: str) -> int:
        """Published ETA in seconds, or ETA_UNKNOWN."""
        return self._etas.get(info_hash, ETA_UNKNOWN)

    def record(self, info_hash: str, seconds: int) -> int:
        """Push a seconds-remaining sample and return the new average."""
        samples = self._samples.get(info_hash)
        if samples is None:
            samples = self._samples[info_hash] = deque(maxlen=self.window)
        samples.append(seconds)
        eta = self._etas[info_hash] = int(sum(samples) / len(samples))
        return eta

    def forget(self, info_hash: str) -> None:
        self._samples.pop(info_hash, None)
        self._etas.pop(info_hash, None)

    def update(self, handles: Iterable[TorrentHandle]) -> None:
        """
        Sample every valid handle with a nonzero download rate. Handles that
        are idle keep their last published value.
        """
        for h in handles:
            try:
                if not h.is_valid():
                    continue
                st = h.status()
                if not st.download_payload_rate:
                    continue
                remaining = h.torrent_info().total_size - st.total_done
            except EngineError as e:
                logger.debug("Skipping ETA sample: %s", e)
                continue
            self.record(h.info_hash, int(remaining / st.download_payload_rate))
