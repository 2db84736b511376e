import os
import os.path as op
import time
from enum import Enum
from typing import List, Optional, Sequence

from . import logger
from .alerts import Notice, NoticeKind, Notify, log_notice
from .engine import (
    AllocationMode,
    Engine,
    EngineError,
    InvalidTorrentError,
    TorrentHandle,
    TorrentInfo,
    Tracker,
)
from .eta import EtaEstimator
from .purge import Purger
from .sidecar import CorruptSidecarError, Kind, Marker, SidecarStore
from .unchecked import UncheckedSet
from .utils import humansize, silent_unlink, strip_file_url


class AddResult(Enum):
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    DECODE_ERROR = "decode-error"
    ENGINE_REJECTED = "engine-rejected"


class ReloadError(TimeoutError):
    """The engine did not drop a torrent in time for it to be reloaded."""


class TorrentManager:
    """
    Drives the lifecycle of torrents in the engine and keeps their side-car
    records in sync, so that state survives restarts.
    """

    def __init__(
        self,
        *,
        engine: Engine,
        store: SidecarStore,
        default_save_path: str,
        notify: Notify = log_notice,
        eta: Optional[EtaEstimator] = None,
        purger: Optional[Purger] = None,
        reload_retries: int = 6,
        reload_backoff: float = 1.0,
    ) -> None:
        self.engine = engine
        self.store = store
        self.default_save_path = default_save_path
        self.notify = notify
        self.eta = eta if eta is not None else EtaEstimator()
        self.purger = purger
        self.reload_retries = reload_retries
        self.reload_backoff = reload_backoff
        self.unchecked = UncheckedSet(
            on_all_checked=lambda: self.notify(Notice(NoticeKind.ALL_CHECKED))
        )
        self._pause_after_checking: List[str] = []

    # --- Lookups -------------------------------------------------------------

    def get_handle(self, info_hash: str) -> Optional[TorrentHandle]:
        """The valid handle of `info_hash`, or None."""
        h = self.engine.find_torrent(info_hash)
        if h is None or not h.is_valid():
            return None
        return h

    def is_paused(self, info_hash: str) -> bool:
        h = self.get_handle(info_hash)
        if h is None:
            logger.debug("Invalid handle: %s", info_hash)
            return True
        return h.is_paused()

    def get_eta(self, info_hash: str) -> int:
        return self.eta.get(info_hash)

    def refresh_etas(self) -> None:
        self.eta.update(self.engine.torrents())

    def torrents_to_pause_after_checking(self) -> List[str]:
        return list(self._pause_after_checking)

    def unchecked_torrents(self) -> List[str]:
        return list(self.unchecked)

    def _torrent_info(self, info_hash: str) -> TorrentInfo:
        h = self.get_handle(info_hash)
        if h is not None:
            return h.torrent_info()
        data = self.store.read_metadata(info_hash)
        if data is None:
            raise KeyError(f"Unknown torrent: {info_hash}")
        return self.engine.decode(data)

    # --- Adding --------------------------------------------------------------

    def add_torrent(
        self,
        path: str,
        from_scan_dir: bool = False,
        on_startup: bool = False,
        from_url: Optional[str] = None,
    ) -> AddResult:
        """
        Add a torrent file to the engine, restoring whatever was persisted for
        it. `from_url` is the URL the file was fetched from, if any.
        """
        self.store.ensure_dir()
        path = strip_file_url(path)
        if not path:
            raise ValueError("Empty torrent path.")
        origin = from_url or path
        logger.debug('Adding "%s" to the download list', path)

        try:
            with open(path, "rb") as f:
                data = f.read()
            info = self.engine.decode(data)
        except (OSError, InvalidTorrentError) as e:
            logger.warning('Could not decode "%s": %s', path, e)
            self.notify(Notice(NoticeKind.INVALID_TORRENT, origin=origin))
            if from_scan_dir:
                self._mark_corrupt(path)
            return AddResult.DECODE_ERROR

        ih = info.info_hash
        if on_startup:
            self.unchecked.add(ih)

        if self.get_handle(ih) is not None:
            self.notify(Notice(NoticeKind.DUPLICATE_TORRENT, info_hash=ih, origin=origin))
            if from_scan_dir:
                silent_unlink(path)
            return AddResult.DUPLICATE

        store = self.store
        legacy = store.path(info.name, Kind.METADATA)
        if store.migrate_legacy(info.name, ih) and path == legacy:
            path = store.path(ih, Kind.METADATA)

        resume = store.read_resume_snapshot(ih, decode=self._check_resume)
        fast_resume = resume is not None

        save_path = self._resolve_save_path(ih)
        if store.has_filtered_files(ih, info.num_files):
            mode = AllocationMode.FULL
        else:
            mode = AllocationMode.COMPACT
        logger.debug("%s allocation mode for %s", mode.value, ih)

        h = self.engine.add_torrent(info, save_path, resume, mode)
        if not h.is_valid():
            logger.error('The engine rejected "%s" (%s)', origin, ih)
            return AddResult.ENGINE_REJECTED

        self._load_priorities(h, info)
        self._load_trackers(h)

        if op.abspath(path) != op.abspath(store.path(ih, Kind.METADATA)):
            store.write_metadata(ih, data)

        if store.has_marker(ih, Marker.PAUSED):
            if ih not in self._pause_after_checking:
                logger.debug("%s will be paused after checking", ih)
                self._pause_after_checking.append(ih)
        elif h.is_paused():
            h.resume()
        if store.has_marker(ih, Marker.INCREMENTAL):
            logger.debug('Incremental download enabled for "%s"', info.name)
            h.set_sequential_download(True)

        if from_url is not None or from_scan_dir:
            silent_unlink(path)

        self.notify(
            Notice(
                NoticeKind.TORRENT_ADDED,
                info_hash=ih,
                origin=origin,
                fast_resume=fast_resume,
            )
        )
        return AddResult.SUCCESS

    def resume_unfinished(self) -> None:
        """Load every torrent stored in the backup directory."""
        logger.debug("Resuming unfinished torrents")
        for path in self.store.list_metadata():
            try:
                self.add_torrent(path, on_startup=True)
            except (OSError, EngineError) as e:
                logger.error('Failed to resume "%s": %s', path, e)
        logger.debug("Unfinished torrents resumed")

    def _check_resume(self, data: bytes) -> bytes:
        self.engine.decode_resume(data)
        return data

    def _mark_corrupt(self, path: str) -> None:
        try:
            os.replace(path, path + ".corrupt")
        except OSError as e:
            logger.error('Cannot rename "%s": %s', path, e)

    def _resolve_save_path(self, info_hash: str) -> str:
        save_path = self.store.read_save_path(info_hash) or self.default_save_path
        try:
            os.makedirs(save_path, exist_ok=True)
        except OSError as e:
            logger.error('Couldn\'t create the save directory "%s": %s', save_path, e)
            return op.expanduser("~")
        return save_path

    def _load_priorities(self, h: TorrentHandle, info: TorrentInfo) -> None:
        try:
            priorities = self.store.read_priorities(h.info_hash, info.num_files)
        except CorruptSidecarError as e:
            logger.warning("%s", e)
            return
        if priorities is not None:
            h.prioritize_files(priorities)

    def _load_trackers(self, h: TorrentHandle) -> None:
        trackers = self.store.read_trackers(h.info_hash)
        if trackers is None:
            # Pin the engine's order by persisting positions as tiers.
            self._save_trackers(h)
            trackers = self.store.read_trackers(h.info_hash)
        if trackers is not None:
            h.replace_trackers(trackers)

    def _save_trackers(self, h: TorrentHandle) -> None:
        self.store.write_trackers(
            h.info_hash, [(url, i) for i, (url, _) in enumerate(h.trackers())]
        )

    # --- Removing ------------------------------------------------------------

    def delete_torrent(self, info_hash: str, permanent: bool = False) -> bool:
        """
        Remove a torrent and its side-car record. If `permanent`, its data is
        deleted from disk in the background. Returns False if the torrent is
        not loaded.
        """
        h = self.get_handle(info_hash)
        if h is None:
            logger.warning("Cannot delete %s: invalid handle", info_hash)
            return False
        save_path = h.save_path()
        name = h.name()
        self.engine.remove_torrent(h)
        self.store.delete_record(info_hash)
        self.eta.forget(info_hash)
        try:
            self._pause_after_checking.remove(info_hash)
        except ValueError:
            pass
        logger.info('Deleted "%s" (%s)', name, info_hash)
        if permanent and self.purger is not None:
            self.purger.submit(save_path, name)
        return True

    # --- Pause / resume ------------------------------------------------------

    def pause_torrent(self, info_hash: str) -> bool:
        """Pause a running torrent. Returns True if its state changed."""
        h = self.get_handle(info_hash)
        if h is None or h.is_paused():
            return False
        h.pause()
        self.store.write_marker(info_hash, Marker.PAUSED, True)
        try:
            self._pause_after_checking.remove(info_hash)
            logger.debug("%s was paused right after checking", info_hash)
        except ValueError:
            pass
        return True

    def resume_torrent(self, info_hash: str) -> bool:
        """Resume a paused torrent. Returns True if its state changed."""
        h = self.get_handle(info_hash)
        if h is None or not h.is_paused():
            return False
        h.resume()
        self.store.write_marker(info_hash, Marker.PAUSED, False)
        return True

    def pause_all(self) -> bool:
        """Pause every running torrent. Returns True if any was paused."""
        return any([self.pause_torrent(h.info_hash) for h in self.engine.torrents()])

    def resume_all(self) -> bool:
        """Resume every paused torrent. Returns True if any was resumed."""
        return any([self.resume_torrent(h.info_hash) for h in self.engine.torrents()])

    def mark_checked(self, info_hash: str) -> None:
        """
        Handle the end of a torrent's integrity check: drain the unchecked set
        and apply a pause that was deferred until now.
        """
        self.unchecked.mark_checked(info_hash)
        if info_hash in self._pause_after_checking:
            if not self.pause_torrent(info_hash):
                self._pause_after_checking.remove(info_hash)

    # --- User edits ----------------------------------------------------------

    def set_file_priorities(self, info_hash: str, priorities: Sequence[int]) -> None:
        """Persist per-file priorities and apply them if the torrent is loaded."""
        info = self._torrent_info(info_hash)
        if len(priorities) != info.num_files:
            raise ValueError(
                f"Expected {info.num_files} priorities, got {len(priorities)}."
            )
        self.store.write_priorities(info_hash, priorities)
        h = self.get_handle(info_hash)
        if h is not None:
            self._load_priorities(h, info)

    def set_trackers(self, info_hash: str, trackers: Sequence[Tracker]) -> None:
        self.store.write_trackers(info_hash, trackers)
        h = self.get_handle(info_hash)
        if h is not None:
            h.replace_trackers(list(trackers))

    def set_incremental(self, info_hash: str, enabled: bool) -> None:
        self.store.write_marker(info_hash, Marker.INCREMENTAL, enabled)
        h = self.get_handle(info_hash)
        if h is not None:
            h.set_sequential_download(enabled)

    def set_save_path(self, info_hash: str, path: Optional[str]) -> None:
        """Override the save path used the next time the torrent is loaded."""
        self.store.write_save_path(info_hash, path)

    def compute_effective_size(self, info_hash: str) -> int:
        """Total size of the files that are not excluded from download."""
        info = self._torrent_info(info_hash)
        try:
            priorities = self.store.read_priorities(info_hash, info.num_files)
        except CorruptSidecarError as e:
            logger.warning("%s", e)
            return info.total_size
        if priorities is None:
            return info.total_size
        size = sum(f.size for f, p in zip(info.files, priorities) if p)
        logger.debug("Effective size of %s: %s", info_hash, humansize(size))
        return size

    # --- Persistence ---------------------------------------------------------

    def save_all_and_unload(self) -> None:
        """
        Write resume data and trackers of every torrent, then remove them all
        from the engine. Used on shutdown.
        """
        logger.debug("Saving fast resume data")
        self.store.ensure_dir()
        for h in self.engine.torrents():
            ih = h.info_hash
            try:
                if not h.is_valid():
                    logger.debug("Invalid handle: %s", ih)
                    continue
                h.pause()
                if h.has_metadata():
                    if self.store.exists(ih, Kind.METADATA):
                        self.store.write_resume_snapshot(ih, h.write_resume_data())
                    self._save_trackers(h)
                self.engine.remove_torrent(h)
            except (OSError, EngineError) as e:
                logger.error("Failed to save %s: %s", ih, e)
        logger.debug("Fast resume data saved")

    def reload_torrent(self, info_hash: str, compact: bool) -> None:
        """
        Remove a torrent and load it again with the given allocation mode,
        keeping its resume data and persisted state.
        """
        h = self.get_handle(info_hash)
        if h is None:
            logger.warning("Cannot reload %s: invalid handle", info_hash)
            return
        info = h.torrent_info()
        save_path = h.save_path()
        logger.info('Reloading torrent "%s"', info.name)

        h.pause()
        resume = h.write_resume_data() if h.has_metadata() else None
        self.engine.remove_torrent(h)

        retry = self.reload_retries
        while h.is_valid():
            if retry <= 0:
                raise ReloadError(f"Couldn't reload torrent {info_hash}.")
            retry -= 1
            time.sleep(self.reload_backoff)

        mode = AllocationMode.COMPACT if compact else AllocationMode.FULL
        new_h = self.engine.add_torrent(info, save_path, resume, mode)
        if not new_h.is_valid():
            raise EngineError(f"The engine rejected reloaded torrent {info_hash}.")
        logger.debug("Using %s allocation mode", mode.value)

        self._load_priorities(new_h, info)
        if self.store.has_marker(info_hash, Marker.PAUSED):
            new_h.pause()
        elif new_h.is_paused():
            new_h.resume()
        if self.store.has_marker(info_hash, Marker.INCREMENTAL):
            new_h.set_sequential_download(True)
        self.notify(Notice(NoticeKind.FILE_SIZE_UPDATED, info_hash=info_hash))
