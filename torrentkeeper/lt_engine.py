"""
Engine backed by the rasterbar libtorrent python bindings.

Requires the `libtorrent` extra: pip install torrentkeeper[libtorrent]
"""

import os.path as op
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

import libtorrent as lt

from . import logger
from .engine import (
    AllocationMode,
    Engine,
    EngineError,
    Event,
    EventKind,
    InvalidTorrentError,
    SessionStatus,
    TorrentFile,
    TorrentHandle,
    TorrentInfo,
    TorrentStatus,
    Tracker,
)

# Seconds to wait for a save_resume_data_alert.
RESUME_TIMEOUT = 10

_ALERT_MASK = (
    lt.alert_category.error
    | lt.alert_category.status
    | lt.alert_category.storage
    | lt.alert_category.tracker
    | lt.alert_category.ip_block
)
_RESUME_ALERTS = (lt.save_resume_data_alert, lt.save_resume_data_failed_alert)


@contextmanager
def _engine_errors():
    try:
        yield
    except RuntimeError as e:
        raise EngineError(str(e)) from e


def _str(v) -> str:
    return v.decode("utf-8", "replace") if isinstance(v, bytes) else str(v)


def _walk_file_tree(tree: dict, prefix: str) -> Iterator[TorrentFile]:
    for key, node in tree.items():
        if key == b"":
            yield TorrentFile(prefix, node[b"length"])
        else:
            yield from _walk_file_tree(node, op.join(prefix, _str(key)))


def _files(info: dict) -> List[TorrentFile]:
    """File list of a bdecoded info dictionary, in torrent order."""
    name = _str(info[b"name"])
    if b"files" in info:
        return [
            TorrentFile(op.join(name, *map(_str, f[b"path"])), f[b"length"])
            for f in info[b"files"]
        ]
    if b"length" in info:
        return [TorrentFile(name, info[b"length"])]
    if b"file tree" in info:
        return list(_walk_file_tree(info[b"file tree"], ""))
    return []


def _trackers(meta: dict) -> List[Tracker]:
    """Trackers of a bdecoded metainfo dictionary, tiered as announced."""
    tiers = meta.get(b"announce-list")
    if tiers:
        return [(_str(url), i) for i, tier in enumerate(tiers) for url in tier]
    if meta.get(b"announce"):
        return [(_str(meta[b"announce"]), 0)]
    return []


class LtHandle(TorrentHandle):

    def __init__(self, engine: "LtEngine", handle) -> None:
        self._engine = engine
        self._h = handle
        self.info_hash = str(handle.info_hash())

    def is_valid(self) -> bool:
        return self._h.is_valid()

    def is_paused(self) -> bool:
        with _engine_errors():
            return bool(self._h.flags() & lt.torrent_flags.paused)

    def pause(self) -> None:
        with _engine_errors():
            self._h.unset_flags(lt.torrent_flags.auto_managed)
            self._h.pause()

    def resume(self) -> None:
        with _engine_errors():
            self._h.unset_flags(lt.torrent_flags.auto_managed)
            self._h.resume()

    def has_metadata(self) -> bool:
        with _engine_errors():
            return self._h.status().has_metadata

    def status(self) -> TorrentStatus:
        with _engine_errors():
            s = self._h.status()
        return TorrentStatus(
            total_done=int(s.total_done),
            download_payload_rate=int(s.download_payload_rate),
            upload_payload_rate=int(s.upload_payload_rate),
            paused=bool(s.flags & lt.torrent_flags.paused),
            is_seed=bool(s.is_seeding),
        )

    def torrent_info(self) -> TorrentInfo:
        return self._engine.info_of(self)

    def save_path(self) -> str:
        with _engine_errors():
            return self._h.status().save_path

    def prioritize_files(self, priorities: List[int]) -> None:
        with _engine_errors():
            self._h.prioritize_files(priorities)

    def trackers(self) -> List[Tracker]:
        with _engine_errors():
            return [(t["url"], t["tier"]) for t in self._h.trackers()]

    def replace_trackers(self, trackers: List[Tracker]) -> None:
        with _engine_errors():
            self._h.replace_trackers([{"url": u, "tier": t} for u, t in trackers])

    def write_resume_data(self) -> bytes:
        return self._engine.save_resume_data(self._h)

    def set_sequential_download(self, enabled: bool) -> None:
        with _engine_errors():
            if enabled:
                self._h.set_flags(lt.torrent_flags.sequential_download)
            else:
                self._h.unset_flags(lt.torrent_flags.sequential_download)


class _RejectedHandle(TorrentHandle):
    """Returned when the session refuses a torrent."""

    def __init__(self, info_hash: str) -> None:
        self.info_hash = info_hash

    def is_valid(self) -> bool:
        return False


class LtEngine(Engine):

    def __init__(self, port_min: int = 6881) -> None:
        self._ses = lt.session(
            {
                "listen_interfaces": f"0.0.0.0:{port_min}",
                "alert_mask": _ALERT_MASK,
                "enable_dht": False,
            }
        )
        # Alerts popped while waiting for resume data.
        self._backlog = []
        # info hash -> (lt.torrent_info, TorrentInfo) of every known torrent
        self._infos: Dict[str, Tuple[object, TorrentInfo]] = {}

    def decode(self, data: bytes) -> TorrentInfo:
        try:
            meta = lt.bdecode(data)
            if not isinstance(meta, dict) or b"info" not in meta:
                raise InvalidTorrentError("Not a torrent file.")
            ti = lt.torrent_info(meta)
            info = TorrentInfo(
                info_hash=str(ti.info_hash()),
                name=ti.name(),
                files=_files(meta[b"info"]),
                trackers=_trackers(meta),
            )
        except (RuntimeError, KeyError, TypeError, ValueError) as e:
            raise InvalidTorrentError(str(e)) from e
        self._infos[info.info_hash] = (ti, info)
        return info

    def info_of(self, handle: "LtHandle") -> TorrentInfo:
        """Metadata of a loaded torrent, including one added by another client."""
        known = self._infos.get(handle.info_hash)
        if known is not None:
            return known[1]
        with _engine_errors():
            ti = handle._h.torrent_file()
            if ti is None:
                raise EngineError(f"No metadata for {handle.info_hash}.")
            info = TorrentInfo(
                info_hash=handle.info_hash,
                name=ti.name(),
                files=_files(lt.bdecode(ti.metadata())),
                trackers=handle.trackers(),
            )
        self._infos[info.info_hash] = (ti, info)
        return info

    def decode_resume(self, data: bytes):
        try:
            e = lt.bdecode(data)
        except RuntimeError as err:
            raise ValueError(str(err)) from err
        if e is None:
            raise ValueError("Invalid bencoding.")
        return e

    def add_torrent(
        self,
        info: TorrentInfo,
        save_path: str,
        resume_data: Optional[bytes],
        mode: AllocationMode,
    ) -> TorrentHandle:
        known = self._infos.get(info.info_hash)
        if known is None:
            raise EngineError(f"{info.info_hash} was never decoded.")
        ti = known[0]
        try:
            if resume_data:
                atp = lt.read_resume_data(resume_data)
            else:
                atp = lt.add_torrent_params()
        except RuntimeError as e:
            logger.warning("Dropping resume data of %s: %s", info.info_hash, e)
            atp = lt.add_torrent_params()
        atp.ti = ti
        atp.save_path = save_path
        if mode is AllocationMode.FULL:
            atp.storage_mode = lt.storage_mode_t.storage_mode_allocate
        else:
            atp.storage_mode = lt.storage_mode_t.storage_mode_sparse
        # Resume data carries the paused flag of the snapshot; the manager
        # applies the persisted paused state itself.
        atp.flags &= ~(lt.torrent_flags.auto_managed | lt.torrent_flags.paused)
        try:
            h = self._ses.add_torrent(atp)
        except RuntimeError as e:
            logger.debug("add_torrent failed: %s", e)
            return _RejectedHandle(info.info_hash)
        return LtHandle(self, h)

    def remove_torrent(self, handle: TorrentHandle) -> None:
        with _engine_errors():
            self._ses.remove_torrent(handle._h)

    def find_torrent(self, info_hash: str) -> Optional[TorrentHandle]:
        h = self._ses.find_torrent(lt.sha1_hash(bytes.fromhex(info_hash)))
        return LtHandle(self, h) if h.is_valid() else None

    def torrents(self) -> List[TorrentHandle]:
        return [LtHandle(self, h) for h in self._ses.get_torrents()]

    def pop_alerts(self) -> List[Event]:
        alerts, self._backlog = self._backlog + self._ses.pop_alerts(), []
        events = []
        for a in alerts:
            e = self._translate(a)
            if e is not None:
                events.append(e)
        return events

    @staticmethod
    def _translate(a) -> Optional[Event]:
        if isinstance(a, lt.torrent_finished_alert):
            return Event(EventKind.FINISHED, str(a.handle.info_hash()))
        if isinstance(a, lt.file_error_alert):
            return Event(EventKind.FILE_ERROR, str(a.handle.info_hash()), a.message())
        if isinstance(a, lt.listen_failed_alert):
            return Event(EventKind.LISTEN_FAILED, message=a.message())
        if isinstance(a, lt.tracker_error_alert):
            return Event(
                EventKind.TRACKER_ERROR,
                str(a.handle.info_hash()),
                a.message(),
                status_code=getattr(a, "status_code", None),
            )
        if isinstance(a, lt.peer_blocked_alert):
            return Event(EventKind.PEER_BLOCKED, ip=str(a.ip))
        if isinstance(a, lt.torrent_checked_alert):
            return Event(EventKind.CHECKED, str(a.handle.info_hash()))
        return None

    def save_resume_data(self, h) -> bytes:
        """Ask for resume data and wait for the alert carrying it."""
        with _engine_errors():
            h.save_resume_data(lt.save_resume_flags_t.flush_disk_cache)
        pending = []
        answer = None
        try:
            while answer is None:
                if self._ses.wait_for_alert(RESUME_TIMEOUT * 1000) is None:
                    raise EngineError("Timed out waiting for resume data.")
                for a in self._ses.pop_alerts():
                    if answer is None and isinstance(a, _RESUME_ALERTS) and a.handle == h:
                        answer = a
                    else:
                        pending.append(a)
        finally:
            self._backlog.extend(pending)
        if isinstance(answer, lt.save_resume_data_failed_alert):
            raise EngineError(answer.message())
        return lt.write_resume_data_buf(answer.params)

    def status(self) -> SessionStatus:
        s = self._ses.status()
        return SessionStatus(
            payload_download_rate=s.payload_download_rate,
            payload_upload_rate=s.payload_upload_rate,
            num_peers=s.num_peers,
            listen_port=self._ses.listen_port(),
        )

    def listen_on(self, port_min: int, port_max: int) -> None:
        # The first port of the range that binds wins.
        self._ses.apply_settings(
            {
                "listen_interfaces": f"0.0.0.0:{port_min}",
                "max_retry_port_bind": port_max - port_min,
            }
        )

    def close(self) -> None:
        self._ses.pause()
