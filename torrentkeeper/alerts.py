import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from . import logger
from .engine import Engine, Event, EventKind


class NoticeKind(Enum):
    """Notifications published to observers."""

    TORRENT_ADDED = "torrent-added"
    DUPLICATE_TORRENT = "duplicate-torrent"
    INVALID_TORRENT = "invalid-torrent"
    TORRENT_FINISHED = "torrent-finished"
    TORRENT_CHECKED = "torrent-checked"
    ALL_CHECKED = "all-checked"
    FULL_DISK = "full-disk"
    LISTEN_FAILED = "listen-failed"
    TRACKER_ERROR = "tracker-error"
    PEER_BLOCKED = "peer-blocked"
    FILE_SIZE_UPDATED = "file-size-updated"
    PURGE_DONE = "purge-done"
    PURGE_FAILED = "purge-failed"
    URL_FAILED = "url-failed"


@dataclass
class Notice:
    kind: NoticeKind
    info_hash: Optional[str] = None
    origin: Optional[str] = None
    message: str = ""
    fast_resume: bool = False
    auth_required: bool = False
    time: Optional[str] = None
    ip: Optional[str] = None


Notify = Callable[[Notice], None]


def log_notice(notice: Notice) -> None:
    """The default observer: write the notice to the package logger."""
    k = notice.kind
    if k is NoticeKind.TORRENT_ADDED:
        logger.info(
            'Added "%s" (%s)%s',
            notice.origin,
            notice.info_hash,
            ", fast resumed" if notice.fast_resume else "",
        )
    elif k is NoticeKind.DUPLICATE_TORRENT:
        logger.info('Torrent is already in the download list: "%s"', notice.origin)
    elif k is NoticeKind.INVALID_TORRENT:
        logger.warning('Unable to decode torrent file: "%s"', notice.origin)
    elif k is NoticeKind.LISTEN_FAILED:
        logger.critical("Couldn't listen on any of the given ports: %s", notice.message)
    elif k is NoticeKind.TRACKER_ERROR:
        logger.warning(
            "[%s] Tracker error for %s: %s%s",
            notice.time,
            notice.info_hash,
            notice.message,
            " (authentication required)" if notice.auth_required else "",
        )
    elif k is NoticeKind.FULL_DISK:
        logger.error("Write error for %s: %s", notice.info_hash, notice.message)
    elif k in (NoticeKind.PURGE_FAILED, NoticeKind.URL_FAILED):
        logger.error('%s "%s": %s', k.value, notice.origin, notice.message)
    elif k is NoticeKind.PEER_BLOCKED:
        logger.debug("Blocked peer: %s", notice.ip)
    else:
        logger.info("%s: %s", k.value, notice.info_hash or notice.origin or "")


class AlertTranslator:
    """
    Drains the engine's alert queue and turns every event into exactly one
    notice, in queue order.
    """

    def __init__(self, engine: Engine, notify: Notify = log_notice) -> None:
        self.engine = engine
        self.notify = notify
        self._handlers = {
            EventKind.FINISHED: self._finished,
            EventKind.FILE_ERROR: self._file_error,
            EventKind.LISTEN_FAILED: self._listen_failed,
            EventKind.TRACKER_ERROR: self._tracker_error,
            EventKind.PEER_BLOCKED: self._peer_blocked,
            EventKind.CHECKED: self._checked,
        }
        missing = set(EventKind).difference(self._handlers)
        if missing:
            raise RuntimeError(f"Unhandled event kinds: {missing}")

    def drain(self) -> List[Notice]:
        """Pop alerts until the queue is empty. Returns the notices sent."""
        sent = []
        while True:
            events = self.engine.pop_alerts()
            if not events:
                break
            for e in events:
                notice = self.translate(e)
                self.notify(notice)
                sent.append(notice)
        return sent

    def translate(self, event: Event) -> Notice:
        return self._handlers[event.kind](event)

    @staticmethod
    def _finished(e: Event) -> Notice:
        return Notice(NoticeKind.TORRENT_FINISHED, info_hash=e.info_hash)

    @staticmethod
    def _file_error(e: Event) -> Notice:
        return Notice(NoticeKind.FULL_DISK, info_hash=e.info_hash, message=e.message)

    @staticmethod
    def _listen_failed(e: Event) -> Notice:
        return Notice(NoticeKind.LISTEN_FAILED, message=e.message)

    @staticmethod
    def _tracker_error(e: Event) -> Notice:
        return Notice(
            NoticeKind.TRACKER_ERROR,
            info_hash=e.info_hash,
            message=e.message,
            auth_required=e.status_code == 401,
            time=time.strftime("%H:%M:%S"),
        )

    @staticmethod
    def _peer_blocked(e: Event) -> Notice:
        return Notice(NoticeKind.PEER_BLOCKED, ip=e.ip)

    @staticmethod
    def _checked(e: Event) -> Notice:
        return Notice(NoticeKind.TORRENT_CHECKED, info_hash=e.info_hash)
