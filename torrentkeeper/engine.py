from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

# (announce url, tier)
Tracker = Tuple[str, int]


class InvalidTorrentError(ValueError):
    """Raised when torrent metadata cannot be decoded."""


class EngineError(RuntimeError):
    """Raised when the engine refuses an operation."""


class AllocationMode(Enum):
    """Disk allocation strategy for a torrent's files."""

    FULL = "full"
    COMPACT = "compact"


class EventKind(Enum):
    """Kinds of alerts popped from the engine."""

    FINISHED = "finished"
    FILE_ERROR = "file-error"
    LISTEN_FAILED = "listen-failed"
    TRACKER_ERROR = "tracker-error"
    PEER_BLOCKED = "peer-blocked"
    CHECKED = "checked"


@dataclass
class Event:
    """An alert popped from the engine, tagged by `kind`."""

    kind: EventKind
    info_hash: Optional[str] = None
    message: str = ""
    status_code: Optional[int] = None
    ip: Optional[str] = None


@dataclass
class TorrentFile:
    path: str
    size: int


@dataclass
class TorrentInfo:
    """Decoded torrent metadata."""

    info_hash: str
    name: str
    files: List[TorrentFile] = field(default_factory=list)
    trackers: List[Tracker] = field(default_factory=list)

    @property
    def num_files(self) -> int:
        return len(self.files)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)


@dataclass
class TorrentStatus:
    """A snapshot of a torrent's transfer state."""

    total_done: int = 0
    download_payload_rate: int = 0
    upload_payload_rate: int = 0
    paused: bool = False
    is_seed: bool = False


@dataclass
class SessionStatus:
    payload_download_rate: float = 0.0
    payload_upload_rate: float = 0.0
    num_peers: int = 0
    listen_port: int = 0


class TorrentHandle:
    """
    A reference to a torrent loaded in the engine. A handle turns invalid once
    the engine has dropped the torrent; most operations on an invalid handle
    raise EngineError.
    """

    info_hash: str

    def is_valid(self) -> bool:
        raise NotImplementedError

    def is_paused(self) -> bool:
        raise NotImplementedError

    def pause(self) -> None:
        raise NotImplementedError

    def resume(self) -> None:
        raise NotImplementedError

    def has_metadata(self) -> bool:
        raise NotImplementedError

    def status(self) -> TorrentStatus:
        raise NotImplementedError

    def torrent_info(self) -> TorrentInfo:
        raise NotImplementedError

    def save_path(self) -> str:
        raise NotImplementedError

    def name(self) -> str:
        return self.torrent_info().name

    def prioritize_files(self, priorities: List[int]) -> None:
        raise NotImplementedError

    def trackers(self) -> List[Tracker]:
        raise NotImplementedError

    def replace_trackers(self, trackers: List[Tracker]) -> None:
        raise NotImplementedError

    def write_resume_data(self) -> bytes:
        raise NotImplementedError

    def set_sequential_download(self, enabled: bool) -> None:
        raise NotImplementedError


class Engine:
    """The bittorrent engine as seen by the controller."""

    def decode(self, data: bytes) -> TorrentInfo:
        """Decode raw torrent metadata. Raises InvalidTorrentError."""
        raise NotImplementedError

    def decode_resume(self, data: bytes):
        """Decode a resume snapshot. Raises ValueError if malformed."""
        raise NotImplementedError

    def add_torrent(
        self,
        info: TorrentInfo,
        save_path: str,
        resume_data: Optional[bytes],
        mode: AllocationMode,
    ) -> TorrentHandle:
        """Load a torrent. The returned handle is invalid if rejected."""
        raise NotImplementedError

    def remove_torrent(self, handle: TorrentHandle) -> None:
        raise NotImplementedError

    def find_torrent(self, info_hash: str) -> Optional[TorrentHandle]:
        raise NotImplementedError

    def torrents(self) -> List[TorrentHandle]:
        raise NotImplementedError

    def pop_alerts(self) -> List[Event]:
        raise NotImplementedError

    def status(self) -> SessionStatus:
        raise NotImplementedError

    def listen_on(self, port_min: int, port_max: int) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass
