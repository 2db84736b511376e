import os
import os.path as op
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, List, Optional, Sequence

from . import logger
from .engine import Tracker
from .utils import silent_unlink


class CorruptSidecarError(ValueError):
    """A side-car file exists but does not match the torrent."""


class BackupDirError(OSError):
    """The backup directory cannot be created."""


class Kind(Enum):
    """Side-car file kinds, valued by their file extension."""

    METADATA = ".torrent"
    RESUME = ".fastresume"
    PAUSED = ".paused"
    INCREMENTAL = ".incremental"
    PRIORITIES = ".priorities"
    SAVE_PATH = ".savepath"
    TRACKERS = ".trackers"


class Marker(Enum):
    """Presence-only side-car files."""

    PAUSED = Kind.PAUSED
    INCREMENTAL = Kind.INCREMENTAL


PRIORITY_MIN = 0
PRIORITY_MAX = 7
PRIORITY_NORMAL = 1


@dataclass
class Record:
    """The persisted state of one torrent, with markers as booleans."""

    info_hash: str
    paused: bool = False
    incremental: bool = False
    priorities: Optional[List[int]] = None
    save_path: Optional[str] = None
    trackers: List[Tracker] = field(default_factory=list)
    has_resume: bool = False

    @property
    def filtered(self) -> bool:
        """True if any file is excluded from download."""
        return self.priorities is not None and PRIORITY_MIN in self.priorities


class SidecarStore:
    """
    Reads and writes the side-car files of each torrent in the backup
    directory. Every file of a torrent is named `<info_hash><kind>`.
    """

    def __init__(self, backup_dir: str) -> None:
        self.backup_dir = backup_dir
        self._ready = False

    def ensure_dir(self) -> None:
        """Create the backup directory on first use."""
        if self._ready:
            return
        try:
            os.makedirs(self.backup_dir, exist_ok=True)
        except OSError as e:
            raise BackupDirError(
                f'Cannot create the backup directory "{self.backup_dir}": {e}'
            ) from e
        self._ready = True

    def path(self, key: str, kind: Kind) -> str:
        return op.join(self.backup_dir, key + kind.value)

    def exists(self, key: str, kind: Kind) -> bool:
        return op.exists(self.path(key, kind))

    def _read(self, key: str, kind: Kind) -> Optional[bytes]:
        try:
            with open(self.path(key, kind), "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def _write(self, key: str, kind: Kind, data: bytes) -> None:
        self.ensure_dir()
        path = self.path(key, kind)
        tmp = path + ".part"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    # --- Records -------------------------------------------------------------

    def read_record(self, info_hash: str, file_count: Optional[int] = None) -> Record:
        """
        Read everything persisted for `info_hash`. Never fails: missing or
        corrupt files fall back to defaults. Priorities are only loaded when
        `file_count` is known.
        """
        rec = Record(
            info_hash=info_hash,
            paused=self.has_marker(info_hash, Marker.PAUSED),
            incremental=self.has_marker(info_hash, Marker.INCREMENTAL),
            save_path=self.read_save_path(info_hash),
            trackers=self.read_trackers(info_hash) or [],
            has_resume=self.exists(info_hash, Kind.RESUME),
        )
        if file_count is not None:
            try:
                rec.priorities = self.read_priorities(info_hash, file_count)
            except CorruptSidecarError as e:
                logger.warning("%s", e)
        return rec

    def delete_record(self, info_hash: str) -> None:
        """Remove every side-car file of `info_hash`, present or not."""
        for kind in Kind:
            silent_unlink(self.path(info_hash, kind))
        logger.debug("Deleted side-car record: %s", info_hash)

    def list_metadata(self) -> List[str]:
        """Paths of all stored torrent files, sorted."""
        self.ensure_dir()
        with os.scandir(self.backup_dir) as it:
            return sorted(
                e.path
                for e in it
                if e.name.endswith(Kind.METADATA.value) and e.is_file()
            )

    def migrate_legacy(self, name: str, info_hash: str) -> bool:
        """
        Rename side-car files keyed by torrent name to the info hash naming.
        Skipped if a hash-keyed torrent file already exists. Returns True if
        anything was migrated.
        """
        if (
            not name
            or name == info_hash
            or not self.exists(name, Kind.METADATA)
            or self.exists(info_hash, Kind.METADATA)
        ):
            return False
        logger.info('Migrating legacy side-car files: "%s" -> %s', name, info_hash)
        for kind in Kind:
            src = self.path(name, kind)
            if op.exists(src):
                os.replace(src, self.path(info_hash, kind))
        return True

    # --- Metadata ------------------------------------------------------------

    def read_metadata(self, info_hash: str) -> Optional[bytes]:
        return self._read(info_hash, Kind.METADATA)

    def write_metadata(self, info_hash: str, data: bytes) -> None:
        self._write(info_hash, Kind.METADATA, data)

    # --- Markers -------------------------------------------------------------

    def has_marker(self, info_hash: str, marker: Marker) -> bool:
        return self.exists(info_hash, marker.value)

    def write_marker(self, info_hash: str, marker: Marker, present: bool) -> None:
        """Create or delete a zero-length marker file. Idempotent."""
        path = self.path(info_hash, marker.value)
        if present:
            self.ensure_dir()
            open(path, "wb").close()
        else:
            silent_unlink(path)

    # --- Priorities ----------------------------------------------------------

    def write_priorities(self, info_hash: str, priorities: Sequence[int]) -> None:
        self._write(
            info_hash,
            Kind.PRIORITIES,
            "".join(f"{p}\n" for p in priorities).encode(),
        )

    def read_priorities(self, info_hash: str, file_count: int) -> Optional[List[int]]:
        """
        Read per-file priorities. Returns None if no file exists. Raises
        CorruptSidecarError if the number of entries does not match
        `file_count`. Out-of-range values are coerced to normal priority.
        """
        data = self._read(info_hash, Kind.PRIORITIES)
        if data is None:
            return None
        lines = data.decode("utf-8", "replace").split("\n")
        if len(lines) != file_count + 1:
            raise CorruptSidecarError(
                f"Corrupted priorities file for {info_hash}: "
                f"{len(lines) - 1} entries, expected {file_count}."
            )
        return [_coerce_priority(s) for s in lines[:-1]]

    def has_filtered_files(self, info_hash: str, file_count: int) -> bool:
        """True if the persisted priorities exclude at least one file."""
        try:
            priorities = self.read_priorities(info_hash, file_count)
        except CorruptSidecarError as e:
            logger.warning("%s", e)
            return False
        return priorities is not None and PRIORITY_MIN in priorities

    # --- Resume snapshot -----------------------------------------------------

    def write_resume_snapshot(self, info_hash: str, blob: bytes) -> None:
        silent_unlink(self.path(info_hash, Kind.RESUME))
        self._write(info_hash, Kind.RESUME, blob)

    def read_resume_snapshot(
        self, info_hash: str, decode: Optional[Callable[[bytes], object]] = None
    ):
        """
        Return the resume snapshot, passed through `decode` if given. Returns
        None if the file is missing, empty, or cannot be decoded.
        """
        try:
            data = self._read(info_hash, Kind.RESUME)
        except OSError as e:
            logger.warning("Cannot read resume data of %s: %s", info_hash, e)
            return None
        if not data:
            return None
        if decode is None:
            return data
        try:
            return decode(data)
        except ValueError as e:
            logger.warning("Ignoring undecodable resume data of %s: %s", info_hash, e)
            return None

    # --- Save path -----------------------------------------------------------

    def read_save_path(self, info_hash: str) -> Optional[str]:
        data = self._read(info_hash, Kind.SAVE_PATH)
        if data is None:
            return None
        path = data.decode("utf-8", "replace").strip()
        return path or None

    def write_save_path(self, info_hash: str, path: Optional[str]) -> None:
        if path:
            self._write(info_hash, Kind.SAVE_PATH, path.encode())
        else:
            silent_unlink(self.path(info_hash, Kind.SAVE_PATH))

    # --- Trackers ------------------------------------------------------------

    def write_trackers(self, info_hash: str, trackers: Sequence[Tracker]) -> None:
        self._write(
            info_hash,
            Kind.TRACKERS,
            "".join(f"{url}|{tier}\n" for url, tier in trackers).encode(),
        )

    def read_trackers(self, info_hash: str) -> Optional[List[Tracker]]:
        """
        Read the tracker list in file order. Returns None if the file is
        missing or has lines but no valid `url|tier` one; an empty file is an
        empty list.
        """
        data = self._read(info_hash, Kind.TRACKERS)
        if data is None:
            return None
        text = data.decode("utf-8", "replace")
        trackers = list(_parse_trackers(text))
        if not trackers and text.strip():
            return None
        return trackers


def _coerce_priority(s: str) -> int:
    try:
        p = int(s)
    except ValueError:
        return PRIORITY_NORMAL
    return p if PRIORITY_MIN <= p <= PRIORITY_MAX else PRIORITY_NORMAL


def _parse_trackers(text: str) -> Iterator[Tracker]:
    for line in text.split("\n"):
        # The tier is the last field; urls may contain "|".
        url, sep, tier = line.rpartition("|")
        if not sep or not url:
            continue
        try:
            yield url, int(tier)
        except ValueError:
            continue
