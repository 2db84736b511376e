import os
import os.path as op

from . import logger

_MODE = 0o644
_FLAG = os.O_RDWR | os.O_CREAT
LOCK_NAME = ".lock"


class LockBusyError(RuntimeError):
    """Another process holds the lock."""


if os.name == "nt":
    import msvcrt

    def _lock(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)

    def _unlock(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _lock(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)


class BackupDirLock:
    """
    An exclusive, non-blocking lock on a backup directory, so that only one
    process writes its side-car files. Usable as a context manager.
    """

    __slots__ = ("file", "fd")

    def __init__(self, backup_dir: str) -> None:
        self.file = op.join(backup_dir, LOCK_NAME)
        self.fd = None

    def acquire(self) -> None:
        if self.fd is not None:
            return
        fd = os.open(self.file, _FLAG, _MODE)
        try:
            _lock(fd)
        except OSError as e:
            os.close(fd)
            raise LockBusyError(
                f'"{op.dirname(self.file)}" is in use by another process.'
            ) from e
        self.fd = fd
        logger.debug("Lock acquired: %s", self.file)

    def release(self) -> None:
        if self.fd is not None:
            _unlock(self.fd)
            os.close(self.fd)
            self.fd = None
            logger.debug("Lock released: %s", self.file)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *exc):
        self.release()
