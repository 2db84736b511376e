import os.path as op
from concurrent.futures import Future, ThreadPoolExecutor

from . import logger
from .alerts import Notice, NoticeKind, Notify, log_notice
from .utils import is_subpath, remove_path


class Purger:
    """
    Deletes downloaded data in background threads, so the owner thread never
    waits on filesystem I/O of arbitrary size. Failures are reported, never
    raised to the caller.
    """

    def __init__(self, max_workers: int = 1, notify: Notify = log_notice) -> None:
        self.notify = notify
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="purge"
        )

    def submit(self, save_path: str, name: str) -> Future:
        """Schedule removal of `save_path/name`."""
        target = op.join(save_path, name)
        logger.info('Removing from disk: "%s"', target)
        future = self._pool.submit(_purge, save_path, target)
        future.add_done_callback(lambda f: self._done(target, f))
        return future

    def _done(self, target: str, future: Future) -> None:
        err = future.exception()
        if err is None:
            self.notify(Notice(NoticeKind.PURGE_DONE, origin=target))
        else:
            logger.error('Failed to remove "%s": %s', target, err)
            self.notify(Notice(NoticeKind.PURGE_FAILED, origin=target, message=str(err)))

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def _purge(save_path: str, target: str) -> None:
    root = op.realpath(save_path)
    real = op.realpath(target)
    if real == root or not is_subpath(real, root):
        raise ValueError(f'Refusing to remove "{target}" outside of "{save_path}".')
    remove_path(target)
