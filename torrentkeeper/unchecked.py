from typing import Callable, List, Optional

from . import logger


class UncheckedSet:
    """
    Torrents loaded at startup whose integrity check has not finished yet.
    `on_all_checked` fires each time the set goes from non-empty to empty.
    """

    def __init__(self, on_all_checked: Optional[Callable[[], None]] = None) -> None:
        self._pending: List[str] = []
        self.on_all_checked = on_all_checked

    def __contains__(self, info_hash: str) -> bool:
        return info_hash in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def __iter__(self):
        return iter(tuple(self._pending))

    def add(self, info_hash: str) -> None:
        if info_hash not in self._pending:
            self._pending.append(info_hash)
            logger.debug("Added %s to the unchecked torrents", info_hash)

    def mark_checked(self, info_hash: str) -> bool:
        """
        Drop `info_hash` from the set. Returns True if this emptied the set,
        in which case the callback has been called.
        """
        try:
            self._pending.remove(info_hash)
        except ValueError:
            return False
        logger.debug(
            "%s finished checking, %d unchecked left", info_hash, len(self._pending)
        )
        if self._pending:
            return False
        logger.info("All torrents finished checking.")
        if self.on_all_checked is not None:
            self.on_all_checked()
        return True
