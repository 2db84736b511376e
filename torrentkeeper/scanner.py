import os
import os.path as op
from typing import List

from . import logger

CLAIMED_SUFFIX = ".old"


class WatchDir:
    """
    Picks up '.torrent' files dropped into a directory. Each file is claimed
    by renaming it with a '.old' suffix before it is handed out, so it is
    never picked up twice.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def scan(self) -> List[str]:
        """Claim new torrent files and return their new paths."""
        try:
            with os.scandir(self.path) as it:
                entries = [e for e in it if e.name.lower().endswith(".torrent")]
        except OSError as err:
            logger.error("Error scanning watch-dir: %s", err)
            return []

        claimed = []
        for e in entries:
            dst = e.path + CLAIMED_SUFFIX
            try:
                if not e.is_file():
                    continue
                os.replace(e.path, dst)
            except OSError as err:
                logger.error('Error claiming "%s": %s', e.path, err)
                continue
            logger.debug("Found in watch-dir: %s", e.path)
            claimed.append(dst)
        claimed.sort(key=op.basename)
        return claimed
