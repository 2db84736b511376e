import logging
import os.path as op
import queue
import sys
import time
from logging.handlers import RotatingFileHandler
from typing import Callable, List, Optional, Tuple

import click

from . import config, logger
from .alerts import AlertTranslator, Notice, NoticeKind, log_notice
from .engine import Engine
from .eta import EtaEstimator
from .fetch import Fetcher, FetchResult
from .filelock import BackupDirLock, LockBusyError
from .manager import TorrentManager
from .purge import Purger
from .scanner import WatchDir
from .sidecar import BackupDirError, SidecarStore
from .utils import silent_unlink


def init_logger(logfile: str, level: str = "INFO"):
    """Configure the logging system with both console and file handlers."""
    logger.handlers.clear()
    logger.propagate = False

    try:
        logger.setLevel(level.upper())
    except ValueError:
        logger.setLevel(logging.INFO)
        logger.warning('Invalid log level "%s", using INFO instead.', level)

    # Console handler
    hd = logging.StreamHandler()
    hd.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(hd)

    # Rotating File handler (10 MiB * 3)
    hd = RotatingFileHandler(logfile, maxBytes=10485760, backupCount=3)
    hd.setFormatter(
        logging.Formatter(
            "[%(asctime)s] %(levelname)s: %(threadName)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(hd)


class Controller:
    """
    Owns the manager and runs the periodic jobs: alert draining, ETA
    refreshing and watch-dir scanning. Everything that touches the manager
    runs on the thread that calls `tick()`.
    """

    def __init__(self, conf: dict, engine: Engine) -> None:
        self.conf = conf
        self.engine = engine
        self.purger = Purger(max_workers=conf["purge-workers"], notify=self.notify)
        self.manager = TorrentManager(
            engine=engine,
            store=SidecarStore(conf["backup-dir"]),
            default_save_path=conf["default-save-path"],
            notify=self.notify,
            eta=EtaEstimator(conf["eta-window"]),
            purger=self.purger,
            reload_retries=conf["reload-retries"],
            reload_backoff=conf["reload-backoff"],
        )
        self.translator = AlertTranslator(engine, self.notify)
        self.watch_dir = WatchDir(conf["watch-dir"]) if conf["watch-dir"] else None
        self.fetched: "queue.Queue[FetchResult]" = queue.Queue()
        self.fetcher = Fetcher(self.fetched.put, timeout=conf["fetch-timeout"])
        self._jobs: List[Tuple[float, Callable[[], None]]] = [
            (conf["alert-interval"], self.translator.drain),
            (conf["eta-interval"], self.manager.refresh_etas),
        ]
        if self.watch_dir is not None:
            self._jobs.append((conf["scan-interval"], self.scan))
        self._due = [0.0] * len(self._jobs)

    def notify(self, notice: Notice) -> None:
        log_notice(notice)
        if notice.kind is NoticeKind.TORRENT_CHECKED:
            self.manager.mark_checked(notice.info_hash)

    def start(self) -> None:
        self.manager.store.ensure_dir()
        self.engine.listen_on(self.conf["listen-port-min"], self.conf["listen-port-max"])
        self.manager.resume_unfinished()

    def add(self, source: str) -> None:
        """Add a local path, or fetch a URL first."""
        if source.startswith(("http://", "https://")):
            self.fetcher.download(source)
        else:
            self.manager.add_torrent(source)

    def scan(self) -> None:
        for path in self.watch_dir.scan():
            self.manager.add_torrent(path, from_scan_dir=True)

    def _drain_fetched(self) -> None:
        while True:
            try:
                res = self.fetched.get_nowait()
            except queue.Empty:
                return
            if res.ok:
                self.manager.add_torrent(res.path, from_url=res.url)
            else:
                self.notify(Notice(NoticeKind.URL_FAILED, origin=res.url, message=res.error))

    def tick(self, now: Optional[float] = None) -> float:
        """Run the jobs that are due. Returns seconds until the next one."""
        if now is None:
            now = time.monotonic()
        self._drain_fetched()
        for i, (interval, job) in enumerate(self._jobs):
            if now >= self._due[i]:
                job()
                self._due[i] = now + interval
        return max(0.0, min(self._due) - now)

    def run(self) -> None:
        """Loop until interrupted."""
        while True:
            time.sleep(min(self.tick(), 0.5))

    def shutdown(self) -> None:
        self.fetcher.shutdown(wait=False)
        self.manager.save_all_and_unload()
        self.purger.shutdown(wait=True)
        self.engine.close()
        # Fetched files nobody is going to add.
        while not self.fetched.empty():
            res = self.fetched.get_nowait()
            if res.path:
                silent_unlink(res.path)


def main(config_dir: str, sources=(), engine: Optional[Engine] = None) -> int:
    """
    Main entry point.

    Parameters:
     - config_dir (str): The configuration directory, holding config.json,
       the log file and, unless configured otherwise, the backup directory.
     - sources: torrent files or URLs to add after resuming.
     - engine: the engine to drive; a libtorrent session by default.
    """
    conf = config.parse(op.join(config_dir, "config.json"))
    init_logger(op.join(config_dir, "logfile.log"), conf["log-level"])

    store = SidecarStore(conf["backup-dir"])
    try:
        store.ensure_dir()
    except BackupDirError as e:
        logger.critical("%s", e)
        return 1

    flock = BackupDirLock(conf["backup-dir"])
    try:
        flock.acquire()
    except LockBusyError as e:
        logger.critical("%s", e)
        return 1

    try:
        if engine is None:
            from .lt_engine import LtEngine

            engine = LtEngine(conf["listen-port-min"])
        ctl = Controller(conf, engine)
        ctl.start()
        for s in sources:
            ctl.add(s)
        try:
            ctl.run()
        except KeyboardInterrupt:
            logger.info("Shutting down.")
        finally:
            ctl.shutdown()
    except Exception as e:
        logger.critical("Unexpected error: %s", e)
        logger.debug("Traceback:", exc_info=True)
        return 1
    finally:
        flock.release()
    return 0


@click.command()
@click.option(
    "-c",
    "--config-dir",
    type=click.Path(file_okay=False),
    default=lambda: click.get_app_dir("torrentkeeper"),
    show_default="user config directory",
    help="Directory holding config.json and the log file.",
)
@click.argument("sources", nargs=-1)
def cli(config_dir: str, sources):
    """Resume stored torrents and add SOURCES (files or URLs)."""
    sys.exit(main(config_dir, sources))
