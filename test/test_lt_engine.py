#!/usr/bin/env python3

import hashlib
import importlib.util
import os.path as op
import sys
import tempfile
import time
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from torrentkeeper.alerts import NoticeKind
from torrentkeeper.engine import EventKind, InvalidTorrentError, TorrentFile
from torrentkeeper.manager import TorrentManager
from torrentkeeper.sidecar import SidecarStore

HAS_LIBTORRENT = importlib.util.find_spec("libtorrent") is not None

if HAS_LIBTORRENT:
    import libtorrent as lt

    from torrentkeeper.lt_engine import LtEngine

PAYLOAD = b"torrentkeeper payload\n" * 100
ANNOUNCE = "http://tracker.example/announce"


def make_torrent(name: str = "hello.txt"):
    """A single-file torrent of PAYLOAD: (bencoded bytes, info hash)."""
    info = {
        b"name": name.encode(),
        b"length": len(PAYLOAD),
        b"piece length": 16384,
        b"pieces": hashlib.sha1(PAYLOAD).digest(),
    }
    data = lt.bencode({b"announce": ANNOUNCE.encode(), b"info": info})
    return data, hashlib.sha1(lt.bencode(info)).hexdigest()


@unittest.skipUnless(HAS_LIBTORRENT, "libtorrent is not installed")
class TestLtEngine(unittest.TestCase):

    def setUp(self):
        self.root = tempfile.TemporaryDirectory()
        self.save = op.join(self.root.name, "downloads")
        self.store = SidecarStore(op.join(self.root.name, "BT_backup"))
        self.notices = []
        self.data, self.ih = make_torrent()
        self.src = op.join(self.root.name, "hello.torrent")
        with open(self.src, "wb") as f:
            f.write(self.data)

    def tearDown(self):
        self.root.cleanup()

    def new_manager(self):
        engine = LtEngine(0)
        self.addCleanup(engine.close)
        manager = TorrentManager(
            engine=engine,
            store=self.store,
            default_save_path=self.save,
            notify=self.notices.append,
            reload_retries=50,
            reload_backoff=0.1,
        )
        return engine, manager

    def test_decode(self):
        engine, _ = self.new_manager()
        info = engine.decode(self.data)
        self.assertEqual(info.info_hash, self.ih)
        self.assertEqual(info.name, "hello.txt")
        self.assertEqual(info.files, [TorrentFile("hello.txt", len(PAYLOAD))])
        self.assertEqual(info.trackers, [(ANNOUNCE, 0)])

    def test_decode_invalid(self):
        engine, _ = self.new_manager()
        for data in (b"garbage", lt.bencode({b"foo": 1})):
            with self.assertRaises(InvalidTorrentError):
                engine.decode(data)

    def test_added_torrent_runs(self):
        _, manager = self.new_manager()
        manager.add_torrent(self.src)
        self.assertFalse(manager.is_paused(self.ih))

    def test_runs_after_restart(self):
        engine, manager = self.new_manager()
        manager.add_torrent(self.src)
        manager.save_all_and_unload()
        self.assertIsNotNone(self.store.read_resume_snapshot(self.ih))
        engine.close()

        _, manager = self.new_manager()
        manager.resume_unfinished()
        self.assertIs(self.notices[-1].kind, NoticeKind.TORRENT_ADDED)
        self.assertTrue(self.notices[-1].fast_resume)
        self.assertFalse(manager.is_paused(self.ih))

    def test_runs_after_reload(self):
        _, manager = self.new_manager()
        manager.add_torrent(self.src)
        manager.reload_torrent(self.ih, compact=True)
        self.assertFalse(manager.is_paused(self.ih))
        self.assertIs(self.notices[-1].kind, NoticeKind.FILE_SIZE_UPDATED)

    def test_checked_event(self):
        engine, manager = self.new_manager()
        manager.add_torrent(self.src)
        deadline = time.monotonic() + 10
        checked = []
        while not checked and time.monotonic() < deadline:
            engine._ses.wait_for_alert(500)
            checked = [
                e
                for e in engine.pop_alerts()
                if e.kind is EventKind.CHECKED and e.info_hash == self.ih
            ]
        self.assertTrue(checked)

    def test_unknown_alerts_are_dropped(self):
        self.assertIsNone(LtEngine._translate(object()))

    def test_listen_range(self):
        engine, _ = self.new_manager()
        engine.listen_on(6881, 6891)
        self.assertEqual(engine._ses.get_settings()["max_retry_port_bind"], 10)


if __name__ == "__main__":
    unittest.main()
