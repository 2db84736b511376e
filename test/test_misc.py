#!/usr/bin/env python3

import json
import os
import os.path as op
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import FakeEngine, info_hash_of, write_torrent

from torrentkeeper import config
from torrentkeeper.alerts import Notice, NoticeKind
from torrentkeeper.engine import Event, EventKind
from torrentkeeper.fetch import Fetcher, FetchResult
from torrentkeeper.filelock import BackupDirLock, LockBusyError
from torrentkeeper.main import Controller
from torrentkeeper.purge import Purger
from torrentkeeper.scanner import WatchDir
from torrentkeeper.utils import humansize, is_subpath


class TempDirTestCase(unittest.TestCase):

    def setUp(self):
        self.root = tempfile.TemporaryDirectory()
        self.dir = self.root.name

    def tearDown(self):
        self.root.cleanup()


class TestConfig(TempDirTestCase):

    def test_defaults(self):
        conf = config.makeconfig()
        self.assertEqual(conf["eta-window"], 8)
        self.assertEqual(conf["alert-interval"], 3)
        self.assertEqual(conf["eta-interval"], 6)
        self.assertEqual(conf["reload-retries"], 6)

    def test_wrong_types_fall_back(self):
        conf = config.makeconfig({"eta-window": "8", "reload-retries": True, "log-level": 1})
        self.assertEqual(conf["eta-window"], 8)
        self.assertEqual(conf["reload-retries"], 6)
        self.assertEqual(conf["log-level"], "INFO")

    def test_normalizers(self):
        conf = config.makeconfig({"reload-retries": -2, "watch-dir": "/a/b/../c/"})
        self.assertEqual(conf["reload-retries"], 0)
        self.assertEqual(conf["watch-dir"], op.normpath("/a/c"))
        with self.assertRaises(ValueError):
            config.makeconfig({"listen-port-min": 70000})
        with self.assertRaises(ValueError):
            config.makeconfig({"backup-dir": "relative/path"})
        with self.assertRaises(ValueError):
            config.makeconfig({"eta-window": 0})

    def test_parse_creates_blank_file(self):
        file = op.join(self.dir, "conf", "config.json")
        with mock.patch("sys.stderr"), self.assertRaises(SystemExit):
            config.parse(file)
        with open(file) as f:
            self.assertEqual(json.load(f), config.makeconfig())

    def test_parse_fills_dirs(self):
        file = op.join(self.dir, "config.json")
        config.json_dump({"eta-window": 4}, file)
        conf = config.parse(file)
        self.assertEqual(conf["eta-window"], 4)
        self.assertEqual(conf["backup-dir"], op.join(self.dir, "BT_backup"))
        # The file is rewritten with every key.
        with open(file) as f:
            self.assertEqual(set(json.load(f)), {k for k, *_ in config.SCHEMA})

    def test_parse_rejects_port_range(self):
        file = op.join(self.dir, "config.json")
        config.json_dump({"listen-port-min": 7000, "listen-port-max": 6000}, file)
        with mock.patch("sys.stderr"), self.assertRaises(SystemExit):
            config.parse(file)


class TestWatchDir(TempDirTestCase):

    def test_claims_torrent_files(self):
        write_torrent(self.dir, "b.torrent", "B")
        write_torrent(self.dir, "a.TORRENT", "A")
        open(op.join(self.dir, "notes.txt"), "w").close()
        os.mkdir(op.join(self.dir, "dir.torrent"))
        claimed = WatchDir(self.dir).scan()
        self.assertEqual(
            claimed,
            [op.join(self.dir, "a.TORRENT.old"), op.join(self.dir, "b.torrent.old")],
        )
        self.assertFalse(op.exists(op.join(self.dir, "b.torrent")))
        self.assertEqual(WatchDir(self.dir).scan(), [])

    def test_missing_dir(self):
        self.assertEqual(WatchDir(op.join(self.dir, "missing")).scan(), [])


class TestFetcher(TempDirTestCase):

    def _response(self, chunks=(b"d4:name", b"1:xe"), status=200):
        res = mock.MagicMock()
        res.__enter__.return_value = res
        res.iter_content.return_value = list(chunks)
        if status >= 400:
            res.raise_for_status.side_effect = requests.HTTPError(f"{status} Error")
        return res

    def _fetcher(self):
        fetcher = Fetcher(mock.Mock())
        self.addCleanup(fetcher.shutdown)
        return fetcher

    def test_fetch(self):
        fetcher = self._fetcher()
        with mock.patch.object(fetcher._session, "get", return_value=self._response()):
            res = fetcher.fetch("http://example.com/x.torrent")
        self.addCleanup(os.unlink, res.path)
        self.assertTrue(res.ok)
        with open(res.path, "rb") as f:
            self.assertEqual(f.read(), b"d4:name1:xe")

    def test_fetch_http_error(self):
        fetcher = self._fetcher()
        with mock.patch.object(
            fetcher._session, "get", return_value=self._response(status=404)
        ), mock.patch("torrentkeeper.fetch.tempfile.mkstemp") as mkstemp:
            path = op.join(self.dir, "tmp.torrent")
            mkstemp.return_value = (os.open(path, os.O_RDWR | os.O_CREAT), path)
            res = fetcher.fetch("http://example.com/missing.torrent")
        self.assertFalse(res.ok)
        self.assertIn("404", res.error)
        self.assertFalse(op.exists(path))

    def test_fetch_connection_error(self):
        fetcher = self._fetcher()
        err = requests.ConnectionError("refused")
        with mock.patch.object(fetcher._session, "get", side_effect=err):
            res = fetcher.fetch("http://example.com/x.torrent")
        self.assertEqual(res, FetchResult("http://example.com/x.torrent", error="refused"))

    def test_fetch_temp_file_error(self):
        fetcher = self._fetcher()
        with mock.patch(
            "torrentkeeper.fetch.tempfile.mkstemp", side_effect=OSError("no space")
        ):
            res = fetcher.fetch("http://example.com/x.torrent")
        self.assertEqual(res, FetchResult("http://example.com/x.torrent", error="no space"))

    def test_download_reports_unexpected_errors(self):
        callback = mock.Mock()
        fetcher = Fetcher(callback)
        with mock.patch.object(fetcher, "fetch", side_effect=RuntimeError("boom")):
            fetcher.download("http://example.com/x.torrent")
            fetcher.shutdown()
        callback.assert_called_once_with(
            FetchResult("http://example.com/x.torrent", error="boom")
        )

    def test_download_calls_back(self):
        callback = mock.Mock()
        fetcher = Fetcher(callback)
        result = FetchResult("http://example.com/x.torrent", path="/tmp/x")
        with mock.patch.object(fetcher, "fetch", return_value=result):
            fetcher.download("http://example.com/x.torrent").result()
            fetcher.shutdown()
        callback.assert_called_once_with(result)


class TestPurger(TempDirTestCase):

    def test_purge(self):
        notices = []
        payload = op.join(self.dir, "Payload")
        os.makedirs(op.join(payload, "sub"))
        open(op.join(payload, "sub", "f"), "w").close()
        purger = Purger(notify=notices.append)
        purger.submit(self.dir, "Payload").result()
        purger.shutdown()
        self.assertFalse(op.exists(payload))
        self.assertEqual([n.kind for n in notices], [NoticeKind.PURGE_DONE])

    def test_purge_refuses_escape(self):
        notices = []
        purger = Purger(notify=notices.append)
        future = purger.submit(self.dir, "..")
        purger.shutdown()
        self.assertIsInstance(future.exception(), ValueError)
        self.assertEqual([n.kind for n in notices], [NoticeKind.PURGE_FAILED])
        self.assertTrue(op.isdir(self.dir))


class TestBackupDirLock(TempDirTestCase):

    def test_exclusive(self):
        with BackupDirLock(self.dir):
            with self.assertRaises(LockBusyError):
                BackupDirLock(self.dir).acquire()
        lock = BackupDirLock(self.dir)
        lock.acquire()
        lock.release()


class TestUtils(unittest.TestCase):

    def test_humansize(self):
        self.assertEqual(humansize(0), "0.00 B")
        self.assertEqual(humansize(1023), "1023.00 B")
        self.assertEqual(humansize(1536), "1.50 KiB")
        self.assertEqual(humansize(-1024), "-1.00 KiB")
        self.assertTrue(humansize(1 << 100).endswith("YiB"))

    def test_is_subpath(self):
        self.assertTrue(is_subpath("/a/b", "/a"))
        self.assertTrue(is_subpath("/a", "/a/"))
        self.assertFalse(is_subpath("/ab", "/a"))


class TestController(TempDirTestCase):

    def setUp(self):
        super().setUp()
        self.conf = config.makeconfig()
        self.conf["backup-dir"] = op.join(self.dir, "BT_backup")
        self.conf["default-save-path"] = op.join(self.dir, "downloads")
        self.conf["watch-dir"] = op.join(self.dir, "watch")
        os.makedirs(self.conf["watch-dir"])
        self.engine = FakeEngine()
        self.ctl = Controller(self.conf, self.engine)
        self.addCleanup(self.ctl.purger.shutdown)
        self.addCleanup(self.ctl.fetcher.shutdown)

    def test_tick_scans_and_checks(self):
        path = write_torrent(self.conf["watch-dir"], "new.torrent", "New")
        ih = info_hash_of(path)
        self.ctl.start()
        self.ctl.tick(now=100)
        self.assertIn(ih, self.engine.handles)
        self.assertEqual(os.listdir(self.conf["watch-dir"]), [])

        # A stored, paused torrent is loaded at startup and paused after checking.
        self.ctl.manager.pause_torrent(ih)
        self.ctl.manager.save_all_and_unload()
        self.ctl.start()
        self.assertFalse(self.engine.handles[ih].paused)
        self.engine.alerts = [[Event(EventKind.CHECKED, ih)]]
        wait = self.ctl.tick(now=103)
        self.assertTrue(self.engine.handles[ih].paused)
        self.assertEqual(self.ctl.manager.unchecked_torrents(), [])
        self.assertEqual(wait, 2)

    def test_fetched_results_are_added_on_tick(self):
        path = write_torrent(self.dir, "fetched.torrent", "Fetched")
        self.ctl.fetched.put(FetchResult("http://example.com/f.torrent", path=path))
        self.ctl.fetched.put(FetchResult("http://example.com/g.torrent", error="404"))
        with mock.patch.object(self.ctl, "notify", wraps=self.ctl.notify) as notify:
            self.ctl.tick(now=1)
        self.assertIn(info_hash_of(self.ctl.manager.store.list_metadata()[0]), self.engine.handles)
        self.assertFalse(op.exists(path))
        notify.assert_called_with(
            Notice(NoticeKind.URL_FAILED, origin="http://example.com/g.torrent", message="404")
        )


if __name__ == "__main__":
    unittest.main()
