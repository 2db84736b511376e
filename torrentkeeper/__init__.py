"""
Torrentkeeper keeps torrents alive across restarts.

Torrentkeeper is a controller for a bittorrent engine. It keeps a side-car
record per torrent in a backup directory, drives the add/remove/pause/resume
lifecycle, reconciles persisted state back into the engine on startup, and
publishes smoothed time-remaining estimates.

:license: Apache 2.0
"""

import logging

PKG_NAME = __name__

logger = logging.getLogger(PKG_NAME)
