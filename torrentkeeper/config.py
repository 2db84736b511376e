import json
import os
import os.path as op
import sys
from typing import Union

# --- Normalizers & validators -------------------------------------------------


def _non_negative(val: Union[int, float]):
    return val if val >= 0 else 0


def _positive(val: Union[int, float]):
    if val > 0:
        return val
    raise ValueError(f"Value must be positive: {val}.")


def _port(val: int):
    if 0 < val < 65536:
        return val
    raise ValueError(f"Port number out of range: {val}.")


def _abs_path(val: str):
    """Normalize and validate an absolute path. Empty string is allowed."""
    if not val:
        return val
    val = op.expanduser(val)
    if not op.isabs(val):
        raise ValueError(f'Path is not absolute: "{val}".')
    return op.normpath(val)


# --- Schema ------------------------------------------------------------------

# key, type, default, normalizer

SCHEMA = [
    ("log-level", str, "INFO", None),
    ("backup-dir", str, "", _abs_path),
    ("default-save-path", str, "", _abs_path),
    ("watch-dir", str, "", _abs_path),
    ("listen-port-min", int, 6881, _port),
    ("listen-port-max", int, 6889, _port),
    ("alert-interval", (int, float), 3, _positive),
    ("eta-interval", (int, float), 6, _positive),
    ("scan-interval", (int, float), 5, _positive),
    ("eta-window", int, 8, _positive),
    ("reload-retries", int, 6, _non_negative),
    ("reload-backoff", (int, float), 1, _non_negative),
    ("purge-workers", int, 1, _positive),
    ("fetch-timeout", (int, float), 30, _positive),
]

# --- Core --------------------------------------------------------------------


def makeconfig(userconf: dict = None) -> dict:
    """
    Build a config dict from schema and user settings; apply normalizers.
    Missing/wrong-typed values fall back to defaults.
    """
    conf = {}
    get = (userconf if isinstance(userconf, dict) else {}).get
    for key, _type, default, norm in SCHEMA:
        val = get(key)
        # bool is an int subclass, but never a valid number here.
        if isinstance(val, _type) and not isinstance(val, bool):
            conf[key] = val if norm is None else norm(val)
        else:
            conf[key] = default
    return conf


def json_dump(data, file: str):
    with open(file, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=4, ensure_ascii=False)


def _error(msg):
    sys.stderr.write(f"Configuration error: {msg}\n")
    sys.exit(1)


def parse(file: str) -> dict:
    """
    Parse and validate a JSON configuration file, update the file as necessary.
    Empty directory settings are resolved relative to the config directory.
    """
    try:
        with open(file, "r", encoding="utf-8") as f:
            userconf = json.load(f)
    except FileNotFoundError:
        os.makedirs(op.dirname(file), exist_ok=True)
        json_dump(makeconfig(), file)
        sys.stderr.write(
            f'A blank configuration file has been created at "{file}". '
            "Edit the settings before running this program again.\n"
        )
        sys.exit(1)
    except Exception as e:
        _error(e)

    try:
        conf = makeconfig(userconf)
    except ValueError as e:
        _error(e)

    if conf["listen-port-min"] > conf["listen-port-max"]:
        _error('"listen-port-min" is greater than "listen-port-max".')

    if conf != userconf:
        json_dump(conf, file)

    config_dir = op.dirname(op.abspath(file))
    if not conf["backup-dir"]:
        conf["backup-dir"] = op.join(config_dir, "BT_backup")
    if not conf["default-save-path"]:
        conf["default-save-path"] = op.join(op.expanduser("~"), "Downloads")
    return conf
