import os
import os.path as op
import shutil

from . import logger


def silent_unlink(path: str) -> bool:
    """Remove a file if it exists. Returns True if a file was removed."""
    try:
        os.unlink(path)
    except FileNotFoundError:
        return False
    return True


def remove_path(path: str) -> None:
    """
    Remove `path` from disk, whether it is a file, a symlink or a directory
    tree. A missing path is not an error; other OSErrors are raised.
    """
    if op.isdir(path) and not op.islink(path):
        logger.debug("Removing tree: %s", path)
        shutil.rmtree(path)
    elif silent_unlink(path):
        logger.debug("Removed file: %s", path)


def is_subpath(child: str, parent: str, sep: str = op.sep) -> bool:
    """
    Check if `child` is within `parent`. It's the caller's responsibility to
    ensure both paths are canonical.
    """
    if not child.endswith(sep):
        child += sep
    if not parent.endswith(sep):
        parent += sep
    return child.startswith(parent)


def humansize(size) -> str:
    """Convert a byte count to a human-readable IEC size up to YiB."""
    size = int(size)
    if size == 0:
        return "0.00 B"
    units = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB", "YiB")
    idx = (abs(size).bit_length() - 1) // 10
    if idx >= len(units):
        idx = len(units) - 1
    return f"{size / (1 << (idx * 10)):.2f} {units[idx]}"


def strip_file_url(path: str) -> str:
    """Turn a `file://` URL or a padded path into a plain path."""
    path = path.strip()
    if path.startswith("file://"):
        path = path[7:]
    return path
