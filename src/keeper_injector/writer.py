"""Atomic secret file output under the shared secrets mount.

Every file is written to a temporary sibling, flushed, made read-only
(0400) and renamed over the target, so readers never observe a partial
write. Parent directories are created with mode 0750.
"""

from __future__ import annotations

import os
import re
import tempfile
from collections import Counter
from collections.abc import Sequence
from pathlib import PurePosixPath

import structlog

from keeper_injector.errors import OutputPathError
from keeper_injector.models import DEFAULT_SECRETS_PATH

logger = structlog.get_logger(__name__)

FILE_MODE = 0o400
DIR_MODE = 0o750

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9\-_.]")


def sanitize_filename(title: str) -> str:
    """Make a record title safe as a file name.

    Spaces become dashes; anything outside ``[A-Za-z0-9-_.]`` is dropped.

    Example:
        >>> sanitize_filename("MySQL Prod (primary)")
        'MySQL-Prod-primary'
    """
    return _UNSAFE_FILENAME.sub("", title.replace(" ", "-"))


def folder_output_path(directory: str, title: str, uid: str = "") -> str:
    """Return the JSON file path for a folder record.

    With ``uid`` the file name becomes ``<title>-<uid>.json``.
    """
    name = sanitize_filename(title)
    if uid:
        name = f"{name}-{uid}" if name else uid
    return str(PurePosixPath(directory) / f"{name}.json")


def folder_output_paths(directory: str, members: Sequence[tuple[str, str]]) -> dict[str, str]:
    """Map each ``(uid, title)`` folder member to its JSON file path.

    Members whose titles sanitize to the same name, or to nothing, are
    disambiguated with their UID so no record overwrites another.

    Example:
        >>> folder_output_paths("/s", [("u1", "db"), ("u2", "db!"), ("u3", "api")])
        {'u1': '/s/db-u1.json', 'u2': '/s/db-u2.json', 'u3': '/s/api.json'}
    """
    counts = Counter(sanitize_filename(title) for _, title in members)
    paths: dict[str, str] = {}
    for uid, title in members:
        name = sanitize_filename(title)
        if name and counts[name] == 1:
            paths[uid] = folder_output_path(directory, title)
            continue
        logger.warning("writer.folder_name_collision", directory=directory, title=title, uid=uid)
        paths[uid] = folder_output_path(directory, title, uid)
    return paths


class SecretWriter:
    """Write rendered secrets below a mount root.

    Args:
        mount_root: Directory every output path must reside under.
    """

    def __init__(self, mount_root: str = DEFAULT_SECRETS_PATH) -> None:
        self.mount_root = os.path.normpath(mount_root or DEFAULT_SECRETS_PATH)

    def check_path(self, path: str) -> str:
        """Normalise ``path`` and verify it stays under the mount root.

        Args:
            path: Absolute output path.

        Returns:
            The normalised path.

        Raises:
            OutputPathError: If the path is relative or escapes the mount root.
        """
        if not path or not path.startswith("/"):
            raise OutputPathError(path, self.mount_root)
        normalised = os.path.normpath(path)
        root = self.mount_root.rstrip("/") + "/"
        if normalised == self.mount_root or not (normalised + "/").startswith(root):
            raise OutputPathError(path, self.mount_root)
        return normalised

    def write(self, path: str, data: bytes) -> None:
        """Atomically replace ``path`` with ``data``.

        Args:
            path: Absolute output path under the mount root.
            data: Exact file contents.

        Raises:
            OutputPathError: If the path escapes the mount root.
            OSError: If the filesystem rejects the write.
        """
        target = self.check_path(path)
        directory = os.path.dirname(target)
        os.makedirs(directory, mode=DIR_MODE, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            dir=directory, prefix=f".{os.path.basename(target)}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, FILE_MODE)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug("writer.file_written", path=target, size=len(data))


__all__ = [
    "DIR_MODE",
    "FILE_MODE",
    "SecretWriter",
    "folder_output_path",
    "folder_output_paths",
    "sanitize_filename",
]
