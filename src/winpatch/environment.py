"""
Environment preconditions for a patching run

Checks run before anything is registered or downloaded, so a failure
here leaves nothing behind to clean up.
"""

import logging
import os
import shutil
import sys
from pathlib import Path

from winpatch.data import RunOptions
from winpatch.errors import PreconditionError

logger = logging.getLogger(__name__)

MEGABYTE = 1024 * 1024


def system_volume() -> str:
    """
    Root of the volume holding the operating system.
    """
    if sys.platform == "win32":
        return os.environ.get("SystemDrive", "C:") + "\\"
    return "/"


def ensure_directory(path: str | Path) -> Path:
    """
    Create a directory, with parents, if it does not exist yet.

    :param path: Directory to create
    :return: The directory as a Path
    :raises PreconditionError: If the path exists and is not a directory,
        or cannot be created.
    """
    path = Path(path)

    if path.exists() and not path.is_dir():
        raise PreconditionError(f"{path} exists and is not a directory")

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PreconditionError(f"Unable to create {path}: {e.strerror}") from e

    return path


def free_space_mb(path: str | Path) -> int:
    """
    Free space available on the volume holding ``path``, in megabytes.
    """
    try:
        usage = shutil.disk_usage(path)
    except OSError as e:
        raise PreconditionError(
            f"Unable to query free space for {path}: {e.strerror}"
        ) from e

    return usage.free // MEGABYTE


def check_free_space(path: str | Path, minimum_mb: int) -> int:
    """
    Ensure the volume holding ``path`` has at least ``minimum_mb`` free.

    :return: The free space found, in megabytes
    :raises PreconditionError: If there is not enough free space
    """
    free = free_space_mb(path)

    if free < minimum_mb:
        raise PreconditionError(
            f"Not enough free space on {path}: {free} MB available, "
            f"{minimum_mb} MB required"
        )

    return free


def check_preconditions(options: RunOptions, log: logging.Logger = logger) -> None:
    """
    Validate the environment before patching.

    Ensures the working directory exists, then checks free space on
    the system volume and on the working directory's volume.

    :param options: Run options holding the directory and threshold
    :param log: Logger receiving progress lines
    :raises PreconditionError: On the first failed check
    """
    patch_dir = ensure_directory(options.patch_dir)
    log.info("Working directory: %s", patch_dir)

    for volume in (system_volume(), str(patch_dir)):
        free = check_free_space(volume, options.free_space_min_mb)
        log.info(
            "Free space on %s: %d MB (minimum %d MB)",
            volume,
            free,
            options.free_space_min_mb,
        )
