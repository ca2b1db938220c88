"""Mirror copy of the source subtree into the deploy location."""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def mirror_tree(source: Path, destination: Path) -> int:
    """Copy every file under ``source`` into ``destination``.

    Existing files are overwritten and missing directories created. Files
    that only exist in ``destination`` are left alone. The first failure
    aborts the copy with the underlying :class:`OSError`.

    Returns the number of files copied.
    """

    if not source.is_dir():
        raise NotADirectoryError(f"Source location is not a directory: {source}")

    destination.mkdir(parents=True, exist_ok=True)
    copied = 0
    for dirpath, dirnames, filenames in os.walk(source, onerror=_raise):
        current = Path(dirpath)
        target_dir = destination / current.relative_to(source)
        for name in dirnames:
            (target_dir / name).mkdir(parents=True, exist_ok=True)
        for name in filenames:
            src_file = current / name
            dst_file = target_dir / name
            logger.debug("Copying %s -> %s", src_file, dst_file)
            shutil.copy2(src_file, dst_file)
            copied += 1
    logger.info("Copied %s files from %s to %s", copied, source, destination)
    return copied


def _raise(exc: OSError) -> None:
    raise exc
