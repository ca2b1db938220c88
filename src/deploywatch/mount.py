"""Mounting and releasing the network share that backs the watched tree."""
from __future__ import annotations

import logging
import subprocess
import threading
from pathlib import Path

from .config import MountConfig

logger = logging.getLogger(__name__)


class MountError(Exception):
    """Raised when the share cannot be mounted."""


class ShareMount:
    """Mounts ``config.server`` on ``mount_point`` and releases it exactly once.

    :meth:`release` may be reached from both the signal path and the normal
    end of the watch loop; only the first call runs ``umount``.
    """

    def __init__(self, config: MountConfig, mount_point: Path):
        self._config = config
        self.mount_point = mount_point
        self._lock = threading.Lock()
        self._mounted = False
        self._released = False

    @property
    def mounted(self) -> bool:
        return self._mounted

    def acquire(self) -> None:
        self.mount_point.mkdir(parents=True, exist_ok=True)
        if not self._config.enabled:
            logger.info("Mounting disabled; watching local directory %s", self.mount_point)
            return

        credentials = f"username={self._config.username},password={self._config.password}"
        command = [
            "mount",
            "-t",
            self._config.share_type,
            self._config.server,
            str(self.mount_point),
            "-o",
            credentials,
        ]
        try:
            subprocess.run(command, check=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise MountError(f"Failed to mount share: {exc}") from exc

        self._mounted = True
        logger.info("Mounted %s to %s", self._config.server, self.mount_point)

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            if not self._mounted:
                return

            logger.info("Unmounting %s...", self.mount_point)
            try:
                subprocess.run(["umount", str(self.mount_point)], check=True)
            except (OSError, subprocess.CalledProcessError) as exc:
                logger.warning("Failed to unmount: %s", exc)
            else:
                logger.info("Successfully unmounted %s", self.mount_point)
            self._mounted = False
