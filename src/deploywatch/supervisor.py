"""Keeps a single child process in sync with the watched source tree."""
from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

from .config import CONFIG_FILENAME, ConfigError, DeployConfig, SupervisorConfig, load_deploy_config
from .copier import mirror_tree
from .events import FileEvent

logger = logging.getLogger(__name__)


class SupervisorError(Exception):
    """Raised when the supervised process cannot be managed."""


class DeployError(SupervisorError):
    """Raised when copying the source or starting the executable fails."""


class DeploySupervisor:
    """Copies the source subtree and owns the lifecycle of one child process.

    ``deploy`` and ``kill`` each run under ``self._lock``; ``redeploy``
    additionally holds its own lock so two redeploy requests never interleave
    their kill and deploy steps. The exit watcher thread only ever flips
    ``running`` back to ``False`` for the handle it was started for.
    """

    def __init__(
        self,
        root_path: Path,
        settings: Optional[SupervisorConfig] = None,
        config: Optional[DeployConfig] = None,
    ):
        self.root_path = root_path
        self.settings = settings or SupervisorConfig()
        # Startup failure propagates as ConfigError.
        self.config = config if config is not None else load_deploy_config(root_path)
        self._lock = threading.Lock()
        self._redeploy_lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._running = False

    @property
    def process(self) -> Optional[subprocess.Popen]:
        with self._lock:
            return self._process

    def handle(self, event: FileEvent) -> None:
        """Event bus subscriber: react to config and source changes."""

        logger.info("Received event: %s", event)
        if event.rel_path == CONFIG_FILENAME:
            self.reload_config()
            self._redeploy_logged()
            return
        if self.is_source_file(event.rel_path):
            logger.info("Source file changed: %s, redeploying...", event.rel_path)
            self._redeploy_logged()

    def is_source_file(self, rel_path: str) -> bool:
        """Whether ``rel_path`` lies inside the configured source location.

        Matching is per path component, so ``src`` covers ``src`` and
        ``src/a.py`` but not ``src2/a.py``. An empty or ``.`` source location
        covers the whole watched tree.
        """
        source_parts = _clean_parts(self.config.source_location)
        path_parts = _clean_parts(rel_path)
        return path_parts[: len(source_parts)] == source_parts

    def reload_config(self) -> bool:
        """Re-read ``deploy.json``; keep the current value when it is unusable."""

        try:
            self.config = load_deploy_config(self.root_path)
        except ConfigError as exc:
            logger.error("Keeping previous deploy config: %s", exc)
            return False
        return True

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def deploy(self) -> None:
        """Copy the source subtree to the deploy location and start the executable."""

        with self._lock:
            if self._process is not None and self._process.poll() is None:
                raise SupervisorError(f"Process {self._process.pid} is still running; kill it first")

            config = self.config
            source = self.root_path / config.source_location
            destination = config.deploy_location

            logger.info("Copying from %s to %s", source, destination)
            try:
                mirror_tree(source, destination)
            except OSError as exc:
                raise DeployError(f"failed to copy source: {exc}") from exc

            command = [config.executable, *config.args]
            logger.info("Starting executable: %s", " ".join(command))
            try:
                process = subprocess.Popen(command, cwd=str(destination), env=self.build_environment())
            except (OSError, ValueError) as exc:
                raise DeployError(f"failed to start executable: {exc}") from exc

            self._process = process
            self._running = True
            logger.info("Process started with PID: %s", process.pid)

        watcher = threading.Thread(
            target=self._watch_exit,
            args=(process,),
            daemon=True,
            name=f"ExitWatcher-{process.pid}",
        )
        watcher.start()

    def kill(self) -> None:
        """Terminate the current process, escalating to SIGKILL after the grace period."""

        with self._lock:
            process = self._process
            if process is None:
                logger.info("No process to kill")
                return

            try:
                logger.info("Killing process PID: %s", process.pid)
                try:
                    process.terminate()
                except OSError as exc:
                    logger.warning("Failed to send SIGTERM: %s", exc)
                    self._force_kill(process)
                    return

                try:
                    process.wait(timeout=self.settings.grace_period)
                    logger.info("Process terminated successfully")
                except subprocess.TimeoutExpired:
                    logger.warning("Process didn't exit gracefully, force killing...")
                    self._force_kill(process)
            finally:
                self._process = None
                self._running = False

    def redeploy(self) -> None:
        """Kill the current process, pause briefly, then deploy again."""

        with self._redeploy_lock:
            logger.info("Starting redeployment...")
            try:
                self.kill()
            except SupervisorError as exc:
                logger.error("Error killing existing process: %s", exc)

            # let ports and file handles of the old process be released
            time.sleep(self.settings.settle_delay)
            self.deploy()

    def build_environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        for entry in self.config.env_variables:
            key, sep, value = entry.partition("=")
            if not sep or not key:
                logger.warning("Ignoring malformed environment entry %r (expected KEY=VALUE)", entry)
                continue
            env[key] = value

        env["DISPLAY"] = self.settings.display
        env["XAUTHORITY"] = self.settings.xauthority or f"/home/{os.environ.get('USER', '')}/.Xauthority"
        return env

    def _redeploy_logged(self) -> None:
        try:
            self.redeploy()
        except SupervisorError as exc:
            logger.error("Redeploy failed: %s", exc)

    def _force_kill(self, process: subprocess.Popen) -> None:
        try:
            process.kill()
            process.wait(timeout=self.settings.grace_period)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise SupervisorError(f"failed to kill process {process.pid}: {exc}") from exc
        logger.info("Process %s killed", process.pid)

    def _watch_exit(self, process: subprocess.Popen) -> None:
        returncode = process.wait()
        with self._lock:
            if self._process is process:
                self._running = False

        if returncode != 0:
            logger.warning("Process %s exited with error: status %s", process.pid, returncode)
        else:
            logger.info("Process %s exited normally", process.pid)


def _clean_parts(path: str) -> List[str]:
    return [part for part in PurePosixPath(path.replace("\\", "/")).parts if part not in ("", ".")]
