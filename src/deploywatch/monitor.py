"""Filesystem monitoring loop with a simple polling backend."""
from __future__ import annotations

import logging
import os
import stat
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import MonitorConfig
from .events import EventBus, EventType, FileEvent, FileState, Snapshot

logger = logging.getLogger(__name__)


@dataclass
class MonitorStats:
    """Counters emitted by the monitor for observability."""

    cycles: int = 0
    events_emitted: int = 0


class DirectoryMonitor:
    """Polls a directory tree and publishes change events on a bus.

    Scans run strictly one after another on the thread calling :meth:`run`.
    Every event of a scan is delivered before the next cycle starts, so a slow
    subscriber postpones the next scan instead of overlapping with it.
    """

    def __init__(self, config: MonitorConfig, bus: Optional[EventBus] = None):
        self._config = config
        self.bus = bus if bus is not None else EventBus()
        self._stop_event = threading.Event()
        self._snapshot: Snapshot = {}
        self._primed = False
        self._stats = MonitorStats()

    @property
    def root_path(self) -> Path:
        return self._config.root_path

    @property
    def stats(self) -> MonitorStats:
        return self._stats

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    def run(self) -> None:
        """Run the monitoring loop until stopped."""

        logger.info("Starting to poll %s every %ss", self._config.root_path, self._config.poll_interval)
        try:
            self.scan_once()
            while not self._stop_event.wait(self._config.poll_interval):
                start_time = time.monotonic()
                self.scan_once()
                logger.debug("Scan finished in %.3fs", time.monotonic() - start_time)
        except KeyboardInterrupt:
            logger.info("Monitor interrupted by user")
        finally:
            logger.info(
                "Monitor stopped after %s cycles, %s events",
                self._stats.cycles,
                self._stats.events_emitted,
            )

    def stop(self) -> None:
        """Signal the monitor to stop at the next opportunity."""

        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def scan_once(self) -> List[FileEvent]:
        """Take a snapshot, publish its differences and make it current.

        The first call only establishes the baseline and publishes nothing.
        """

        new_snapshot = scan_tree(self._config.root_path)
        events = diff_snapshots(
            self._snapshot, new_snapshot, initial=not self._primed, root=self._config.root_path
        )
        for event in events:
            self.bus.notify(event)
        self._snapshot = new_snapshot
        self._primed = True
        self._stats.cycles += 1
        self._stats.events_emitted += len(events)
        return events


def scan_tree(root: Path) -> Snapshot:
    """Map every regular file below ``root`` to its size and mtime.

    Unreadable entries are logged and skipped, so an error part-way through
    yields a partial snapshot rather than an exception.
    """

    if not root.exists():
        logger.warning("Root path %s does not exist; skipping scan", root)
        return {}

    def _on_walk_error(exc: OSError) -> None:
        logger.error("Error accessing path %s: %s", exc.filename, exc)

    results: Snapshot = {}
    for dirpath, _dirnames, filenames in os.walk(root, onerror=_on_walk_error):
        for name in filenames:
            path = Path(dirpath) / name
            try:
                st = path.stat()
            except OSError as exc:
                logger.warning("Error accessing path %s: %s", path, exc)
                continue
            if not stat.S_ISREG(st.st_mode):
                continue
            rel_path = path.relative_to(root).as_posix()
            results[rel_path] = FileState(size=st.st_size, mtime=st.st_mtime)
    return results


def diff_snapshots(
    old: Snapshot, new: Snapshot, *, initial: bool = False, root: Optional[Path] = None
) -> List[FileEvent]:
    """Compare two complete snapshots.

    Creations and modifications come in scan order, deletions after them.
    With ``initial`` set only modifications are reported, which against an
    empty baseline means nothing at all. Created and modified events carry an
    absolute path when ``root`` is given.
    """

    events: List[FileEvent] = []

    for rel_path, state in new.items():
        previous = old.get(rel_path)
        if previous is None:
            if initial:
                continue
            logger.info("NEW FILE: %s (size: %s bytes)", rel_path, state.size)
            events.append(_change_event(EventType.CREATED, rel_path, state, root))
        elif previous != state:
            logger.info("MODIFIED: %s (size: %s bytes, modified: %s)", rel_path, state.size, state.mtime)
            events.append(_change_event(EventType.MODIFIED, rel_path, state, root))

    if not initial:
        for rel_path in old:
            if rel_path not in new:
                logger.info("DELETED: %s", rel_path)
                events.append(FileEvent(event_type=EventType.DELETED, rel_path=rel_path))

    return events


def _change_event(event_type: EventType, rel_path: str, state: FileState, root: Optional[Path]) -> FileEvent:
    return FileEvent(
        event_type=event_type,
        rel_path=rel_path,
        path=(root / rel_path) if root is not None else None,
        size=state.size,
        mtime=state.mtime,
    )
