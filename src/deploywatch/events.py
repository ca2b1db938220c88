"""Event models and the synchronous subscriber bus."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of filesystem changes emitted by the monitor."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileState:
    """Observable metadata of one file at scan time."""

    size: int
    mtime: float


# relative posix path -> state
Snapshot = Dict[str, FileState]


@dataclass(frozen=True)
class FileEvent:
    """A single change observed in the watched directory tree.

    Deleted events only carry ``rel_path``; the file is gone so there is no
    absolute path, size or modification time to report.
    """

    event_type: EventType
    rel_path: str
    path: Optional[Path] = None
    size: Optional[int] = None
    mtime: Optional[float] = None

    def __str__(self) -> str:
        details = [f"type={self.event_type.value}", f"path={self.rel_path}"]
        if self.size is not None:
            details.append(f"size={self.size}")
        if self.mtime is not None:
            details.append(f"mtime={self.mtime}")
        return ", ".join(details)


EventHandler = Callable[[FileEvent], None]


class EventBus:
    """Ordered list of subscribers notified synchronously, one after another.

    Handler exceptions are not caught here; a subscriber that needs to survive
    its own failures must handle them itself.
    """

    def __init__(self) -> None:
        self._subscribers: List[EventHandler] = []

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, handler: EventHandler) -> None:
        self._subscribers.append(handler)
        logger.info("Subscribed handler (total: %s)", len(self._subscribers))

    def notify(self, event: FileEvent) -> None:
        for index, handler in enumerate(self._subscribers, start=1):
            logger.debug("Notifying subscriber %s for %s (%s)", index, event.rel_path, event.event_type.value)
            handler(event)
