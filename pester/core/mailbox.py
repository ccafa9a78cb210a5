from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, List, Optional

log = logging.getLogger("pester.mailbox")

DEFAULT_MAILBOX_LIMIT = 500


class OfflineMailbox:
    """Per-user FIFO of chat messages addressed to users with no live session.

    ``limit`` caps each user's queue; once reached the oldest entry is dropped.
    ``None`` or ``0`` leaves queues unbounded. Entries never expire.
    """

    def __init__(self, limit: Optional[int] = DEFAULT_MAILBOX_LIMIT) -> None:
        if limit is not None and limit < 0:
            raise ValueError("mailbox limit must be non-negative")
        self.limit = limit or None
        self._queues: Dict[str, Deque[dict]] = {}

    def buffer(self, user_id: str, event: dict) -> None:
        queue = self._queues.get(user_id)
        if queue is None:
            queue = self._queues[user_id] = deque(maxlen=self.limit)
        if self.limit is not None and len(queue) == self.limit:
            log.warning("Mailbox of %s is full (%d); dropping oldest message", user_id, self.limit)
        queue.append(event)
        log.info("Buffered message for offline user %s (%d pending)", user_id, len(queue))

    def flush(self, user_id: str) -> List[dict]:
        queue = self._queues.pop(user_id, None)
        return list(queue) if queue else []

    def pending(self, user_id: str) -> int:
        queue = self._queues.get(user_id)
        return len(queue) if queue else 0

    def stats(self) -> Dict[str, int]:
        return {user_id: len(queue) for user_id, queue in self._queues.items()}

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._queues.values())


__all__ = ["OfflineMailbox", "DEFAULT_MAILBOX_LIMIT"]
