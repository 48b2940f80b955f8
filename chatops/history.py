"""Per-thread rolling conversation history (in memory, lost on restart)."""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

log = logging.getLogger(__name__)

ROLES = ("user", "assistant", "tool")
MAX_THREADS = 1000


@dataclass
class HistoryEntry:
    role: str
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConversationHistory:
    """Bounded ring of entries; the oldest entry is evicted when full."""

    def __init__(self, limit: int):
        self._entries: deque[HistoryEntry] = deque(maxlen=limit)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def limit(self) -> int:
        return self._entries.maxlen

    def add(self, role: str, text: str) -> HistoryEntry:
        if role not in ROLES:
            raise ValueError(f"Unknown history role '{role}'")
        entry = HistoryEntry(role, text)
        self._entries.append(entry)
        return entry

    def entries(self) -> list[HistoryEntry]:
        return list(self._entries)

    def clear(self):
        self._entries.clear()


class HistoryStore:
    """Histories by thread id. Past ``max_threads`` the least recently used thread is forgotten."""

    def __init__(self, limit: int = 50, max_threads: int = MAX_THREADS):
        self.limit = limit
        self.max_threads = max_threads
        self._threads: OrderedDict[str, ConversationHistory] = OrderedDict()

    def __len__(self) -> int:
        return len(self._threads)

    def get(self, thread_id: str) -> ConversationHistory:
        history = self._threads.get(thread_id)
        if history is not None:
            self._threads.move_to_end(thread_id)
            return history
        history = self._threads[thread_id] = ConversationHistory(self.limit)
        while len(self._threads) > self.max_threads:
            evicted, _ = self._threads.popitem(last=False)
            log.debug(f"Forgetting history of idle thread {evicted}")
        return history

    def clear(self, thread_id: str) -> bool:
        """Forget a thread. Returns True if it had any history."""
        return self._threads.pop(thread_id, None) is not None

    def threads(self) -> list[str]:
        return list(self._threads)
