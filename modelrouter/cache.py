import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .schemas import Message


CACHE_WINDOW = 4


def digest_messages(messages: Iterable[Message], discriminator: str) -> str:
    parts = []
    for msg in messages:
        parts.append(
            {
                "role": msg.role,
                "content": msg.content,
                "images": [hashlib.sha1(img.data).hexdigest() for img in msg.images],
            }
        )
    content = json.dumps(parts, ensure_ascii=True, sort_keys=True) + discriminator
    return hashlib.md5(content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    inserted_at: float


class ResponseCache:
    """Bounded TTL store; evicts the oldest insertion first when full."""

    def __init__(
        self,
        ttl_s: float = 3600.0,
        max_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = ttl_s
        self.max_size = max(1, int(max_size))
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at > self.ttl_s

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self._expired(entry, self.clock()):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            # Re-inserting keeps FIFO order by latest insertion time.
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = CacheEntry(value=value, inserted_at=self.clock())

    def clear_expired(self) -> int:
        with self._lock:
            now = self.clock()
            expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list:
        with self._lock:
            return list(self._entries.keys())
