"""In-memory translation cache with insertion-order eviction."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable

KEY_PREFIX_CHARS = 200


class TranslationCache:
    def __init__(
        self,
        max_size: int = 500,
        ttl_sec: float = 3600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_size = max(1, int(max_size))
        self._ttl_sec = float(ttl_sec)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def make_key(content: str, source_language: str, target_language: str) -> str:
        return f"{source_language}:{target_language}:{content[:KEY_PREFIX_CHARS]}"

    def get(self, content: str, source_language: str, target_language: str) -> str | None:
        key = self.make_key(content, source_language, target_language)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            translation, stored_at = entry
            if self._clock() - stored_at > self._ttl_sec:
                del self._entries[key]
                return None
            return translation

    def put(self, content: str, source_language: str, target_language: str, translation: str) -> None:
        key = self.make_key(content, source_language, target_language)
        with self._lock:
            # Re-putting a key keeps its original insertion slot.
            if key not in self._entries and len(self._entries) >= self._max_size:
                self._entries.popitem(last=False)
            self._entries[key] = (translation, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
