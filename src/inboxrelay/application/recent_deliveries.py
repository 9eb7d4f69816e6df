from __future__ import annotations

from typing import Iterator


class RecentDeliveries:
    """Bounded, insertion-ordered set of message ids already sent to the sink.

    Guards against overlapping polls triggering the same event twice; it is
    process-local and does not survive restarts. Once the set grows past
    ``max_size`` the oldest half is dropped.
    """

    def __init__(self, max_size: int = 1000) -> None:
        self.max_size = max_size
        self._keys: dict[str, None] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def add(self, key: str) -> None:
        if key in self._keys:
            return
        self._keys[key] = None
        if len(self._keys) > self.max_size:
            for old in list(self._keys)[: len(self._keys) // 2]:
                del self._keys[old]
