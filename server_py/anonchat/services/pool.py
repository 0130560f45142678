from __future__ import annotations

import random
from typing import Iterator, Optional, Set, Tuple


class WaitingPool:
    """Личности, ищущие собеседника.

    Методы синхронные: между проверкой и изменением нет точек переключения
    event loop, поэтому ``claim`` атомарен относительно других корутин.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._members: Set[str] = set()
        self._rng = rng or random.Random()

    def add(self, user_id: str) -> None:
        self._members.add(user_id)

    def remove(self, user_id: str) -> bool:
        if user_id in self._members:
            self._members.discard(user_id)
            return True
        return False

    def pick_candidate(self, excluding: str) -> Optional[str]:
        candidates = sorted(m for m in self._members if m != excluding)
        if not candidates:
            return None
        return self._rng.choice(candidates)

    def claim(self, user_id: str) -> Optional[Tuple[str, str]]:
        """Выбирает кандидата и убирает из пула обоих за один шаг."""
        if user_id not in self._members:
            return None
        candidate = self.pick_candidate(excluding=user_id)
        if candidate is None:
            return None
        self._members.discard(user_id)
        self._members.discard(candidate)
        return user_id, candidate

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._members

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._members))
