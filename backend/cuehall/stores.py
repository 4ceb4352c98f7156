"""
Process-local short-lived state.

WHY: Nonce replay tracking and light-test auto-revert timers need fast
lookups scoped to the one authoritative server process. Both are hidden
behind small interfaces so a shared cache (with atomic check-and-set) can
replace them without touching callers.

SCALING LIMITATION: these implementations only see requests handled by the
current process. Running more than one instance breaks replay protection and
test-timer cancellation until they are swapped for a shared store.
"""

from __future__ import annotations

import threading
from typing import Any, Protocol


class NonceStore(Protocol):
    def get(self, nonce: str) -> float | None: ...

    def add_if_absent(self, nonce: str, expires_at: float) -> bool: ...

    def sweep(self, now: float) -> int: ...


class InMemoryNonceStore:
    """
    nonce -> expiry (unix seconds).

    add_if_absent is the atomic check-and-set; sweep drops expired entries.
    """

    def __init__(self):
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def get(self, nonce: str) -> float | None:
        with self._lock:
            return self._entries.get(nonce)

    def add_if_absent(self, nonce: str, expires_at: float) -> bool:
        with self._lock:
            if nonce in self._entries:
                return False
            self._entries[nonce] = expires_at
            return True

    def sweep(self, now: float) -> int:
        with self._lock:
            expired = [n for n, expires_at in self._entries.items() if expires_at < now]
            for nonce in expired:
                del self._entries[nonce]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ScheduledTaskRegistry:
    """
    resource key -> pending cancellable task (anything with .cancel()).

    replace() cancels and removes the prior entry before storing the new one,
    under one lock. pop_if() lets a firing callback claim its own entry and
    bail out when it has been superseded.
    """

    def __init__(self):
        self._tasks: dict[Any, tuple[str, Any]] = {}
        self._lock = threading.Lock()

    def replace(self, key: Any, token: str, task: Any) -> None:
        with self._lock:
            previous = self._tasks.pop(key, None)
            if previous is not None:
                previous[1].cancel()
            self._tasks[key] = (token, task)

    def cancel(self, key: Any) -> bool:
        with self._lock:
            entry = self._tasks.pop(key, None)
        if entry is None:
            return False
        entry[1].cancel()
        return True

    def pop_if(self, key: Any, token: str) -> bool:
        with self._lock:
            entry = self._tasks.get(key)
            if entry is None or entry[0] != token:
                return False
            del self._tasks[key]
            return True

    def token_for(self, key: Any) -> str | None:
        with self._lock:
            entry = self._tasks.get(key)
            return entry[0] if entry else None

    def clear(self) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for _, task in tasks:
            task.cancel()
