"""
Keyed storage behind the session registry, rate limiter and CSRF guard.

Single operations are atomic. Sequences of operations (read, modify, write
back) are not: two requests racing on one key can both see the old value.
That is acceptable for one process; a multi-process deployment needs a
store backed by something with atomic increment / compare-and-swap.
"""
import threading


class KeyValueStore:
    def get(self, key):
        raise NotImplementedError

    def set(self, key, value) -> None:
        raise NotImplementedError

    def delete(self, key) -> bool:
        raise NotImplementedError

    def items(self):
        """Snapshot of (key, value) pairs, safe to delete from while iterating."""
        raise NotImplementedError

    def __len__(self) -> int:
        raise NotImplementedError


class InMemoryStore(KeyValueStore):
    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._data.get(key)

    def set(self, key, value) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def items(self):
        with self._lock:
            return list(self._data.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
