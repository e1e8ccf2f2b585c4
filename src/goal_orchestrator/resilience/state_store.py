"""Injected key-value store for resilience state (breakers, histories, checkpoints)."""

from __future__ import annotations

import threading
from typing import Any, Protocol


class StateStore(Protocol):
    """Namespaced key-value store.

    `items` returns entries in insertion order; re-putting an existing key
    keeps its original position.
    """

    def get(self, namespace: str, key: str) -> Any | None: ...

    def put(self, namespace: str, key: str, value: Any) -> None: ...

    def delete(self, namespace: str, key: str) -> bool: ...

    def items(self, namespace: str) -> list[tuple[str, Any]]: ...

    def clear(self, namespace: str) -> None: ...


class InMemoryStateStore:
    """Process-local `StateStore` guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Any]] = {}

    def get(self, namespace: str, key: str) -> Any | None:
        with self._lock:
            return self._data.get(namespace, {}).get(key)

    def put(self, namespace: str, key: str, value: Any) -> None:
        with self._lock:
            self._data.setdefault(namespace, {})[key] = value

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            bucket = self._data.get(namespace)
            if bucket is None or key not in bucket:
                return False
            del bucket[key]
            return True

    def items(self, namespace: str) -> list[tuple[str, Any]]:
        with self._lock:
            return list(self._data.get(namespace, {}).items())

    def clear(self, namespace: str) -> None:
        with self._lock:
            self._data.pop(namespace, None)
