import threading
from collections.abc import Iterator, MutableMapping
from typing import Generic, TypeVar

from pydantic import BaseModel

K = TypeVar("K")
V = TypeVar("V", bound=BaseModel)


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database with per-key versions.

    Values are copied on the way in and out so that a record read by one
    caller can never be mutated underneath another. Every write bumps the
    key's version; `compare_and_set` only writes when the caller still holds
    the latest version.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, tuple[int, V]] = {}
        self._lock = threading.Lock()

    def put(self, key: K, value: V) -> int:
        with self._lock:
            version = self._version(key) + 1
            self._store[key] = (version, value.model_copy(deep=True))
            return version

    def get(self, key: K) -> V | None:
        value, _ = self.get_versioned(key)
        return value

    def get_versioned(self, key: K) -> tuple[V | None, int]:
        """
        Return a private copy of the value and the version it was read at.
        A missing key reads as (None, 0).
        """
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None, 0
            version, value = entry
            return value.model_copy(deep=True), version

    def compare_and_set(self, key: K, expected_version: int, value: V) -> bool:
        """
        Atomically write value if the key is still at expected_version.
        Returns True if the write happened, False if someone else wrote first.
        Use expected_version=0 to create a key that must not exist yet.
        """
        with self._lock:
            if self._version(key) != expected_version:
                return False
            self._store[key] = (
                expected_version + 1,
                value.model_copy(deep=True),
            )
            return True

    def delete(self, key: K) -> None:
        with self._lock:
            self._store.pop(key, None)

    def all(self) -> list[V]:
        with self._lock:
            return [v.model_copy(deep=True) for _, v in self._store.values()]

    def items_with_prefix(self, prefix: str) -> list[tuple[K, V]]:
        with self._lock:
            return [
                (k, v.model_copy(deep=True))
                for k, (_, v) in self._store.items()
                if str(k).startswith(prefix)
            ]

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __iter__(self) -> Iterator[V]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._store)

    def _version(self, key: K) -> int:
        entry = self._store.get(key)
        return entry[0] if entry is not None else 0
