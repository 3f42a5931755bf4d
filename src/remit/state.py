"""
Keyed record stores persisted as a single JSON document.

Each service owns one document (merchant: orders + idempotency, guardian:
policies). The document is loaded wholesale at startup and rewritten
wholesale, atomically, on every mutation.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

from .errors import ConfigurationError
from .storage import atomic_write_json, read_json

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StateDocument:
    """In-memory view of a persisted JSON document made of named collections."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._lock = threading.RLock()
        self._collections: dict[str, KeyedCollection[Any]] = {}
        self._raw = self._load()

    def _load(self) -> dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            raw = read_json(self.path)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load state file at {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"State file at {self.path} is not a JSON object")
        return raw

    def collection(
        self,
        name: str,
        decode: Callable[[dict], T],
        encode: Callable[[T], dict],
    ) -> "KeyedCollection[T]":
        """Register a collection and hydrate it from the loaded document."""
        with self._lock:
            if name in self._collections:
                raise ValueError(f"Collection already registered: {name}")
            records: dict[str, T] = {}
            for key, value in dict(self._raw.get(name, {})).items():
                try:
                    records[key] = decode(value)
                except (KeyError, TypeError, ValueError) as e:
                    raise ConfigurationError(
                        f"Corrupt {name} record {key!r} in {self.path}: {e}"
                    ) from e
            coll = KeyedCollection(self, records, encode)
            self._collections[name] = coll
            return coll

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the document write lock for a read-modify-write sequence."""
        with self._lock:
            yield

    def save(self) -> None:
        with self._lock:
            if self.path is None:
                return
            payload = {
                name: coll.encode_all()
                for name, coll in self._collections.items()
            }
            atomic_write_json(self.path, payload)


class KeyedCollection(Generic[T]):
    """Keyed map with get/put/scan; never exposes the backing dict."""

    def __init__(self, document: StateDocument, records: dict[str, T], encode: Callable[[T], dict]):
        self._document = document
        self._records = records
        self._encode = encode

    def get(self, key: str) -> Optional[T]:
        with self._document.transaction():
            return self._records.get(key)

    def put(self, key: str, value: T) -> None:
        with self._document.transaction():
            previous = self._records.get(key)
            self._records[key] = value
            try:
                self._document.save()
            except OSError:
                # memory must match disk
                if previous is None:
                    del self._records[key]
                else:
                    self._records[key] = previous
                raise

    def scan(self) -> list[tuple[str, T]]:
        with self._document.transaction():
            return list(self._records.items())

    def encode_all(self) -> dict[str, dict]:
        return {key: self._encode(value) for key, value in self._records.items()}

    def __contains__(self, key: object) -> bool:
        with self._document.transaction():
            return key in self._records

    def __len__(self) -> int:
        with self._document.transaction():
            return len(self._records)


class _KeyedLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLocks:
    """Per-key mutual exclusion for read-check-write sequences.

    A key's lock is dropped once no thread holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, _KeyedLock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyedLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
