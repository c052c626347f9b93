"""
Per-loan mutual exclusion

Mutating operations on the same loan run one at a time; different loans
never wait on each other. Reads do not take these locks.

Locks live in the registry only while some thread holds or waits on them,
so the registry stays as small as the number of keys in use.
"""

from contextlib import contextmanager
from threading import RLock
from typing import Dict, Iterator, List


class LoanLockManager:
    """Registry of one re-entrant lock per key (loan id or facility:<id>)"""

    def __init__(self):
        # key -> [lock, number of threads holding or waiting]
        self._locks: Dict[str, List] = {}
        self._registry_lock = RLock()

    def _acquire_entry(self, key: str) -> List:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry

    def _release_entry(self, key: str, entry: List) -> None:
        with self._registry_lock:
            entry[1] -= 1
            if entry[1] == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the key's lock for the duration of the block"""
        entry = self._acquire_entry(key)
        try:
            with entry[0]:
                yield
        finally:
            self._release_entry(key, entry)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
