"""
Deduplication of branched conversation entries.

Forked conversations copy the same billable event into several log entries.
Every record is given a canonical key and accepted at most once; the ledger
of accepted keys is the only test for "seen before".

Classification order:
1. Synthetic records are excluded before anything else
2. Canonical key from (message id, request id), else (message id, session id)
3. Atomic check-and-insert against the ledger
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Set

from ccost.config.logger import get_logger
from ccost.storage.models import UsageRecord
from ccost.storage.repository import LedgerStore

LOGGER = get_logger("ccost.dedup")

REQUEST_KEY_TAG = "req"
SESSION_KEY_TAG = "session"


class Classification(Enum):
    """Outcome of deduplicating one record."""
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    EXCLUDED_SYNTHETIC = "excluded_synthetic"
    EXCLUDED_NO_KEY = "excluded_no_key"


def canonical_key(record: UsageRecord) -> Optional[str]:
    """Compute the tagged canonical key for a record.

    Returns:
        ``req:<message_id>:<request_id>`` when both are present, else
        ``session:<message_id>:<session_id>`` when both are present,
        else None
    """
    if record.message_id and record.request_id:
        return f"{REQUEST_KEY_TAG}:{record.message_id}:{record.request_id}"
    if record.message_id and record.session_id:
        return f"{SESSION_KEY_TAG}:{record.message_id}:{record.session_id}"
    return None


@dataclass
class DedupStats:
    """Classification counters for one run (or one worker of a run)."""
    total: int = 0
    accepted: int = 0
    duplicates: int = 0
    excluded_synthetic: int = 0
    excluded_no_key: int = 0

    def record(self, classification: Classification) -> None:
        self.total += 1
        if classification is Classification.ACCEPTED:
            self.accepted += 1
        elif classification is Classification.DUPLICATE:
            self.duplicates += 1
        elif classification is Classification.EXCLUDED_SYNTHETIC:
            self.excluded_synthetic += 1
        else:
            self.excluded_no_key += 1

    def merge(self, other: "DedupStats") -> None:
        self.total += other.total
        self.accepted += other.accepted
        self.duplicates += other.duplicates
        self.excluded_synthetic += other.excluded_synthetic
        self.excluded_no_key += other.excluded_no_key

    @property
    def duplicate_rate(self) -> float:
        """Duplicates as a fraction of keyed, non-synthetic records."""
        keyed = self.accepted + self.duplicates
        if keyed == 0:
            return 0.0
        return self.duplicates / keyed


class Deduplicator:
    """Classifies records against a shared ledger of accepted keys.

    Safe to share between worker threads: the lookup and the insert for a key
    happen under one lock, so no two records with the same key can both be
    accepted.
    """

    def __init__(self, store: Optional[LedgerStore] = None, known_keys: Iterable[str] = ()):
        """Initialize the deduplicator.

        Args:
            store: Persistent ledger; its existing keys are loaded now. When
                omitted the ledger lives only in memory for this process.
            known_keys: Extra keys to treat as already accepted
        """
        self._store = store
        self._lock = threading.Lock()
        self._keys: Set[str] = set(known_keys)
        if store is not None:
            self._keys.update(store.load_keys())
        LOGGER.debug("Ledger loaded", extra={"keys": len(self._keys)})

    def classify(self, record: UsageRecord) -> Classification:
        """Classify a record, inserting its key into the ledger when accepted.

        Raises:
            LedgerWriteError: If the ledger cannot persist a newly accepted key
        """
        if record.is_synthetic:
            return Classification.EXCLUDED_SYNTHETIC

        key = canonical_key(record)
        if key is None:
            return Classification.EXCLUDED_NO_KEY

        with self._lock:
            if key in self._keys:
                return Classification.DUPLICATE
            if self._store is not None:
                self._store.insert_key(key, project=record.project, record_timestamp=record.timestamp)
            self._keys.add(key)
        return Classification.ACCEPTED

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def flush(self) -> None:
        """Commit pending ledger inserts to the persistent store."""
        if self._store is None:
            return
        with self._lock:
            self._store.flush()
