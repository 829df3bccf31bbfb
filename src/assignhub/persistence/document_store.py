"""Document store — transactional read-modify-write over versioned documents.

Every mutating operation on a user, assignment, wallet request or the
finance summary runs inside a StoreTransaction:

1. Reads record the version of each document they observe.
2. Writes are buffered (deep copies) and invisible to other transactions.
3. commit() checks every observed version is still current. If any
   document changed underneath, Conflict is raised and nothing is applied.

run() wraps this in a bounded retry: each attempt starts a fresh
transaction and re-reads, so a retry never reapplies a stale delta.

Optional file persistence writes a JSON snapshot after every commit.
This is a simple single-node store; production deployments would put
a database with native transactions behind the same interface.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from assignhub.errors import Conflict, NotFound
from assignhub.persistence.codec import CODECS

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Collection names
USERS = "users"
ASSIGNMENTS = "assignments"
FINANCE = "finance"
DEPOSITS = "deposits"
WITHDRAWALS = "withdrawals"
PROMOTIONS = "promotions"
REPORTS = "reports"

FINANCE_SUMMARY_ID = "summary"
REFERRAL_PROMOTION_ID = "referral"

_MISSING = 0


class StoreTransaction:
    """A single optimistic read-modify-write unit against a DocumentStore.

    Reads see this transaction's own buffered writes first. Repeated reads
    of one document return the same private object, so every helper in a
    unit of work mutates a single copy.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._reads: dict[tuple[str, str], int] = {}
        self._cache: dict[tuple[str, str], Optional[Any]] = {}
        self._writes: dict[tuple[str, str], Any] = {}
        self._deletes: set[tuple[str, str]] = set()
        self._committed = False

    def get(self, collection: str, doc_id: str) -> Optional[Any]:
        """Return a private copy of a document, or None if absent."""
        key = (collection, doc_id)
        if key in self._deletes:
            return None
        if key in self._writes:
            return self._writes[key]
        if key not in self._cache:
            version, doc = self._store._read(collection, doc_id)
            self._reads.setdefault(key, version)
            self._cache[key] = doc
        return self._cache[key]

    def require(self, collection: str, doc_id: str, label: str = "") -> Any:
        """Like get(), but raise NotFound when the document is absent."""
        doc = self.get(collection, doc_id)
        if doc is None:
            name = label or collection.rstrip("s").capitalize()
            raise NotFound(f"{name} not found: {doc_id}")
        return doc

    def query(
        self, collection: str, predicate: Callable[[Any], bool],
    ) -> list[Any]:
        """Return private copies of all documents matching predicate."""
        results = []
        for doc_id in self._store._ids(collection):
            doc = self.get(collection, doc_id)
            if doc is not None and predicate(doc):
                results.append(doc)
        for (coll, doc_id), doc in self._writes.items():
            if coll == collection and doc_id not in self._store._ids(collection):
                if predicate(doc):
                    results.append(doc)
        return results

    def put(self, collection: str, doc_id: str, doc: Any) -> None:
        key = (collection, doc_id)
        self._deletes.discard(key)
        self._writes[key] = doc

    def delete(self, collection: str, doc_id: str) -> None:
        key = (collection, doc_id)
        if key not in self._reads:
            self._reads[key] = self._store._version(collection, doc_id)
        self._writes.pop(key, None)
        self._deletes.add(key)

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("Transaction already committed")
        self._store._commit(self._reads, self._writes, self._deletes)
        self._committed = True


class DocumentStore:
    """In-process versioned document store.

    Usage:
        store = DocumentStore(Path("data/state.json"))
        user = store.run(lambda txn: _credit(txn, "u1", Decimal("100")))

        # Read-only snapshot, outside any transaction:
        assignment = store.snapshot("assignments", "A-1")
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        max_attempts: int = 5,
    ) -> None:
        self._path = storage_path
        self._max_attempts = max_attempts
        self._docs: dict[str, dict[str, Any]] = {}
        # Versions survive deletion so a re-created document never reuses one
        self._versions: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()
        self.persistence_degraded = False
        if storage_path is not None and storage_path.exists():
            self._load()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def transaction(self) -> StoreTransaction:
        return StoreTransaction(self)

    def run(
        self,
        fn: Callable[[StoreTransaction], T],
        max_attempts: Optional[int] = None,
    ) -> T:
        """Run fn in a fresh transaction, retrying the whole unit on Conflict.

        Domain errors raised by fn abort the transaction and propagate
        unchanged. After the last failed attempt a Conflict asking the
        actor to try again is raised.
        """
        attempts = max_attempts or self._max_attempts
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(attempts),
                retry=retry_if_exception_type(Conflict),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                reraise=True,
            ):
                with attempt:
                    txn = self.transaction()
                    result = fn(txn)
                    txn.commit()
        except Conflict as e:
            logger.warning("Transaction abandoned after %d attempts: %s", attempts, e)
            raise Conflict(
                "This item was updated by someone else at the same time. "
                "Please try again."
            ) from e
        return result

    def snapshot(self, collection: str, doc_id: str) -> Optional[Any]:
        """Return a detached copy of the committed document, or None."""
        _, doc = self._read(collection, doc_id)
        return doc

    def all(self, collection: str) -> list[Any]:
        """Return detached copies of every committed document in collection."""
        with self._lock:
            docs = list(self._docs.get(collection, {}).values())
        return [copy.deepcopy(d) for d in docs]

    def count(self, collection: str) -> int:
        return len(self._docs.get(collection, {}))

    def version(self, collection: str, doc_id: str) -> int:
        return self._version(collection, doc_id)

    # ------------------------------------------------------------------
    # Internals used by StoreTransaction
    # ------------------------------------------------------------------

    def _read(self, collection: str, doc_id: str) -> tuple[int, Optional[Any]]:
        with self._lock:
            version = self._versions.get((collection, doc_id), _MISSING)
            doc = self._docs.get(collection, {}).get(doc_id)
            return version, copy.deepcopy(doc)

    def _version(self, collection: str, doc_id: str) -> int:
        with self._lock:
            return self._versions.get((collection, doc_id), _MISSING)

    def _ids(self, collection: str) -> list[str]:
        with self._lock:
            return list(self._docs.get(collection, {}).keys())

    def _commit(
        self,
        reads: dict[tuple[str, str], int],
        writes: dict[tuple[str, str], Any],
        deletes: set[tuple[str, str]],
    ) -> None:
        with self._lock:
            for key, seen in reads.items():
                current = self._versions.get(key, _MISSING)
                if current != seen:
                    raise Conflict(
                        f"Concurrent modification of {key[0]}/{key[1]} "
                        f"(read v{seen}, now v{current})"
                    )
            for (collection, doc_id), doc in writes.items():
                self._docs.setdefault(collection, {})[doc_id] = copy.deepcopy(doc)
                self._bump(collection, doc_id)
            for collection, doc_id in deletes:
                if self._docs.get(collection, {}).pop(doc_id, None) is not None:
                    self._bump(collection, doc_id)
            if self._path is not None and (writes or deletes):
                try:
                    self._save()
                except OSError as e:
                    # Commit already applied in memory; snapshot is stale
                    self.persistence_degraded = True
                    logger.error("Snapshot write failed, store degraded: %s", e)

    def _bump(self, collection: str, doc_id: str) -> None:
        key = (collection, doc_id)
        self._versions[key] = self._versions.get(key, _MISSING) + 1

    # ------------------------------------------------------------------
    # File persistence
    # ------------------------------------------------------------------

    def _iter_encoded(self) -> Iterator[tuple[str, str, dict[str, Any]]]:
        for collection, docs in self._docs.items():
            encode, _ = CODECS[collection]
            for doc_id, doc in docs.items():
                yield collection, doc_id, encode(doc)

    def _save(self) -> None:
        state: dict[str, Any] = {"collections": {}, "versions": {}}
        for collection, doc_id, encoded in self._iter_encoded():
            state["collections"].setdefault(collection, {})[doc_id] = encoded
        for (collection, doc_id), version in self._versions.items():
            state["versions"][f"{collection}/{doc_id}"] = version
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, sort_keys=True, ensure_ascii=False)

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            state = json.load(f)
        for collection, docs in state.get("collections", {}).items():
            _, decode = CODECS[collection]
            self._docs[collection] = {
                doc_id: decode(data) for doc_id, data in docs.items()
            }
        for key, version in state.get("versions", {}).items():
            collection, _, doc_id = key.partition("/")
            self._versions[(collection, doc_id)] = int(version)
