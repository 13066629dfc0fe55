"""Storage adapters backing the Flux store.

An adapter owns the in-memory :class:`~flux.models.StoreData` document and
knows how to hydrate it (``read``) and persist it (``write``). Three
variants are provided:

* :class:`MemoryAdapter` keeps everything in process memory.
* :class:`JsonFileAdapter` stores one JSON document on disk, guarded by an
  exclusive-create lock file so several processes can share it.
* :class:`DocumentAdapter` mirrors each collection into a document database
  through a Firestore-style client. Its writes complete on a background
  worker; ``write`` returns the ``Future`` and ``flush`` waits for all of
  them.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .errors import LockTimeoutError, PersistenceError
from .models import COLLECTION_TYPES, StoreData

logger = logging.getLogger("flux.adapters")


class StorageAdapter(ABC):
    """Read/write contract consumed by :class:`~flux.store.FluxStore`."""

    def __init__(self) -> None:
        self.data = StoreData()

    @abstractmethod
    def read(self) -> None:
        """Hydrate ``data`` from durable storage."""

    @abstractmethod
    def write(self) -> Optional[Future]:
        """Persist ``data``. Asynchronous adapters return the pending ``Future``."""

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every pending write has committed."""

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the backend's cross-process lock, if it has one."""
        yield

    def refresh(self) -> bool:
        """Pick up changes made by other writers. Returns True when ``data`` was replaced."""
        return False


# ------------------------------------------------------------------
# In-memory
# ------------------------------------------------------------------


class MemoryAdapter(StorageAdapter):
    """Process-local adapter. ``write`` snapshots the document so tests can inspect it."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._initial = initial
        self.persisted: Optional[Dict[str, Any]] = None
        self.write_count = 0

    def read(self) -> None:
        source = self.persisted if self.persisted is not None else self._initial
        self.data = StoreData.from_dict(json.loads(json.dumps(source)) if source else None)

    def write(self) -> None:
        self.persisted = self.data.to_dict()
        self.write_count += 1


# ------------------------------------------------------------------
# JSON file with lock
# ------------------------------------------------------------------


class JsonFileAdapter(StorageAdapter):
    """Single JSON document on local disk.

    Every read and write holds ``<file>.lock``, created with ``O_EXCL`` so
    that only one process at a time can touch the data file. A lock that
    cannot be taken within ``lock_timeout`` seconds raises
    :class:`LockTimeoutError`. A crashed holder leaves a stale lock behind
    which has to be removed by hand.

    The lock is re-entrant for the thread holding it, so a store session
    can keep it from ``refresh`` through the final ``write``. ``refresh``
    re-reads the file only when its inode, size or mtime differ from the
    version this adapter last read or wrote.
    """

    def __init__(self, path: Path | str, *, lock_timeout: float = 2.0, poll_interval: float = 0.025):
        super().__init__()
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self._holder: Optional[int] = None
        self._seen: Optional[Tuple[int, int, int]] = None

    def _stamp(self) -> Optional[Tuple[int, int, int]]:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return (stat.st_ino, stat.st_size, stat.st_mtime_ns)

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._locked():
            yield

    def refresh(self) -> bool:
        with self._locked():
            if self._stamp() == self._seen:
                return False
            logger.debug(f"Data file {self.path} changed on disk; reloading")
            self.read()
            return True

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if self._holder == threading.get_ident():
            yield
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(f"Timed out waiting for data lock: {self.lock_path}") from None
                time.sleep(self.poll_interval)
            except OSError as exc:
                raise PersistenceError(f"Cannot create lock file {self.lock_path}: {exc}") from exc
        self._holder = threading.get_ident()
        try:
            yield
        finally:
            self._holder = None
            os.close(fd)
            try:
                os.unlink(self.lock_path)
            except FileNotFoundError:
                logger.warning(f"Lock file {self.lock_path} vanished while held")

    def read(self) -> None:
        with self._locked():
            stamp = self._stamp()
            if stamp is None:
                logger.info(f"No data file at {self.path}; starting empty")
                self.data = StoreData()
                self._seen = None
                return
            try:
                document = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                raise PersistenceError(f"Cannot read data file {self.path}: {exc}") from exc
            self.data = StoreData.from_dict(document)
            self._seen = stamp

    def write(self) -> None:
        content = json.dumps(self.data.to_dict(), indent=2)
        with self._locked():
            try:
                self._atomic_write(content)
            except OSError as exc:
                raise PersistenceError(f"Cannot write data file {self.path}: {exc}") from exc
            self._seen = self._stamp()

    def _atomic_write(self, content: str) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


# ------------------------------------------------------------------
# Document database
# ------------------------------------------------------------------

COUNTERS_COLLECTION = "flux_meta"
COUNTERS_DOCUMENT = "counters"


class DocumentAdapter(StorageAdapter):
    """Mirror the store into a document database, one collection per entity type.

    ``client`` must provide the Firestore-style calls ``collection(name)``,
    ``collection(name).stream()``, ``collection(name).document(id)``,
    ``batch()``, ``batch.set(ref, data, merge=True)``, ``batch.delete(ref)``
    and ``batch.commit()``. Document ids are entity ids; the id is not
    repeated inside the document body.
    """

    def __init__(self, client: Any, *, executor: Optional[ThreadPoolExecutor] = None):
        super().__init__()
        self.client = client
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="flux-docs")
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()
        self._known_ids: Dict[str, Set[str]] = {name: set() for name in COLLECTION_TYPES}

    def read(self) -> None:
        document: Dict[str, Any] = {}
        try:
            for name in COLLECTION_TYPES:
                document[name] = [
                    {**(snapshot.to_dict() or {}), "id": snapshot.id}
                    for snapshot in self.client.collection(name).stream()
                ]
            counters = self.client.collection(COUNTERS_COLLECTION).document(COUNTERS_DOCUMENT).get()
        except Exception as exc:
            raise PersistenceError(f"Cannot read from document store: {exc}") from exc
        if getattr(counters, "exists", False):
            document["counters"] = counters.to_dict() or {}
        self.data = StoreData.from_dict(document)
        self._known_ids = {name: {item["id"] for item in document[name]} for name in COLLECTION_TYPES}
        logger.info(f"Loaded {sum(len(ids) for ids in self._known_ids.values())} documents")

    def write(self) -> Future:
        """Serialise the current state now and commit it on the background worker."""
        document = self.data.to_dict()
        upserts: Dict[str, List[Dict[str, Any]]] = {}
        deletions: Dict[str, Set[str]] = {}
        for name in COLLECTION_TYPES:
            records = document[name]
            current = {record["id"] for record in records}
            upserts[name] = records
            deletions[name] = self._known_ids[name] - current
            self._known_ids[name] = current

        future = self._executor.submit(self._commit, upserts, deletions, document["counters"])
        with self._pending_lock:
            self._pending = [pending for pending in self._pending if not pending.done() or pending.exception()]
            self._pending.append(future)
        return future

    def _commit(self, upserts: Dict[str, List[Dict[str, Any]]], deletions: Dict[str, Set[str]], counters: Dict[str, int]) -> None:
        batch = self.client.batch()
        for name, records in upserts.items():
            collection = self.client.collection(name)
            for record in records:
                body = {key: value for key, value in record.items() if key != "id"}
                batch.set(collection.document(record["id"]), body, merge=True)
        for name, ids in deletions.items():
            collection = self.client.collection(name)
            for entity_id in sorted(ids):
                batch.delete(collection.document(entity_id))
        batch.set(self.client.collection(COUNTERS_COLLECTION).document(COUNTERS_DOCUMENT), counters, merge=True)
        batch.commit()

    def flush(self, timeout: Optional[float] = None) -> None:
        with self._pending_lock:
            pending, self._pending = self._pending, []
        if not pending:
            return
        done, not_done = wait(pending, timeout=timeout)
        if not_done:
            with self._pending_lock:
                self._pending.extend(not_done)
            raise PersistenceError(f"{len(not_done)} document write(s) still pending after {timeout}s")
        failures = [future.exception() for future in done if future.exception() is not None]
        if failures:
            raise PersistenceError(f"Document write failed: {failures[0]}") from failures[0]

    def close(self) -> None:
        try:
            self.flush()
        finally:
            self._executor.shutdown(wait=True)
