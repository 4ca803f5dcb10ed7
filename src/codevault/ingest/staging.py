"""Durable pre-commit buffer for computed embeddings.

A vector is written here as soon as the provider returns it and removed only
after it has been committed to the store, so a crash between the two never
costs a second (billed) embedding call. The buffer is a JSON file rewritten
atomically (temp file + os.replace) on every change.

Several processes may share one buffer file. Every read-modify-write of the
file holds an exclusive ``flock`` on a sidecar ``<buffer>.lock`` file, and a
rewrite keeps the entries other processes have added in the meantime.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from codevault.db.models import EmbeddingRecord
from codevault.db.repository import Repository

log = structlog.get_logger()

_FORMAT_VERSION = 1


@dataclass
class FlushResult:
    """Outcome of StagingCache.flush(), as embedding ids."""

    committed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    already_stored: list[str] = field(default_factory=list)


class StagingCache:
    """Write-ahead buffer of EmbeddingRecords keyed by chunk hash.

    ``add``, ``flush`` and ``clear`` hold one lock, so a flush is never
    interleaved with another writer of the same cache instance. The buffer
    file itself is guarded by an inter-process file lock (POSIX ``flock``).

    Args:
        repo: Repository entries are committed into.
        path: Buffer file. Parent directories are created on first write.
    """

    def __init__(self, repo: Repository, path: Path | str) -> None:
        self._repo = repo
        self.path = Path(path)
        self._entries: dict[str, EmbeddingRecord] = {}
        # Embedding ids this instance committed or discarded; never written back.
        self._retired: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pending(self) -> list[EmbeddingRecord]:
        return list(self._entries.values())

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    # ------------------------------------------------------------------
    # Load / lookup
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Read pending entries from disk into memory.

        Idempotent: entries already in memory are kept. A missing, unreadable
        or corrupt file counts as empty; malformed entries are skipped.

        Returns:
            Number of entries in the buffer after loading.
        """
        with self._lock:
            if not self.path.exists():
                return len(self._entries)
            with self._file_lock():
                records = self._read_disk()
            loaded = 0
            for record in records:
                if record.chunk_hash not in self._entries:
                    self._entries[record.chunk_hash] = record
                    loaded += 1
            log.info("staging.loaded", path=str(self.path), entries=loaded)
            return len(self._entries)

    def get(self, chunk_hash: str) -> EmbeddingRecord | None:
        """Buffered entry for *chunk_hash* (with its vector), if any."""
        return self._entries.get(chunk_hash)

    def has(self, chunk_hash: str) -> bool:
        """True if the buffer or the store already holds *chunk_hash*."""
        return chunk_hash in self._entries or self._repo.has_chunk_hash(chunk_hash)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, record: EmbeddingRecord) -> bool:
        """Buffer *record* and persist the buffer.

        No-op if its chunk hash is already buffered or already stored. If
        persisting fails the entry stays in memory and is written with the
        next successful persist or committed by the next flush.

        Returns:
            True if the record was added to the buffer.
        """
        return self.add_many([record])[0]

    def add_many(self, records: list[EmbeddingRecord]) -> list[bool]:
        """add() for several records with a single persist of the buffer."""
        for record in records:
            if not record.vector:
                raise ValueError(f"Record {record.embedding_id} has no vector")
        added: list[bool] = []
        with self._lock:
            for record in records:
                if record.chunk_hash in self._entries or self._repo.has_chunk_hash(
                    record.chunk_hash
                ):
                    added.append(False)
                    continue
                self._entries[record.chunk_hash] = record
                added.append(True)
            if any(added):
                try:
                    self._persist()
                except OSError as exc:
                    log.error(
                        "staging.persist_failed",
                        path=str(self.path),
                        entries=sum(added),
                        error=str(exc),
                    )
        return added

    def flush(self) -> FlushResult:
        """Commit every buffered entry to the store, one transaction each.

        Entries that fail stay buffered for the next flush. Entries whose
        embedding id is already stored (a commit that happened before a
        crash, or by another process) are dropped without re-inserting.
        """
        result = FlushResult()
        with self._lock:
            if not self._entries:
                return result
            for chunk_hash, record in list(self._entries.items()):
                try:
                    if self._repo.has_embedding(record.embedding_id):
                        result.already_stored.append(record.embedding_id)
                    else:
                        self._repo.bulk_insert([record])
                        result.committed.append(record.embedding_id)
                except Exception as exc:
                    log.error(
                        "staging.flush_failed",
                        embedding_id=record.embedding_id,
                        path=record.file_path_relative,
                        error=str(exc),
                    )
                    result.failed.append(record.embedding_id)
                    continue
                self._retired.add(record.embedding_id)
                del self._entries[chunk_hash]
            try:
                self._persist()
            except OSError as exc:
                log.error("staging.persist_failed", path=str(self.path), error=str(exc))
        log.info(
            "staging.flushed",
            committed=len(result.committed),
            failed=len(result.failed),
            already_stored=len(result.already_stored),
        )
        return result

    def clear(self) -> int:
        """Discard every buffered entry, in memory and on disk.

        Entries another process wrote to the file are discarded too.

        Returns:
            Number of entries discarded.
        """
        with self._lock:
            with self._file_lock():
                on_disk = {r.embedding_id for r in self._read_disk()}
                dropped_ids = on_disk | {r.embedding_id for r in self._entries.values()}
                self._retired.update(dropped_ids)
                self._entries.clear()
                self.path.unlink(missing_ok=True)
        log.info("staging.cleared", path=str(self.path), dropped=len(dropped_ids))
        return len(dropped_ids)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        """Hold an exclusive lock on the sidecar lock file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a") as lock_f:
            fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_f.fileno(), fcntl.LOCK_UN)

    def _read_disk(self) -> list[EmbeddingRecord]:
        """Valid entries currently in the buffer file. Call with the file lock held."""
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("staging.load_failed", path=str(self.path), error=str(exc))
            return []

        raw_entries = data.get("entries", []) if isinstance(data, dict) else []
        records: list[EmbeddingRecord] = []
        for raw in raw_entries:
            try:
                record = EmbeddingRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("staging.entry_invalid", path=str(self.path), error=str(exc))
                continue
            if not record.vector:
                log.warning("staging.entry_invalid", embedding_id=record.embedding_id, error="no vector")
                continue
            records.append(record)
        return records

    def _persist(self) -> None:
        """Atomically rewrite the buffer file (removed when empty).

        Entries found on disk that this instance does not hold are kept
        unless they have since been committed or discarded.
        """
        with self._file_lock():
            entries = list(self._entries.values())
            for record in self._read_disk():
                if (
                    record.chunk_hash in self._entries
                    or record.embedding_id in self._retired
                    or self._repo.has_embedding(record.embedding_id)
                ):
                    continue
                entries.append(record)

            if not entries:
                self.path.unlink(missing_ok=True)
                return
            payload = {
                "version": _FORMAT_VERSION,
                "entries": [r.to_dict() for r in entries],
            }
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
