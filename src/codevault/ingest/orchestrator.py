"""Ingestion orchestrator: keep the index in sync with files on disk.

Per file::

    SCANNED → SKIPPED
            → CHUNKED → EMBED_PENDING → COMMITTED → STALE_CLEANED → DONE
                                                              (or PARTIAL)
    any step → ERROR (isolated to that file)

Reading, hashing and chunking run in a thread pool, one task per file, each
returning its own FilePlan. Everything that touches the store (reconcile,
embedding, staging, commit) runs afterwards on the calling thread, so the
SQLite connection is never shared between threads.
"""

from __future__ import annotations

import time
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from codevault.db.models import Chunk, EmbeddingRecord
from codevault.db.repository import Repository
from codevault.ingest.base import Chunker, WindowChunker
from codevault.ingest.change_detector import detect_change
from codevault.ingest.embedding_client import BatchEmbeddingClient
from codevault.ingest.scanner import (
    ExtensionLanguageDetector,
    is_eligible,
    relative_posix,
    scan_recursive,
)
from codevault.ingest.staging import StagingCache

log = structlog.get_logger()

_SAMPLE_LIMIT = 20
_SAMPLE_TEXT_CHARS = 200
# Only the head of a file is checked for NUL bytes.
_BINARY_SNIFF_BYTES = 8192


class FileStatus(str, Enum):
    SCANNED = "scanned"
    SKIPPED = "skipped"
    CHUNKED = "chunked"
    EMBED_PENDING = "embed_pending"
    COMMITTED = "committed"
    STALE_CLEANED = "stale_cleaned"
    DONE = "done"
    PARTIAL = "partial"
    REMOVED = "removed"
    ERROR = "error"


# ------------------------------------------------------------------
# Report
# ------------------------------------------------------------------


@dataclass
class EmbeddingSample:
    file_path_relative: str
    entity_name: str | None
    chunk_text: str

    @classmethod
    def from_record(cls, record: EmbeddingRecord) -> EmbeddingSample:
        return cls(
            file_path_relative=record.file_path_relative,
            entity_name=record.entity_name,
            chunk_text=record.chunk_text[:_SAMPLE_TEXT_CHARS],
        )


@dataclass
class FileError:
    path: str
    message: str


@dataclass
class IngestionReport:
    """Structured result of an ingestion call.

    Returned even when some files failed, so callers can tell "nothing
    changed" (all files ``skipped``) from "something broke" (``error`` or
    ``partial`` entries in ``files`` and samples in ``errors``).
    """

    new_count: int = 0
    reused_count: int = 0
    deleted_count: int = 0
    failed_embeddings: int = 0
    new_samples: list[EmbeddingSample] = field(default_factory=list)
    reused_samples: list[EmbeddingSample] = field(default_factory=list)
    deleted_samples: list[EmbeddingSample] = field(default_factory=list)
    files: dict[str, FileStatus] = field(default_factory=dict)
    errors: list[FileError] = field(default_factory=list)
    request_count: int = 0
    retry_count: int = 0
    tokens_processed: int = 0
    summarization_calls: int = 0
    total_time_ms: int = 0

    def add_new(self, records: list[EmbeddingRecord]) -> None:
        self.new_count += len(records)
        _extend_samples(self.new_samples, records)

    def add_reused(self, records: list[EmbeddingRecord]) -> None:
        self.reused_count += len(records)
        _extend_samples(self.reused_samples, records)

    def add_deleted(self, records: list[EmbeddingRecord], count: int | None = None) -> None:
        self.deleted_count += len(records) if count is None else count
        _extend_samples(self.deleted_samples, records)

    def add_error(self, path: str, message: str) -> None:
        self.files[path] = FileStatus.ERROR
        if len(self.errors) < _SAMPLE_LIMIT:
            self.errors.append(FileError(path=path, message=message))

    def count(self, status: FileStatus) -> int:
        return sum(1 for s in self.files.values() if s == status)

    def merge(self, other: IngestionReport) -> IngestionReport:
        """Fold *other* into this report and return self."""
        self.new_count += other.new_count
        self.reused_count += other.reused_count
        self.deleted_count += other.deleted_count
        self.failed_embeddings += other.failed_embeddings
        for mine, theirs in (
            (self.new_samples, other.new_samples),
            (self.reused_samples, other.reused_samples),
            (self.deleted_samples, other.deleted_samples),
        ):
            mine.extend(theirs[: max(0, _SAMPLE_LIMIT - len(mine))])
        self.files.update(other.files)
        self.errors.extend(other.errors[: max(0, _SAMPLE_LIMIT - len(self.errors))])
        self.request_count += other.request_count
        self.retry_count += other.retry_count
        self.tokens_processed += other.tokens_processed
        self.summarization_calls += other.summarization_calls
        self.total_time_ms += other.total_time_ms
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_count": self.new_count,
            "reused_count": self.reused_count,
            "deleted_count": self.deleted_count,
            "failed_embeddings": self.failed_embeddings,
            "new_samples": [vars(s) for s in self.new_samples],
            "reused_samples": [vars(s) for s in self.reused_samples],
            "deleted_samples": [vars(s) for s in self.deleted_samples],
            "files": {path: status.value for path, status in sorted(self.files.items())},
            "errors": [vars(e) for e in self.errors],
            "request_count": self.request_count,
            "retry_count": self.retry_count,
            "tokens_processed": self.tokens_processed,
            "summarization_calls": self.summarization_calls,
            "total_time_ms": self.total_time_ms,
        }


def _extend_samples(samples: list[EmbeddingSample], records: list[EmbeddingRecord]) -> None:
    for record in records[: max(0, _SAMPLE_LIMIT - len(samples))]:
        samples.append(EmbeddingSample.from_record(record))


# ------------------------------------------------------------------
# Per-file work items
# ------------------------------------------------------------------


@dataclass
class FilePlan:
    """Result of the prepare step for one file (built off the main thread)."""

    relative_path: str
    absolute_path: str
    status: FileStatus
    file_hash: str = ""
    chunks: list[Chunk] = field(default_factory=list)
    summarization_calls: int = 0
    reason: str = ""


@dataclass
class _FileWork:
    plan: FilePlan
    reused: list[EmbeddingRecord] = field(default_factory=list)
    drafts: list[EmbeddingRecord] = field(default_factory=list)
    parent_updates: dict[str, str | None] = field(default_factory=dict)
    failed_ids: set[str] = field(default_factory=set)
    staged: list[EmbeddingRecord] = field(default_factory=list)
    direct: list[EmbeddingRecord] = field(default_factory=list)


# ------------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------------


class IngestionOrchestrator:
    """Sync files and directories into the embedding index.

    Args:
        repo: Storage repository.
        staging: Staging cache in front of *repo*.
        embedder: Batch embedding client; its model name is stored on records.
        chunker: Chunker (a ``chunk_file_multi`` method is used when present).
        language_detector: Tags files with a language for eligibility.
        agent_id: Owner scope of every record written.
        workers: Maximum files prepared concurrently.
        max_file_size: Size limit for files of unknown language.
        exclude: Glob patterns pruned from directory scans.
    """

    def __init__(
        self,
        repo: Repository,
        staging: StagingCache,
        embedder: BatchEmbeddingClient,
        chunker: Chunker | None = None,
        language_detector: ExtensionLanguageDetector | None = None,
        agent_id: str = "default",
        workers: int = 4,
        max_file_size: int = 1024 * 1024,
        exclude: list[str] | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._repo = repo
        self._staging = staging
        self._embedder = embedder
        self._chunker = chunker or WindowChunker()
        self._detector = language_detector or ExtensionLanguageDetector()
        self.agent_id = agent_id
        self.workers = workers
        self.max_file_size = max_file_size
        self.exclude = exclude or []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ingest_file(self, path: Path | str, project_root: Path | str) -> IngestionReport:
        """Sync one file. A path that no longer exists has its records removed."""
        started = time.perf_counter()
        report = IngestionReport()
        path = Path(path)
        relative = relative_posix(path, Path(project_root))

        self._recover_staging()
        if not path.exists():
            self._remove_paths([relative], report)
        else:
            index = self._repo.get_latest_file_hashes(self.agent_id)
            self._run_plans([self._prepare_safely(path, relative, index)], report)

        report.total_time_ms = int((time.perf_counter() - started) * 1000)
        _log_report("ingest.file_done", report, path=relative)
        return report

    def ingest_directory(
        self, directory: Path | str, project_root: Path | str | None = None
    ) -> IngestionReport:
        """Sync every eligible file under *directory*, then drop stale paths.

        Paths indexed under *directory* that this scan did not visit (deleted
        or now excluded files) have all their records removed.

        Raises:
            NotADirectoryError: If *directory* is not a directory.
            PermissionError: If *directory* cannot be listed.
        """
        started = time.perf_counter()
        report = IngestionReport()
        directory = Path(directory)
        root = Path(project_root) if project_root is not None else directory

        self._recover_staging()
        items = scan_recursive(
            self.agent_id, directory, root, exclude=self.exclude, detector=self._detector
        )
        files = [item for item in items if is_eligible(item, self.max_file_size)]
        log.info("ingest.scanned", directory=str(directory), items=len(items), eligible=len(files))

        index = self._repo.get_latest_file_hashes(self.agent_id)
        plans = self._prepare_all([(f.path, f.relative_path) for f in files], index)
        self._run_plans(plans, report)

        prefix = relative_posix(directory, root)
        visited = {f.relative_path for f in files}
        stale = [
            p
            for p in self._repo.get_all_file_paths_for_agent(self.agent_id)
            if _is_under(p, prefix) and p not in visited
        ]
        if stale:
            log.info("ingest.stale_paths", count=len(stale))
            self._remove_paths(stale, report)

        report.total_time_ms = int((time.perf_counter() - started) * 1000)
        _log_report("ingest.directory_done", report, directory=str(directory))
        return report

    # ------------------------------------------------------------------
    # Prepare (thread pool)
    # ------------------------------------------------------------------

    def _prepare_all(
        self, files: list[tuple[Path, str]], index: dict[str, str]
    ) -> list[FilePlan]:
        if not files:
            return []
        plans: list[FilePlan] = []
        with ThreadPoolExecutor(max_workers=min(self.workers, len(files))) as pool:
            futures = [
                pool.submit(self._prepare_safely, path, relative, index)
                for path, relative in files
            ]
            for future in as_completed(futures):
                plans.append(future.result())
        plans.sort(key=lambda p: p.relative_path)
        return plans

    def _prepare_safely(self, path: Path, relative: str, index: dict[str, str]) -> FilePlan:
        try:
            return self._prepare(path, relative, index)
        except Exception as exc:
            log.error("ingest.file_error", path=relative, step="prepare", error=str(exc))
            return FilePlan(
                relative_path=relative,
                absolute_path=str(path),
                status=FileStatus.ERROR,
                reason=f"{type(exc).__name__}: {exc}",
            )

    def _prepare(self, path: Path, relative: str, index: dict[str, str]) -> FilePlan:
        """Read, hash and chunk one file. No store access."""
        _transition(relative, FileStatus.SCANNED)
        plan = FilePlan(relative_path=relative, absolute_path=str(path), status=FileStatus.SKIPPED)
        try:
            data = path.read_bytes()
        except OSError as exc:
            plan.reason = f"unreadable: {exc}"
            return plan
        if b"\x00" in data[:_BINARY_SNIFF_BYTES]:
            plan.reason = "binary"
            return plan
        try:
            content = data.decode("utf-8")
        except UnicodeDecodeError:
            plan.reason = "binary"
            return plan
        if not content.strip():
            plan.reason = "empty"
            return plan

        decision = detect_change(relative, content, index)
        plan.file_hash = decision.file_hash
        if not decision.changed:
            plan.reason = "unchanged"
            return plan

        language = self._detector.detect_language(self.agent_id, str(path), path.name)
        chunk_multi = getattr(self._chunker, "chunk_file_multi", None)
        if chunk_multi is not None:
            result = chunk_multi(self.agent_id, str(path), content, relative, language)
            plan.chunks = list(result.chunks)
            plan.summarization_calls = result.summarization_calls
        else:
            plan.chunks = list(
                self._chunker.chunk_file(self.agent_id, str(path), content, relative, language)
            )
        plan.status = FileStatus.CHUNKED
        _transition(relative, FileStatus.CHUNKED, chunks=len(plan.chunks))
        return plan

    # ------------------------------------------------------------------
    # Reconcile + embed + commit (calling thread)
    # ------------------------------------------------------------------

    def _run_plans(self, plans: list[FilePlan], report: IngestionReport) -> None:
        works: list[_FileWork] = []
        for plan in plans:
            report.summarization_calls += plan.summarization_calls
            if plan.status == FileStatus.SKIPPED:
                report.files[plan.relative_path] = FileStatus.SKIPPED
                _transition(plan.relative_path, FileStatus.SKIPPED, reason=plan.reason)
                continue
            if plan.status == FileStatus.ERROR:
                report.add_error(plan.relative_path, plan.reason)
                continue
            try:
                work = self._reconcile(plan, report)
            except Exception as exc:
                self._file_failed(plan.relative_path, "reconcile", exc, report)
                continue
            if work is not None:
                works.append(work)

        if works:
            self._embed_and_commit(works, report)

    def _reconcile(self, plan: FilePlan, report: IngestionReport) -> _FileWork | None:
        """Split a file's chunks into reused records and new drafts.

        Existing records whose hash is no longer produced are deleted here,
        before any new record for the path is inserted.
        """
        relative = plan.relative_path
        existing = self._repo.get_embeddings_for_file(
            relative, self.agent_id, model_name=self._repo.model_name
        )

        if not plan.chunks:
            removed = self._repo.bulk_delete([r.embedding_id for r in existing])
            report.add_deleted(existing, removed)
            report.files[relative] = FileStatus.REMOVED
            _transition(relative, FileStatus.REMOVED, deleted=removed)
            return None

        by_hash: dict[str, list[EmbeddingRecord]] = defaultdict(list)
        for record in existing:
            by_hash[record.chunk_hash].append(record)

        work = _FileWork(plan=plan)
        key_to_id: dict[str, str] = {}
        reused_chunks: list[tuple[Chunk, EmbeddingRecord]] = []
        new_chunks: list[tuple[Chunk, EmbeddingRecord]] = []
        for chunk in plan.chunks:
            bucket = by_hash.get(chunk.chunk_hash)
            if bucket:
                record = bucket.pop(0)
                reused_chunks.append((chunk, record))
                key_to_id[chunk.key] = record.embedding_id
            else:
                draft = self._draft(chunk, plan)
                new_chunks.append((chunk, draft))
                key_to_id[chunk.key] = draft.embedding_id

        retained = {record.embedding_id for _, record in reused_chunks}
        stale = [r for r in existing if r.embedding_id not in retained]
        if stale:
            removed = self._repo.bulk_delete([r.embedding_id for r in stale])
            report.add_deleted(stale, removed)
        _transition(relative, FileStatus.STALE_CLEANED, deleted=len(stale))

        for chunk, draft in new_chunks:
            draft.parent_embedding_id = key_to_id.get(chunk.parent_chunk_id or "")
            work.drafts.append(draft)
        for chunk, record in reused_chunks:
            parent = key_to_id.get(chunk.parent_chunk_id or "")
            if parent != record.parent_embedding_id:
                work.parent_updates[record.embedding_id] = parent
            work.reused.append(record)

        report.add_reused(work.reused)
        if work.drafts:
            _transition(relative, FileStatus.EMBED_PENDING, queued=len(work.drafts))
        return work

    def _draft(self, chunk: Chunk, plan: FilePlan) -> EmbeddingRecord:
        return EmbeddingRecord(
            embedding_id=str(uuid.uuid4()),
            agent_id=self.agent_id,
            file_path_relative=plan.relative_path,
            full_file_path=plan.absolute_path,
            entity_name=chunk.entity_name,
            chunk_text=chunk.text,
            ai_summary_text=chunk.ai_summary_text,
            chunk_hash=chunk.chunk_hash,
            model_name=self._embedder.model_name,
            # Set to the real hash only once the whole file is committed.
            file_hash="",
            metadata_json=chunk.metadata.to_json(),
            embedding_type=chunk.embedding_type,
        )

    def _embed_and_commit(self, works: list[_FileWork], report: IngestionReport) -> None:
        """Embed every queued chunk of the batch once, then commit per file.

        Identical text is embedded at most once per run; text whose vector is
        already buffered or stored is cloned without a provider call.
        """
        vectors: dict[str, list[float]] = {}
        to_embed: dict[str, str] = {}
        for work in works:
            for draft in work.drafts:
                h = draft.chunk_hash
                if h in vectors or h in to_embed:
                    continue
                staged = self._staging.get(h)
                if staged is not None:
                    vectors[h] = staged.vector
                    continue
                stored = self._repo.get_embedding_by_hash(h)
                if stored is not None:
                    vectors[h] = stored.vector
                    continue
                to_embed[h] = draft.chunk_text

        fresh: set[str] = set()
        if to_embed:
            hashes = list(to_embed)
            result = self._embedder.embed_texts([to_embed[h] for h in hashes], operation="ingest")
            report.request_count += result.request_count
            report.retry_count += result.retry_count
            report.tokens_processed += result.tokens_processed
            for h, embedding in zip(hashes, result.embeddings):
                if embedding is not None:
                    vectors[h] = embedding.vector
                    fresh.add(h)

        # Attach vectors. Drafts of a file with failed chunks lose links to them.
        for work in works:
            for draft in work.drafts:
                vector = vectors.get(draft.chunk_hash)
                if vector is None:
                    work.failed_ids.add(draft.embedding_id)
                else:
                    draft.vector = list(vector)
                    draft.vector_dimensions = len(vector)
            report.failed_embeddings += len(work.failed_ids)
            for draft in work.drafts:
                if draft.parent_embedding_id in work.failed_ids:
                    draft.parent_embedding_id = None

        # First fresh occurrence of each hash goes through staging; clones and
        # later duplicates are inserted directly after the flush.
        to_stage: list[tuple[_FileWork, EmbeddingRecord]] = []
        staged_hashes: set[str] = set()
        for work in works:
            for draft in work.drafts:
                if draft.embedding_id in work.failed_ids:
                    continue
                if draft.chunk_hash in fresh and draft.chunk_hash not in staged_hashes:
                    staged_hashes.add(draft.chunk_hash)
                    to_stage.append((work, draft))
                else:
                    work.direct.append(draft)
        added = self._staging.add_many([draft for _, draft in to_stage])
        for (work, draft), was_added in zip(to_stage, added):
            (work.staged if was_added else work.direct).append(draft)

        flush = self._staging.flush()
        committed = set(flush.committed) | set(flush.already_stored)
        unflushed = set(flush.failed)

        for work in works:
            try:
                self._finalize(work, committed, unflushed, report)
            except Exception as exc:
                self._file_failed(work.plan.relative_path, "commit", exc, report)

    def _finalize(
        self,
        work: _FileWork,
        committed: set[str],
        unflushed: set[str],
        report: IngestionReport,
    ) -> None:
        relative = work.plan.relative_path
        if work.direct:
            self._repo.bulk_insert(work.direct)
        new_records = [d for d in work.staged if d.embedding_id in committed] + work.direct
        report.add_new(new_records)
        _transition(relative, FileStatus.COMMITTED, inserted=len(new_records))

        if work.parent_updates:
            self._repo.update_parent_ids(
                {
                    child: (None if parent in work.failed_ids else parent)
                    for child, parent in work.parent_updates.items()
                }
            )

        pending = [d.embedding_id for d in work.staged if d.embedding_id in unflushed]
        if work.failed_ids or pending:
            report.files[relative] = FileStatus.PARTIAL
            _transition(
                relative,
                FileStatus.PARTIAL,
                failed=len(work.failed_ids),
                pending=len(pending),
            )
            return

        # Last write of the file: until it lands, the latest record for the
        # path carries an empty hash and the next sync reprocesses it.
        stale_hash = [r.embedding_id for r in work.reused if r.file_hash != work.plan.file_hash]
        self._repo.update_file_hash(
            stale_hash + [d.embedding_id for d in new_records], work.plan.file_hash
        )
        for record in [*work.reused, *new_records]:
            record.file_hash = work.plan.file_hash
        report.files[relative] = FileStatus.DONE
        _transition(relative, FileStatus.DONE)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _recover_staging(self) -> None:
        """Commit entries left in the staging buffer by an earlier run."""
        if self._staging.load():
            self._staging.flush()

    def _remove_paths(self, paths: list[str], report: IngestionReport) -> None:
        for path in paths:
            try:
                records = self._repo.get_embeddings_for_file(path, self.agent_id)
                if not records:
                    continue
                removed = self._repo.bulk_delete([r.embedding_id for r in records])
                report.add_deleted(records, removed)
                report.files[path] = FileStatus.REMOVED
                _transition(path, FileStatus.REMOVED, deleted=removed)
            except Exception as exc:
                self._file_failed(path, "remove", exc, report)

    def _file_failed(
        self, path: str, step: str, exc: Exception, report: IngestionReport
    ) -> None:
        log.error("ingest.file_error", path=path, step=step, error=str(exc))
        report.add_error(path, f"{type(exc).__name__}: {exc}")
        # Force the next sync to process the file again.
        try:
            records = self._repo.get_embeddings_for_file(path, self.agent_id)
            self._repo.update_file_hash([r.embedding_id for r in records], "")
        except Exception as inner:
            log.error("ingest.invalidate_failed", path=path, error=str(inner))


def _is_under(path: str, prefix: str) -> bool:
    if prefix in ("", "."):
        return True
    return path == prefix or path.startswith(prefix + "/")


def _transition(path: str, state: FileStatus, **extra: Any) -> None:
    log.debug("ingest.file_state", path=path, state=state.value, **extra)


def _log_report(event: str, report: IngestionReport, **extra: Any) -> None:
    log.info(
        event,
        new=report.new_count,
        reused=report.reused_count,
        deleted=report.deleted_count,
        failed=report.failed_embeddings,
        errors=len(report.errors),
        requests=report.request_count,
        retries=report.retry_count,
        ms=report.total_time_ms,
        **extra,
    )
