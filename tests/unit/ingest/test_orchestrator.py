"""Tests for the IngestionOrchestrator sync pipeline."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from codevault.db.models import Chunk, ChunkMetadata, content_hash
from codevault.db.repository import Repository
from codevault.ingest.base import WindowChunker
from codevault.ingest.embedding_client import BatchEmbeddingClient
from codevault.ingest.orchestrator import FileStatus, IngestionOrchestrator, IngestionReport
from codevault.ingest.rate_limit import RateLimiter
from codevault.ingest.staging import StagingCache
from codevault.ingest.summarizer import SummarizingChunker


class BlankLineChunker:
    """One chunk per blank-line separated block."""

    def chunk_file(self, agent_id, absolute_path, content, relative_path, language):
        blocks = [b.strip() for b in content.split("\n\n")]
        return [
            Chunk(text=b, entity_name=f"block{i}", metadata=ChunkMetadata(type="block", language=language))
            for i, b in enumerate(blocks)
            if b
        ]


class ExplodingChunker(BlankLineChunker):
    def chunk_file(self, agent_id, absolute_path, content, relative_path, language):
        if "boom" in relative_path:
            raise RuntimeError("chunker crashed")
        return super().chunk_file(agent_id, absolute_path, content, relative_path, language)


class RateLimited(Exception):
    status_code = 429


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "proj"
    root.mkdir()
    return root


@pytest.fixture
def staging_path(tmp_path):
    return tmp_path / "state" / "staging.json"


@pytest.fixture
def build(repo, fake_provider, staging_path):
    """Factory for an orchestrator over the shared repo, provider and staging file."""

    def _build(chunker=None, agent_id="default", max_batch_size=100, **kwargs):
        embedder = BatchEmbeddingClient(
            fake_provider,
            repo.model_name,
            rate_limiter=RateLimiter(max_calls=10_000, sleep=lambda _s: None),
            max_batch_size=max_batch_size,
            sleep=lambda _s: None,
        )
        return IngestionOrchestrator(
            repo,
            StagingCache(repo, staging_path),
            embedder,
            chunker=chunker or BlankLineChunker(),
            agent_id=agent_id,
            workers=2,
            **kwargs,
        )

    return _build


def _write(root, relative, text):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _texts(repo, path, agent_id="default"):
    return sorted(r.chunk_text for r in repo.get_embeddings_for_file(path, agent_id))


# ------------------------------------------------------------------
# Basic sync
# ------------------------------------------------------------------


def test_ingest_directory_embeds_every_chunk(build, repo, project, fake_provider):
    _write(project, "a.py", "alpha = 1\n\nbeta = 2\n")
    _write(project, "pkg/b.py", "gamma = 3\n")
    report = build().ingest_directory(project)

    assert isinstance(report, IngestionReport)
    assert report.new_count == 3
    assert report.files == {"a.py": FileStatus.DONE, "pkg/b.py": FileStatus.DONE}
    assert sorted(fake_provider.embedded_texts) == ["alpha = 1", "beta = 2", "gamma = 3"]
    assert _texts(repo, "a.py") == ["alpha = 1", "beta = 2"]
    assert report.request_count == 1
    assert report.tokens_processed > 0


def test_records_carry_file_hash_and_paths(build, repo, project):
    content = "alpha = 1\n"
    path = _write(project, "a.py", content)
    build().ingest_directory(project)
    [record] = repo.get_embeddings_for_file("a.py", "default")
    assert record.file_hash == content_hash(content)
    assert record.full_file_path == str(path)
    assert record.model_name == repo.model_name
    assert record.metadata.type == "block"
    assert record.metadata.language == "python"


def test_idempotent_second_run_makes_no_provider_calls(build, repo, project, fake_provider):
    _write(project, "a.py", "alpha = 1\n\nbeta = 2\n")
    _write(project, "b.py", "gamma = 3\n")
    build().ingest_directory(project)
    calls = len(fake_provider.calls)
    before = repo.get_statistics("default")

    report = build().ingest_directory(project)

    assert len(fake_provider.calls) == calls
    assert report.new_count == 0
    assert report.deleted_count == 0
    assert report.count(FileStatus.SKIPPED) == 2
    assert repo.get_statistics("default") == before


# ------------------------------------------------------------------
# Content addressing / stale cleanup
# ------------------------------------------------------------------


def test_editing_three_of_five_chunks(build, repo, project, fake_provider):
    original = "\n\n".join(f"block_{i} = {i}" for i in range(5)) + "\n"
    _write(project, "a.py", original)
    build().ingest_directory(project)
    kept_ids = {
        r.embedding_id
        for r in repo.get_embeddings_for_file("a.py", "default")
        if r.chunk_text in ("block_0 = 0", "block_4 = 4")
    }
    fake_provider.calls.clear()

    edited = "block_0 = 0\n\nnew_1 = 1\n\nnew_2 = 2\n\nnew_3 = 3\n\nblock_4 = 4\n"
    _write(project, "a.py", edited)
    report = build().ingest_directory(project)

    assert sorted(fake_provider.embedded_texts) == ["new_1 = 1", "new_2 = 2", "new_3 = 3"]
    assert report.new_count == 3
    assert report.reused_count == 2
    assert report.deleted_count == 3
    records = repo.get_embeddings_for_file("a.py", "default")
    assert len(records) == 5
    assert kept_ids <= {r.embedding_id for r in records}
    assert {r.file_hash for r in records} == {content_hash(edited)}


def test_h1_to_h2_reuses_unchanged_chunk(build, repo, project, fake_provider):
    h1 = "shared = 1\n\nold = 2\n"
    h2 = "shared = 1\n\nnew = 3\n"
    _write(project, "m.py", h1)
    build().ingest_directory(project)
    assert repo.get_latest_file_hashes("default") == {"m.py": content_hash(h1)}
    fake_provider.calls.clear()

    _write(project, "m.py", h2)
    report = build().ingest_directory(project)

    assert fake_provider.embedded_texts == ["new = 3"]
    assert report.reused_count == 1
    assert [s.chunk_text for s in report.deleted_samples] == ["old = 2"]
    assert _texts(repo, "m.py") == ["new = 3", "shared = 1"]
    assert repo.get_latest_file_hashes("default") == {"m.py": content_hash(h2)}


def test_identical_text_in_another_file_is_not_re_embedded(build, repo, project, fake_provider):
    _write(project, "a.py", "common = 1\n")
    build().ingest_directory(project)
    fake_provider.calls.clear()

    _write(project, "b.py", "common = 1\n\nonly_b = 2\n")
    report = build().ingest_directory(project)

    assert fake_provider.embedded_texts == ["only_b = 2"]
    assert report.new_count == 2
    assert _texts(repo, "b.py") == ["common = 1", "only_b = 2"]


def test_switching_model_embeds_files_indexed_with_another_model(
    build, repo, tmp_db, project, fake_provider, tmp_path
):
    _write(project, "a.py", "alpha = 1\n\nbeta = 2\n")
    build().ingest_directory(project)
    fake_provider.calls.clear()

    large = Repository(tmp_db, model_name="openai/text-embedding-3-large", sleep=lambda _s: None)
    orchestrator = IngestionOrchestrator(
        large,
        StagingCache(large, tmp_path / "state" / "large.json"),
        BatchEmbeddingClient(
            fake_provider,
            large.model_name,
            rate_limiter=RateLimiter(max_calls=10_000, sleep=lambda _s: None),
            sleep=lambda _s: None,
        ),
        chunker=BlankLineChunker(),
        workers=2,
    )
    report = orchestrator.ingest_directory(project)

    assert report.files == {"a.py": FileStatus.DONE}
    assert report.new_count == 2
    assert report.reused_count == 0
    assert sorted(fake_provider.embedded_texts) == ["alpha = 1", "beta = 2"]
    query = large.get_embedding_by_hash(content_hash("alpha = 1")).vector
    hits = large.find_similar_embeddings_with_metadata(query, "alpha", 2)
    assert {h.record.chunk_text for h in hits} == {"alpha = 1", "beta = 2"}
    # The first model's records are untouched.
    assert repo.get_latest_file_hashes("default") == {"a.py": content_hash("alpha = 1\n\nbeta = 2\n")}
    assert len(repo.get_embeddings_for_file("a.py", "default", model_name=repo.model_name)) == 2


def test_duplicate_text_within_one_run_embedded_once(build, repo, project, fake_provider):
    _write(project, "a.py", "dup = 1\n\ndup = 1\n")
    _write(project, "b.py", "dup = 1\n")
    report = build().ingest_directory(project)

    assert fake_provider.embedded_texts == ["dup = 1"]
    assert report.new_count == 3
    assert _texts(repo, "a.py") == ["dup = 1", "dup = 1"]


def test_other_agent_reuses_vectors(build, repo, project, fake_provider):
    _write(project, "a.py", "alpha = 1\n")
    build(agent_id="agent-a").ingest_directory(project)
    calls = len(fake_provider.calls)

    report = build(agent_id="agent-b").ingest_directory(project)

    assert len(fake_provider.calls) == calls
    assert report.new_count == 1
    assert repo.get_statistics("agent-b").total == 1
    assert repo.get_statistics("agent-a").total == 1


def test_parent_links_resolved_to_embedding_ids(build, repo, project):
    _write(project, "big.py", "value = 'abcdefghij'\n" * 10)
    build(chunker=WindowChunker(chunk_size=10, overlap=0.0)).ingest_directory(project)
    records = repo.get_embeddings_for_file("big.py", "default")
    full = [r for r in records if r.metadata.type == "full_file"]
    windows = [r for r in records if r.metadata.type == "window"]
    assert len(full) == 1
    assert windows
    assert all(w.parent_embedding_id == full[0].embedding_id for w in windows)


def test_summaries_counted_and_linked(build, repo, project):
    _write(project, "a.py", "alpha = 1\n")
    _write(project, "b.py", "beta = 2\n")
    completion = MagicMock()
    completion.choices = [MagicMock()]
    completion.choices[0].message.content = "Assigns a constant."
    with patch("codevault.ingest.summarizer.litellm.completion", return_value=completion):
        report = build(chunker=SummarizingChunker(BlankLineChunker())).ingest_directory(project)

    assert report.summarization_calls == 2
    records = repo.get_embeddings_for_file("a.py", "default")
    [summary] = [r for r in records if r.embedding_type == "summary"]
    [code] = [r for r in records if r.embedding_type == "chunk"]
    assert summary.ai_summary_text == "Assigns a constant."
    assert code.parent_embedding_id == summary.embedding_id


# ------------------------------------------------------------------
# Deletions
# ------------------------------------------------------------------


def test_deleted_directory_records_removed(build, repo, project):
    _write(project, "top.py", "top = 1\n")
    _write(project, "sub/x.py", "x = 1\n")
    _write(project, "sub/y.py", "y = 1\n")
    build().ingest_directory(project)

    for name in ("x.py", "y.py"):
        (project / "sub" / name).unlink()
    (project / "sub").rmdir()
    report = build().ingest_directory(project)

    assert report.files["sub/x.py"] == FileStatus.REMOVED
    assert report.files["sub/y.py"] == FileStatus.REMOVED
    assert report.deleted_count == 2
    assert repo.get_all_file_paths_for_agent("default") == ["top.py"]


def test_subdirectory_sync_only_cleans_its_own_prefix(build, repo, project):
    _write(project, "top.py", "top = 1\n")
    _write(project, "sub/x.py", "x = 1\n")
    _write(project, "sub/y.py", "y = 1\n")
    build().ingest_directory(project)

    (project / "sub" / "y.py").unlink()
    build().ingest_directory(project / "sub", project)

    assert repo.get_all_file_paths_for_agent("default") == ["sub/x.py", "top.py"]


def test_ingest_file_missing_path_removes_records(build, repo, project):
    path = _write(project, "gone.py", "bye = 1\n")
    build().ingest_file(path, project)
    path.unlink()

    report = build().ingest_file(path, project)

    assert report.files == {"gone.py": FileStatus.REMOVED}
    assert repo.get_embeddings_for_file("gone.py", "default") == []


def test_file_that_now_yields_no_chunks_is_removed(build, repo, project):
    _write(project, "a.py", "alpha = 1\n")
    build().ingest_directory(project)

    _write(project, "a.py", "\n\n\n\n\t\n\nx")
    report = build(chunker=_NoChunks()).ingest_directory(project)

    assert report.files["a.py"] == FileStatus.REMOVED
    assert repo.get_embeddings_for_file("a.py", "default") == []


class _NoChunks:
    def chunk_file(self, agent_id, absolute_path, content, relative_path, language):
        return []


# ------------------------------------------------------------------
# Crash recovery
# ------------------------------------------------------------------


def test_crash_before_commit_recovers_without_re_embedding(build, repo, project, fake_provider, staging_path):
    _write(project, "a.py", "alpha = 1\n\nbeta = 2\n")
    crashing = build()
    crashing._staging.flush = MagicMock(side_effect=RuntimeError("process killed"))
    with pytest.raises(RuntimeError, match="process killed"):
        crashing.ingest_directory(project)
    assert staging_path.exists()
    assert repo.get_statistics("default").total == 0
    calls = len(fake_provider.calls)

    report = build().ingest_directory(project)

    assert len(fake_provider.calls) == calls
    assert _texts(repo, "a.py") == ["alpha = 1", "beta = 2"]
    # Recovered records carry no file hash yet; the sync reuses and stamps them.
    assert report.files["a.py"] == FileStatus.DONE
    assert report.reused_count == 2
    assert report.new_count == 0
    assert repo.get_latest_file_hashes("default") == {"a.py": content_hash("alpha = 1\n\nbeta = 2\n")}
    assert not staging_path.exists()


def test_interrupted_finalize_is_completed_next_run(build, repo, project, fake_provider):
    _write(project, "a.py", "shared = 1\n")
    build().ingest_directory(project)
    b_content = "shared = 1\n\nonly_b = 2\n"
    _write(project, "b.py", b_content)

    # "only_b" is staged and committed; the clone of "shared" never lands.
    interrupted = build()
    with patch.object(interrupted, "_finalize", side_effect=KeyboardInterrupt):
        with pytest.raises(KeyboardInterrupt):
            interrupted.ingest_directory(project)
    assert _texts(repo, "b.py") == ["only_b = 2"]
    assert repo.get_latest_file_hashes("default")["b.py"] == ""

    fake_provider.calls.clear()
    report = build().ingest_directory(project)

    assert report.files["b.py"] == FileStatus.DONE
    assert report.reused_count == 1
    assert fake_provider.calls == []
    assert _texts(repo, "b.py") == ["only_b = 2", "shared = 1"]
    assert repo.get_latest_file_hashes("default")["b.py"] == content_hash(b_content)


def test_crash_after_commit_does_not_duplicate(build, repo, project, staging_path, make_record):
    _write(project, "a.py", "alpha = 1\n")
    record = make_record(text="alpha = 1", path="a.py")
    staging = StagingCache(repo, staging_path)
    staging.add(record)
    repo.bulk_insert([make_record(text="alpha = 1", path="a.py", embedding_id=record.embedding_id)])

    build().ingest_directory(project)

    assert repo.get_statistics("default").total == 1
    assert not staging_path.exists()


# ------------------------------------------------------------------
# Partial failure / error isolation
# ------------------------------------------------------------------


def test_rate_limited_batch_marks_two_of_ten_files_partial(build, repo, project, fake_provider):
    for i in range(10):
        _write(project, f"f{i:02d}.py", f"value_{i} = {i}\n")
    fake_provider.errors = [RateLimited("429 Too Many Requests")] * 3

    report = build(max_batch_size=2).ingest_directory(project)

    assert report.failed_embeddings == 2
    assert report.files["f00.py"] == FileStatus.PARTIAL
    assert report.files["f01.py"] == FileStatus.PARTIAL
    assert report.count(FileStatus.DONE) == 8
    assert report.retry_count == 2
    assert repo.get_statistics("default").total == 8

    fake_provider.calls.clear()
    retry = build(max_batch_size=2).ingest_directory(project)

    assert sorted(fake_provider.embedded_texts) == ["value_0 = 0", "value_1 = 1"]
    assert retry.count(FileStatus.DONE) == 2
    assert repo.get_statistics("default").total == 10


def test_partially_embedded_file_is_retried_next_run(build, repo, project, fake_provider):
    _write(project, "a.py", "ok_1 = 1\n\nbad = 2\n\nok_2 = 3\n")
    fake_provider.fail_texts = {"bad = 2"}

    report = build().ingest_directory(project)

    assert report.files["a.py"] == FileStatus.PARTIAL
    assert report.failed_embeddings == 1
    assert {r.file_hash for r in repo.get_embeddings_for_file("a.py", "default")} == {""}

    fake_provider.fail_texts = set()
    fake_provider.calls.clear()
    retry = build().ingest_directory(project)

    assert fake_provider.embedded_texts == ["bad = 2"]
    assert retry.reused_count == 2
    assert retry.files["a.py"] == FileStatus.DONE
    assert len(repo.get_embeddings_for_file("a.py", "default")) == 3


def test_one_failing_file_does_not_stop_the_others(build, repo, project):
    _write(project, "boom.py", "explode = 1\n")
    _write(project, "fine.py", "fine = 1\n")

    report = build(chunker=ExplodingChunker()).ingest_directory(project)

    assert report.files["boom.py"] == FileStatus.ERROR
    assert report.files["fine.py"] == FileStatus.DONE
    assert [e.path for e in report.errors] == ["boom.py"]
    assert "chunker crashed" in report.errors[0].message


def test_binary_and_empty_files_skipped(build, repo, project, fake_provider):
    (project / "blob.py").write_bytes(b"\x00\x01\x02binary")
    _write(project, "empty.py", "")
    _write(project, "latin.py", "")
    (project / "latin.py").write_bytes("caf\xe9 = 1\n".encode("latin-1"))

    report = build().ingest_directory(project)

    assert report.files == {
        "blob.py": FileStatus.SKIPPED,
        "empty.py": FileStatus.SKIPPED,
        "latin.py": FileStatus.SKIPPED,
    }
    assert fake_provider.calls == []


def test_excluded_paths_are_not_ingested(build, repo, project):
    _write(project, "keep.py", "keep = 1\n")
    _write(project, "node_modules/dep.js", "dep = 1\n")

    report = build(exclude=["node_modules"]).ingest_directory(project)

    assert list(report.files) == ["keep.py"]


def test_report_to_dict_is_json_ready(build, project):
    _write(project, "a.py", "alpha = 1\n")
    data = build().ingest_directory(project).to_dict()
    assert data["files"] == {"a.py": "done"}
    assert data["new_samples"][0]["chunk_text"] == "alpha = 1"


def test_invalid_workers(repo, fake_provider, staging_path):
    with pytest.raises(ValueError):
        IngestionOrchestrator(
            repo,
            StagingCache(repo, staging_path),
            BatchEmbeddingClient(fake_provider, repo.model_name),
            workers=0,
        )
