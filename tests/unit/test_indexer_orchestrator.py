#!/usr/bin/env python3
"""
Unit tests for the indexing orchestrator
Discovery and fetching are mocked; the store is a real SQLite database
"""

from unittest.mock import AsyncMock, Mock

import pytest

from repo_indexer.config.runtime import IndexingOptions
from repo_indexer.infrastructure.error_handling import (
    FetchFailed,
    HostUnavailable,
    ProjectNotFound,
    StoreUnavailable,
)
from repo_indexer.models import (
    DiscoveryResult,
    FetchedContent,
    FileDescriptor,
    ObjectType,
    RepoRef,
)
from repo_indexer.services.chunk_splitter import LineChunkSplitter, compute_chunk_hash
from repo_indexer.services.file_filters import FilterConfig
from repo_indexer.services.indexer_orchestrator import (
    IndexerOrchestrator,
    perform_full_repository_index,
)

REPO = RepoRef(host="github.com", owner="acme", name="webapp")

SOURCE = "export function add(a, b) {\n  return a + b;\n}\n"


def source_lines(n: int) -> str:
    return "".join(f"export const v{i} = {i};\n" for i in range(n))


class FakeRepository:
    """path -> (content_id, text) backing mocked discovery and fetcher"""

    def __init__(self, files):
        self.files = dict(files)
        self.fetch_failures = {}

    def descriptors(self):
        return [
            FileDescriptor(path=p, object_type=ObjectType.FILE, content_id=cid, size=len(text.encode()))
            for p, (cid, text) in self.files.items()
        ]

    async def fetch(self, repo, path, ref=None, expected_content_id=None, expected_size=None):
        if path in self.fetch_failures:
            raise self.fetch_failures[path]
        content_id, text = self.files[path]
        return FetchedContent(text=text, content_id=content_id, size=len(text.encode()))


def build(store, repository, embedder=None, truncated=False, **option_overrides):
    discovery = Mock()
    discovery.filter_config = FilterConfig()
    discovery.discover = AsyncMock(side_effect=lambda repo: DiscoveryResult(
        files=repository.descriptors(),
        commit_sha="c1",
        tree_sha="t1",
        branch="main",
        truncated=truncated,
        total_tree_items=len(repository.files),
    ))

    fetcher = Mock()
    fetcher.fetch = AsyncMock(side_effect=repository.fetch)

    progress = Mock()
    options = IndexingOptions(**option_overrides)
    orchestrator = IndexerOrchestrator(
        store=store,
        discovery=discovery,
        fetcher=fetcher,
        splitter=LineChunkSplitter(max_lines=options.max_chunk_lines, max_tokens=options.max_chunk_tokens),
        embedder=embedder,
        options=options,
        progress_callback=progress,
    )
    return orchestrator, fetcher, progress


class TestIndexRepository:

    @pytest.mark.asyncio
    async def test_first_run_indexes_new_files(self, store, registered_project, fake_embedder):
        repository = FakeRepository({
            "src/add.ts": ("h1", SOURCE),
            "README.md": ("h2", "# webapp\n"),
        })
        orchestrator, fetcher, progress = build(store, repository, embedder=fake_embedder)

        summary = await orchestrator.index_repository(registered_project, REPO)

        assert summary.total_files == 2
        assert summary.new_files == 2
        assert summary.updated_files == 0
        assert summary.skipped_files == 0
        assert summary.chunks_created == 1
        assert summary.embeddings_generated == 1
        assert summary.errors == []
        assert summary.commit_sha == "c1"

        add = await store.get_project_file(registered_project, "src/add.ts")
        assert add.is_indexed is True
        assert add.line_count == 3
        assert add.content_id == "h1"

        readme = await store.get_project_file(registered_project, "README.md")
        assert readme.is_indexed is False
        assert await store.get_file_chunks(registered_project, "README.md") == []

        chunks = await store.get_file_chunks(registered_project, "src/add.ts")
        assert chunks[0].chunk_hash == compute_chunk_hash(chunks[0].content)
        assert chunks[0].embedding is not None

        project = await store.get_project(registered_project)
        assert project.status == "indexed"
        assert project.last_indexed_at is not None
        progress.assert_called_once_with(2, 2)

    @pytest.mark.asyncio
    async def test_unchanged_files_are_skipped(self, store, registered_project, fake_embedder):
        repository = FakeRepository({"src/add.ts": ("h1", SOURCE)})
        orchestrator, fetcher, _ = build(store, repository, embedder=fake_embedder)
        await orchestrator.index_repository(registered_project, REPO)
        fetcher.fetch.reset_mock()
        embed_calls = len(fake_embedder.calls)

        summary = await orchestrator.index_repository(registered_project, REPO)

        assert summary.skipped_files == 1
        assert summary.new_files == 0
        assert summary.updated_files == 0
        fetcher.fetch.assert_not_called()
        assert len(fake_embedder.calls) == embed_calls

    @pytest.mark.asyncio
    async def test_batches_run_in_sequence_with_progress(self, store, registered_project):
        repository = FakeRepository({f"src/f{i}.ts": (f"h{i}", SOURCE) for i in range(5)})
        orchestrator, _, progress = build(store, repository, max_concurrent_files=2)

        summary = await orchestrator.index_repository(registered_project, REPO)

        assert summary.new_files == 5
        assert [c.args for c in progress.call_args_list] == [(2, 5), (4, 5), (5, 5)]

    @pytest.mark.asyncio
    async def test_async_progress_callback_is_awaited(self, store, registered_project):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE)})
        orchestrator, _, _ = build(store, repository)
        seen = []

        async def on_progress(processed, total):
            seen.append((processed, total))

        orchestrator.progress_callback = on_progress
        await orchestrator.index_repository(registered_project, REPO)
        assert seen == [(1, 1)]

    @pytest.mark.asyncio
    async def test_fetch_failure_leaves_previous_state(self, store, registered_project, fake_embedder):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE), "src/b.ts": ("h2", SOURCE + "\n// b\n")})
        orchestrator, _, _ = build(store, repository, embedder=fake_embedder)
        await orchestrator.index_repository(registered_project, REPO)
        before = await store.get_file_chunks(registered_project, "src/a.ts")

        repository.files["src/a.ts"] = ("h1b", SOURCE + "// changed\n")
        repository.fetch_failures["src/a.ts"] = FetchFailed("src/a.ts", "GitHub API request failed: 500")
        summary = await orchestrator.index_repository(registered_project, REPO)

        assert [(e.path, e.error) for e in summary.errors] == [
            ("src/a.ts", "Fetch failed: GitHub API request failed: 500"),
        ]
        assert summary.updated_files == 0
        assert summary.skipped_files == 1
        row = await store.get_project_file(registered_project, "src/a.ts")
        assert row.content_id == "h1"
        assert await store.get_file_chunks(registered_project, "src/a.ts") == before

    @pytest.mark.asyncio
    async def test_unexpected_unit_error_is_recorded(self, store, registered_project):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE), "src/b.ts": ("h2", SOURCE)})
        repository.fetch_failures["src/a.ts"] = RuntimeError("socket closed")
        orchestrator, _, _ = build(store, repository)

        summary = await orchestrator.index_repository(registered_project, REPO)

        assert summary.error_paths() == ["src/a.ts"]
        assert summary.errors[0].error == "Unexpected error (RuntimeError): socket closed"
        assert summary.new_files == 1

    @pytest.mark.asyncio
    async def test_embedding_failure_keeps_chunks_and_marks_indexed(self, store, registered_project, fake_embedder):
        fake_embedder.fail = True
        repository = FakeRepository({"src/big.ts": ("h1", source_lines(30))})
        orchestrator, _, _ = build(
            store, repository, embedder=fake_embedder, max_chunk_lines=10, embedding_batch_size=1
        )

        summary = await orchestrator.index_repository(registered_project, REPO)

        chunks = await store.get_file_chunks(registered_project, "src/big.ts")
        assert len(chunks) == 3
        assert all(c.embedding is None for c in chunks)
        assert len(fake_embedder.calls) == 3
        assert summary.chunks_created == 3
        assert summary.embeddings_generated == 0
        assert [e.error for e in summary.errors] == ["Embedding failed: embedding endpoint returned 503"]
        assert (await store.get_project_file(registered_project, "src/big.ts")).is_indexed is True

    @pytest.mark.asyncio
    async def test_partial_embedding_failure(self, store, registered_project, fake_embedder):
        fake_embedder.fail_on_calls = {2}
        repository = FakeRepository({"src/big.ts": ("h1", source_lines(30))})
        orchestrator, _, _ = build(
            store, repository, embedder=fake_embedder, max_chunk_lines=10, embedding_batch_size=1
        )

        summary = await orchestrator.index_repository(registered_project, REPO)

        chunks = await store.get_file_chunks(registered_project, "src/big.ts")
        assert [c.embedding is not None for c in chunks] == [True, False, True]
        assert summary.embeddings_generated == 2
        assert len(summary.errors) == 1

    @pytest.mark.asyncio
    async def test_embeddings_follow_chunk_order(self, store, registered_project, fake_embedder):
        repository = FakeRepository({"src/big.ts": ("h1", source_lines(25))})
        orchestrator, _, _ = build(
            store, repository, embedder=fake_embedder, max_chunk_lines=10, embedding_batch_size=50
        )

        await orchestrator.index_repository(registered_project, REPO)

        chunks = await store.get_file_chunks(registered_project, "src/big.ts")
        assert fake_embedder.calls == [[c.content for c in chunks]]
        assert [c.embedding[1] for c in chunks] == [0.0, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_chunking_failure(self, store, registered_project, fake_embedder):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE)})
        orchestrator, _, _ = build(store, repository, embedder=fake_embedder)
        await orchestrator.index_repository(registered_project, REPO)

        repository.files["src/a.ts"] = ("h2", SOURCE + "// more\n")
        orchestrator.splitter = Mock()
        orchestrator.splitter.split.side_effect = ValueError("unbalanced braces")
        summary = await orchestrator.index_repository(registered_project, REPO)

        assert [(e.path, e.error) for e in summary.errors] == [("src/a.ts", "Chunking failed: unbalanced braces")]
        assert summary.updated_files == 1
        row = await store.get_project_file(registered_project, "src/a.ts")
        assert row.content_id == "h2"
        assert row.is_indexed is True
        assert await store.get_file_chunks(registered_project, "src/a.ts") == []

    @pytest.mark.asyncio
    async def test_ineligible_files_are_not_chunked(self, store, registered_project, fake_embedder):
        repository = FakeRepository({
            "src/a.test.ts": ("h1", SOURCE),
            "src/types.d.ts": ("h2", "declare const x: number;\n"),
            "tsconfig.json": ("h3", "{}\n"),
            "src/huge.ts": ("h4", SOURCE * 10),
        })
        orchestrator, _, _ = build(store, repository, embedder=fake_embedder, max_chunk_file_bytes=100)

        summary = await orchestrator.index_repository(registered_project, REPO)

        assert summary.new_files == 4
        assert summary.chunks_created == 0
        assert fake_embedder.calls == []

    @pytest.mark.asyncio
    async def test_metadata_only_sync(self, store, registered_project, fake_embedder):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE)})
        orchestrator, fetcher, _ = build(
            store, repository, embedder=fake_embedder, include_content=False, chunk_and_embed=False
        )

        summary = await orchestrator.index_repository(registered_project, REPO)

        fetcher.fetch.assert_not_called()
        assert summary.new_files == 1
        row = await store.get_project_file(registered_project, "src/a.ts")
        assert row.line_count == 0
        assert row.content_id == "h1"
        assert await store.count_chunks(registered_project) == 0

    @pytest.mark.asyncio
    async def test_content_only_sync_skips_chunking(self, store, registered_project, fake_embedder):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE)})
        orchestrator, fetcher, _ = build(store, repository, embedder=fake_embedder, chunk_and_embed=False)

        await orchestrator.index_repository(registered_project, REPO)

        fetcher.fetch.assert_called_once()
        assert (await store.get_project_file(registered_project, "src/a.ts")).line_count == 3
        assert await store.count_chunks(registered_project) == 0

    @pytest.mark.asyncio
    async def test_deleted_files_removed_after_processing(self, store, registered_project):
        repository = FakeRepository({"src/old.ts": ("h1", SOURCE), "src/keep.ts": ("h2", SOURCE)})
        orchestrator, _, _ = build(store, repository)
        await orchestrator.index_repository(registered_project, REPO)

        del repository.files["src/old.ts"]
        repository.files["src/new.ts"] = ("h3", SOURCE)
        summary = await orchestrator.index_repository(registered_project, REPO)

        assert summary.deleted_files == 1
        assert summary.new_files == 1
        assert summary.errors == []
        assert await store.get_project_file(registered_project, "src/old.ts") is None
        assert await store.get_file_chunks(registered_project, "src/old.ts") == []

    @pytest.mark.asyncio
    async def test_truncated_tree_adds_warning(self, store, registered_project):
        orchestrator, _, _ = build(store, FakeRepository({"src/a.ts": ("h1", SOURCE)}), truncated=True)

        summary = await orchestrator.index_repository(registered_project, REPO)

        assert len(summary.warnings) == 1
        assert "truncated" in summary.warnings[0]
        assert summary.errors == []

    @pytest.mark.asyncio
    async def test_truncated_tree_skips_deletions(self, store, registered_project):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE), "src/b.ts": ("h2", SOURCE)})
        orchestrator, _, _ = build(store, repository)
        await orchestrator.index_repository(registered_project, REPO)

        del repository.files["src/b.ts"]
        orchestrator, _, _ = build(store, repository, truncated=True)
        summary = await orchestrator.index_repository(registered_project, REPO)

        assert summary.deleted_files == 0
        assert len(summary.warnings) == 2
        assert "skipped" in summary.warnings[1]
        assert await store.get_project_file(registered_project, "src/b.ts") is not None
        assert len(await store.get_file_chunks(registered_project, "src/b.ts")) == 1

    @pytest.mark.asyncio
    async def test_updated_file_past_size_ceiling_drops_chunks(self, store, registered_project, fake_embedder):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE)})
        orchestrator, _, _ = build(store, repository, embedder=fake_embedder, max_chunk_file_bytes=200)
        await orchestrator.index_repository(registered_project, REPO)
        assert len(await store.get_file_chunks(registered_project, "src/a.ts")) == 1

        repository.files["src/a.ts"] = ("h2", SOURCE * 10)
        summary = await orchestrator.index_repository(registered_project, REPO)

        assert summary.updated_files == 1
        assert summary.errors == []
        assert await store.get_file_chunks(registered_project, "src/a.ts") == []
        row = await store.get_project_file(registered_project, "src/a.ts")
        assert row.content_id == "h2"
        assert row.is_indexed is False

    @pytest.mark.asyncio
    async def test_metadata_only_update_drops_chunks_of_old_content(self, store, registered_project):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE)})
        orchestrator, _, _ = build(store, repository)
        await orchestrator.index_repository(registered_project, REPO)

        repository.files["src/a.ts"] = ("h2", SOURCE * 2)
        orchestrator, _, _ = build(store, repository, include_content=False, chunk_and_embed=False)
        await orchestrator.index_repository(registered_project, REPO)

        assert await store.get_file_chunks(registered_project, "src/a.ts") == []
        assert (await store.get_project_file(registered_project, "src/a.ts")).is_indexed is False

    @pytest.mark.asyncio
    async def test_forced_metadata_only_sync_keeps_current_chunks(self, store, registered_project):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE)})
        orchestrator, _, _ = build(store, repository)
        await orchestrator.index_repository(registered_project, REPO)

        orchestrator, _, _ = build(
            store, repository, force_reindex=True, include_content=False, chunk_and_embed=False
        )
        summary = await orchestrator.index_repository(registered_project, REPO)

        assert summary.updated_files == 1
        assert len(await store.get_file_chunks(registered_project, "src/a.ts")) == 1
        assert (await store.get_project_file(registered_project, "src/a.ts")).is_indexed is True


class TestFatalErrors:

    @pytest.mark.asyncio
    async def test_host_unavailable_aborts_before_any_write(self, store, registered_project):
        orchestrator, fetcher, _ = build(store, FakeRepository({}))
        orchestrator.discovery.discover = AsyncMock(side_effect=HostUnavailable("bad credentials", status_code=401))

        with pytest.raises(HostUnavailable):
            await orchestrator.index_repository(registered_project, REPO)

        fetcher.fetch.assert_not_called()
        assert (await store.get_project(registered_project)).status == "pending"

    @pytest.mark.asyncio
    async def test_store_failure_settles_batch_then_aborts(self, store, registered_project):
        repository = FakeRepository({"src/a.ts": ("h1", SOURCE), "src/b.ts": ("h2", SOURCE)})
        orchestrator, _, _ = build(store, repository)
        await orchestrator.index_repository(registered_project, REPO)

        del repository.files["src/b.ts"]
        repository.files["src/a.ts"] = ("h1b", SOURCE + "// x\n")
        repository.files["src/c.ts"] = ("h3", SOURCE)
        original_upsert = store.upsert_project_file

        async def flaky_upsert(project_file):
            if project_file.path == "src/a.ts":
                raise StoreUnavailable("disk I/O error")
            return await original_upsert(project_file)

        store.upsert_project_file = flaky_upsert

        with pytest.raises(StoreUnavailable):
            await orchestrator.index_repository(registered_project, REPO)

        # The sibling unit in the same batch completed; deletions never ran
        assert await store.get_project_file(registered_project, "src/c.ts") is not None
        assert await store.get_project_file(registered_project, "src/b.ts") is not None

    @pytest.mark.asyncio
    async def test_unknown_project(self, store, github_service):
        with pytest.raises(ProjectNotFound):
            await perform_full_repository_index("nope", store, github_service)
