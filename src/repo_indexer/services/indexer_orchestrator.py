#!/usr/bin/env python3
"""
IndexerOrchestrator - Incremental Repository Indexing

One run for one project:
1. Discover the current tree (fatal on host failure)
2. Reconcile against persisted file rows
3. Process New/Updated files in sequential batches of concurrent units
   (fetch -> classify -> upsert -> chunk -> embed)
4. Remove Deleted files only after every batch has settled, and never
   on a truncated listing
5. Write project metadata once and return the run summary

Per-file failures are caught at the unit boundary and recorded in the
summary; FatalIndexingError subclasses abort the run.
"""

import asyncio
import inspect
import time
from typing import Awaitable, Callable, List, Mapping, Optional, Union

from repo_indexer.config.runtime import IndexingOptions
from repo_indexer.infrastructure.error_handling import (
    ChunkingFailed,
    EmbeddingFailed,
    FatalIndexingError,
    InvalidRepository,
    ProjectNotFound,
    classify_exception,
    is_fatal,
)
from repo_indexer.infrastructure.structured_logging import get_logger
from repo_indexer.models import (
    CodeChunk,
    FileDescriptor,
    IndexingRunSummary,
    ProjectFile,
    RepoRef,
)
from repo_indexer.services.chunk_splitter import (
    ChunkSplitter,
    LineChunkSplitter,
    compute_chunk_hash,
)
from repo_indexer.services.content_fetcher import ContentFetcher
from repo_indexer.services.embedding_service import EmbeddingService
from repo_indexer.services.file_classifier import classify_file, count_lines, is_chunk_eligible
from repo_indexer.services.file_filters import FilterConfig
from repo_indexer.services.github_tree_service import GitHubTreeService, parse_github_url
from repo_indexer.services.project_store import ProjectStore, utcnow
from repo_indexer.services.reconciler import ChangeKind, reconcile
from repo_indexer.services.tree_discovery import TreeDiscoveryClient

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]

STATUS_INDEXED = "indexed"


class IndexerOrchestrator:
    """Drives discovery, reconciliation, batch processing and deletion for one project"""

    def __init__(
        self,
        store: ProjectStore,
        discovery: TreeDiscoveryClient,
        fetcher: ContentFetcher,
        splitter: Optional[ChunkSplitter] = None,
        embedder: Optional[EmbeddingService] = None,
        options: Optional[IndexingOptions] = None,
        filter_config: Optional[FilterConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.store = store
        self.discovery = discovery
        self.fetcher = fetcher
        self.options = options or IndexingOptions()
        self.splitter = splitter or LineChunkSplitter.from_options(self.options)
        self.embedder = embedder
        self.filter_config = filter_config or discovery.filter_config
        self.progress_callback = progress_callback

    async def index_repository(self, project_id: str, repo: RepoRef) -> IndexingRunSummary:
        """Run a full incremental index and return its summary"""
        started = time.monotonic()
        summary = IndexingRunSummary(project_id=project_id)

        logger.info(
            "full_repository_indexing_started",
            project_id=project_id,
            repository=repo.full_name,
            options=self.options.to_dict(),
        )

        try:
            discovered = await self.discovery.discover(repo)
            summary.commit_sha = discovered.commit_sha
            if discovered.truncated:
                summary.warnings.append(
                    f"Repository tree listing was truncated by the host "
                    f"({discovered.total_tree_items} items returned); some files may be missing"
                )

            existing = await self.store.get_project_files(project_id)
            plan = reconcile(
                existing,
                discovered.files,
                force_reindex=self.options.force_reindex,
                filter_config=self.filter_config,
            )
            summary.total_files = plan.in_scope
            summary.skipped_files = len(plan.unchanged)

            await self._process_in_batches(
                project_id, repo, plan.to_process, existing, discovered.commit_sha, summary
            )
            if discovered.truncated and plan.deleted:
                # A partial listing cannot prove a path is gone
                summary.warnings.append(
                    f"Deletion of {len(plan.deleted)} file(s) absent from the truncated listing was skipped"
                )
                logger.warning(
                    "deletions_skipped_truncated_tree",
                    project_id=project_id,
                    skipped_deletions=len(plan.deleted),
                    paths=plan.deleted[:10],
                )
            else:
                await self._remove_deleted_files(project_id, plan.deleted, summary)

            await self.store.update_project_metadata(
                project_id, status=STATUS_INDEXED, last_indexed_at=utcnow()
            )
        except FatalIndexingError as e:
            summary.processing_time_ms = _elapsed_ms(started)
            logger.error(
                "full_repository_indexing_failed",
                project_id=project_id,
                error_id=e.error_id,
                category=e.category.value,
                error=e.message,
            )
            raise

        summary.processing_time_ms = _elapsed_ms(started)
        logger.info(
            "full_repository_indexing_completed",
            project_id=project_id,
            total_files=summary.total_files,
            new_files=summary.new_files,
            updated_files=summary.updated_files,
            deleted_files=summary.deleted_files,
            skipped_files=summary.skipped_files,
            chunks_created=summary.chunks_created,
            embeddings_generated=summary.embeddings_generated,
            errors=len(summary.errors),
            processing_time_ms=summary.processing_time_ms,
        )
        return summary

    async def _process_in_batches(
        self,
        project_id: str,
        repo: RepoRef,
        work: List,
        existing: Mapping[str, ProjectFile],
        commit_sha: str,
        summary: IndexingRunSummary,
    ) -> None:
        batch_size = self.options.max_concurrent_files
        total = len(work)

        for start in range(0, total, batch_size):
            batch = work[start:start + batch_size]
            results = await asyncio.gather(
                *[
                    self._run_unit(project_id, repo, descriptor, kind, existing.get(descriptor.path), commit_sha, summary)
                    for descriptor, kind in batch
                ],
                return_exceptions=True
            )

            # The batch has settled; now surface the first fatal failure
            for result in results:
                if isinstance(result, BaseException):
                    raise result

            processed = min(start + batch_size, total)
            logger.info(
                "batch_processed",
                project_id=project_id,
                processed=processed,
                total=total,
                progress=round(processed / total * 100),
            )
            await self._report_progress(processed, total)

    async def _run_unit(
        self,
        project_id: str,
        repo: RepoRef,
        descriptor: FileDescriptor,
        kind: ChangeKind,
        previous: Optional[ProjectFile],
        commit_sha: str,
        summary: IndexingRunSummary,
    ) -> None:
        """Unit-of-work boundary: only fatal errors escape"""
        try:
            await self._process_file(project_id, repo, descriptor, kind, previous, commit_sha, summary)
        except Exception as e:
            if is_fatal(e):
                raise
            message = classify_exception(e)
            summary.add_error(descriptor.path, message)
            logger.error(
                "file_processing_failed",
                project_id=project_id,
                path=descriptor.path,
                error=message,
            )

    async def _process_file(
        self,
        project_id: str,
        repo: RepoRef,
        descriptor: FileDescriptor,
        kind: ChangeKind,
        previous: Optional[ProjectFile],
        commit_sha: str,
        summary: IndexingRunSummary,
    ) -> None:
        path = descriptor.path
        content: Optional[str] = None
        content_id = descriptor.content_id
        size = descriptor.size

        if self.options.fetch_content:
            fetched = await self.fetcher.fetch(
                repo,
                path,
                ref=commit_sha,
                expected_content_id=descriptor.content_id,
                expected_size=descriptor.size,
            )
            content = fetched.text
            content_id = fetched.content_id or descriptor.content_id
            size = fetched.size

        classification = classify_file(path, content)

        await self.store.upsert_project_file(ProjectFile(
            project_id=project_id,
            path=path,
            content_id=content_id,
            file_type=classification.file_type,
            language=classification.language,
            size=size,
            line_count=count_lines(content),
            last_seen_at=utcnow(),
            extension=classification.extension,
            is_indexed=previous.is_indexed if previous else False,
        ))

        if kind == ChangeKind.NEW:
            summary.new_files += 1
        else:
            summary.updated_files += 1

        evaluated = self.options.chunk_and_embed and content is not None
        if evaluated and is_chunk_eligible(classification.file_type, size, self.options.max_chunk_file_bytes):
            await self._chunk_and_embed(project_id, path, content, classification.language, summary)
            return

        # Not rechunked this run: chunks of other content must not survive
        if previous is not None and (evaluated or previous.content_id != content_id):
            removed = await self.store.delete_file_chunks(project_id, path)
            await self.store.set_file_indexed(project_id, path, False)
            logger.info(
                "stale_chunks_removed",
                project_id=project_id,
                path=path,
                file_type=classification.file_type.value,
                size=size,
                removed_chunks=removed,
            )

    async def _chunk_and_embed(
        self,
        project_id: str,
        path: str,
        content: str,
        language: str,
        summary: IndexingRunSummary,
    ) -> None:
        try:
            drafts = self.splitter.split(content, path, language)
        except Exception as e:
            if is_fatal(e):
                raise
            # Chunks of the previous content must not outlive it
            await self.store.delete_file_chunks(project_id, path)
            raise ChunkingFailed(path, str(e) or type(e).__name__, original_exception=e) from e

        chunks = [
            CodeChunk(
                project_id=project_id,
                path=path,
                chunk_hash=compute_chunk_hash(draft.text),
                language=language,
                start_line=draft.start_line,
                end_line=draft.end_line,
                content=draft.text,
                token_count=draft.token_count,
            )
            for draft in drafts
        ]
        persisted = await self.store.replace_file_chunks(project_id, path, chunks)
        summary.chunks_created += len(persisted)

        if self.embedder is not None and persisted:
            await self._embed_chunks(project_id, path, persisted, summary)

        # Chunking succeeded; embedding is best-effort
        await self.store.set_file_indexed(project_id, path, True)

    async def _embed_chunks(
        self,
        project_id: str,
        path: str,
        chunks: List[CodeChunk],
        summary: IndexingRunSummary,
    ) -> None:
        batch_size = self.options.embedding_batch_size
        recorded_failure = False

        for start in range(0, len(chunks), batch_size):
            batch = chunks[start:start + batch_size]
            try:
                vectors = await self.embedder.embed_texts([c.content for c in batch])
                if len(vectors) != len(batch):
                    raise EmbeddingFailed(
                        f"Expected {len(batch)} embeddings, got {len(vectors)}",
                        batch_size=len(batch),
                    )
            except Exception as e:
                if is_fatal(e):
                    raise
                failure = e if isinstance(e, EmbeddingFailed) else EmbeddingFailed(
                    str(e) or type(e).__name__, batch_size=len(batch), original_exception=e
                )
                logger.warning(
                    "embedding_batch_failed",
                    project_id=project_id,
                    path=path,
                    batch_start=start,
                    batch_size=len(batch),
                    error=failure.message,
                )
                if not recorded_failure:
                    summary.add_error(path, failure.summary_message())
                    recorded_failure = True
                continue

            written = await self.store.set_chunk_embeddings(
                [(chunk.id, vector) for chunk, vector in zip(batch, vectors)]
            )
            summary.embeddings_generated += written

    async def _remove_deleted_files(
        self,
        project_id: str,
        deleted: List[str],
        summary: IndexingRunSummary,
    ) -> None:
        for path in deleted:
            await self.store.delete_project_file(project_id, path)
            summary.deleted_files += 1

        if deleted:
            logger.info(
                "deleted_removed_files",
                project_id=project_id,
                deleted_count=len(deleted),
                paths=deleted[:10],
            )

    async def _report_progress(self, processed: int, total: int) -> None:
        if self.progress_callback is None:
            return
        result = self.progress_callback(processed, total)
        if inspect.isawaitable(result):
            await result


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def perform_full_repository_index(
    project_id: str,
    store: ProjectStore,
    github: GitHubTreeService,
    embedder: Optional[EmbeddingService] = None,
    options: Optional[IndexingOptions] = None,
    splitter: Optional[ChunkSplitter] = None,
    filter_config: Optional[FilterConfig] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> IndexingRunSummary:
    """Index a registered project by id, reading its repository URL from the store"""
    project = await store.get_project(project_id)
    if project is None:
        raise ProjectNotFound(project_id)
    if not project.github_url:
        raise InvalidRepository(
            f"Project {project_id} has no repository URL",
            context={"project_id": project_id},
        )

    repo = parse_github_url(project.github_url)
    discovery = TreeDiscoveryClient(github, filter_config=filter_config)
    orchestrator = IndexerOrchestrator(
        store=store,
        discovery=discovery,
        fetcher=ContentFetcher(github),
        splitter=splitter,
        embedder=embedder,
        options=options,
        filter_config=filter_config,
        progress_callback=progress_callback,
    )
    return await orchestrator.index_repository(project_id, repo)
