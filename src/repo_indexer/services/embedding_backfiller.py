#!/usr/bin/env python3
"""
Embedding Backfiller
Fills in missing chunk embeddings for an already-indexed project without
re-fetching or re-chunking any file

Bounded-batch polling: one page of chunks whose embedding is NULL or empty,
split into embedding batches. A failed batch is recorded and the next batch
still runs; rerunning picks up whatever is still missing.
"""

from typing import Optional

from repo_indexer.config.runtime import BackfillOptions
from repo_indexer.infrastructure.error_handling import (
    EmbeddingFailed,
    ProjectNotFound,
    is_fatal,
)
from repo_indexer.infrastructure.structured_logging import get_logger
from repo_indexer.models import BackfillResult
from repo_indexer.services.embedding_service import EmbeddingService
from repo_indexer.services.project_store import ProjectStore

logger = get_logger(__name__)


class EmbeddingBackfiller:
    """Catch-up job for chunks persisted without vectors"""

    def __init__(self, store: ProjectStore, embedder: EmbeddingService):
        self.store = store
        self.embedder = embedder

    async def run(
        self,
        project_id: str,
        options: Optional[BackfillOptions] = None
    ) -> BackfillResult:
        options = options or BackfillOptions()
        result = BackfillResult(project_id=project_id, dry_run=options.dry_run)

        if await self.store.get_project(project_id) is None:
            raise ProjectNotFound(project_id)

        chunks = await self.store.find_chunks_missing_embeddings(project_id, limit=options.page_size)
        result.scanned = len(chunks)

        logger.info(
            "backfill_started",
            project_id=project_id,
            chunks_missing=len(chunks),
            batch_size=options.batch_size,
            dry_run=options.dry_run,
        )

        if options.dry_run or not chunks:
            return result

        total_batches = (len(chunks) + options.batch_size - 1) // options.batch_size
        for batch_number, start in enumerate(range(0, len(chunks), options.batch_size), 1):
            batch = chunks[start:start + options.batch_size]
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
                message = e.message if isinstance(e, EmbeddingFailed) else (str(e) or type(e).__name__)
                result.failed_batches += 1
                result.errors.append(f"Batch {batch_number}/{total_batches}: {message}")
                logger.warning(
                    "backfill_batch_failed",
                    project_id=project_id,
                    batch=batch_number,
                    total_batches=total_batches,
                    error=message,
                )
                continue

            written = await self.store.set_chunk_embeddings(
                [(chunk.id, vector) for chunk, vector in zip(batch, vectors)]
            )
            result.embedded += written
            logger.info(
                "backfill_batch_completed",
                project_id=project_id,
                batch=batch_number,
                total_batches=total_batches,
                embedded=written,
            )

        logger.info(
            "backfill_completed",
            project_id=project_id,
            scanned=result.scanned,
            embedded=result.embedded,
            failed_batches=result.failed_batches,
        )
        return result
