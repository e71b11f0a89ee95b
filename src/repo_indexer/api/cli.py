#!/usr/bin/env python3
"""
Repository Indexer CLI
Command-line entry points for project registration, indexing runs and the
embedding catch-up job
"""

import asyncio
import json
from typing import Optional

import typer

from repo_indexer.config.runtime import BackfillOptions, IndexerSettings, IndexingOptions
from repo_indexer.infrastructure.error_handling import IndexerException, ProjectNotFound
from repo_indexer.infrastructure.structured_logging import setup_structured_logging
from repo_indexer.models import BackfillResult, IndexingRunSummary
from repo_indexer.services.embedding_backfiller import EmbeddingBackfiller
from repo_indexer.services.embedding_service import EmbeddingClient
from repo_indexer.services.github_tree_service import GitHubTreeService, parse_github_url
from repo_indexer.services.indexer_orchestrator import perform_full_repository_index
from repo_indexer.services.project_store import SQLiteProjectStore

app = typer.Typer(help="Repository Indexer - incremental code chunking and embedding")


def _fail(error: IndexerException) -> None:
    typer.echo(f"❌ {error.message} [{error.error_id}]", err=True)
    raise typer.Exit(1)


def _store_for(settings: IndexerSettings) -> SQLiteProjectStore:
    return SQLiteProjectStore(settings.resolved_database_path())


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override REPO_INDEXER_LOG_LEVEL"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines on stderr"),
):
    """Configure logging for every command"""
    settings = IndexerSettings()
    setup_structured_logging(
        level=log_level or settings.log_level,
        json_output=json_logs or settings.log_json,
    )


@app.command("register")
def register(
    project_id: str = typer.Argument(..., help="Identifier for the project"),
    github_url: str = typer.Argument(..., help="GitHub repository URL"),
):
    """Register (or re-point) a project at a GitHub repository"""
    settings = IndexerSettings()

    async def _register():
        parse_github_url(github_url)
        async with _store_for(settings) as store:
            return await store.register_project(project_id, github_url)

    try:
        project = asyncio.run(_register())
    except IndexerException as e:
        _fail(e)

    typer.echo(f"✅ Registered {project.id} -> {project.github_url}")


@app.command("index")
def index(
    project_id: str = typer.Argument(..., help="Project to index"),
    force: bool = typer.Option(False, "--force", help="Reprocess every file regardless of content id"),
    max_concurrent_files: int = typer.Option(10, "--max-concurrent-files", min=1, help="Files per concurrent batch"),
    chunk_and_embed: bool = typer.Option(True, "--chunk-and-embed/--no-chunk-and-embed", help="Chunk and embed changed files"),
    include_content: bool = typer.Option(True, "--content/--no-content", help="Fetch file content for line counts"),
    json_output: bool = typer.Option(False, "--json", help="Print the run summary as JSON"),
):
    """Run an incremental index of a registered project"""
    settings = IndexerSettings()
    options = IndexingOptions(
        force_reindex=force,
        include_content=include_content,
        chunk_and_embed=chunk_and_embed,
        max_concurrent_files=max_concurrent_files,
        embedding_batch_size=settings.embedding_batch_size,
    )

    def _progress(processed: int, total: int):
        if not json_output:
            typer.echo(f"⏳ Processed {processed}/{total} changed files", err=True)

    async def _index() -> IndexingRunSummary:
        async with _store_for(settings) as store, GitHubTreeService.from_settings(settings) as github:
            embedder = EmbeddingClient.from_settings(settings) if chunk_and_embed else None
            try:
                return await perform_full_repository_index(
                    project_id,
                    store,
                    github,
                    embedder=embedder,
                    options=options,
                    progress_callback=_progress,
                )
            finally:
                if embedder is not None:
                    await embedder.close()

    try:
        summary = asyncio.run(_index())
    except IndexerException as e:
        _fail(e)

    if json_output:
        typer.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        _print_summary(summary)


@app.command("backfill-embeddings")
def backfill_embeddings(
    project_id: str = typer.Argument(..., help="Project whose chunks need vectors"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1, help="Chunks per embedding request"),
    page_size: int = typer.Option(10000, "--page-size", min=1, help="Maximum chunks scanned per run"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report counts without writing"),
    json_output: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Embed chunks that were persisted without a vector"""
    settings = IndexerSettings()
    options = BackfillOptions(
        batch_size=batch_size or settings.embedding_batch_size,
        page_size=page_size,
        dry_run=dry_run,
    )

    async def _backfill() -> BackfillResult:
        async with _store_for(settings) as store, EmbeddingClient.from_settings(settings) as embedder:
            return await EmbeddingBackfiller(store, embedder).run(project_id, options)

    try:
        result = asyncio.run(_backfill())
    except IndexerException as e:
        _fail(e)

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return

    prefix = "🔍 Dry run: " if result.dry_run else ""
    typer.echo(f"{prefix}Scanned {result.scanned} chunks missing embeddings")
    if not result.dry_run:
        typer.echo(f"✅ Embedded {result.embedded} chunks")
    if result.failed_batches:
        typer.echo(f"⚠️  {result.failed_batches} batch(es) failed", err=True)
        for error in result.errors:
            typer.echo(f"   {error}", err=True)


@app.command("status")
def status(
    project_id: str = typer.Argument(..., help="Project to inspect"),
):
    """Show indexing status for a project"""
    settings = IndexerSettings()

    async def _status():
        async with _store_for(settings) as store:
            project = await store.get_project(project_id)
            if project is None:
                raise ProjectNotFound(project_id)
            files = await store.get_project_files(project_id)
            return (
                project,
                files,
                await store.count_chunks(project_id),
                await store.count_chunks_missing_embeddings(project_id),
            )

    try:
        project, files, chunk_count, missing = asyncio.run(_status())
    except IndexerException as e:
        _fail(e)

    indexed = sum(1 for f in files.values() if f.is_indexed)
    last_indexed = project.last_indexed_at.isoformat() if project.last_indexed_at else "never"

    typer.echo(f"📦 {project.id} ({project.github_url})")
    typer.echo(f"   Status: {project.status}")
    typer.echo(f"   Last indexed: {last_indexed}")
    typer.echo(f"   Files: {len(files)} ({indexed} indexed)")
    typer.echo(f"   Chunks: {chunk_count} ({missing} missing embeddings)")


def _print_summary(summary: IndexingRunSummary) -> None:
    typer.echo(f"✅ Indexed {summary.project_id} in {summary.processing_time_ms} ms")
    typer.echo(f"   Total files: {summary.total_files}")
    typer.echo(
        f"   New: {summary.new_files}  Updated: {summary.updated_files}  "
        f"Deleted: {summary.deleted_files}  Skipped: {summary.skipped_files}"
    )
    typer.echo(f"   Chunks created: {summary.chunks_created}  Embeddings: {summary.embeddings_generated}")
    for warning in summary.warnings:
        typer.echo(f"⚠️  {warning}", err=True)
    if summary.errors:
        typer.echo(f"⚠️  {len(summary.errors)} file(s) failed:", err=True)
        for error in summary.errors:
            typer.echo(f"   {error.path}: {error.error}", err=True)


if __name__ == "__main__":
    app()
