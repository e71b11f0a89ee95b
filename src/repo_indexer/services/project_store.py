"""
Project Store for Indexed Repository State

Persists three record families:
- projects: one row per registered repository
- project_files: per-file metadata, unique per (project_id, path)
- code_chunks: per-chunk rows, unique per (project_id, path, chunk_hash)

The orchestrator depends only on the ProjectStore interface. SQLiteProjectStore
is the bundled backend; every sqlite3.Error surfaces as StoreUnavailable.
"""

import asyncio
import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from repo_indexer.infrastructure.error_handling import StoreUnavailable
from repo_indexer.infrastructure.structured_logging import get_logger
from repo_indexer.models import CodeChunk, FileType, Project, ProjectFile

logger = get_logger(__name__)

MEMORY_DATABASE = ":memory:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    github_url TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    last_indexed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_files (
    project_id TEXT NOT NULL,
    path TEXT NOT NULL,
    content_id TEXT NOT NULL,
    file_type TEXT NOT NULL,
    language TEXT NOT NULL,
    extension TEXT NOT NULL DEFAULT '',
    size INTEGER NOT NULL DEFAULT 0,
    line_count INTEGER NOT NULL DEFAULT 0,
    last_seen_at TEXT NOT NULL,
    is_indexed INTEGER NOT NULL DEFAULT 0,
    UNIQUE (project_id, path)
);

CREATE TABLE IF NOT EXISTS code_chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    path TEXT NOT NULL,
    chunk_hash TEXT NOT NULL,
    language TEXT NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    content TEXT NOT NULL,
    token_count INTEGER NOT NULL DEFAULT 0,
    embedding TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE (project_id, path, chunk_hash)
);

CREATE INDEX IF NOT EXISTS idx_chunks_project_path ON code_chunks(project_id, path);
"""

# NULL and an empty JSON array both count as "no vector yet"
MISSING_EMBEDDING_CLAUSE = "(embedding IS NULL OR embedding = '[]')"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectStore(ABC):
    """Capability set the orchestrator and catch-up job need from storage"""

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def register_project(self, project_id: str, github_url: str) -> Project:
        pass

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        pass

    @abstractmethod
    async def update_project_metadata(
        self,
        project_id: str,
        status: str,
        last_indexed_at: Optional[datetime] = None
    ) -> None:
        pass

    @abstractmethod
    async def get_project_files(self, project_id: str) -> Dict[str, ProjectFile]:
        """All file rows for a project keyed by path"""
        pass

    @abstractmethod
    async def get_project_file(self, project_id: str, path: str) -> Optional[ProjectFile]:
        pass

    @abstractmethod
    async def upsert_project_file(self, project_file: ProjectFile) -> None:
        """Insert or update by (project_id, path); never changes is_indexed of an existing row"""
        pass

    @abstractmethod
    async def set_file_indexed(self, project_id: str, path: str, is_indexed: bool) -> None:
        pass

    @abstractmethod
    async def delete_project_file(self, project_id: str, path: str) -> None:
        """Remove a file row together with all of its chunks"""
        pass

    @abstractmethod
    async def replace_file_chunks(
        self,
        project_id: str,
        path: str,
        chunks: Sequence[CodeChunk]
    ) -> List[CodeChunk]:
        """Delete every chunk for the path, then insert the new set, atomically"""
        pass

    @abstractmethod
    async def delete_file_chunks(self, project_id: str, path: str) -> int:
        pass

    @abstractmethod
    async def get_file_chunks(self, project_id: str, path: str) -> List[CodeChunk]:
        pass

    @abstractmethod
    async def set_chunk_embeddings(self, updates: Sequence[Tuple[int, List[float]]]) -> int:
        """Attach vectors by chunk id; returns the number of rows written"""
        pass

    @abstractmethod
    async def find_chunks_missing_embeddings(self, project_id: str, limit: int) -> List[CodeChunk]:
        pass

    @abstractmethod
    async def count_chunks_missing_embeddings(self, project_id: str) -> int:
        pass

    @abstractmethod
    async def count_chunks(self, project_id: str) -> int:
        pass


class SQLiteProjectStore(ProjectStore):
    """SQLite backend with WAL mode, serialised behind an asyncio lock"""

    def __init__(self, db_path: Union[str, Path] = Path("~/.repo-indexer/index.db")):
        if str(db_path) == MEMORY_DATABASE:
            self.db_path = MEMORY_DATABASE
        else:
            self.db_path = str(Path(db_path).expanduser())
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _session(self, operation: str):
        """Serialise access and translate sqlite failures into StoreUnavailable"""
        async with self._lock:
            if self.conn is None:
                raise StoreUnavailable(
                    f"Store not initialized ({operation})",
                    context={"operation": operation, "db_path": self.db_path}
                )
            try:
                yield self.conn
            except sqlite3.Error as e:
                logger.error("store_operation_failed", operation=operation, error=str(e))
                raise StoreUnavailable(
                    f"Store operation '{operation}' failed: {e}",
                    context={"operation": operation, "db_path": self.db_path},
                    original_exception=e,
                ) from e

    @asynccontextmanager
    async def _transaction(self, operation: str):
        async with self._session(operation) as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    async def initialize(self) -> None:
        """Open the connection and create the schema"""
        async with self._lock:
            try:
                if self.db_path != MEMORY_DATABASE:
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self.conn = sqlite3.connect(
                    self.db_path,
                    isolation_level=None,  # Autocommit; transactions are explicit
                    check_same_thread=False
                )
                self.conn.row_factory = sqlite3.Row
                self.conn.execute("PRAGMA journal_mode=WAL")
                self.conn.execute("PRAGMA synchronous=NORMAL")
                self.conn.executescript(SCHEMA)
            except (sqlite3.Error, OSError) as e:
                raise StoreUnavailable(
                    f"Cannot open store at {self.db_path}: {e}",
                    context={"db_path": self.db_path},
                    original_exception=e,
                ) from e

        logger.info("project_store_initialized", db_path=self.db_path)

    async def close(self) -> None:
        async with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    async def __aenter__(self) -> "SQLiteProjectStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # Projects

    async def register_project(self, project_id: str, github_url: str) -> Project:
        async with self._session("register_project") as conn:
            conn.execute(
                """
                INSERT INTO projects (id, github_url, status, created_at)
                VALUES (?, ?, 'pending', ?)
                ON CONFLICT(id) DO UPDATE SET github_url = excluded.github_url
                """,
                (project_id, github_url, utcnow().isoformat())
            )
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return _row_to_project(row)

    async def get_project(self, project_id: str) -> Optional[Project]:
        async with self._session("get_project") as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return _row_to_project(row) if row else None

    async def update_project_metadata(
        self,
        project_id: str,
        status: str,
        last_indexed_at: Optional[datetime] = None
    ) -> None:
        async with self._session("update_project_metadata") as conn:
            conn.execute(
                """
                UPDATE projects
                SET status = ?, last_indexed_at = COALESCE(?, last_indexed_at)
                WHERE id = ?
                """,
                (status, last_indexed_at.isoformat() if last_indexed_at else None, project_id)
            )

    # Files

    async def get_project_files(self, project_id: str) -> Dict[str, ProjectFile]:
        async with self._session("get_project_files") as conn:
            rows = conn.execute(
                "SELECT * FROM project_files WHERE project_id = ? ORDER BY path",
                (project_id,)
            ).fetchall()
        return {row["path"]: _row_to_project_file(row) for row in rows}

    async def get_project_file(self, project_id: str, path: str) -> Optional[ProjectFile]:
        async with self._session("get_project_file") as conn:
            row = conn.execute(
                "SELECT * FROM project_files WHERE project_id = ? AND path = ?",
                (project_id, path)
            ).fetchone()
        return _row_to_project_file(row) if row else None

    async def upsert_project_file(self, project_file: ProjectFile) -> None:
        async with self._session("upsert_project_file") as conn:
            conn.execute(
                """
                INSERT INTO project_files (
                    project_id, path, content_id, file_type, language, extension,
                    size, line_count, last_seen_at, is_indexed
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id, path) DO UPDATE SET
                    content_id = excluded.content_id,
                    file_type = excluded.file_type,
                    language = excluded.language,
                    extension = excluded.extension,
                    size = excluded.size,
                    line_count = excluded.line_count,
                    last_seen_at = excluded.last_seen_at
                """,
                (
                    project_file.project_id,
                    project_file.path,
                    project_file.content_id,
                    FileType(project_file.file_type).value,
                    project_file.language,
                    project_file.extension,
                    project_file.size,
                    project_file.line_count,
                    project_file.last_seen_at.isoformat(),
                    int(project_file.is_indexed),
                )
            )

    async def set_file_indexed(self, project_id: str, path: str, is_indexed: bool) -> None:
        async with self._session("set_file_indexed") as conn:
            conn.execute(
                "UPDATE project_files SET is_indexed = ? WHERE project_id = ? AND path = ?",
                (int(is_indexed), project_id, path)
            )

    async def delete_project_file(self, project_id: str, path: str) -> None:
        async with self._transaction("delete_project_file") as conn:
            conn.execute(
                "DELETE FROM code_chunks WHERE project_id = ? AND path = ?",
                (project_id, path)
            )
            conn.execute(
                "DELETE FROM project_files WHERE project_id = ? AND path = ?",
                (project_id, path)
            )

    # Chunks

    async def replace_file_chunks(
        self,
        project_id: str,
        path: str,
        chunks: Sequence[CodeChunk]
    ) -> List[CodeChunk]:
        now = utcnow().isoformat()
        persisted: List[CodeChunk] = []
        seen_hashes = set()

        async with self._transaction("replace_file_chunks") as conn:
            conn.execute(
                "DELETE FROM code_chunks WHERE project_id = ? AND path = ?",
                (project_id, path)
            )
            for chunk in chunks:
                # Identical chunk texts in one file share a hash; first wins
                if chunk.chunk_hash in seen_hashes:
                    continue
                seen_hashes.add(chunk.chunk_hash)

                cursor = conn.execute(
                    """
                    INSERT INTO code_chunks (
                        project_id, path, chunk_hash, language, start_line, end_line,
                        content, token_count, embedding, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        project_id,
                        path,
                        chunk.chunk_hash,
                        chunk.language,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.content,
                        chunk.token_count,
                        _encode_embedding(chunk.embedding),
                        now,
                    )
                )
                persisted.append(CodeChunk(
                    project_id=project_id,
                    path=path,
                    chunk_hash=chunk.chunk_hash,
                    language=chunk.language,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    content=chunk.content,
                    token_count=chunk.token_count,
                    embedding=chunk.embedding,
                    id=cursor.lastrowid,
                ))

        return persisted

    async def delete_file_chunks(self, project_id: str, path: str) -> int:
        async with self._session("delete_file_chunks") as conn:
            cursor = conn.execute(
                "DELETE FROM code_chunks WHERE project_id = ? AND path = ?",
                (project_id, path)
            )
            return cursor.rowcount

    async def get_file_chunks(self, project_id: str, path: str) -> List[CodeChunk]:
        async with self._session("get_file_chunks") as conn:
            rows = conn.execute(
                """
                SELECT * FROM code_chunks
                WHERE project_id = ? AND path = ?
                ORDER BY start_line ASC, id ASC
                """,
                (project_id, path)
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    async def set_chunk_embeddings(self, updates: Sequence[Tuple[int, List[float]]]) -> int:
        if not updates:
            return 0
        now = utcnow().isoformat()
        written = 0
        async with self._transaction("set_chunk_embeddings") as conn:
            for chunk_id, vector in updates:
                cursor = conn.execute(
                    "UPDATE code_chunks SET embedding = ?, updated_at = ? WHERE id = ?",
                    (_encode_embedding(vector), now, chunk_id)
                )
                written += cursor.rowcount
        return written

    async def find_chunks_missing_embeddings(self, project_id: str, limit: int) -> List[CodeChunk]:
        async with self._session("find_chunks_missing_embeddings") as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM code_chunks
                WHERE project_id = ? AND {MISSING_EMBEDDING_CLAUSE}
                ORDER BY path ASC, start_line ASC, id ASC
                LIMIT ?
                """,
                (project_id, limit)
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    async def count_chunks_missing_embeddings(self, project_id: str) -> int:
        async with self._session("count_chunks_missing_embeddings") as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM code_chunks WHERE project_id = ? AND {MISSING_EMBEDDING_CLAUSE}",
                (project_id,)
            ).fetchone()
        return row[0]

    async def count_chunks(self, project_id: str) -> int:
        async with self._session("count_chunks") as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM code_chunks WHERE project_id = ?",
                (project_id,)
            ).fetchone()
        return row[0]


def _encode_embedding(vector: Optional[List[float]]) -> Optional[str]:
    if not vector:
        return None
    return json.dumps(vector)


def _decode_embedding(raw: Optional[str]) -> Optional[List[float]]:
    if not raw:
        return None
    vector = json.loads(raw)
    return vector or None


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        github_url=row["github_url"],
        status=row["status"],
        last_indexed_at=_parse_datetime(row["last_indexed_at"]),
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_project_file(row: sqlite3.Row) -> ProjectFile:
    return ProjectFile(
        project_id=row["project_id"],
        path=row["path"],
        content_id=row["content_id"],
        file_type=FileType(row["file_type"]),
        language=row["language"],
        size=row["size"],
        line_count=row["line_count"],
        last_seen_at=_parse_datetime(row["last_seen_at"]),
        extension=row["extension"],
        is_indexed=bool(row["is_indexed"]),
    )


def _row_to_chunk(row: sqlite3.Row) -> CodeChunk:
    return CodeChunk(
        project_id=row["project_id"],
        path=row["path"],
        chunk_hash=row["chunk_hash"],
        language=row["language"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        content=row["content"],
        token_count=row["token_count"],
        embedding=_decode_embedding(row["embedding"]),
        id=row["id"],
    )
