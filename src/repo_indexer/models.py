"""
Data model shared by discovery, orchestration and persistence

FileDescriptor/DiscoveryResult are ephemeral discovery output, ProjectFile and
CodeChunk mirror persisted rows, IndexingRunSummary/BackfillResult are the
results handed back to callers.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ObjectType(str, Enum):
    """Kind of tree entry reported by the repository host"""
    FILE = "file"
    DIRECTORY = "directory"
    OTHER = "other"

    @classmethod
    def from_git_type(cls, git_type: str) -> "ObjectType":
        if git_type == "blob":
            return cls.FILE
        if git_type == "tree":
            return cls.DIRECTORY
        return cls.OTHER


class FileType(str, Enum):
    """File classification stored on ProjectFile rows"""
    SOURCE = "source"
    COMPONENT = "component"
    TEST = "test"
    CONFIG = "config"
    DOCUMENTATION = "documentation"
    STYLE = "style"
    DECLARATION = "declaration"
    OTHER = "other"


@dataclass(frozen=True)
class RepoRef:
    """Parsed repository reference"""
    host: str
    owner: str
    name: str
    branch: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class FileDescriptor:
    """One tracked entry of the repository tree"""
    path: str
    object_type: ObjectType
    content_id: str
    size: int = 0


@dataclass
class DiscoveryResult:
    """Filtered tree listing for the resolved default-branch commit"""
    files: List[FileDescriptor]
    commit_sha: str
    tree_sha: str
    branch: str
    truncated: bool = False
    total_tree_items: int = 0


@dataclass(frozen=True)
class FetchedContent:
    """Decoded file content as returned by the content fetcher"""
    text: str
    content_id: str
    size: int
    encoding: str = "utf-8"


@dataclass
class Project:
    """Project-level metadata row"""
    id: str
    github_url: str
    status: str = "pending"
    last_indexed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class ProjectFile:
    """Per-file metadata row, unique per (project_id, path)"""
    project_id: str
    path: str
    content_id: str
    file_type: FileType
    language: str
    size: int
    line_count: int
    last_seen_at: datetime
    extension: str = ""
    is_indexed: bool = False


@dataclass(frozen=True)
class ChunkDraft:
    """Splitter output before persistence"""
    start_line: int
    end_line: int
    text: str
    token_count: int


@dataclass
class CodeChunk:
    """Persisted chunk row, unique per (project_id, path, chunk_hash)"""
    project_id: str
    path: str
    chunk_hash: str
    language: str
    start_line: int
    end_line: int
    content: str
    token_count: int
    embedding: Optional[List[float]] = None
    id: Optional[int] = None

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)


@dataclass(frozen=True)
class FileError:
    """A file that failed independently of the rest of the run"""
    path: str
    error: str


@dataclass
class IndexingRunSummary:
    """Counts and isolated failures of one indexing run"""
    project_id: str = ""
    total_files: int = 0
    new_files: int = 0
    updated_files: int = 0
    deleted_files: int = 0
    skipped_files: int = 0
    chunks_created: int = 0
    embeddings_generated: int = 0
    processing_time_ms: int = 0
    commit_sha: Optional[str] = None
    errors: List[FileError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, path: str, message: str) -> None:
        self.errors.append(FileError(path=path, error=message))

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def processed_files(self) -> int:
        return self.new_files + self.updated_files

    def error_paths(self) -> List[str]:
        return [e.path for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BackfillResult:
    """Outcome of one catch-up embedding run"""
    project_id: str
    scanned: int = 0
    embedded: int = 0
    failed_batches: int = 0
    dry_run: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
