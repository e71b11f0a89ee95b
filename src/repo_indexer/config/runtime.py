"""
Runtime Configuration Module
Environment settings for outbound services plus explicit per-run options

IndexerSettings is read from the environment (prefix REPO_INDEXER_) and an
optional .env file. Run parameters live in IndexingOptions/BackfillOptions
and are passed into each run; nothing run-specific is cached process-wide.
"""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_indexer.infrastructure.error_handling import ErrorCategory, IndexerException


class IndexerSettings(BaseSettings):
    """Connection settings for the repository host, embedding service and store"""

    # Repository host
    github_api_url: str = Field(
        default="https://api.github.com",
        description="Base URL of the GitHub REST API"
    )
    github_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("REPO_INDEXER_GITHUB_TOKEN", "GITHUB_TOKEN"),
        description="Token sent as a Bearer credential to the repository host"
    )
    github_timeout: float = Field(default=30.0, gt=0)

    # Embedding service
    embedding_api_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of an OpenAI-compatible embeddings endpoint"
    )
    embedding_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("REPO_INDEXER_EMBEDDING_API_KEY", "OPENAI_API_KEY"),
    )
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: Optional[int] = Field(default=None, gt=0)
    embedding_timeout: float = Field(default=60.0, gt=0)
    embedding_batch_size: int = Field(default=50, gt=0)

    # Persistence
    database_path: Path = Path("~/.repo-indexer/index.db")

    # Retries
    max_retries: int = Field(default=3, ge=1)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="REPO_INDEXER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("github_api_url", "embedding_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Base URLs are joined with leading-slash paths"""
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    def resolved_database_path(self) -> Path:
        return Path(self.database_path).expanduser()

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration for debugging with credentials masked"""
        data = self.model_dump()
        for secret in ("github_token", "embedding_api_key"):
            if data.get(secret):
                data[secret] = "***"
        data["database_path"] = str(data["database_path"])
        return data


class ConfigurationError(IndexerException):
    """Invalid run options"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(message, **kwargs)


@dataclass
class IndexingOptions:
    """Options for one indexing run"""
    force_reindex: bool = False
    include_content: bool = True
    chunk_and_embed: bool = True
    max_concurrent_files: int = 10
    embedding_batch_size: int = 50

    # Chunk eligibility and splitter bounds
    max_chunk_file_bytes: int = 500 * 1024
    max_chunk_lines: int = 200
    max_chunk_tokens: int = 1000
    preserve_functions: bool = True

    def __post_init__(self):
        for name in (
            "max_concurrent_files",
            "embedding_batch_size",
            "max_chunk_file_bytes",
            "max_chunk_lines",
            "max_chunk_tokens",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

    @property
    def fetch_content(self) -> bool:
        """Content is needed for line counts and for chunking"""
        return self.include_content or self.chunk_and_embed

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BackfillOptions:
    """Options for one catch-up embedding run"""
    batch_size: int = 50
    page_size: int = 10000
    dry_run: bool = False

    def __post_init__(self):
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be a positive integer, got {self.batch_size!r}")
        if self.page_size < 1:
            raise ConfigurationError(f"page_size must be a positive integer, got {self.page_size!r}")
