#!/usr/bin/env python3
"""
Unit tests for environment settings and per-run options
"""

from pathlib import Path

import pytest

from repo_indexer.config.runtime import (
    BackfillOptions,
    ConfigurationError,
    IndexerSettings,
    IndexingOptions,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("GITHUB_TOKEN", "OPENAI_API_KEY", "REPO_INDEXER_GITHUB_TOKEN", "REPO_INDEXER_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestIndexerSettings:

    def test_defaults(self):
        settings = IndexerSettings(_env_file=None)

        assert settings.github_api_url == "https://api.github.com"
        assert settings.github_token is None
        assert settings.embedding_batch_size == 50
        assert settings.log_level == "INFO"

    def test_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("REPO_INDEXER_GITHUB_API_URL", "https://ghe.example.com/api/v3/")
        monkeypatch.setenv("REPO_INDEXER_LOG_LEVEL", "debug")
        monkeypatch.setenv("REPO_INDEXER_EMBEDDING_DIMENSION", "1536")

        settings = IndexerSettings(_env_file=None)

        assert settings.github_api_url == "https://ghe.example.com/api/v3"
        assert settings.log_level == "DEBUG"
        assert settings.embedding_dimension == 1536

    def test_github_token_alias(self, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_plain")
        assert IndexerSettings(_env_file=None).github_token == "ghp_plain"

    def test_database_path_expands_home(self, tmp_path):
        settings = IndexerSettings(_env_file=None, database_path=tmp_path / "x.db")
        assert settings.resolved_database_path() == tmp_path / "x.db"
        assert "~" not in str(IndexerSettings(_env_file=None).resolved_database_path())

    def test_to_dict_masks_credentials(self, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_secret")
        data = IndexerSettings(_env_file=None).to_dict()

        assert data["github_token"] == "***"
        assert data["embedding_api_key"] is None
        assert isinstance(data["database_path"], str)
        assert Path(data["database_path"]).name == "index.db"


class TestIndexingOptions:

    def test_defaults(self):
        options = IndexingOptions()

        assert options.max_concurrent_files == 10
        assert options.embedding_batch_size == 50
        assert options.fetch_content is True

    def test_metadata_only_skips_fetch(self):
        assert IndexingOptions(include_content=False, chunk_and_embed=False).fetch_content is False
        assert IndexingOptions(include_content=False, chunk_and_embed=True).fetch_content is True

    @pytest.mark.parametrize("field", ["max_concurrent_files", "embedding_batch_size", "max_chunk_lines"])
    def test_rejects_non_positive_bounds(self, field):
        with pytest.raises(ConfigurationError, match=field):
            IndexingOptions(**{field: 0})


class TestBackfillOptions:

    def test_defaults(self):
        options = BackfillOptions()
        assert (options.batch_size, options.page_size, options.dry_run) == (50, 10000, False)

    def test_rejects_zero_batch(self):
        with pytest.raises(ConfigurationError):
            BackfillOptions(batch_size=0)
