"""
Content Fetcher
Retrieves decoded file text for one descriptor, re-checking the content id
and size reported by discovery
"""

from typing import Optional

from repo_indexer.infrastructure.error_handling import FetchFailed
from repo_indexer.infrastructure.structured_logging import get_logger
from repo_indexer.models import FetchedContent, RepoRef
from repo_indexer.services.github_tree_service import GitHubApiError, GitHubTreeService

logger = get_logger(__name__)


class ContentFetcher:
    """fetch(repo, path) -> FetchedContent, raising FetchFailed per file"""

    def __init__(self, github: GitHubTreeService):
        self.github = github

    async def fetch(
        self,
        repo: RepoRef,
        path: str,
        ref: Optional[str] = None,
        expected_content_id: Optional[str] = None,
        expected_size: Optional[int] = None
    ) -> FetchedContent:
        try:
            content = await self.github.get_file_content(repo, path, ref=ref)
        except GitHubApiError as e:
            raise FetchFailed(path, e.message, original_exception=e) from e
        except (UnicodeDecodeError, ValueError) as e:
            # binascii.Error is a ValueError
            raise FetchFailed(path, f"Cannot decode content: {e}", original_exception=e) from e

        if expected_content_id and content.content_id != expected_content_id:
            logger.warning(
                "content_id_mismatch",
                repository=repo.full_name,
                path=path,
                discovered=expected_content_id,
                fetched=content.content_id,
            )
        elif expected_size is not None and content.size != expected_size:
            logger.warning(
                "content_size_mismatch",
                repository=repo.full_name,
                path=path,
                discovered=expected_size,
                fetched=content.size,
            )

        return content
