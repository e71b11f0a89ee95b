"""
Tree Discovery Client
Resolves the current default-branch commit of a repository and returns the
filtered list of tracked files

Any host failure here is fatal to the run (HostUnavailable): without a
trustworthy file list, reconciliation would delete rows it should keep.
"""

from typing import Optional, Union

from repo_indexer.infrastructure.error_handling import HostUnavailable
from repo_indexer.infrastructure.structured_logging import get_logger
from repo_indexer.models import DiscoveryResult, FileDescriptor, ObjectType, RepoRef
from repo_indexer.services.file_filters import FilterConfig
from repo_indexer.services.github_tree_service import (
    GitHubApiError,
    GitHubTreeService,
    parse_github_url,
)

logger = get_logger(__name__)


class TreeDiscoveryClient:
    """discover(repo) -> DiscoveryResult"""

    def __init__(
        self,
        github: GitHubTreeService,
        filter_config: Optional[FilterConfig] = None
    ):
        self.github = github
        self.filter_config = filter_config or FilterConfig()

    async def discover(self, repo: Union[RepoRef, str]) -> DiscoveryResult:
        if isinstance(repo, str):
            repo = parse_github_url(repo)

        try:
            branch, commit_sha = await self.github.get_latest_commit_sha(repo)
            commit = await self.github.get_commit(repo, commit_sha)
            tree_sha = commit["tree"]["sha"]
            tree = await self.github.get_repository_tree(repo, tree_sha, recursive=True)

            entries = tree.get("tree", [])
            descriptors = [
                FileDescriptor(
                    path=entry["path"],
                    object_type=ObjectType.from_git_type(entry.get("type", "")),
                    content_id=entry.get("sha", ""),
                    size=int(entry.get("size") or 0),
                )
                for entry in entries
            ]
        except GitHubApiError as e:
            raise HostUnavailable(
                f"Repository host unavailable for {repo.full_name}: {e.message}",
                status_code=e.status_code,
                context={"repository": repo.full_name},
                original_exception=e,
            ) from e
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise HostUnavailable(
                f"Unexpected response from repository host for {repo.full_name}: {e!r}",
                context={"repository": repo.full_name},
                original_exception=e,
            ) from e

        files = self.filter_config.filter(descriptors)
        truncated = bool(tree.get("truncated", False))

        if truncated:
            logger.warning(
                "repository_tree_truncated",
                repository=repo.full_name,
                tree_sha=tree_sha,
                returned_items=len(entries),
            )

        logger.info(
            "repository_tree_analyzed",
            repository=repo.full_name,
            branch=branch,
            commit_sha=commit_sha,
            total_tree_items=len(entries),
            supported_files=len(files),
        )

        return DiscoveryResult(
            files=files,
            commit_sha=commit_sha,
            tree_sha=tree_sha,
            branch=branch,
            truncated=truncated,
            total_tree_items=len(entries),
        )
