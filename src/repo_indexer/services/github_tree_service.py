#!/usr/bin/env python3
"""
GitHub Tree Service - repository host API client
Branch-to-commit resolution, recursive tree listing, blob content retrieval
and commit-range comparison over the GitHub REST API

Uses a persistent httpx.AsyncClient with per-call timeouts; transient
failures (transport errors, 429, 5xx) are retried with tenacity before
surfacing as GitHubApiError.
"""

import base64
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from repo_indexer.infrastructure.error_handling import (
    ErrorCategory,
    IndexerException,
    InvalidRepository,
)
from repo_indexer.infrastructure.resilience import RetryConfig, async_http_retrying
from repo_indexer.infrastructure.structured_logging import get_logger
from repo_indexer.models import FetchedContent, RepoRef

logger = get_logger(__name__)

DEFAULT_BRANCH = "main"
FALLBACK_BRANCH = "master"
USER_AGENT = "repo-indexer/1.0"

_GITHUB_URL_PATTERN = re.compile(
    r"^(?:https?://|ssh://)?(?:[\w.-]+@)?(?:www\.)?(github\.com)[/:]"
    r"([\w-]+)/([\w.-]+?)(?:\.git)?(?:/tree/([^?#]+?))?/?$"
)


class GitHubApiError(IndexerException):
    """Request to the repository host failed after retries"""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.EXTERNAL_API)
        super().__init__(message, **kwargs)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


@dataclass(frozen=True)
class ChangedFile:
    """One entry of a commit-range comparison"""
    filename: str
    status: str
    additions: int = 0
    deletions: int = 0
    changes: int = 0
    sha: Optional[str] = None


def parse_github_url(github_url: str) -> RepoRef:
    """Parse a GitHub URL into host, owner, name and optional branch

    Accepts https, ssh and scheme-less forms, with or without a trailing
    .git and with an optional /tree/<branch> suffix.
    """
    if not github_url or not github_url.strip():
        raise InvalidRepository("Repository reference is empty")

    match = _GITHUB_URL_PATTERN.match(github_url.strip())
    if not match:
        raise InvalidRepository(
            f"Invalid GitHub URL format: {github_url}",
            context={"github_url": github_url}
        )

    host, owner, name, branch = match.groups()
    return RepoRef(host=host, owner=owner, name=name, branch=branch or None)


class GitHubTreeService:
    """Async client for the GitHub REST endpoints used during indexing"""

    def __init__(
        self,
        api_url: str = "https://api.github.com",
        token: Optional[str] = None,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.retry_config = retry_config or RetryConfig()

        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": USER_AGENT,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            logger.warning("github_token_not_configured", api_url=self.api_url)

        self.timeout = httpx.Timeout(
            connect=5.0,
            read=timeout,
            write=timeout,
            pool=5.0
        )
        self.client = httpx.AsyncClient(
            base_url=self.api_url,
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "GitHubTreeService":
        return cls(
            api_url=settings.github_api_url,
            token=settings.github_token,
            timeout=settings.github_timeout,
            retry_config=RetryConfig(max_attempts=settings.max_retries),
        )

    async def close(self):
        """Clean up client connections"""
        await self.client.aclose()

    async def __aenter__(self) -> "GitHubTreeService":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET a JSON document, retrying transient failures"""
        try:
            async for attempt in async_http_retrying(self.retry_config):
                with attempt:
                    response = await self.client.get(url, params=params)
                    response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise GitHubApiError(
                f"GitHub API request failed: {status} {_error_message(e.response)}",
                status_code=status,
                context={"url": url},
                original_exception=e,
            ) from e
        except httpx.TransportError as e:
            raise GitHubApiError(
                f"GitHub API unreachable: {type(e).__name__}: {e}",
                context={"url": url},
                original_exception=e,
            ) from e
        except ValueError as e:
            raise GitHubApiError(
                f"GitHub API returned invalid JSON: {e}",
                context={"url": url},
                original_exception=e,
            ) from e

    async def get_latest_commit_sha(
        self,
        repo: RepoRef,
        branch: Optional[str] = None
    ) -> Tuple[str, str]:
        """Resolve a branch to its head commit SHA

        Without an explicit branch, tries main and on 404 retries exactly
        once with master. Returns (branch, commit_sha).
        """
        branch = branch or repo.branch
        candidates = [branch] if branch else [DEFAULT_BRANCH, FALLBACK_BRANCH]

        last_error: Optional[GitHubApiError] = None
        for candidate in candidates:
            url = f"/repos/{repo.owner}/{repo.name}/branches/{quote(candidate, safe='')}"
            try:
                data = await self._get_json(url)
            except GitHubApiError as e:
                if e.is_not_found:
                    logger.info(
                        "branch_not_found",
                        repository=repo.full_name,
                        branch=candidate,
                    )
                    last_error = e
                    continue
                raise
            return candidate, data["commit"]["sha"]

        raise GitHubApiError(
            f"No branch found for {repo.full_name} (tried {', '.join(candidates)})",
            status_code=404,
            context={"repository": repo.full_name, "branches": candidates},
            original_exception=last_error,
        )

    async def get_commit(self, repo: RepoRef, sha: str) -> Dict[str, Any]:
        """Get commit information including its tree SHA"""
        return await self._get_json(f"/repos/{repo.owner}/{repo.name}/git/commits/{sha}")

    async def get_repository_tree(
        self,
        repo: RepoRef,
        tree_sha: str,
        recursive: bool = True
    ) -> Dict[str, Any]:
        """List a tree, the whole repository in one call when recursive"""
        params = {"recursive": "1"} if recursive else None
        tree = await self._get_json(
            f"/repos/{repo.owner}/{repo.name}/git/trees/{tree_sha}",
            params=params
        )

        logger.info(
            "repository_tree_fetched",
            repository=repo.full_name,
            tree_sha=tree_sha,
            total_items=len(tree.get("tree", [])),
            truncated=bool(tree.get("truncated", False)),
        )
        return tree

    async def get_file_content(
        self,
        repo: RepoRef,
        path: str,
        ref: Optional[str] = None
    ) -> FetchedContent:
        """Get decoded file content via the contents API

        Files above the contents API size limit come back without inline
        content; those are re-read through the git blobs API by SHA.
        """
        params = {"ref": ref} if ref else None
        data = await self._get_json(
            f"/repos/{repo.owner}/{repo.name}/contents/{quote(path, safe='/')}",
            params=params
        )

        if isinstance(data, list) or data.get("type", "file") != "file":
            raise GitHubApiError(
                f"Path is not a file: {path}",
                context={"repository": repo.full_name, "path": path},
            )

        encoding = data.get("encoding") or ""
        raw_content = data.get("content")
        sha = data.get("sha", "")
        size = int(data.get("size") or 0)

        if encoding == "none" or (raw_content in (None, "") and size > 0):
            blob = await self.get_blob(repo, sha)
            encoding = blob.get("encoding") or ""
            raw_content = blob.get("content")

        return FetchedContent(
            text=_decode_content(raw_content or "", encoding),
            content_id=sha,
            size=size,
            encoding=encoding or "utf-8",
        )

    async def get_blob(self, repo: RepoRef, sha: str) -> Dict[str, Any]:
        """Get a raw blob by SHA"""
        return await self._get_json(f"/repos/{repo.owner}/{repo.name}/git/blobs/{sha}")

    async def get_changed_files(
        self,
        repo: RepoRef,
        base_sha: str,
        head_sha: str
    ) -> List[ChangedFile]:
        """Compare two commits and list the files that changed between them"""
        data = await self._get_json(
            f"/repos/{repo.owner}/{repo.name}/compare/{base_sha}...{head_sha}"
        )
        return [
            ChangedFile(
                filename=f["filename"],
                status=f.get("status", "modified"),
                additions=int(f.get("additions", 0)),
                deletions=int(f.get("deletions", 0)),
                changes=int(f.get("changes", 0)),
                sha=f.get("sha"),
            )
            for f in data.get("files", [])
        ]


def _decode_content(content: str, encoding: str) -> str:
    """Decode host-native transfer encoding into text"""
    if encoding == "base64":
        return base64.b64decode(content).decode("utf-8")
    return content


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or "Unknown error"
    if isinstance(body, dict):
        return body.get("message", "Unknown error")
    return "Unknown error"
