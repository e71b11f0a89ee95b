"""
Shared fixtures: a fake GitHub host served through httpx.MockTransport,
a recording embedder, and a real SQLite store on tmp_path
"""

import base64
import hashlib
import json
import re
from typing import Dict, List, Set, Union
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio

from repo_indexer.infrastructure.error_handling import EmbeddingFailed
from repo_indexer.infrastructure.resilience import RetryConfig
from repo_indexer.models import RepoRef
from repo_indexer.services.github_tree_service import GitHubTreeService
from repo_indexer.services.project_store import SQLiteProjectStore

API_URL = "https://api.github.test"
OWNER = "acme"
REPO = "webapp"


def as_bytes(content: Union[str, bytes]) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else content


def git_blob_sha(content: Union[str, bytes]) -> str:
    data = as_bytes(content)
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


class FakeGitHubHost:
    """In-memory repository served over the GitHub REST routes the indexer uses"""

    def __init__(self, owner: str = OWNER, repo: str = REPO):
        self.owner = owner
        self.repo = repo
        self.files: Dict[str, Union[str, bytes]] = {}
        self.directories: Set[str] = set()
        self.branches: Set[str] = {"main"}
        self.truncated = False
        # Paths left out of the tree listing, as a truncated response would
        self.unlisted_paths: Set[str] = set()
        self.extra_tree_entries: List[dict] = []
        self.fail_paths: Set[str] = set()
        self.unavailable = False
        self.content_requests: List[str] = []
        self.requests: List[httpx.Request] = []

    def set_file(self, path: str, content: Union[str, bytes]) -> str:
        self.files[path] = content
        return git_blob_sha(content)

    def remove_file(self, path: str) -> None:
        del self.files[path]

    def sha_of(self, path: str) -> str:
        return git_blob_sha(self.files[path])

    @property
    def commit_sha(self) -> str:
        state = json.dumps(sorted((p, git_blob_sha(t)) for p, t in self.files.items()))
        return hashlib.sha1(state.encode()).hexdigest()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unavailable:
            return httpx.Response(503, json={"message": "Service Unavailable"})

        prefix = f"/repos/{self.owner}/{self.repo}"
        path = unquote(request.url.path)
        if not path.startswith(prefix):
            return httpx.Response(404, json={"message": "Not Found"})
        route = path[len(prefix):]

        match = re.fullmatch(r"/branches/(.+)", route)
        if match:
            if match.group(1) not in self.branches:
                return httpx.Response(404, json={"message": "Branch not found"})
            return httpx.Response(200, json={"name": match.group(1), "commit": {"sha": self.commit_sha}})

        match = re.fullmatch(r"/git/commits/(\w+)", route)
        if match:
            return httpx.Response(200, json={"sha": match.group(1), "tree": {"sha": f"tree{match.group(1)}"}})

        match = re.fullmatch(r"/git/trees/(\w+)", route)
        if match:
            entries = [{"path": d, "type": "tree", "sha": "d" * 40} for d in sorted(self.directories)]
            entries += [
                {"path": p, "type": "blob", "sha": git_blob_sha(t), "size": len(as_bytes(t))}
                for p, t in sorted(self.files.items())
                if p not in self.unlisted_paths
            ]
            entries += self.extra_tree_entries
            return httpx.Response(200, json={"sha": match.group(1), "tree": entries, "truncated": self.truncated})

        match = re.fullmatch(r"/contents/(.+)", route)
        if match:
            file_path = match.group(1)
            self.content_requests.append(file_path)
            if file_path in self.fail_paths:
                return httpx.Response(500, json={"message": "Server Error"})
            if file_path not in self.files:
                return httpx.Response(404, json={"message": "Not Found"})
            data = as_bytes(self.files[file_path])
            return httpx.Response(200, json={
                "type": "file",
                "path": file_path,
                "sha": git_blob_sha(self.files[file_path]),
                "size": len(data),
                "encoding": "base64",
                "content": base64.encodebytes(data).decode("ascii"),
            })

        return httpx.Response(404, json={"message": "Not Found"})


class FakeEmbedder:
    """Records batches; returns a deterministic 3-d vector per text"""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.fail = False
        self.fail_on_calls: Set[int] = set()

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail or len(self.calls) in self.fail_on_calls:
            raise EmbeddingFailed("embedding endpoint returned 503", batch_size=len(texts))
        return [[float(len(t)), float(i), 1.0] for i, t in enumerate(texts)]

    @property
    def embedded_texts(self) -> List[str]:
        return [t for call in self.calls for t in call]


@pytest.fixture
def repo_ref() -> RepoRef:
    return RepoRef(host="github.com", owner=OWNER, name=REPO)


@pytest.fixture
def github_host() -> FakeGitHubHost:
    return FakeGitHubHost()


@pytest_asyncio.fixture
async def github_service(github_host):
    service = GitHubTreeService(
        api_url=API_URL,
        token="test-token",
        retry_config=RetryConfig(max_attempts=2, base_delay=0, max_delay=0),
        transport=httpx.MockTransport(github_host.handler),
    )
    yield service
    await service.close()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest_asyncio.fixture
async def store(tmp_path):
    project_store = SQLiteProjectStore(tmp_path / "index.db")
    await project_store.initialize()
    yield project_store
    await project_store.close()


@pytest.fixture
def project_id() -> str:
    return "proj-1"


@pytest_asyncio.fixture
async def registered_project(store, project_id) -> str:
    await store.register_project(project_id, f"https://github.com/{OWNER}/{REPO}")
    return project_id
