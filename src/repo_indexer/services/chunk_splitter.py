"""
Chunk Splitter
Splits file text into ordered, non-overlapping line ranges under line and
token bounds, preferring to cut at function/class boundaries

The orchestrator depends only on the ChunkSplitter protocol; LineChunkSplitter
is the default heuristic implementation.
"""

import hashlib
import math
import re
from typing import Dict, List, Pattern, Protocol

from repo_indexer.infrastructure.structured_logging import get_logger
from repo_indexer.models import ChunkDraft

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4.5

_BRACE_CLOSERS = [
    re.compile(r"^\s*}\s*$"),
    re.compile(r"^\s*};\s*$"),
    re.compile(r"^\s*},?\s*$"),
    re.compile(r"^\s*}\)\s*;?\s*$"),
]

FUNCTION_BOUNDARY_PATTERNS: Dict[str, List[Pattern]] = {
    "javascript": _BRACE_CLOSERS,
    "typescript": _BRACE_CLOSERS,
    "css": [re.compile(r"^\s*}\s*$")],
    "scss": [re.compile(r"^\s*}\s*$")],
    "less": [re.compile(r"^\s*}\s*$")],
}
DEFAULT_BOUNDARY_PATTERNS = [re.compile(r"^\s*}\s*$")]


class ChunkSplitter(Protocol):
    """Anything that turns file text into ordered chunk drafts"""

    def split(self, text: str, path: str, language: str) -> List[ChunkDraft]:
        ...


def estimate_token_count(text: str) -> int:
    """Rough token estimate, ~4.5 characters per token for code"""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def compute_chunk_hash(text: str) -> str:
    """Content-addressed identity of a chunk, from its own text"""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:40]


class LineChunkSplitter:
    """Line-window splitter with function-boundary preference"""

    def __init__(
        self,
        max_lines: int = 200,
        max_tokens: int = 1000,
        preserve_functions: bool = True
    ):
        if max_lines < 1 or max_tokens < 1:
            raise ValueError("max_lines and max_tokens must be positive")
        self.max_lines = max_lines
        self.max_tokens = max_tokens
        self.preserve_functions = preserve_functions

    @classmethod
    def from_options(cls, options) -> "LineChunkSplitter":
        return cls(
            max_lines=options.max_chunk_lines,
            max_tokens=options.max_chunk_tokens,
            preserve_functions=options.preserve_functions,
        )

    def split(self, text: str, path: str, language: str) -> List[ChunkDraft]:
        lines = text.split("\n")
        if lines and lines[-1] == "":
            lines.pop()

        drafts: List[ChunkDraft] = []
        start = 0
        while start < len(lines):
            end = self._find_chunk_end(lines, start, language)
            window = lines[start:end]
            content = "\n".join(window)

            if estimate_token_count(content) > self.max_tokens:
                drafts.extend(self._split_by_token_limit(window, start))
            else:
                drafts.append(ChunkDraft(
                    start_line=start + 1,
                    end_line=end,
                    text=content,
                    token_count=estimate_token_count(content),
                ))
            start = end

        # Whitespace-only ranges carry nothing worth embedding
        drafts = [d for d in drafts if d.text.strip()]

        logger.debug(
            "file_chunked",
            path=path,
            language=language,
            total_lines=len(lines),
            chunks=len(drafts),
        )
        return drafts

    def _find_chunk_end(self, lines: List[str], start: int, language: str) -> int:
        max_end = min(start + self.max_lines, len(lines))
        if not self.preserve_functions or max_end == len(lines):
            return max_end

        patterns = FUNCTION_BOUNDARY_PATTERNS.get(language, DEFAULT_BOUNDARY_PATTERNS)
        floor = start + math.floor(self.max_lines * 0.7)

        # Walk back from the window end looking for a natural break
        for i in range(max_end - 1, floor, -1):
            line = lines[i].strip()
            if not line or any(p.match(line) for p in patterns):
                return i + 1

        return max_end

    def _split_by_token_limit(self, window: List[str], offset: int) -> List[ChunkDraft]:
        drafts = []
        current_start = 0
        current_tokens = 0

        for i, line in enumerate(window):
            line_tokens = estimate_token_count(line)
            if current_tokens + line_tokens > self.max_tokens and i > current_start:
                content = "\n".join(window[current_start:i])
                drafts.append(ChunkDraft(
                    start_line=offset + current_start + 1,
                    end_line=offset + i,
                    text=content,
                    token_count=estimate_token_count(content),
                ))
                current_start = i
                current_tokens = line_tokens
            else:
                current_tokens += line_tokens

        if current_start < len(window):
            content = "\n".join(window[current_start:])
            drafts.append(ChunkDraft(
                start_line=offset + current_start + 1,
                end_line=offset + len(window),
                text=content,
                token_count=estimate_token_count(content),
            ))
        return drafts
