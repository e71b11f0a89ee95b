"""
File Filters for Tree Discovery

Decides which repository paths are in scope for indexing:
- extension allow-list (source, markup, style, structured config)
- deny-list of dependency/build/cache directory prefixes
- dotfiles kept only when they look like known config files
"""

import posixpath
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Pattern, Tuple

from repo_indexer.models import FileDescriptor, ObjectType

DEFAULT_ALLOWED_EXTENSIONS: FrozenSet[str] = frozenset({
    # Source
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    # Markup / docs
    ".md", ".mdx", ".html",
    # Style
    ".css", ".scss", ".sass", ".less",
    # Structured config
    ".json", ".yaml", ".yml", ".env",
})

DEFAULT_DENIED_PREFIXES: Tuple[str, ...] = (
    "node_modules/",
    ".git/",
    ".next/",
    "dist/",
    "build/",
    ".turbo/",
    "coverage/",
    ".nyc_output/",
    "out/",
    ".vercel/",
    ".cache/",
    "vendor/",
)

# Nested dependency directories are denied wherever they appear
DEFAULT_DENIED_SEGMENTS: FrozenSet[str] = frozenset({"node_modules"})

DEFAULT_DOTFILE_PATTERN = r"\.(ts|js|json|md|env)$"


@dataclass
class FilterConfig:
    """Allow-list, deny-list and dotfile rules for discovered paths"""
    allowed_extensions: FrozenSet[str] = DEFAULT_ALLOWED_EXTENSIONS
    denied_prefixes: Tuple[str, ...] = DEFAULT_DENIED_PREFIXES
    denied_segments: FrozenSet[str] = DEFAULT_DENIED_SEGMENTS
    dotfile_pattern: str = DEFAULT_DOTFILE_PATTERN
    _dotfile_regex: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.allowed_extensions = frozenset(e.lower() for e in self.allowed_extensions)
        self.denied_prefixes = tuple(self.denied_prefixes)
        self.denied_segments = frozenset(self.denied_segments)
        self._dotfile_regex = re.compile(self.dotfile_pattern)

    def is_supported_path(self, path: str) -> bool:
        """True when a file path passes all three filter rules"""
        if not path:
            return False

        if any(path.startswith(prefix) for prefix in self.denied_prefixes):
            return False

        directories = path.split("/")[:-1]
        if any(segment in self.denied_segments for segment in directories):
            return False

        filename = posixpath.basename(path)
        if filename.startswith(".") and not self._dotfile_regex.search(filename):
            return False

        return file_extension(path) in self.allowed_extensions

    def is_supported(self, descriptor: FileDescriptor) -> bool:
        """Non-file entries never survive filtering"""
        return descriptor.object_type == ObjectType.FILE and self.is_supported_path(descriptor.path)

    def filter(self, descriptors: Iterable[FileDescriptor]) -> List[FileDescriptor]:
        return [d for d in descriptors if self.is_supported(d)]


def file_extension(path: str) -> str:
    """Lower-cased extension including the dot

    Dotfiles without a further suffix (".env") count the whole name as
    their extension.
    """
    filename = posixpath.basename(path)
    if filename.startswith(".") and filename.count(".") == 1:
        return filename.lower()
    return posixpath.splitext(filename)[1].lower()
