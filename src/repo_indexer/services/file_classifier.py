"""
File Classification
fileType and language from extension, filename conventions and, for
ambiguous .ts/.js sources, a content sniff for UI-framework markers
"""

import posixpath
import re
from dataclasses import dataclass
from typing import Optional

from repo_indexer.models import FileType
from repo_indexer.services.file_filters import file_extension

TEST_DIRECTORIES = frozenset({"__tests__", "tests", "test"})

CONFIG_FILENAMES = frozenset({
    "package.json",
    "package-lock.json",
    "tsconfig.json",
    "jsconfig.json",
    "jest.config.js",
    "next.config.ts",
    "next.config.js",
})

_CONFIG_NAME_PATTERN = re.compile(r"^(config|.*\.config|.*\.conf)\.(js|ts|mjs|cjs|json)$")

# Content markers that turn a plain .ts/.js module into a UI component
UI_COMPONENT_MARKERS = ("React", "jsx", "JSX")

SCRIPT_EXTENSIONS = frozenset({".ts", ".js", ".mjs", ".cjs"})
COMPONENT_EXTENSIONS = frozenset({".tsx", ".jsx"})
STYLE_EXTENSIONS = frozenset({".css", ".scss", ".sass", ".less"})
DOCUMENTATION_EXTENSIONS = frozenset({".md", ".mdx"})
CONFIG_EXTENSIONS = frozenset({".json", ".yaml", ".yml", ".env"})

LANGUAGE_BY_EXTENSION = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".json": "json",
    ".md": "markdown",
    ".mdx": "markdown",
    ".css": "css",
    ".scss": "scss",
    ".sass": "sass",
    ".less": "less",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".env": "dotenv",
    ".html": "html",
}

CHUNK_ELIGIBLE_TYPES = frozenset({FileType.SOURCE, FileType.COMPONENT})


@dataclass(frozen=True)
class FileClassification:
    file_type: FileType
    language: str
    extension: str


def determine_language(path: str) -> str:
    return LANGUAGE_BY_EXTENSION.get(file_extension(path), "text")


def determine_file_type(path: str, content: Optional[str] = None) -> FileType:
    """Classify a repository path

    Order matters: test conventions win over declarations, declarations
    over config names, config names over extension-based rules.
    """
    filename = posixpath.basename(path)
    directories = path.split("/")[:-1]
    extension = file_extension(path)

    if ".test." in filename or ".spec." in filename or any(d in TEST_DIRECTORIES for d in directories):
        return FileType.TEST

    if filename.endswith(".d.ts"):
        return FileType.DECLARATION

    if filename in CONFIG_FILENAMES or _CONFIG_NAME_PATTERN.match(filename):
        return FileType.CONFIG

    if extension in COMPONENT_EXTENSIONS:
        return FileType.COMPONENT

    if extension in SCRIPT_EXTENSIONS:
        if content and any(marker in content for marker in UI_COMPONENT_MARKERS):
            return FileType.COMPONENT
        return FileType.SOURCE

    if extension in STYLE_EXTENSIONS:
        return FileType.STYLE
    if extension in DOCUMENTATION_EXTENSIONS:
        return FileType.DOCUMENTATION
    if extension in CONFIG_EXTENSIONS:
        return FileType.CONFIG
    return FileType.OTHER


def classify_file(path: str, content: Optional[str] = None) -> FileClassification:
    return FileClassification(
        file_type=determine_file_type(path, content),
        language=determine_language(path),
        extension=file_extension(path),
    )


def is_chunk_eligible(file_type: FileType, size: int, max_bytes: int) -> bool:
    """Only source and UI-component files under the byte ceiling are chunked"""
    return file_type in CHUNK_ELIGIBLE_TYPES and size <= max_bytes


def count_lines(text: Optional[str]) -> int:
    if not text:
        return 0
    return len(text.splitlines())
