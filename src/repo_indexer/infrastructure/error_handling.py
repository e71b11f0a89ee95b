"""
Error Handling for the Repository Indexer
Exception taxonomy separating run-fatal failures from per-file failures

Fatal errors (host or store unavailable, malformed repository reference)
abort a run and propagate to the caller. Per-file errors are caught at the
file unit boundary and surface only as entries in the run summary.
"""

import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels"""
    LOW = "low"           # Recorded, run continues
    MEDIUM = "medium"     # One file degraded
    HIGH = "high"         # One file failed
    CRITICAL = "critical" # Run aborted


class ErrorCategory(Enum):
    """Error categories for classification"""
    NETWORK = "network"
    DATABASE = "database"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    TIMEOUT = "timeout"
    EXTERNAL_API = "external_api"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"


@dataclass
class ErrorInfo:
    """Structured error information"""
    error_id: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    context: Dict[str, Any]
    timestamp: datetime
    traceback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/storage"""
        return {
            'error_id': self.error_id,
            'category': self.category.value,
            'severity': self.severity.value,
            'message': self.message,
            'context': self.context,
            'timestamp': self.timestamp.isoformat(),
            'traceback': self.traceback,
        }


class IndexerException(Exception):
    """Base exception for the repository indexer"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.EXTERNAL_API,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or {}
        self.original_exception = original_exception
        self.error_id = f"RI-{uuid.uuid4().hex[:8]}"
        self.timestamp = datetime.now()

    def to_error_info(self) -> ErrorInfo:
        """Convert to ErrorInfo object"""
        formatted = None
        if self.original_exception is not None:
            formatted = "".join(
                traceback.format_exception(
                    type(self.original_exception),
                    self.original_exception,
                    self.original_exception.__traceback__,
                )
            )
        return ErrorInfo(
            error_id=self.error_id,
            category=self.category,
            severity=self.severity,
            message=self.message,
            context=self.context,
            timestamp=self.timestamp,
            traceback=formatted
        )


class FatalIndexingError(IndexerException):
    """Errors that abort the whole run"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)


class HostUnavailable(FatalIndexingError):
    """Transport or auth failure talking to the repository host"""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        if status_code in (401, 403):
            kwargs.setdefault('category', ErrorCategory.AUTHENTICATION)
        else:
            kwargs.setdefault('category', ErrorCategory.NETWORK)
        super().__init__(message, **kwargs)
        self.status_code = status_code


class InvalidRepository(FatalIndexingError):
    """Repository reference cannot be parsed into host + owner + name"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.VALIDATION)
        super().__init__(message, **kwargs)


class StoreUnavailable(FatalIndexingError):
    """Persisted store cannot be read or written"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.DATABASE)
        super().__init__(message, **kwargs)


class ProjectNotFound(FatalIndexingError):
    """No project registered under the given identifier"""

    def __init__(self, project_id: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.VALIDATION)
        kwargs.setdefault('context', {'project_id': project_id})
        super().__init__(f"Project not found: {project_id}", **kwargs)
        self.project_id = project_id


class FileProcessingError(IndexerException):
    """Errors isolated to a single repository path"""

    summary_prefix = "Processing failed"

    def __init__(self, path: str, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        context = kwargs.pop('context', None) or {}
        context.setdefault('path', path)
        super().__init__(message, context=context, **kwargs)
        self.path = path

    def summary_message(self) -> str:
        """Message recorded in the run summary error list"""
        return f"{self.summary_prefix}: {self.message}"


class FetchFailed(FileProcessingError):
    """File content could not be retrieved"""

    summary_prefix = "Fetch failed"

    def __init__(self, path: str, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.NETWORK)
        super().__init__(path, message, **kwargs)


class ChunkingFailed(FileProcessingError):
    """Chunk splitter rejected the file text"""

    summary_prefix = "Chunking failed"

    def __init__(self, path: str, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.CHUNKING)
        super().__init__(path, message, **kwargs)


class EmbeddingFailed(IndexerException):
    """An embedding batch failed as a whole"""

    summary_prefix = "Embedding failed"

    def __init__(self, message: str, batch_size: int = 0, **kwargs):
        kwargs.setdefault('category', ErrorCategory.EMBEDDING)
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        super().__init__(message, **kwargs)
        self.batch_size = batch_size

    def summary_message(self) -> str:
        return f"{self.summary_prefix}: {self.message}"


def is_fatal(error: BaseException) -> bool:
    """True when an error must abort the run instead of being recorded"""
    return isinstance(error, FatalIndexingError)


def classify_exception(error: BaseException) -> str:
    """Summary message for an exception caught at a file unit boundary"""
    if isinstance(error, (FileProcessingError, EmbeddingFailed)):
        return error.summary_message()
    if isinstance(error, UnicodeDecodeError):
        return f"Decoding failed: {error}"
    if isinstance(error, (TimeoutError, ConnectionError)):
        return f"Network error: {error}"
    message = str(error) or type(error).__name__
    return f"Unexpected error ({type(error).__name__}): {message}"
