"""Error taxonomy for the index engine.

Every operation exposed by :mod:`codeindex.index.service` fails with one of
these typed errors rather than an unchecked exception.  Each error carries a
``status_code`` so the HTTP router can map it to a response without knowing
about individual subclasses.
"""
from typing import Optional


class CodeIndexError(Exception):
    """Base exception for index engine errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ParseError(CodeIndexError):
    """Raised when a file's structure could not be determined.

    Non-fatal: the extractor falls back to a single whole-file symbol.
    """
    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Failed to parse {path or '<text>'}: {message}", status_code=422)


# Provider error kinds.  ``auth`` and ``config`` can never succeed on retry.
AUTH = "auth"
CONFIG = "config"
RATE_LIMIT = "rate_limit"
TIMEOUT = "timeout"
SERVER = "server"
MALFORMED = "malformed"

_RETRYABLE_KINDS = frozenset({RATE_LIMIT, TIMEOUT, SERVER})
_FATAL_KINDS = frozenset({AUTH, CONFIG})


class ProviderError(CodeIndexError):
    """Raised when an embedding provider call fails."""
    def __init__(self, message: str, kind: str = SERVER, provider_name: str = ""):
        self.kind = kind
        self.provider_name = provider_name
        prefix = f"Provider {provider_name} error" if provider_name else "Provider error"
        super().__init__(f"{prefix} ({kind}): {message}", status_code=502)

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    @property
    def fatal(self) -> bool:
        return self.kind in _FATAL_KINDS


class VectorStoreError(CodeIndexError):
    """Raised on vector store connectivity or write failures.

    ``transient`` errors (connection reset, timeout) are retried per file;
    anything else aborts the sync.
    """
    def __init__(self, message: str, transient: bool = False):
        self.transient = transient
        super().__init__(f"Vector store error: {message}", status_code=502)


class SessionCorruption(CodeIndexError):
    """Raised when the persisted session cannot be read or migrated."""
    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(
            f"Session state at {path} is unusable: {message}. "
            "Run init_session to rebuild the index.",
            status_code=409,
        )


class SyncInProgressError(CodeIndexError):
    """Raised when a sync is requested for a project that is already syncing."""
    def __init__(self, project_root: str):
        self.project_root = project_root
        super().__init__(f"Sync already in progress for {project_root}", status_code=409)


class SyncFailed(CodeIndexError):
    """Raised when a sync transitions to ``Failed``.

    ``summary`` holds the partial progress committed before the failure.
    """
    def __init__(self, message: str, summary: Optional[object] = None, cause: Optional[Exception] = None):
        self.summary = summary
        self.cause = cause
        status_code = getattr(cause, "status_code", 500)
        super().__init__(f"Sync failed: {message}", status_code=status_code)
