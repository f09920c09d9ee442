"""Storage abstractions for Forge MCP."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import CommitEventRecord, SessionStatusRecord

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "CommitEventRecord",
    "SessionStatusRecord",
]
