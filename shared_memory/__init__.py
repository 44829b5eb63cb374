"""
Shared Memory Module

Persistent memory shared by MCP servers, with dual-mode retrieval:
- ChromaDB: vector similarity search (default)
- JSON log: substring search fallback when ChromaDB is unavailable

Every record is written to the JSON log first, so nothing is lost when
the vector backend is down.
"""

from .config import MemoryConfig
from .errors import BackendUnavailable, PersistenceError, SharedMemoryError, ValidationError
from .memory_manager import MemoryManager
from .models import ConversationRecord, OperationalRecord, SearchResult, SessionContext

__all__ = [
    "BackendUnavailable",
    "ConversationRecord",
    "MemoryConfig",
    "MemoryManager",
    "OperationalRecord",
    "PersistenceError",
    "SearchResult",
    "SessionContext",
    "SharedMemoryError",
    "ValidationError",
]
