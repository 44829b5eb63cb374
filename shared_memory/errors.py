"""
Error taxonomy for the shared memory store.

ValidationError and PersistenceError reach the caller. BackendUnavailable
is internal: the manager catches it and degrades to fallback search.
"""


class SharedMemoryError(Exception):
    """Base class for memory store errors."""


class ValidationError(SharedMemoryError):
    """A record is malformed or missing required fields. Nothing was written."""


class PersistenceError(SharedMemoryError):
    """The durable log write failed."""


class BackendUnavailable(SharedMemoryError):
    """The similarity backend is unreachable or returned an error."""
