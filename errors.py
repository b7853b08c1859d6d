"""Error taxonomy for superlocalmemory."""


class MemoryStoreError(Exception):
    """Base class for all memory store errors."""


class EmbeddingError(MemoryStoreError):
    """Every configured embedding backend failed."""


class ValidationError(MemoryStoreError):
    """Caller supplied a malformed identifier or argument."""


class StorageIOError(MemoryStoreError):
    """The database file could not be opened or written."""


class NotInitializedError(MemoryStoreError):
    """Operation invoked before the store was initialized (or after it was closed)."""
