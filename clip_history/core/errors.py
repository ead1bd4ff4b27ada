"""Error taxonomy for clip history storage and retrieval."""


class ClipHistoryError(Exception):
    """Base exception for clip history operations."""

    pass


class MetadataError(ClipHistoryError, ValueError):
    """Raised when a clip's metadata JSON cannot be parsed or validated."""

    pass


class StorageError(ClipHistoryError):
    """Base exception for storage operations."""

    pass


class NotFoundError(StorageError):
    """Raised when a requested clip, tag or collection doesn't exist."""

    pass


class ConsistencyError(StorageError):
    """Raised when the search shadow index drifts from the clips table."""

    pass


class TransientIOError(StorageError):
    """Raised when a backend call fails and may succeed on a manual retry."""

    pass


class EmbeddingUnavailableError(TransientIOError):
    """Raised when semantic features are used without an embedding client."""

    pass
