class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""

    retryable = False


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class SlugGenerationFailedError(RepositoryValidationError):
    """Raised when no usable slug can be derived from a title."""


class SlugConflictError(RepositoryConflictError):
    """Raised when a concurrent writer claimed the allocated slug first.

    Allocation reads a snapshot of existing slugs, so two writers can pick the
    same candidate; the unique index on (collective_id, slug) rejects the
    second one. Re-running allocation is safe.
    """

    retryable = True
