"""
SalesMart Error Classification

Errors are divided into two categories:
- RetriableError: Transient issues that may succeed on retry (environment issues)
- NonRetriableError: Permanent issues that won't succeed on retry (code/data issues)

Retries belong to the external scheduler. Nothing in this package retries
an aborted merge invocation by itself.
"""

from deltalake.exceptions import CommitFailedError, TableNotFoundError


class SalesMartError(Exception):
    """Base exception for all SalesMart errors."""

    retriable = False

    def __init__(self, message: str, details: dict[str, str] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        return type(self).__name__


# =============================================================================
# RETRIABLE ERRORS - May succeed on retry (transient environment issues)
# =============================================================================


class RetriableError(SalesMartError):
    """Errors that may succeed on retry (transient environment issues)."""

    retriable = True


class ConcurrentInvocationError(RetriableError):
    """Another in-flight invocation holds the target table.

    Raised when the per-table lock cannot be acquired in time, or when
    Delta rejects a commit because a concurrent writer got there first.
    """

    pass


class StorageUnavailableError(RetriableError):
    """The warehouse storage could not be read or written."""

    pass


# =============================================================================
# NON-RETRIABLE ERRORS - Will NOT succeed on retry (code/data issues)
# =============================================================================


class NonRetriableError(SalesMartError):
    """Errors that will NOT succeed on retry (code/data issues)."""

    retriable = False


class ConfigurationError(NonRetriableError):
    """Invalid YAML configuration or entity declaration.

    Examples:
    - Missing natural keys or surrogate key
    - Type-2 entity without comparison columns
    - Malformed YAML syntax
    """

    pass


class ClassificationError(NonRetriableError):
    """A staged batch could not be classified at all.

    Rows that fail individually are rejected and counted instead; this is
    raised only when the whole batch is unusable (e.g. no natural key column).
    """

    pass


class InvariantViolationError(NonRetriableError):
    """Stored state breaks a model invariant.

    Examples:
    - Two active versions for one natural key
    - Duplicate (natural key, source) tuples in a conformed table
    """

    pass


class PartitionCoverageError(NonRetriableError):
    """Fact partitions could not be created or do not cover a date."""

    pass


class MissingDependencyError(NonRetriableError):
    """A table required by this step has not been loaded yet.

    Indicates a pipeline ordering issue.
    """

    pass


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def is_retriable(error: Exception) -> bool:
    """Check if an error is retriable."""
    if isinstance(error, SalesMartError):
        return error.retriable
    if isinstance(error, (CommitFailedError, OSError)):
        return True

    error_msg = str(error).lower()
    retriable_patterns = [
        "concurrent",
        "transaction conflict",
        "commit failed",
        "timeout",
        "connection reset",
    ]
    return any(pattern in error_msg for pattern in retriable_patterns)


def wrap_exception(original: Exception, entity: str | None = None) -> SalesMartError:
    """Wrap a standard exception in the appropriate SalesMartError type."""
    if isinstance(original, SalesMartError):
        if entity and "entity" not in original.details:
            original.details["entity"] = entity
        return original

    details = {"original_error": f"{type(original).__name__}: {original}"}
    if entity:
        details["entity"] = entity

    if isinstance(original, CommitFailedError):
        return ConcurrentInvocationError(
            f"Delta commit conflict: {original}", details
        )

    if isinstance(original, (TableNotFoundError, OSError)):
        return StorageUnavailableError(f"Storage unavailable: {original}", details)

    error_msg = str(original).lower()
    if "concurrent" in error_msg or "transaction conflict" in error_msg:
        return ConcurrentInvocationError(
            f"Delta concurrency conflict: {original}", details
        )

    return NonRetriableError(f"Unexpected error: {original}", details)
