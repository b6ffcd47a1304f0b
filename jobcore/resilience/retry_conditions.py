"""
Ready-made retry predicates.

Each predicate has the RetryConfig.retry_predicate signature
(error, attempt) -> bool, where attempt is the 1-based number of the
attempt that just failed.

Example:
    config = RetryConfig(
        retry_predicate=retry_conditions.any_of(
            retry_conditions.transient,
            retry_conditions.on_exceptions(ConnectionError),
        )
    )
"""

from jobcore.types.config import RetryPredicate

# Lower-cased message fragments that indicate a transient failure
TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "etimedout",
    "enotfound",
    "connection refused",
    "connection reset",
    "network",
    "socket",
    "temporary",
    "unavailable",
    "429",
    "503",
    "504",
)


def always(error: Exception, attempt: int) -> bool:
    return True


def never(error: Exception, attempt: int) -> bool:
    return False


def transient(error: Exception, attempt: int) -> bool:
    """Retry timeouts, connection problems and throttling responses."""
    if isinstance(error, TimeoutError | ConnectionError):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_PATTERNS)


def on_exceptions(*types: type[Exception]) -> RetryPredicate:
    """Retry only errors of the given types."""

    def predicate(error: Exception, attempt: int) -> bool:
        return isinstance(error, types)

    return predicate


def on_messages(*patterns: str) -> RetryPredicate:
    """Retry errors whose message contains any pattern (case-insensitive)."""
    lowered = tuple(pattern.lower() for pattern in patterns)

    def predicate(error: Exception, attempt: int) -> bool:
        message = str(error).lower()
        return any(pattern in message for pattern in lowered)

    return predicate


def any_of(*predicates: RetryPredicate) -> RetryPredicate:
    """Retry when at least one predicate says so."""

    def predicate(error: Exception, attempt: int) -> bool:
        return any(p(error, attempt) for p in predicates)

    return predicate


def all_of(*predicates: RetryPredicate) -> RetryPredicate:
    """Retry only when every predicate says so."""

    def predicate(error: Exception, attempt: int) -> bool:
        return all(p(error, attempt) for p in predicates)

    return predicate
