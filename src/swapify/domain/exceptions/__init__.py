"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing str(exception).
    # Don't raise this directly - always use a specific subclass so callers can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConfigurationError(DomainException):
    """Application misconfiguration.

    Example:
        raise ConfigurationError("POLL_SECRET is not configured")
    """

    pass


class ExternalServiceError(DomainException):
    """Spotify returned an error or could not be reached.

    Generic bucket for anything that is neither a rate limit nor a dead token:
    5xx responses, timeouts, connection resets. The poll cycle counts these as
    per-user / per-track failures and moves on.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenInvalidError(DomainException):
    """The user's Spotify credential is no longer usable.

    Hey future me - this is TERMINAL for the user for the rest of the cycle!
    The worker marks the credential invalid and asks the user to reconnect.
    Shared-track evaluations that depend on this user's listens just stay
    unresolved until they re-auth. Never retry inside the same cycle.
    """

    def __init__(self, user_id: str | None = None, message: str | None = None) -> None:
        super().__init__(message or f"Spotify token invalid for user {user_id}")
        self.user_id = user_id


class RateLimitedError(DomainException):
    """Spotify answered 429 Too Many Requests.

    Cycle-wide signal: no further Spotify calls this cycle. Already-applied
    local state stays as it is.
    """

    def __init__(self, retry_after: float | None = None, message: str | None = None) -> None:
        super().__init__(
            message
            or f"Spotify rate limit hit (retry after {retry_after or 'unknown'}s)"
        )
        self.retry_after = retry_after


class BudgetExceededError(DomainException):
    """Our own rolling call budget stayed exhausted for longer than allowed.

    Same handling as RateLimitedError, but raised before Spotify ever saw
    the request.
    """

    def __init__(self, waited_seconds: float, calls_in_window: int, max_calls: int) -> None:
        super().__init__(
            f"Spotify API call budget exhausted "
            f"({calls_in_window}/{max_calls} in window, waited {waited_seconds:.1f}s)"
        )
        self.waited_seconds = waited_seconds
        self.calls_in_window = calls_in_window
        self.max_calls = max_calls


class RemoteMutationFailedError(DomainException):
    """A playlist mutation on Spotify failed after the local change was applied.

    Local intent (e.g. removed_at) is kept. Remote playlist sync retries the
    mutation on a later pass.
    """

    def __init__(self, playlist_id: str, uris: list[str], cause: Exception) -> None:
        super().__init__(
            f"Spotify mutation failed for playlist {playlist_id} "
            f"({len(uris)} item(s)): {cause}"
        )
        self.playlist_id = playlist_id
        self.uris = uris
        self.cause = cause


# Errors that end all new Spotify work for the current cycle.
CYCLE_ABORTING_ERRORS: tuple[type[DomainException], ...] = (
    RateLimitedError,
    BudgetExceededError,
)


__all__ = [
    "CYCLE_ABORTING_ERRORS",
    "BudgetExceededError",
    "ConfigurationError",
    "DomainException",
    "EntityNotFoundException",
    "ExternalServiceError",
    "RateLimitedError",
    "RemoteMutationFailedError",
    "TokenInvalidError",
]
