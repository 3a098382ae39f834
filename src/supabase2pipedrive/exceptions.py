"""Custom exceptions for supabase2pipedrive."""


class SyncEngineError(Exception):
    """Base exception for all supabase2pipedrive errors."""


class ConfigurationError(SyncEngineError):
    """Configuration or environment variable error."""


class PipedriveAPIError(SyncEngineError):
    """Error from the Pipedrive API."""

    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Pipedrive API error ({status_code}): {message}")


class TransientRemoteError(PipedriveAPIError):
    """Network-level failure talking to Pipedrive. Safe to retry."""


class RateLimitError(TransientRemoteError):
    """Rate limit exceeded error."""

    def __init__(self, retry_after: int | None = None):
        self.retry_after = retry_after
        message = f"Rate limited (retry after {retry_after}s)" if retry_after else "Rate limited"
        super().__init__(429, message)


class ExhaustedRetries(PipedriveAPIError):
    """A transient failure persisted through every allowed attempt."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        status = getattr(last_error, "status_code", None)
        super().__init__(status, f"gave up after {attempts} attempts: {last_error}")


class RemoteNotFound(PipedriveAPIError):
    """The addressed Pipedrive record does not exist (404)."""

    def __init__(self, message: str):
        super().__init__(404, message)


class SupabaseError(SyncEngineError):
    """Error from the Supabase (PostgREST) API."""

    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        super().__init__(f"Supabase error ({status_code}): {message}")


class MappingUnavailable(SyncEngineError):
    """A custom field has no resolved Pipedrive key."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"No Pipedrive field mapping for '{field}'")


class NoMatchFound(SyncEngineError):
    """An entity could not be linked to a counterpart it depends on."""


class WriteFailed(SyncEngineError):
    """Error writing a specific record to either system."""

    def __init__(self, entity: str, name: str, original_error: Exception):
        self.entity = entity
        self.name = name
        self.original_error = original_error
        super().__init__(f"Failed to write {entity} '{name}': {original_error}")


class CreateFailed(WriteFailed):
    """Error creating a specific record in either system."""


class SyncTimeoutError(SyncEngineError):
    """A reconciliation pass or the whole run exceeded its deadline."""
