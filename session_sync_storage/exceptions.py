"""
Custom exceptions for session sync storage.

All storage, ingestion and retrieval code raises these exceptions
for consistent error handling across backends.
"""


class SessionStorageError(Exception):
    """Base exception for all session storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnauthenticatedError(SessionStorageError):
    """Raised when a call that needs an owner identity has none."""

    def __init__(self, operation: str | None = None):
        details = {}
        message = "Not authenticated"
        if operation:
            details["operation"] = operation
            message += f": {operation} requires an owner identity"
        super().__init__(message, details)
        self.operation = operation


class ConfigurationError(SessionStorageError):
    """Raised when required configuration (credentials, providers) is missing."""

    def __init__(self, setting: str, reason: str | None = None):
        details = {"setting": setting}
        message = f"Missing or invalid configuration: {setting}"
        if reason:
            details["reason"] = reason
            message += f" ({reason})"
        super().__init__(message, details)
        self.setting = setting
        self.reason = reason


class SessionNotFoundError(SessionStorageError):
    """Raised when a session is not found for the requesting owner."""

    def __init__(self, session_id: str, owner_id: str | None = None):
        details = {"session_id": session_id}
        if owner_id:
            details["owner_id"] = owner_id
        super().__init__(f"Session not found: {session_id}", details)
        self.session_id = session_id
        self.owner_id = owner_id


class IngestionError(SessionStorageError):
    """Raised when an upsert cannot be applied and should be retried by the caller."""

    def __init__(
        self, message: str, external_id: str | None = None, cause: Exception | None = None
    ):
        details: dict = {}
        if external_id:
            details["external_id"] = external_id
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.external_id = external_id
        self.cause = cause


class StorageIOError(SessionStorageError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageConnectionError(SessionStorageError):
    """Raised when connecting to (or preparing) the store fails.

    Note: Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class ConflictError(SessionStorageError):
    """Raised when an insert collides with a row another writer created first."""

    def __init__(self, table: str, key: str, cause: Exception | None = None):
        details = {"table": table, "key": key}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Duplicate key in {table}: {key}", details)
        self.table = table
        self.key = key
        self.cause = cause


class ValidationError(SessionStorageError):
    """Raised when caller-supplied data fails validation."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value
