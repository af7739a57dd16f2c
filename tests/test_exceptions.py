"""Tests for the exception hierarchy."""

import pytest

from session_sync_storage.exceptions import (
    ConfigurationError,
    ConflictError,
    IngestionError,
    SessionNotFoundError,
    SessionStorageError,
    StorageConnectionError,
    StorageIOError,
    UnauthenticatedError,
    ValidationError,
)


@pytest.mark.parametrize(
    "error",
    [
        UnauthenticatedError("op"),
        ConfigurationError("OPENAI_API_KEY"),
        SessionNotFoundError("sess-1"),
        IngestionError("failed"),
        StorageIOError("insert_session"),
        StorageConnectionError(":memory:"),
        ConflictError("sessions", "ext-1"),
        ValidationError("limit", "must be positive"),
    ],
)
def test_all_errors_share_base(error):
    assert isinstance(error, SessionStorageError)
    assert error.message == str(error)


def test_unauthenticated_without_operation():
    error = UnauthenticatedError()
    assert str(error) == "Not authenticated"
    assert error.details == {}


def test_configuration_reason():
    error = ConfigurationError("OPENAI_API_KEY", "environment variable not set")
    assert "environment variable not set" in str(error)
    assert error.details == {"setting": "OPENAI_API_KEY", "reason": "environment variable not set"}


def test_session_not_found_details():
    error = SessionNotFoundError("sess-1", owner_id="user-alice")
    assert error.details == {"session_id": "sess-1", "owner_id": "user-alice"}


def test_cause_is_kept():
    cause = RuntimeError("disk full")
    error = StorageIOError("insert_message", cause=cause)
    assert error.cause is cause
    assert error.details["cause"] == "disk full"


def test_conflict_message():
    error = ConflictError("messages", "msg-1")
    assert str(error) == "Duplicate key in messages: msg-1"
    assert error.table == "messages"
    assert error.key == "msg-1"


def test_validation_value():
    error = ValidationError("semantic_weight", "must be between 0 and 1", value="1.5")
    assert error.field == "semantic_weight"
    assert error.details["value"] == "1.5"
