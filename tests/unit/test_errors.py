"""Unit tests for the unified error handling system."""

import pytest

from storyqueue.errors import (
    AIServiceError,
    ConfigurationError,
    ErrorCategory,
    ErrorCode,
    ProcessorError,
    StoreError,
    StoryQueueError,
    TaskError,
    TaskNotFoundError,
    ValidationError,
    invalid_payload,
    store_unavailable,
    task_not_found,
    validation_required,
)


class TestErrorCode:
    """Tests for ErrorCode enum."""

    def test_error_code_values_are_unique(self) -> None:
        """All error code values are unique."""
        values = [code.value for code in ErrorCode]
        assert len(values) == len(set(values))

    def test_error_code_prefixes(self) -> None:
        """Error codes follow category prefixes."""
        for code in ErrorCode:
            if code == ErrorCode.UNKNOWN:
                continue
            assert code.value.split("_")[0] in {"CFG", "VAL", "TSK", "STO", "PRC"}


class TestStoryQueueError:
    """Tests for the StoryQueueError base class."""

    def test_defaults(self) -> None:
        """Has a default message, code and category."""
        error = StoryQueueError()
        assert error.message == "An error occurred"
        assert str(error) == "An error occurred"
        assert error.code == ErrorCode.UNKNOWN
        assert error.category == ErrorCategory.SYSTEM
        assert error.details == {}

    def test_cause_is_chained(self) -> None:
        """The cause becomes __cause__."""
        cause = ValueError("disk full")
        error = StoryQueueError("Wrapper", cause=cause)
        assert error.cause is cause
        assert error.__cause__ is cause

    def test_repr(self) -> None:
        """Repr shows non-default parts only."""
        assert repr(StoryQueueError("boom")) == "StoryQueueError('boom')"
        error = StoryQueueError("boom", code=ErrorCode.CFG_MISSING, details={"k": 1})
        assert repr(error) == "StoryQueueError('boom', code='CFG_MISSING', details={'k': 1})"

    def test_to_dict(self) -> None:
        """Serializes for API responses."""
        error = StoreError("db down", details={"operation": "claim"})
        assert error.to_dict() == {
            "error": "StoreError",
            "code": "STO_UNAVAILABLE",
            "detail": "db down",
            "category": "database",
            "retryable": True,
            "details": {"operation": "claim"},
        }

    def test_retryable_follows_category(self) -> None:
        """Validation and lookup failures are final; infrastructure ones are not."""
        assert StoreError().retryable is True
        assert AIServiceError().retryable is True
        assert ValidationError().retryable is False
        assert TaskNotFoundError().retryable is False

    def test_to_dict_without_details(self) -> None:
        """Omits details when empty."""
        assert "details" not in StoryQueueError("x").to_dict()


class TestHierarchy:
    """Tests for the exception hierarchy and categories."""

    @pytest.mark.parametrize(
        ("error_cls", "parent", "category"),
        [
            (ConfigurationError, StoryQueueError, ErrorCategory.SYSTEM),
            (ValidationError, StoryQueueError, ErrorCategory.VALIDATION),
            (TaskNotFoundError, TaskError, ErrorCategory.BUSINESS_LOGIC),
            (StoreError, StoryQueueError, ErrorCategory.DATABASE),
            (AIServiceError, ProcessorError, ErrorCategory.AI_SERVICE),
        ],
    )
    def test_parent_and_category(
        self, error_cls: type[StoryQueueError], parent: type, category: ErrorCategory
    ) -> None:
        """Every error sits under its parent with a retry category."""
        error = error_cls()
        assert isinstance(error, parent)
        assert isinstance(error, StoryQueueError)
        assert error.category == category

    def test_catchable_as_base(self) -> None:
        """Domain errors can be caught as StoryQueueError."""
        with pytest.raises(StoryQueueError):
            raise AIServiceError("model overloaded")

    def test_field_and_task_details(self) -> None:
        """Keyword context lands in details."""
        assert ValidationError("bad", field="priority").details == {"field": "priority"}
        assert TaskError("bad", task_id="t1").details == {"task_id": "t1"}
        error = ConfigurationError("bad", config_key="queue", config_path="/tmp/c.json")
        assert error.details == {"config_key": "queue", "config_path": "/tmp/c.json"}


class TestFactories:
    """Tests for convenience factories."""

    def test_task_not_found(self) -> None:
        error = task_not_found("t1")
        assert isinstance(error, TaskNotFoundError)
        assert error.message == "Task not found: t1"
        assert error.code == ErrorCode.TSK_NOT_FOUND
        assert error.details == {"task_id": "t1"}

    def test_validation_required(self) -> None:
        error = validation_required("story_id")
        assert error.code == ErrorCode.VAL_MISSING_REQUIRED
        assert error.details == {"field": "story_id"}

    def test_invalid_payload(self) -> None:
        error = invalid_payload("export", "missing story_id")
        assert error.message == "Invalid payload for task type 'export': missing story_id"
        assert error.code == ErrorCode.VAL_INVALID_PAYLOAD
        assert error.details == {"task_type": "export", "field": "payload"}

    def test_store_unavailable(self) -> None:
        cause = OSError("locked")
        error = store_unavailable("claim", cause)
        assert error.message == "Task store unavailable during claim"
        assert error.cause is cause
        assert error.details == {"operation": "claim"}
