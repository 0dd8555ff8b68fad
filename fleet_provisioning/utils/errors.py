"""Errors of the provisioning engine, classified by a reason."""

import enum


class ErrorReason(enum.Enum):
    SCHEMA_INVALID = "SchemaInvalid"
    EXPECTED_ENVIRONMENT_ENTITIES_NOT_FOUND = "ExpectedEnvironmentEntitiesNotFound"
    EXPECTED_ENVIRONMENT_ENTITIES_INVALID = "ExpectedEnvironmentEntitiesInvalid"
    TIP_REQUEST_FAILURE = "TipRequestFailure"
    CONSECUTIVE_FAILURES_EXCEEDED = "ConsecutiveFailuresExceeded"


class ProviderError(Exception):
    """Terminal error of a provider, classified by a reason."""

    def __init__(self, message: str, *, reason: ErrorReason) -> None:
        super().__init__(message)
        self.reason = reason


class SchemaError(ProviderError):
    """Missing or malformed component parameter."""

    def __init__(self, message: str) -> None:
        super().__init__(message, reason=ErrorReason.SCHEMA_INVALID)


class EntityMetadataError(ProviderError):
    """Malformed environment entity, e.g. required metadata missing or null."""

    def __init__(self, message: str) -> None:
        super().__init__(message, reason=ErrorReason.EXPECTED_ENVIRONMENT_ENTITIES_INVALID)


class StepTimeoutError(TimeoutError):
    pass


class StepCancelledError(Exception):
    pass
