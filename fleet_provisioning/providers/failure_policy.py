"""Classification of remote failures and bounding of consecutive failures."""

import logging
import re
import typing as tp

from fleet_provisioning.providers import common

LOGGER = logging.getLogger(__name__)

# Known signatures of transient infrastructure faults
RETRYABLE_ERRORS: tp.Final[tuple[str, ...]] = (
    "semaphore timeout period has expired",
    "Failed to upload chunk to dynamic storage",
    "network name is no longer available",
    "but got image of size 0",
    "Failed to send DeliveryPath to dynamic storage",
    "attempts failed",
    "not all data was received",
)

_RETRYABLE_RE = re.compile("|".join(re.escape(e) for e in RETRYABLE_ERRORS), re.IGNORECASE)


def is_retryable(error: BaseException | str) -> bool:
    """Check if the error matches a known transient fault signature."""
    return bool(_RETRYABLE_RE.search(str(error)))


class ConsecutiveFailures:
    """Counters of consecutive transient failures per resource.

    The counters live in the persisted provider state, so they survive between invocations.
    """

    def __init__(self, counters: dict[str, int], *, maximum: int) -> None:
        if maximum < 1:
            msg = f"Maximum of consecutive failures must be >= 1, got {maximum}."
            raise ValueError(msg)
        self.counters = counters
        self.maximum = maximum

    def get(self, resource: str) -> int:
        return self.counters.get(resource, 0)

    def record_failure(self, resource: str, error: BaseException) -> int:
        """Record a transient failure of a resource.

        Raise `ProviderError` once the resource reached the maximum of consecutive failures.
        """
        count = self.get(resource) + 1
        self.counters[resource] = count
        if count >= self.maximum:
            msg = (
                f"Resource '{resource}' failed {count} times in a row "
                f"(maximum {self.maximum}), last error: {error}"
            )
            raise common.ProviderError(
                msg, reason=common.ErrorReason.CONSECUTIVE_FAILURES_EXCEEDED
            ) from error
        LOGGER.warning(f"Transient failure {count}/{self.maximum} of '{resource}': {error}")
        return count

    def reset(self, resource: str) -> None:
        self.counters.pop(resource, None)


def handle_remote_error(
    error: BaseException, *, resource: str, failures: ConsecutiveFailures
) -> None:
    """Absorb a retryable remote error, or re-raise it.

    Non-retryable errors are terminal, retryable errors count against the resource's
    consecutive-failure bound.
    """
    if not is_retryable(error):
        raise error
    failures.record_failure(resource, error)
