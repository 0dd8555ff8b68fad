"""Diagnostics requests for automated triage of failed steps."""

import dataclasses
import datetime
import enum
import json
import logging
import typing as tp
import uuid

from fleet_provisioning.utils import framework_log
from fleet_provisioning.utils import helpers

LOGGER = logging.getLogger(__name__)


class DiagnosticsIssueType(enum.Enum):
    TIP_SESSION_FAILURE = "TipSessionFailure"
    TIP_NODE_STATE_FAILURE = "TipNodeStateFailure"
    TIP_CLEANUP_FAILURE = "TipCleanupFailure"


@dataclasses.dataclass(frozen=True)
class DiagnosticsRequest:
    experiment_id: str
    issue_type: DiagnosticsIssueType
    time_range_begin: datetime.datetime
    time_range_end: datetime.datetime
    context: dict[str, str] = dataclasses.field(default_factory=dict)
    id: str = dataclasses.field(default_factory=lambda: str(uuid.uuid4()))

    def to_json(self) -> dict[str, tp.Any]:
        return {
            "experimentId": self.experiment_id,
            "id": self.id,
            "issueType": self.issue_type.value,
            "timeRangeBegin": helpers.to_isoformat(self.time_range_begin),
            "timeRangeEnd": helpers.to_isoformat(self.time_range_end),
            "context": dict(self.context),
        }


class DiagnosticsSink(tp.Protocol):
    """Collaborator that accepts diagnostics requests."""

    def submit(self, request: DiagnosticsRequest) -> None: ...


class LogDiagnosticsSink:
    """Sink that records diagnostics requests in the framework log."""

    def submit(self, request: DiagnosticsRequest) -> None:
        framework_log.framework_logger().warning(
            f"Diagnostics requested: {json.dumps(request.to_json(), sort_keys=True)}"
        )


def emit(sink: DiagnosticsSink | None, request: DiagnosticsRequest) -> bool:
    """Submit diagnostics request, never failing the caller.

    Return True when the request was accepted by the sink.
    """
    if sink is None:
        return False
    try:
        sink.submit(request)
    except Exception:
        LOGGER.exception(f"Failed to submit diagnostics request '{request.id}'.")
        return False
    LOGGER.info(
        f"Submitted diagnostics request '{request.id}' ({request.issue_type.value}) "
        f"for experiment '{request.experiment_id}'."
    )
    return True
