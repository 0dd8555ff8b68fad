"""Client of the remote TiP (Test-in-Production) service."""

import abc
import dataclasses
import datetime
import enum
import logging
import typing as tp

import requests

from fleet_provisioning.environment.entities import TipSessionStatus
from fleet_provisioning.utils import configuration
from fleet_provisioning.utils import helpers
from fleet_provisioning.utils import http_client

LOGGER = logging.getLogger(__name__)


class TipServiceError(Exception):
    """Failure of a call to the TiP service."""

    def __init__(self, text: str, *, status_code: int | None = None) -> None:
        super().__init__(text)
        self.text = text
        self.status_code = status_code


class TipChangeStatus(enum.Enum):
    QUEUED = "Queued"
    IN_PROGRESS = "InProgress"
    FINISHED = "Finished"


class TipChangeResult(enum.Enum):
    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclasses.dataclass(frozen=True)
class TipParameters:
    candidate_node_ids: tuple[str, ...]
    cluster_name: str
    region: str
    machine_pool_names: tuple[str, ...]
    node_count: int = 1
    is_amber_node_request: bool = False

    def to_json(self) -> dict[str, tp.Any]:
        return {
            "candidateNodesId": list(self.candidate_node_ids),
            "nodeCount": self.node_count,
            "clusterName": self.cluster_name,
            "region": self.region,
            "machinePoolNames": list(self.machine_pool_names),
            "isAmberNodeRequest": self.is_amber_node_request,
        }


@dataclasses.dataclass(frozen=True)
class TipSessionChange:
    tip_session_id: str
    change_id: str


@dataclasses.dataclass(frozen=True)
class TipSessionChangeDetails:
    tip_session_id: str
    change_id: str
    status: TipChangeStatus
    result: TipChangeResult = TipChangeResult.PENDING
    error_message: str | None = None


@dataclasses.dataclass(frozen=True)
class TipNodeSession:
    tip_session_id: str
    status: TipSessionStatus
    node_ids: tuple[str, ...] = ()
    created_time_utc: datetime.datetime | None = None
    expiration_time_utc: datetime.datetime | None = None
    deleted_time_utc: datetime.datetime | None = None


class TipClient(abc.ABC):
    """Interface of the TiP service."""

    @abc.abstractmethod
    def create_session(self, parameters: TipParameters) -> TipSessionChange:
        """Request a new TiP session."""

    @abc.abstractmethod
    def get_session_change(self, tip_session_id: str, change_id: str) -> TipSessionChangeDetails:
        """Get details of a change of a TiP session."""

    def is_session_change_failed(self, tip_session_id: str, change_id: str) -> bool:
        """Check if a change of a TiP session failed."""
        details = self.get_session_change(tip_session_id=tip_session_id, change_id=change_id)
        return details.result == TipChangeResult.FAILED

    @abc.abstractmethod
    def delete_session(self, tip_session_id: str) -> TipSessionChange:
        """Request deletion of a TiP session."""

    @abc.abstractmethod
    def get_session(self, tip_session_id: str) -> TipNodeSession:
        """Get a TiP session."""

    @abc.abstractmethod
    def set_node_state(self, tip_session_id: str, node_id: str, state: str) -> TipSessionChange:
        """Request a change of state of a node leased by a TiP session."""


class HttpTipClient(TipClient):
    """TiP service client over HTTP."""

    def __init__(self, base_url: str = "", *, timeout: int | None = None) -> None:
        self.base_url = (base_url or configuration.TIP_SERVICE_URL).rstrip("/")
        self.timeout = timeout or configuration.TIP_REQUEST_TIMEOUT

    def _request(self, method: str, path: str, **kwargs: tp.Any) -> dict[str, tp.Any]:
        if not self.base_url:
            msg = "URL of the TiP service is not configured, set `TIP_SERVICE_URL`."
            raise TipServiceError(msg)

        url = f"{self.base_url}/{path.lstrip('/')}"
        LOGGER.debug(f"TiP request: {method} {url}")
        try:
            response = http_client.get_session().request(
                method, url, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as exc:
            msg = f"TiP request {method} {url} failed: {exc}"
            raise TipServiceError(msg) from exc

        if not response.ok:
            msg = f"TiP request {method} {url} failed with {response.status_code}: {response.text}"
            raise TipServiceError(msg, status_code=response.status_code)

        if not response.content:
            return {}
        try:
            return dict(response.json())
        except ValueError as exc:
            msg = f"Invalid response of TiP request {method} {url}: {response.text}"
            raise TipServiceError(msg, status_code=response.status_code) from exc

    @staticmethod
    def _change(data: dict[str, tp.Any]) -> TipSessionChange:
        return TipSessionChange(tip_session_id=data["tipSessionId"], change_id=data["changeId"])

    def create_session(self, parameters: TipParameters) -> TipSessionChange:
        return self._change(self._request("POST", "sessions", json=parameters.to_json()))

    def get_session_change(self, tip_session_id: str, change_id: str) -> TipSessionChangeDetails:
        data = self._request("GET", f"sessions/{tip_session_id}/changes/{change_id}")
        return TipSessionChangeDetails(
            tip_session_id=tip_session_id,
            change_id=change_id,
            status=TipChangeStatus(data["status"]),
            result=TipChangeResult(data.get("result") or TipChangeResult.PENDING.value),
            error_message=data.get("errorMessage"),
        )

    def delete_session(self, tip_session_id: str) -> TipSessionChange:
        return self._change(self._request("DELETE", f"sessions/{tip_session_id}"))

    def get_session(self, tip_session_id: str) -> TipNodeSession:
        data = self._request("GET", f"sessions/{tip_session_id}")
        return TipNodeSession(
            tip_session_id=tip_session_id,
            status=TipSessionStatus(data["status"]),
            node_ids=tuple(data.get("nodeIds") or ()),
            created_time_utc=helpers.from_isoformat(data.get("createdTimeUtc")),
            expiration_time_utc=helpers.from_isoformat(data.get("expirationTimeUtc")),
            deleted_time_utc=helpers.from_isoformat(data.get("deletedTimeUtc")),
        )

    def set_node_state(self, tip_session_id: str, node_id: str, state: str) -> TipSessionChange:
        return self._change(
            self._request(
                "POST", f"sessions/{tip_session_id}/nodes/{node_id}/state", json={"state": state}
            )
        )
