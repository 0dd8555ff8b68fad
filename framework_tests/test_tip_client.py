import datetime
import json
import typing as tp

import pytest
import requests

from fleet_provisioning.environment import entities
from fleet_provisioning.providers import diagnostics
from fleet_provisioning.tip import client as tip_client
from fleet_provisioning.utils import http_client

BASE_URL = "https://tip.example.test/api"


class FakeResponse:
    def __init__(self, status_code: int = 200, data: tp.Any = None) -> None:
        self.status_code = status_code
        self.text = json.dumps(data) if data is not None else ""
        self.content = self.text.encode()

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> tp.Any:
        return json.loads(self.text)


class FakeSession:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict]] = []
        self.responses: list[FakeResponse | Exception] = []

    def request(self, method: str, url: str, **kwargs: tp.Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def session(monkeypatch) -> FakeSession:
    fake = FakeSession()
    monkeypatch.setattr(http_client, "get_session", lambda: fake)
    return fake


@pytest.fixture
def client() -> tip_client.HttpTipClient:
    return tip_client.HttpTipClient(f"{BASE_URL}/", timeout=5)


def test_create_session(session, client):
    session.responses.append(FakeResponse(data={"tipSessionId": "s1", "changeId": "c1"}))
    parameters = tip_client.TipParameters(
        candidate_node_ids=("node1",),
        cluster_name="Cluster01",
        region="eastus2",
        machine_pool_names=("Cluster01-mp1",),
        is_amber_node_request=True,
    )

    change = client.create_session(parameters)

    assert change == tip_client.TipSessionChange(tip_session_id="s1", change_id="c1")
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", f"{BASE_URL}/sessions")
    assert kwargs["timeout"] == 5
    assert kwargs["json"] == {
        "candidateNodesId": ["node1"],
        "nodeCount": 1,
        "clusterName": "Cluster01",
        "region": "eastus2",
        "machinePoolNames": ["Cluster01-mp1"],
        "isAmberNodeRequest": True,
    }


def test_get_session_change(session, client):
    session.responses.extend(
        [
            FakeResponse(data={"status": "InProgress"}),
            FakeResponse(
                data={"status": "Finished", "result": "Failed", "errorMessage": "node is gone"}
            ),
        ]
    )

    details = client.get_session_change("s1", "c1")
    assert details.status == tip_client.TipChangeStatus.IN_PROGRESS
    assert details.result == tip_client.TipChangeResult.PENDING

    assert client.is_session_change_failed("s1", "c1")
    assert session.calls[1][1] == f"{BASE_URL}/sessions/s1/changes/c1"


def test_get_session(session, client):
    session.responses.append(
        FakeResponse(
            data={
                "status": "Created",
                "nodeIds": ["node1"],
                "createdTimeUtc": "2024-05-01T10:00:00Z",
                "expirationTimeUtc": None,
            }
        )
    )

    tip_session = client.get_session("s1")

    assert tip_session.status == entities.TipSessionStatus.CREATED
    assert tip_session.node_ids == ("node1",)
    assert tip_session.created_time_utc == datetime.datetime(2024, 5, 1, 10, tzinfo=datetime.UTC)
    assert tip_session.expiration_time_utc is None


def test_delete_and_set_node_state(session, client):
    session.responses.extend(
        [
            FakeResponse(data={"tipSessionId": "s1", "changeId": "c2"}),
            FakeResponse(data={"tipSessionId": "s1", "changeId": "c3"}),
        ]
    )

    assert client.delete_session("s1").change_id == "c2"
    assert client.set_node_state("s1", "node1", "Excluded").change_id == "c3"
    assert session.calls[0][:2] == ("DELETE", f"{BASE_URL}/sessions/s1")
    assert session.calls[1][:2] == ("POST", f"{BASE_URL}/sessions/s1/nodes/node1/state")
    assert session.calls[1][2]["json"] == {"state": "Excluded"}


def test_http_error(session, client):
    session.responses.append(FakeResponse(status_code=503, data={"error": "unavailable"}))

    with pytest.raises(tip_client.TipServiceError) as excinfo:
        client.delete_session("s1")
    assert excinfo.value.status_code == 503
    assert "unavailable" in str(excinfo.value)


def test_connection_error(session, client):
    session.responses.append(requests.exceptions.ConnectionError("connection refused"))

    with pytest.raises(tip_client.TipServiceError, match="connection refused") as excinfo:
        client.get_session("s1")
    assert excinfo.value.status_code is None


def test_url_not_configured(session, monkeypatch):
    monkeypatch.setattr(tip_client.configuration, "TIP_SERVICE_URL", "")

    with pytest.raises(tip_client.TipServiceError, match="TIP_SERVICE_URL"):
        tip_client.HttpTipClient().get_session("s1")
    assert not session.calls


class FailingSink:
    def submit(self, request: diagnostics.DiagnosticsRequest) -> None:
        msg = "sink is down"
        raise RuntimeError(msg)


def test_emit_diagnostics(sink):
    now = datetime.datetime.now(tz=datetime.UTC)
    request = diagnostics.DiagnosticsRequest(
        experiment_id="exp-0001",
        issue_type=diagnostics.DiagnosticsIssueType.TIP_CLEANUP_FAILURE,
        time_range_begin=now - datetime.timedelta(minutes=5),
        time_range_end=now,
        context={"tipSessionId": "s1"},
    )

    assert diagnostics.emit(sink, request)
    assert not diagnostics.emit(None, request)
    assert not diagnostics.emit(FailingSink(), request)

    data = request.to_json()
    assert data["issueType"] == "TipCleanupFailure"
    assert data["context"] == {"tipSessionId": "s1"}
