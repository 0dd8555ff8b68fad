import datetime
import itertools
import typing as tp

import pytest

from fleet_provisioning.environment import entities
from fleet_provisioning.environment import entity_manager
from fleet_provisioning.environment import store as store_mod
from fleet_provisioning.providers import base
from fleet_provisioning.providers import common
from fleet_provisioning.providers import diagnostics
from fleet_provisioning.providers import registry
from fleet_provisioning.tip import client as tip_client
from fleet_provisioning.utils import helpers

EXPERIMENT_ID = "exp-0001"
STEP_ID = "step-tip-1"
GROUPS = ("Group A", "Group B")

MK = entities.MetadataKey


def make_node(
    node_id: str,
    group: str,
    *,
    cluster: str = "Cluster01",
    rack: str = "Rack01",
    **metadata: tp.Any,
) -> entities.EnvironmentEntity:
    """Create a pool node with complete discovery metadata."""
    node_metadata = {
        MK.CLUSTER_NAME: cluster,
        MK.RACK_LOCATION: rack,
        MK.REGION: "eastus2",
        MK.MACHINE_POOL_NAME: f"{cluster}-mp1",
        MK.SUPPORTED_VM_SKUS: "Standard_D2s_v3;Standard_D4s_v3",
        **metadata,
    }
    return entities.EnvironmentEntity.node(node_id, group, **node_metadata)


class FakeTipClient(tip_client.TipClient):
    """Scripted TiP service."""

    def __init__(self) -> None:
        self.create_requests: list[tip_client.TipParameters] = []
        self.create_calls = 0
        self.deleted: list[str] = []
        self.node_states: list[tuple[str, str, str]] = []
        # Nodes whose session request fails
        self.failing_nodes: set[str] = set()
        # Errors raised by the next calls, per node
        self.create_errors: dict[str, list[Exception]] = {}
        self.poll_errors: dict[str, list[Exception]] = {}
        # Number of polls for which the session is still being created, per node
        self.pending_polls: dict[str, int] = {}
        # Status reported for the session once it is no longer being created, per node
        self.session_statuses: dict[str, entities.TipSessionStatus] = {}
        # Results of delete and node state changes, per session
        self.change_results: dict[str, tip_client.TipChangeResult] = {}
        self.delete_errors: dict[str, Exception] = {}
        self.sessions: dict[str, str] = {}
        self._counter = itertools.count(1)

    @property
    def attempted_nodes(self) -> list[str]:
        return [p.candidate_node_ids[0] for p in self.create_requests]

    def _change(self, session_id: str) -> tip_client.TipSessionChange:
        return tip_client.TipSessionChange(
            tip_session_id=session_id, change_id=f"change-{next(self._counter)}"
        )

    def create_session(self, parameters: tip_client.TipParameters) -> tip_client.TipSessionChange:
        self.create_calls += 1
        node_id = parameters.candidate_node_ids[0]
        errors = self.create_errors.get(node_id)
        if errors:
            raise errors.pop(0)

        self.create_requests.append(parameters)
        session_id = f"session-{node_id}-{len(self.create_requests)}"
        self.sessions[session_id] = node_id
        return self._change(session_id)

    def is_session_change_failed(self, tip_session_id: str, change_id: str) -> bool:  # noqa: ARG002
        node_id = self.sessions[tip_session_id]
        errors = self.poll_errors.get(node_id)
        if errors:
            raise errors.pop(0)
        return node_id in self.failing_nodes

    def get_session(self, tip_session_id: str) -> tip_client.TipNodeSession:
        node_id = self.sessions[tip_session_id]
        if self.pending_polls.get(node_id, 0) > 0:
            self.pending_polls[node_id] -= 1
            return tip_client.TipNodeSession(
                tip_session_id=tip_session_id,
                status=entities.TipSessionStatus.CREATING,
                node_ids=(node_id,),
            )
        now = helpers.utcnow()
        return tip_client.TipNodeSession(
            tip_session_id=tip_session_id,
            status=self.session_statuses.get(node_id, entities.TipSessionStatus.CREATED),
            node_ids=(node_id,),
            created_time_utc=now,
            expiration_time_utc=now + datetime.timedelta(days=1),
        )

    def get_session_change(
        self, tip_session_id: str, change_id: str
    ) -> tip_client.TipSessionChangeDetails:
        result = self.change_results.get(tip_session_id, tip_client.TipChangeResult.SUCCEEDED)
        status = (
            tip_client.TipChangeStatus.IN_PROGRESS
            if result == tip_client.TipChangeResult.PENDING
            else tip_client.TipChangeStatus.FINISHED
        )
        return tip_client.TipSessionChangeDetails(
            tip_session_id=tip_session_id,
            change_id=change_id,
            status=status,
            result=result,
            error_message="node is unhealthy"
            if result == tip_client.TipChangeResult.FAILED
            else None,
        )

    def delete_session(self, tip_session_id: str) -> tip_client.TipSessionChange:
        if tip_session_id in self.delete_errors:
            raise self.delete_errors[tip_session_id]
        self.deleted.append(tip_session_id)
        return self._change(tip_session_id)

    def set_node_state(
        self, tip_session_id: str, node_id: str, state: str
    ) -> tip_client.TipSessionChange:
        self.node_states.append((tip_session_id, node_id, state))
        return self._change(tip_session_id)


class RecordingSink:
    def __init__(self) -> None:
        self.requests: list[diagnostics.DiagnosticsRequest] = []

    def submit(self, request: diagnostics.DiagnosticsRequest) -> None:
        self.requests.append(request)


class StepHarness:
    """Executes steps of a single experiment against a file store and the fake TiP service."""

    def __init__(
        self, store: store_mod.JsonFileStore, tip: FakeTipClient, sink: RecordingSink
    ) -> None:
        self.store = store
        self.tip = tip
        self.sink = sink
        self.services = base.ProviderServices(store=store, tip_client=tip, diagnostics_sink=sink)
        self.context = common.ExperimentContext(
            experiment_id=EXPERIMENT_ID, step_id=STEP_ID, groups=GROUPS
        )
        self.manager = entity_manager.EntityManager(store, EXPERIMENT_ID)

    def set_pool(self, nodes: tp.Iterable[entities.EnvironmentEntity]) -> None:
        self.store.save_state(
            EXPERIMENT_ID, entity_manager.ENTITY_POOL_KEY, [n.to_dict() for n in nodes]
        )

    @property
    def pool(self) -> list[entities.EnvironmentEntity]:
        return self.manager.get_entity_pool()

    @property
    def provisioned(self) -> list[entities.EnvironmentEntity]:
        return self.manager.get_entities_provisioned()

    def provisioned_of_type(
        self, entity_type: entities.EntityType
    ) -> list[entities.EnvironmentEntity]:
        return entities.of_type(self.provisioned, entity_type)

    def committed_pairs(
        self,
    ) -> list[tuple[entities.EnvironmentEntity, entities.EnvironmentEntity]]:
        """Return (node, TiP session) pairs of provisioned entities linked to each other."""
        provisioned = self.provisioned
        sessions = entities.of_type(provisioned, entities.EntityType.TIP_SESSION)
        pairs = []
        for node in entities.of_type(provisioned, entities.EntityType.NODE):
            session_id = node.tip_session_id
            if not session_id:
                continue
            session = entities.find(sessions, entities.EntityType.TIP_SESSION, session_id)
            if session is not None and (session.node_id or "").lower() == node.id.lower():
                pairs.append((node, session))
        return pairs

    @property
    def state(self) -> dict[str, tp.Any]:
        return self.store.get_state(EXPERIMENT_ID, self.context.state_key)

    def expire_step(self) -> None:
        """Move the step deadline to the past."""
        state = self.state
        past = helpers.utcnow() - datetime.timedelta(minutes=1)
        state["step_timeout"] = helpers.to_isoformat(past)
        self.store.save_state(EXPERIMENT_ID, self.context.state_key, state)

    def with_step(self, step_id: str) -> "StepHarness":
        other = StepHarness(store=self.store, tip=self.tip, sink=self.sink)
        other.context = common.ExperimentContext(
            experiment_id=EXPERIMENT_ID, step_id=step_id, groups=GROUPS
        )
        return other

    def execute(
        self,
        step_type: str = "TipCreation",
        *,
        group: str = common.ALL_GROUPS,
        cancellation: common.CancellationToken | None = None,
        **parameters: tp.Any,
    ) -> common.ExecutionResult:
        provider = registry.create_provider(step_type, self.services)
        component = common.ExperimentComponent(
            step_type=step_type, group=group, parameters=parameters
        )
        return provider.execute(self.context, component, cancellation)

    def run(
        self, step_type: str = "TipCreation", *, max_invocations: int = 50, **parameters: tp.Any
    ) -> tuple[common.ExecutionResult, int]:
        """Invoke the step until it reaches a terminal status."""
        for invocation in range(1, max_invocations + 1):
            result = self.execute(step_type, **parameters)
            if result.status.is_terminal:
                return result, invocation
        msg = f"Step didn't finish in {max_invocations} invocations."
        raise AssertionError(msg)


@pytest.fixture
def store(tmp_path) -> store_mod.JsonFileStore:
    return store_mod.JsonFileStore(tmp_path / "fleet-state")


@pytest.fixture
def tip() -> FakeTipClient:
    return FakeTipClient()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def harness(store, tip, sink) -> StepHarness:
    return StepHarness(store=store, tip=tip, sink=sink)


@pytest.fixture(scope="session")
def node_factory() -> tp.Callable[..., entities.EnvironmentEntity]:
    return make_node
