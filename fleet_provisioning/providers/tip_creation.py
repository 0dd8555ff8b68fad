"""Provisioning of TiP sessions on nodes selected for the experiment groups.

The step needs `CountPerGroup` slots. A slot is one node for every experiment group, all the nodes
of a slot selected from a single affinity partition. Every invocation advances the step by one
round:

1. when the step deadline passed, delete committed sessions and fail
2. poll in-flight session requests; commit created sessions, discard nodes whose session failed
3. succeed when all slots are complete and committed, wait while requests are in flight
4. otherwise request sessions for nodes missing in slots; a partially filled slot is completed from
   its own partition, and when that is not possible, the slot is released and filled again from
   another partition
5. fail with resource exhaustion when no new request could be issued

Every node is requested at most once in a step; the list of attempted nodes is persisted in the
provider state before the invocation returns.
"""

import dataclasses
import logging
import typing as tp

from fleet_provisioning.environment import entities
from fleet_provisioning.environment import entity_manager
from fleet_provisioning.environment import node_affinity
from fleet_provisioning.providers import base
from fleet_provisioning.providers import common
from fleet_provisioning.providers import diagnostics
from fleet_provisioning.providers import failure_policy
from fleet_provisioning.tip import client as tip_client
from fleet_provisioning.utils import configuration
from fleet_provisioning.utils import helpers

LOGGER = logging.getLogger(__name__)

P = common.Parameters
MK = entities.MetadataKey


@dataclasses.dataclass
class TipCreationState(base.StepState):
    count_per_group: int = 1
    node_affinity: str = entities.NodeAffinity.SAME_RACK.value
    is_amber_node_request: bool = False
    nodes_attempted: list[str] = dataclasses.field(default_factory=list)
    # Node id for every experiment group, per slot
    slots: list[dict[str, str]] = dataclasses.field(default_factory=list)
    # In-flight session requests: node id -> {"tipSessionId": ..., "changeId": ...}
    requests: dict[str, dict[str, str]] = dataclasses.field(default_factory=dict)
    # Committed sessions: node id -> TiP session id
    sessions: dict[str, str] = dataclasses.field(default_factory=dict)
    # Discarded nodes and absorbed transient errors
    retry_count: int = 0
    completed: bool = False


@dataclasses.dataclass
class _Round:
    """Data of a single invocation of the step."""

    context: common.ExperimentContext
    state: TipCreationState
    pool: list[entities.EnvironmentEntity]
    provisioned: list[entities.EnvironmentEntity]
    selector: node_affinity.BaseAffinity
    failures: failure_policy.ConsecutiveFailures

    def find_node(self, node_id: str) -> entities.EnvironmentEntity | None:
        return entities.find(self.pool, entities.EntityType.NODE, node_id)

    def get_node(self, node_id: str) -> entities.EnvironmentEntity:
        node = self.find_node(node_id)
        if node is None:
            msg = f"Node '{node_id}' is no longer in the entity pool."
            raise common.ProviderError(
                msg, reason=common.ErrorReason.EXPECTED_ENVIRONMENT_ENTITIES_NOT_FOUND
            )
        return node

    def get_slot_group(self, node_id: str) -> tuple[int, str] | None:
        for idx, slot in enumerate(self.state.slots):
            for group, slot_node_id in slot.items():
                if slot_node_id == node_id:
                    return idx, group
        return None

    def drop_from_slots(self, node_id: str) -> None:
        for slot in self.state.slots:
            for group in [g for g, n in slot.items() if n == node_id]:
                del slot[group]

    def get_unavailable(self) -> list[str]:
        in_slots = [n for slot in self.state.slots for n in slot.values()]
        return [*self.state.nodes_attempted, *in_slots]

    def get_taken(self, exclude_slot: int) -> list[entities.EnvironmentEntity]:
        """Return nodes of all slots except the given one."""
        return [
            self.get_node(n)
            for idx, slot in enumerate(self.state.slots)
            if idx != exclude_slot
            for n in slot.values()
        ]

    def remove_provisioned(self, node_id: str) -> None:
        """Remove the node and its TiP session from the provisioned entities."""
        lnode_id = node_id.lower()
        self.provisioned[:] = [
            e
            for e in self.provisioned
            if not (
                (e.entity_type == entities.EntityType.NODE and e.id.lower() == lnode_id)
                or (
                    e.entity_type == entities.EntityType.TIP_SESSION
                    and (e.node_id or "").lower() == lnode_id
                )
            )
        ]


class TipCreationProvider(base.ExperimentProvider):
    """Provider that leases TiP sessions on nodes satisfying the node affinity."""

    step_type = "TipCreation"
    supported_parameters = (
        *base.COMMON_PARAMETERS,
        common.SupportedParameter(P.NODE_AFFINITY, entities.NodeAffinity),
        common.SupportedParameter(P.COUNT_PER_GROUP, int),
        common.SupportedParameter(P.IS_AMBER_NODE_REQUEST, bool),
    )
    default_timeout = configuration.TIP_CREATION_TIMEOUT
    issue_type = diagnostics.DiagnosticsIssueType.TIP_SESSION_FAILURE

    @property
    def tip(self) -> tip_client.TipClient:
        return self.services.tip_client

    def execute_step(
        self, context: common.ExperimentContext, component: common.ExperimentComponent
    ) -> common.ExecutionResult:
        if not context.groups:
            msg = "The experiment doesn't define any environment group."
            raise common.SchemaError(msg)

        count_per_group: int = component.get(P.COUNT_PER_GROUP, int, default=1)
        if count_per_group < 1:
            msg = f"Parameter '{P.COUNT_PER_GROUP}' must be >= 1, got {count_per_group}."
            raise common.SchemaError(msg)
        affinity: entities.NodeAffinity = component.get(
            P.NODE_AFFINITY, entities.NodeAffinity, default=entities.NodeAffinity.SAME_RACK
        )

        manager = entity_manager.EntityManager(self.services.store, context.experiment_id)
        pool = manager.get_entity_pool()
        provisioned = manager.get_entities_provisioned()
        state = self.get_or_create_state(
            context,
            component,
            TipCreationState,
            count_per_group=count_per_group,
            node_affinity=affinity.value,
            is_amber_node_request=component.get(P.IS_AMBER_NODE_REQUEST, bool, default=False),
            slots=[{} for __ in range(count_per_group)],
        )
        if state.completed:
            return common.ExecutionResult(status=common.ExecutionStatus.SUCCEEDED)

        rnd = _Round(
            context=context,
            state=state,
            pool=pool,
            provisioned=provisioned,
            selector=node_affinity.get_selector(
                entities.NodeAffinity(state.node_affinity), context.groups
            ),
            failures=state.get_failures(),
        )
        try:
            return self._advance(rnd)
        finally:
            # State is persisted regardless of the outcome, including cancellation
            self._persist(manager, rnd)

    def _persist(self, manager: entity_manager.EntityManager, rnd: _Round) -> None:
        """Save provider state and entity sets.

        The provider state goes first, as it records the issued requests. Every save is attempted
        even when a previous one failed, the first failure is re-raised.
        """
        saves: list[tuple[str, tp.Callable[[], tp.Any]]] = [
            ("provider state", lambda: self.save_state(rnd.context, rnd.state)),
            ("entity pool", lambda: manager.save_entity_pool(rnd.pool)),
            ("provisioned entities", lambda: manager.save_entities_provisioned(rnd.provisioned)),
        ]
        failures: list[Exception] = []
        for name, save in saves:
            try:
                save()
            except Exception as exc:
                LOGGER.exception(
                    f"Failed to save {name} of experiment '{rnd.context.experiment_id}'."
                )
                failures.append(exc)
        if failures:
            raise failures[0]

    def _advance(self, rnd: _Round) -> common.ExecutionResult:
        state = rnd.state
        exp_id = rnd.context.experiment_id

        if state.is_expired():
            self._cleanup(rnd)
            msg = (
                f"TiP sessions for experiment '{exp_id}' were not provisioned before the deadline "
                f"{state.step_timeout} (timeout {state.timeout:.0f} s)."
            )
            raise common.StepTimeoutError(msg)

        self._poll_requests(rnd)

        if self._is_complete(rnd):
            state.completed = True
            LOGGER.info(
                f"All {len(state.sessions)} TiP sessions for experiment '{exp_id}' were created."
            )
            return common.ExecutionResult(status=common.ExecutionStatus.SUCCEEDED)
        if state.requests:
            return common.ExecutionResult(status=common.ExecutionStatus.IN_PROGRESS)

        transient_failure = self._request_sessions(rnd)
        if state.requests or transient_failure:
            return common.ExecutionResult(status=common.ExecutionStatus.IN_PROGRESS)

        self._cleanup(rnd)
        self.diagnostics_context["nodesAttempted"] = str(len(state.nodes_attempted))
        msg = (
            f"Expected environment entities not found: no {state.node_affinity} candidates left "
            f"for groups {list(rnd.context.groups)} of experiment '{exp_id}' "
            f"after {len(state.nodes_attempted)} attempted nodes."
        )
        raise common.ProviderError(
            msg, reason=common.ErrorReason.EXPECTED_ENVIRONMENT_ENTITIES_NOT_FOUND
        )

    def _is_complete(self, rnd: _Round) -> bool:
        groups = rnd.context.groups
        slots = rnd.state.slots
        return (
            len(slots) == rnd.state.count_per_group
            and all(len(slot) == len(groups) for slot in slots)
            and all(n in rnd.state.sessions for slot in slots for n in slot.values())
        )

    def _poll_requests(self, rnd: _Round) -> None:
        """Poll in-flight session requests."""
        for node_id, request in list(rnd.state.requests.items()):
            session_id = request["tipSessionId"]
            change_id = request["changeId"]

            self.check_cancelled()
            try:
                failed = self.tip.is_session_change_failed(session_id, change_id)
                node_session = None if failed else self.tip.get_session(session_id)
            except tip_client.TipServiceError as exc:
                self.diagnostics_context.update(nodeId=node_id, tipSessionId=session_id)
                failure_policy.handle_remote_error(exc, resource=node_id, failures=rnd.failures)
                rnd.state.retry_count += 1
                self.check_cancelled()
                continue
            rnd.failures.reset(node_id)

            if node_session is None:
                self._discard(rnd, node_id)
            elif node_session.status == entities.TipSessionStatus.CREATED:
                self._commit(rnd, node_id, node_session, change_id)
            elif node_session.status != entities.TipSessionStatus.CREATING:
                # Failed, or deleted by someone else before it was committed
                self._discard(rnd, node_id)
            self.check_cancelled()

    def _commit(
        self,
        rnd: _Round,
        node_id: str,
        node_session: tip_client.TipNodeSession,
        change_id: str,
    ) -> None:
        """Commit created session together with its node."""
        node = rnd.get_node(node_id)
        slot_group = rnd.get_slot_group(node_id)
        group = slot_group[1] if slot_group else node.environment_group
        vm_skus = node.supported_vm_skus
        session = entities.TipSession(
            tip_session_id=node_session.tip_session_id,
            cluster_name=node.cluster_name,
            region=node.region,
            node_id=node.id,
            group_name=group,
            status=entities.TipSessionStatus.CREATED,
            change_id_list=[change_id],
            created_time_utc=node_session.created_time_utc or helpers.utcnow(),
            expiration_time_utc=node_session.expiration_time_utc,
            supported_vm_skus=vm_skus,
            preferred_vm_sku=vm_skus[0] if vm_skus else None,
        )
        node.metadata.update(
            {
                MK.TIP_SESSION_ID: session.tip_session_id,
                MK.TIP_SESSION_STATUS: entities.TipSessionStatus.CREATED.value,
                MK.TIP_SESSION_REQUEST_CHANGE_ID: change_id,
            }
        )

        rnd.remove_provisioned(node_id)
        rnd.provisioned.extend([node.copy(), session.to_entity()])
        rnd.state.sessions[node_id] = session.tip_session_id
        del rnd.state.requests[node_id]
        LOGGER.info(
            f"TiP session '{session.tip_session_id}' created on node '{node_id}' "
            f"for group '{group}' of experiment '{rnd.context.experiment_id}'."
        )

    def _discard(self, rnd: _Round, node_id: str) -> None:
        """Discard node whose session failed."""
        request = rnd.state.requests.pop(node_id, {})
        session_id = request.get("tipSessionId", "")
        node = rnd.get_node(node_id)
        node.discarded = True
        node.metadata[MK.TIP_SESSION_STATUS] = entities.TipSessionStatus.FAILED.value

        rnd.state.sessions.pop(node_id, None)
        rnd.drop_from_slots(node_id)
        rnd.remove_provisioned(node_id)
        rnd.state.retry_count += 1
        self.diagnostics_context.update(nodeId=node_id, tipSessionId=session_id)
        LOGGER.warning(
            f"TiP session '{session_id}' on node '{node_id}' of experiment "
            f"'{rnd.context.experiment_id}' failed, node discarded."
        )

    def _request_sessions(self, rnd: _Round) -> bool:
        """Request sessions for nodes missing in slots.

        Return True when some request failed with a transient error.
        """
        state = rnd.state
        groups = rnd.context.groups
        transient_failure = False

        # Complete partially filled slots within partition of their nodes
        for idx, slot in enumerate(state.slots):
            if not slot or len(slot) == len(groups):
                continue
            missing = [g for g in groups if g not in slot]
            selected = rnd.selector.select(
                rnd.pool,
                unavailable=rnd.get_unavailable(),
                groups=missing,
                peers=[rnd.get_node(n) for n in slot.values()],
                taken=rnd.get_taken(exclude_slot=idx),
            )
            if not selected:
                self._release_slot(rnd, idx)
                continue
            transient_failure |= self._request_slot(rnd, idx, selected)

        # Fill empty slots, depth-first
        for idx, slot in enumerate(state.slots):
            if slot:
                continue
            selected = rnd.selector.select(
                rnd.pool,
                unavailable=rnd.get_unavailable(),
                taken=rnd.get_taken(exclude_slot=idx),
            )
            if not selected:
                break
            transient_failure |= self._request_slot(rnd, idx, selected)

        return transient_failure

    def _request_slot(
        self, rnd: _Round, slot_idx: int, selected: node_affinity.Assignment
    ) -> bool:
        transient_failure = False
        for group, node in selected.items():
            if not self._request_session(rnd, slot_idx, group, node):
                transient_failure = True
        return transient_failure

    def _request_session(
        self, rnd: _Round, slot_idx: int, group: str, node: entities.EnvironmentEntity
    ) -> bool:
        """Request TiP session on the node.

        Return False when the request failed with a transient error.
        """
        state = rnd.state
        parameters = tip_client.TipParameters(
            candidate_node_ids=(node.id,),
            cluster_name=node.cluster_name,
            region=node.region,
            machine_pool_names=(node.machine_pool_name,),
            is_amber_node_request=state.is_amber_node_request,
        )

        self.check_cancelled()
        try:
            change = self.tip.create_session(parameters)
        except tip_client.TipServiceError as exc:
            self.diagnostics_context.update(nodeId=node.id)
            failure_policy.handle_remote_error(exc, resource=node.id, failures=rnd.failures)
            rnd.state.retry_count += 1
            self.check_cancelled()
            return False
        rnd.failures.reset(node.id)

        state.nodes_attempted.append(node.id)
        state.requests[node.id] = {
            "tipSessionId": change.tip_session_id,
            "changeId": change.change_id,
        }
        state.slots[slot_idx][group] = node.id
        node.metadata.update(
            {
                MK.TIP_SESSION_ID: change.tip_session_id,
                MK.TIP_SESSION_REQUEST_CHANGE_ID: change.change_id,
                MK.TIP_SESSION_STATUS: entities.TipSessionStatus.CREATING.value,
            }
        )
        LOGGER.info(
            f"Requested TiP session '{change.tip_session_id}' (change '{change.change_id}') "
            f"on node '{node.id}' for group '{group}' of experiment '{rnd.context.experiment_id}'."
        )
        self.check_cancelled()
        return True

    def _release_slot(self, rnd: _Round, slot_idx: int) -> None:
        """Release slot that cannot be completed in its partition."""
        slot = rnd.state.slots[slot_idx]
        LOGGER.warning(
            f"Slot {slot_idx} of experiment '{rnd.context.experiment_id}' cannot be completed "
            f"with {rnd.state.node_affinity} affinity, releasing nodes {sorted(slot.values())}."
        )
        for node_id in list(slot.values()):
            session_id = rnd.state.sessions.pop(node_id, None)
            if session_id:
                self._delete_session(rnd, node_id, session_id)
            node = rnd.find_node(node_id)
            if node is not None:
                node.discarded = True
            rnd.remove_provisioned(node_id)
            del slot[next(g for g, n in slot.items() if n == node_id)]

    def _delete_session(self, rnd: _Round, node_id: str, session_id: str) -> None:
        """Request deletion of a session, failures are only logged."""
        self.check_cancelled()
        try:
            change = self.tip.delete_session(session_id)
        except tip_client.TipServiceError as exc:
            LOGGER.warning(
                f"Failed to delete TiP session '{session_id}' on node '{node_id}': {exc}"
            )
            self.check_cancelled()
            return

        node = rnd.find_node(node_id)
        if node is not None:
            node.metadata.update(
                {
                    MK.TIP_SESSION_STATUS: entities.TipSessionStatus.DELETING.value,
                    MK.TIP_SESSION_DELETE_REQUEST_CHANGE_ID: change.change_id,
                }
            )
        LOGGER.info(
            f"Requested deletion of TiP session '{session_id}' on node '{node_id}' "
            f"(change '{change.change_id}')."
        )
        self.check_cancelled()

    def _cleanup(self, rnd: _Round) -> None:
        """Delete all committed sessions of the step."""
        for node_id, session_id in list(rnd.state.sessions.items()):
            self._delete_session(rnd, node_id, session_id)
            rnd.remove_provisioned(node_id)
            del rnd.state.sessions[node_id]
            rnd.drop_from_slots(node_id)
