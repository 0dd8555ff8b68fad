"""Setting the state of nodes leased by TiP sessions."""

import dataclasses
import logging

from fleet_provisioning.environment import entities
from fleet_provisioning.environment import entity_manager
from fleet_provisioning.providers import base
from fleet_provisioning.providers import common
from fleet_provisioning.providers import diagnostics
from fleet_provisioning.providers import failure_policy
from fleet_provisioning.tip import client as tip_client
from fleet_provisioning.utils import configuration

LOGGER = logging.getLogger(__name__)

P = common.Parameters


@dataclasses.dataclass
class TipStateState(base.StepState):
    node_state: str = ""
    requested: bool = False
    # TiP session id -> node id
    nodes: dict[str, str] = dataclasses.field(default_factory=dict)
    # TiP session id -> change id of the node state request
    changes: dict[str, str] = dataclasses.field(default_factory=dict)
    completed: list[str] = dataclasses.field(default_factory=list)


class TipStateProvider(base.ExperimentProvider):
    """Provider that sets the state of nodes leased by the TiP sessions of targeted groups."""

    step_type = "TipNodeState"
    supported_parameters = (
        *base.COMMON_PARAMETERS,
        common.SupportedParameter(P.NODE_STATE, required=True),
    )
    default_timeout = configuration.TIP_STATE_TIMEOUT
    issue_type = diagnostics.DiagnosticsIssueType.TIP_NODE_STATE_FAILURE

    def execute_step(
        self, context: common.ExperimentContext, component: common.ExperimentComponent
    ) -> common.ExecutionResult:
        node_state: str = component.require(P.NODE_STATE)
        manager = entity_manager.EntityManager(self.services.store, context.experiment_id)
        state = self.get_or_create_state(context, component, TipStateState, node_state=node_state)

        try:
            if state.is_expired():
                msg = (
                    f"Nodes of experiment '{context.experiment_id}' didn't reach state "
                    f"'{state.node_state}' before the deadline {state.step_timeout}."
                )
                raise common.StepTimeoutError(msg)

            if not state.requested:
                self._request_states(context, component, state, manager)
                return common.ExecutionResult(status=common.ExecutionStatus.IN_PROGRESS)

            return self._confirm_states(context, state, manager)
        finally:
            self.save_state(context, state)

    def _request_states(
        self,
        context: common.ExperimentContext,
        component: common.ExperimentComponent,
        state: TipStateState,
        manager: entity_manager.EntityManager,
    ) -> None:
        if not state.nodes:
            sessions = [
                s
                for s in entities.of_type(
                    manager.get_entities_provisioned(), entities.EntityType.TIP_SESSION
                )
                if component.targets(s.environment_group)
            ]
            if not sessions:
                msg = (
                    f"No TiP sessions provisioned for group '{component.group}' "
                    f"of experiment '{context.experiment_id}'."
                )
                raise common.ProviderError(
                    msg, reason=common.ErrorReason.EXPECTED_ENVIRONMENT_ENTITIES_NOT_FOUND
                )
            state.nodes = {
                s.id: s.get_required(entities.MetadataKey.NODE_ID) for s in sessions
            }

        failures = state.get_failures()
        for session_id, node_id in state.nodes.items():
            if session_id in state.changes:
                continue

            self.check_cancelled()
            try:
                change = self.services.tip_client.set_node_state(
                    session_id, node_id, state.node_state
                )
            except tip_client.TipServiceError as exc:
                self.diagnostics_context.update(tipSessionId=session_id, nodeId=node_id)
                failure_policy.handle_remote_error(exc, resource=session_id, failures=failures)
                self.check_cancelled()
                continue
            failures.reset(session_id)

            state.changes[session_id] = change.change_id
            LOGGER.info(
                f"Requested state '{state.node_state}' of node '{node_id}' "
                f"(TiP session '{session_id}', change '{change.change_id}')."
            )
            self.check_cancelled()

        state.requested = len(state.changes) == len(state.nodes)

    def _confirm_states(
        self,
        context: common.ExperimentContext,
        state: TipStateState,
        manager: entity_manager.EntityManager,
    ) -> common.ExecutionResult:
        failures = state.get_failures()
        for session_id, change_id in state.changes.items():
            if session_id in state.completed:
                continue

            self.check_cancelled()
            try:
                details = self.services.tip_client.get_session_change(session_id, change_id)
            except tip_client.TipServiceError as exc:
                self.diagnostics_context.update(tipSessionId=session_id)
                failure_policy.handle_remote_error(exc, resource=session_id, failures=failures)
                self.check_cancelled()
                continue
            failures.reset(session_id)

            if details.result == tip_client.TipChangeResult.FAILED:
                self.diagnostics_context.update(
                    tipSessionId=session_id, nodeId=state.nodes.get(session_id, "")
                )
                msg = (
                    f"Setting state '{state.node_state}' on TiP session '{session_id}' "
                    f"(change '{change_id}') failed: {details.error_message or 'no error message'}"
                )
                raise common.ProviderError(msg, reason=common.ErrorReason.TIP_REQUEST_FAILURE)
            if details.status == tip_client.TipChangeStatus.FINISHED:
                state.completed.append(session_id)
                self._record_node_state(manager, session_id, state.node_state)
            self.check_cancelled()

        if len(state.completed) != len(state.changes):
            return common.ExecutionResult(status=common.ExecutionStatus.IN_PROGRESS)

        LOGGER.info(
            f"Nodes of {len(state.completed)} TiP sessions of experiment "
            f"'{context.experiment_id}' are in state '{state.node_state}'."
        )
        return common.ExecutionResult(status=common.ExecutionStatus.SUCCEEDED)

    def _record_node_state(
        self, manager: entity_manager.EntityManager, session_id: str, node_state: str
    ) -> None:
        provisioned = manager.get_entities_provisioned()
        session = entities.find(provisioned, entities.EntityType.TIP_SESSION, session_id)
        if session is not None:
            session.metadata[entities.MetadataKey.NODE_STATE] = node_state
            manager.update_entities_provisioned([session])
