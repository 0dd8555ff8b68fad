"""Deletion of TiP sessions committed for the experiment."""

import dataclasses
import logging

from fleet_provisioning.environment import entities
from fleet_provisioning.environment import entity_manager
from fleet_provisioning.providers import base
from fleet_provisioning.providers import common
from fleet_provisioning.providers import diagnostics
from fleet_provisioning.providers import failure_policy
from fleet_provisioning.tip import client as tip_client

LOGGER = logging.getLogger(__name__)

P = common.Parameters
MK = entities.MetadataKey


@dataclasses.dataclass
class TipCleanupState(base.StepState):
    initialized: bool = False
    # Sessions whose deletion was not requested yet
    pending: list[str] = dataclasses.field(default_factory=list)
    # TiP session id -> node id
    nodes: dict[str, str] = dataclasses.field(default_factory=dict)
    # TiP session id -> change id of the delete request
    changes: dict[str, str] = dataclasses.field(default_factory=dict)


class TipCleanupProvider(base.ExperimentProvider):
    """Provider that deletes TiP sessions.

    Deletion of one session is requested per invocation, then all the delete requests are polled.
    The targeted sessions are given by the `TipSessionId` parameter, or by the component group.
    """

    step_type = "TipCleanup"
    supported_parameters = (
        *base.COMMON_PARAMETERS,
        common.SupportedParameter(P.TIP_SESSION_ID),
    )
    issue_type = diagnostics.DiagnosticsIssueType.TIP_CLEANUP_FAILURE

    def execute_step(
        self, context: common.ExperimentContext, component: common.ExperimentComponent
    ) -> common.ExecutionResult:
        manager = entity_manager.EntityManager(self.services.store, context.experiment_id)
        state = self.get_or_create_state(context, component, TipCleanupState)

        if not state.initialized:
            self._init_targets(state, component, manager.get_entities_provisioned())
            self.save_state(context, state)

        try:
            return self._advance(context, state, manager)
        finally:
            self.save_state(context, state)

    def _init_targets(
        self,
        state: TipCleanupState,
        component: common.ExperimentComponent,
        provisioned: list[entities.EnvironmentEntity],
    ) -> None:
        sessions = entities.of_type(provisioned, entities.EntityType.TIP_SESSION)
        session_id = component.get(P.TIP_SESSION_ID)
        if session_id:
            sessions = [s for s in sessions if s.id.lower() == session_id.lower()]
            if not sessions:
                msg = f"TiP session '{session_id}' is not provisioned for the experiment."
                raise common.ProviderError(
                    msg, reason=common.ErrorReason.EXPECTED_ENVIRONMENT_ENTITIES_NOT_FOUND
                )
        else:
            sessions = [s for s in sessions if component.targets(s.environment_group)]

        state.pending = [s.id for s in sessions]
        state.nodes = {s.id: s.node_id or "" for s in sessions}
        state.initialized = True

    def _advance(
        self,
        context: common.ExperimentContext,
        state: TipCleanupState,
        manager: entity_manager.EntityManager,
    ) -> common.ExecutionResult:
        if state.is_expired():
            msg = f"TiP sessions were not deleted before the deadline {state.step_timeout}."
            raise common.StepTimeoutError(msg)

        if state.pending:
            requested = self._request_deletion(context, state, state.pending[0], manager)
            status = (
                common.ExecutionStatus.IN_PROGRESS_CONTINUE
                if requested and state.pending
                else common.ExecutionStatus.IN_PROGRESS
            )
            return common.ExecutionResult(status=status)

        if not state.changes:
            LOGGER.info(f"No TiP sessions to delete for experiment '{context.experiment_id}'.")
            return common.ExecutionResult(status=common.ExecutionStatus.SUCCEEDED)

        return self._poll_deletions(context, state, manager)

    def _request_deletion(
        self,
        context: common.ExperimentContext,
        state: TipCleanupState,
        session_id: str,
        manager: entity_manager.EntityManager,
    ) -> bool:
        """Request deletion of a session, return False on transient failure."""
        failures = state.get_failures()
        self.check_cancelled()
        try:
            change = self.services.tip_client.delete_session(session_id)
        except tip_client.TipServiceError as exc:
            self.diagnostics_context.update(tipSessionId=session_id)
            failure_policy.handle_remote_error(exc, resource=session_id, failures=failures)
            self.check_cancelled()
            return False
        failures.reset(session_id)

        state.pending.remove(session_id)
        state.changes[session_id] = change.change_id
        self._mark_deleting(manager, session_id, state.nodes.get(session_id), change.change_id)
        LOGGER.info(
            f"Requested deletion of TiP session '{session_id}' of experiment "
            f"'{context.experiment_id}' (change '{change.change_id}')."
        )
        self.check_cancelled()
        return True

    def _mark_deleting(
        self,
        manager: entity_manager.EntityManager,
        session_id: str,
        node_id: str | None,
        change_id: str,
    ) -> None:
        deleting = {
            MK.TIP_SESSION_STATUS: entities.TipSessionStatus.DELETING.value,
            MK.TIP_SESSION_DELETE_REQUEST_CHANGE_ID: change_id,
        }
        provisioned = manager.get_entities_provisioned()
        session = entities.find(provisioned, entities.EntityType.TIP_SESSION, session_id)
        if session is not None:
            session.metadata.update(deleting)
            manager.update_entities_provisioned([session])

        if node_id:
            pool = manager.get_entity_pool()
            node = entities.find(pool, entities.EntityType.NODE, node_id)
            if node is not None:
                node.metadata.update(deleting)
                manager.save_entity_pool(pool)

    def _poll_deletions(
        self,
        context: common.ExperimentContext,
        state: TipCleanupState,
        manager: entity_manager.EntityManager,
    ) -> common.ExecutionResult:
        failures = state.get_failures()
        finished = []
        for session_id, change_id in state.changes.items():
            self.check_cancelled()
            try:
                details = self.services.tip_client.get_session_change(session_id, change_id)
            except tip_client.TipServiceError as exc:
                self.diagnostics_context.update(tipSessionId=session_id)
                failure_policy.handle_remote_error(exc, resource=session_id, failures=failures)
                self.check_cancelled()
                continue
            failures.reset(session_id)
            self.check_cancelled()

            if details.result == tip_client.TipChangeResult.FAILED:
                self.diagnostics_context.update(tipSessionId=session_id, changeId=change_id)
                msg = (
                    f"Deletion of TiP session '{session_id}' (change '{change_id}') failed: "
                    f"{details.error_message or 'no error message'}"
                )
                raise common.ProviderError(msg, reason=common.ErrorReason.TIP_REQUEST_FAILURE)
            if details.result == tip_client.TipChangeResult.SUCCEEDED:
                finished.append(session_id)

        if len(finished) != len(state.changes):
            return common.ExecutionResult(status=common.ExecutionStatus.IN_PROGRESS)

        self._remove_deleted(manager, state)
        LOGGER.info(
            f"Deleted {len(finished)} TiP sessions of experiment '{context.experiment_id}'."
        )
        return common.ExecutionResult(status=common.ExecutionStatus.SUCCEEDED)

    def _remove_deleted(
        self, manager: entity_manager.EntityManager, state: TipCleanupState
    ) -> None:
        """Remove deleted sessions and their nodes from provisioned entities."""
        provisioned = manager.get_entities_provisioned()
        removed = []
        for session_id in state.changes:
            session = entities.find(provisioned, entities.EntityType.TIP_SESSION, session_id)
            if session is not None:
                removed.append(session)
            node_id = state.nodes.get(session_id)
            node = (
                entities.find(provisioned, entities.EntityType.NODE, node_id) if node_id else None
            )
            if node is not None:
                removed.append(node)
        manager.remove_entities_provisioned(removed)

        pool = manager.get_entity_pool()
        for session_id in state.changes:
            node_id = state.nodes.get(session_id)
            node = entities.find(pool, entities.EntityType.NODE, node_id) if node_id else None
            if node is not None:
                node.metadata[MK.TIP_SESSION_STATUS] = entities.TipSessionStatus.DELETED.value
        manager.save_entity_pool(pool)
