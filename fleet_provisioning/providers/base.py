"""Step execution contract.

Every provider executes one step of an experiment. A step is executed by repeated, independent
invocations of `ExperimentProvider.execute`, driven by an outer scheduler. No in-process memory
survives between invocations, so every invocation loads the persisted provider state, advances
the step and saves the state again.
"""

import contextlib
import dataclasses
import datetime
import logging
import typing as tp

from fleet_provisioning.environment import store as store_mod
from fleet_provisioning.providers import common
from fleet_provisioning.providers import diagnostics
from fleet_provisioning.providers import failure_policy
from fleet_provisioning.tip import client as tip_client
from fleet_provisioning.utils import configuration
from fleet_provisioning.utils import framework_log
from fleet_provisioning.utils import helpers

LOGGER = logging.getLogger(__name__)

P = common.Parameters

COMMON_PARAMETERS: tp.Final[tuple[common.SupportedParameter, ...]] = (
    common.SupportedParameter(P.TIMEOUT, datetime.timedelta),
    common.SupportedParameter(P.FEATURE_FLAG),
    common.SupportedParameter(P.ENABLE_DIAGNOSTICS, bool),
    common.SupportedParameter(P.MAXIMUM_CONSECUTIVE_FAILURES, int),
)


@dataclasses.dataclass
class ProviderServices:
    """External collaborators of the providers."""

    store: store_mod.DataStore
    tip_client: tip_client.TipClient
    diagnostics_sink: diagnostics.DiagnosticsSink | None = None


@dataclasses.dataclass
class StepState:
    """Persisted state common to all providers."""

    step_timeout: str
    timeout: float
    created: str
    maximum_consecutive_failures: int = 1
    consecutive_failures: dict[str, int] = dataclasses.field(default_factory=dict)

    @property
    def deadline(self) -> datetime.datetime:
        deadline = helpers.from_isoformat(self.step_timeout)
        assert deadline is not None
        return deadline

    def is_expired(self) -> bool:
        return helpers.utcnow() > self.deadline

    def get_failures(self) -> failure_policy.ConsecutiveFailures:
        return failure_policy.ConsecutiveFailures(
            self.consecutive_failures, maximum=self.maximum_consecutive_failures
        )

    def to_dict(self) -> dict[str, tp.Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, tp.Any]) -> tp.Self:
        field_names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in field_names})


StateT = tp.TypeVar("StateT", bound=StepState)


class ExperimentProvider:
    """Base class of providers executing experiment steps."""

    step_type: tp.ClassVar[str] = ""
    supported_parameters: tp.ClassVar[tuple[common.SupportedParameter, ...]] = COMMON_PARAMETERS
    default_timeout: tp.ClassVar[int] = configuration.TIP_STATE_TIMEOUT
    issue_type: tp.ClassVar[diagnostics.DiagnosticsIssueType] = (
        diagnostics.DiagnosticsIssueType.TIP_SESSION_FAILURE
    )

    def __init__(self, services: ProviderServices) -> None:
        self.services = services
        self.cancellation: common.CancellationToken | None = None
        self.step_started: datetime.datetime | None = None
        # Identifiers correlated with a failure, reported in diagnostics requests
        self.diagnostics_context: dict[str, str] = {}

    def execute(
        self,
        context: common.ExperimentContext,
        component: common.ExperimentComponent,
        cancellation: common.CancellationToken | None = None,
    ) -> common.ExecutionResult:
        """Execute one invocation of the step.

        The call is safe to repeat any number of times. Exceptions never escape, they are returned
        as the error of a `Failed` result.
        """
        invocation_started = helpers.utcnow()
        self.cancellation = cancellation
        self.step_started = None
        self.diagnostics_context = {}

        try:
            self.check_cancelled()
            common.validate_parameters(component, self.supported_parameters)
            result = self.execute_step(context=context, component=component)
        except common.StepCancelledError:
            LOGGER.warning(
                f"Step '{context.step_id}' of experiment '{context.experiment_id}' was cancelled."
            )
            result = common.ExecutionResult(status=common.ExecutionStatus.CANCELLED)
        except Exception as exc:
            LOGGER.error(  # noqa: TRY400
                f"Step '{context.step_id}' ({component.step_type}) of experiment "
                f"'{context.experiment_id}' failed: {type(exc).__name__}: {exc}"
            )
            result = common.ExecutionResult(status=common.ExecutionStatus.FAILED, error=exc)
        finally:
            self.cancellation = None

        if result.status == common.ExecutionStatus.FAILED:
            self.request_diagnostics(
                context=context,
                component=component,
                result=result,
                begin=self.step_started or invocation_started,
            )

        if result.status.is_terminal:
            error_str = f": {result.error}" if result.error else ""
            framework_log.framework_logger().info(
                f"{component.step_type} step '{context.step_id}' of experiment "
                f"'{context.experiment_id}' {result.status.value}{error_str}"
            )

        return result

    def execute_step(
        self, context: common.ExperimentContext, component: common.ExperimentComponent
    ) -> common.ExecutionResult:
        """Advance the step, to be implemented by providers."""
        raise NotImplementedError

    def check_cancelled(self) -> None:
        """Raise `StepCancelledError` when cancellation was requested."""
        if self.cancellation is not None and self.cancellation.is_set():
            msg = "Step execution was cancelled."
            raise common.StepCancelledError(msg)

    def get_timeout(self, component: common.ExperimentComponent) -> datetime.timedelta:
        default = datetime.timedelta(seconds=self.default_timeout)
        timeout: datetime.timedelta = component.get(P.TIMEOUT, datetime.timedelta, default=default)
        return timeout

    def get_state(
        self, context: common.ExperimentContext, state_cls: type[StateT]
    ) -> StateT | None:
        raw = self.services.store.get_state(context.experiment_id, context.state_key)
        if raw is None:
            return None
        state = state_cls.from_dict(raw)
        self.step_started = helpers.from_isoformat(state.created)
        return state

    def save_state(self, context: common.ExperimentContext, state: StepState) -> None:
        self.services.store.save_state(context.experiment_id, context.state_key, state.to_dict())

    def get_or_create_state(
        self,
        context: common.ExperimentContext,
        component: common.ExperimentComponent,
        state_cls: type[StateT],
        **kwargs: tp.Any,
    ) -> StateT:
        """Load the persisted state, or create it on the first invocation of the step.

        The step deadline is computed only once, when the state is created.
        """
        state = self.get_state(context, state_cls)
        if state is not None:
            return state

        maximum_failures = component.get(
            P.MAXIMUM_CONSECUTIVE_FAILURES, int, default=configuration.MAX_CONSECUTIVE_FAILURES
        )
        if maximum_failures < 1:
            msg = f"Parameter '{P.MAXIMUM_CONSECUTIVE_FAILURES}' must be >= 1."
            raise common.SchemaError(msg)

        now = helpers.utcnow()
        timeout = self.get_timeout(component)
        state = state_cls(
            step_timeout=helpers.to_isoformat(now + timeout),
            timeout=timeout.total_seconds(),
            created=helpers.to_isoformat(now),
            maximum_consecutive_failures=maximum_failures,
            **kwargs,
        )
        self.step_started = now
        LOGGER.info(
            f"Initialized step '{context.step_id}' of experiment '{context.experiment_id}', "
            f"deadline {state.step_timeout}."
        )
        return state

    def request_diagnostics(
        self,
        *,
        context: common.ExperimentContext,
        component: common.ExperimentComponent,
        result: common.ExecutionResult,
        begin: datetime.datetime,
    ) -> bool:
        """Emit diagnostics request for a failed step, when enabled by the component."""
        enabled = False
        with contextlib.suppress(common.SchemaError):
            enabled = component.get(P.ENABLE_DIAGNOSTICS, bool, default=False)
        if not enabled:
            return False

        request_context = {
            "providerName": type(self).__name__,
            "stepId": context.step_id,
            "stepType": component.step_type,
            "error": f"{type(result.error).__name__}: {result.error}",
            **self.diagnostics_context,
        }
        reason = getattr(result.error, "reason", None)
        if reason is not None:
            request_context["errorReason"] = reason.value

        request = diagnostics.DiagnosticsRequest(
            experiment_id=context.experiment_id,
            issue_type=self.issue_type,
            time_range_begin=begin,
            time_range_end=helpers.utcnow(),
            context=request_context,
        )
        return diagnostics.emit(self.services.diagnostics_sink, request)
