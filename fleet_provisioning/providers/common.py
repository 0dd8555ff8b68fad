"""Step execution contract types, parameters and errors shared by all providers."""

import dataclasses
import datetime
import enum
import typing as tp

from fleet_provisioning.utils import errors
from fleet_provisioning.utils import helpers
from fleet_provisioning.utils import types as ttypes

# Component group that targets all experiment groups
ALL_GROUPS = "*"


class ExecutionStatus(enum.Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    IN_PROGRESS_CONTINUE = "InProgressContinue"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.SUCCEEDED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


ErrorReason = errors.ErrorReason
ProviderError = errors.ProviderError
SchemaError = errors.SchemaError
EntityMetadataError = errors.EntityMetadataError
StepTimeoutError = errors.StepTimeoutError
StepCancelledError = errors.StepCancelledError


class Parameters:
    """Names of component parameters."""

    TIMEOUT: tp.Final[str] = "Timeout"
    FEATURE_FLAG: tp.Final[str] = "FeatureFlag"
    ENABLE_DIAGNOSTICS: tp.Final[str] = "EnableDiagnostics"
    NODE_AFFINITY: tp.Final[str] = "NodeAffinity"
    COUNT_PER_GROUP: tp.Final[str] = "CountPerGroup"
    IS_AMBER_NODE_REQUEST: tp.Final[str] = "IsAmberNodeRequest"
    MAXIMUM_CONSECUTIVE_FAILURES: tp.Final[str] = "MaximumConsecutiveFailures"
    NODE_STATE: tp.Final[str] = "NodeState"
    TIP_SESSION_ID: tp.Final[str] = "TipSessionId"


# Parameter value types: `str`, `int`, `bool`, `datetime.timedelta` or an enum class
ParamType = type


@dataclasses.dataclass(frozen=True)
class SupportedParameter:
    name: str
    type: ParamType = str
    required: bool = False


@dataclasses.dataclass(frozen=True)
class ExperimentContext:
    experiment_id: str
    step_id: str
    groups: tuple[str, ...]

    @property
    def state_key(self) -> str:
        return f"state-{self.step_id}"


def _convert(name: str, value: ttypes.ScalarType, param_type: ParamType) -> tp.Any:
    """Convert a raw parameter value to the requested type."""
    if value is None:
        msg = f"Parameter '{name}' is null."
        raise SchemaError(msg)

    try:
        if param_type is bool:
            if isinstance(value, bool):
                return value
            lowered = str(value).strip().lower()
            if lowered in ("true", "1", "yes"):
                return True
            if lowered in ("false", "0", "no"):
                return False
            raise ValueError(value)
        if param_type is int:
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(value)
            return int(value)
        if param_type is datetime.timedelta:
            return helpers.parse_timespan(value)  # type: ignore[arg-type]
        if isinstance(param_type, type) and issubclass(param_type, enum.Enum):
            str_value = str(value).strip().lower()
            for member in param_type:
                if str_value in (str(member.value).lower(), member.name.lower()):
                    return member
            raise ValueError(value)
        return str(value)
    except ValueError:
        msg = f"Parameter '{name}' has invalid value {value!r}, expected {param_type.__name__}."
        raise SchemaError(msg) from None


@dataclasses.dataclass
class ExperimentComponent:
    """Definition of the experiment step: its type, targeted group and parameters.

    Parameter names are matched case-insensitively.
    """

    step_type: str
    group: str = ALL_GROUPS
    parameters: dict[str, ttypes.ScalarType] = dataclasses.field(default_factory=dict)

    def _lookup(self, name: str) -> tuple[bool, ttypes.ScalarType]:
        lname = name.lower()
        for key, value in self.parameters.items():
            if key.lower() == lname:
                return True, value
        return False, None

    def has(self, name: str) -> bool:
        return self._lookup(name)[0]

    def get(self, name: str, param_type: ParamType = str, default: tp.Any = None) -> tp.Any:
        """Return typed value of a parameter, or `default` when the parameter is not defined."""
        found, value = self._lookup(name)
        if not found:
            return default
        return _convert(name=name, value=value, param_type=param_type)

    def require(self, name: str, param_type: ParamType = str) -> tp.Any:
        """Return typed value of a required parameter."""
        found, value = self._lookup(name)
        if not found:
            msg = f"Required parameter '{name}' is missing in component '{self.step_type}'."
            raise SchemaError(msg)
        return _convert(name=name, value=value, param_type=param_type)

    def targets(self, group: str) -> bool:
        """Check if the component targets given experiment group."""
        return self.group == ALL_GROUPS or self.group.lower() == group.lower()


def validate_parameters(
    component: ExperimentComponent, supported: tp.Iterable[SupportedParameter]
) -> None:
    """Check that all required parameters are present and all known parameters are valid."""
    for param in supported:
        if param.required:
            component.require(param.name, param.type)
        else:
            component.get(param.name, param.type)


@dataclasses.dataclass(frozen=True)
class ExecutionResult:
    status: ExecutionStatus
    error: BaseException | None = None

    def __post_init__(self) -> None:
        if self.status == ExecutionStatus.FAILED and self.error is None:
            msg = "Failed execution result must carry an error."
            raise ValueError(msg)


class CancellationToken(tp.Protocol):
    """Cooperative cancellation signal, e.g. `threading.Event`."""

    def is_set(self) -> bool: ...
