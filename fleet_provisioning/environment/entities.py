"""Environment entities: nodes, racks and TiP sessions available to or committed by an experiment.

Entities carry their typed fields in a metadata mapping. Required fields are read through accessors
that fail loudly with `EntityMetadataError` when the value is missing or null, so malformed
discovery data surfaces as a failed step instead of being silently coerced.
"""

import dataclasses
import datetime
import enum
import typing as tp

from fleet_provisioning.utils import errors
from fleet_provisioning.utils import helpers
from fleet_provisioning.utils import types as ttypes

LIST_SEPARATOR = ";"


class EntityType(enum.Enum):
    NODE = "Node"
    RACK = "Rack"
    TIP_SESSION = "TipSession"


class NodeAffinity(enum.Enum):
    ANY = "Any"
    SAME_CLUSTER = "SameCluster"
    SAME_RACK = "SameRack"
    DIFFERENT_CLUSTER = "DifferentCluster"


class TipSessionStatus(enum.Enum):
    CREATING = "Creating"
    CREATED = "Created"
    FAILED = "Failed"
    DELETING = "Deleting"
    DELETED = "Deleted"


class MetadataKey:
    """Names of entity metadata fields."""

    CLUSTER_NAME: tp.Final[str] = "ClusterName"
    RACK_LOCATION: tp.Final[str] = "RackLocation"
    REGION: tp.Final[str] = "Region"
    MACHINE_POOL_NAME: tp.Final[str] = "MachinePoolName"
    NODE_ID: tp.Final[str] = "NodeId"
    NODE_STATE: tp.Final[str] = "NodeState"
    GROUP_NAME: tp.Final[str] = "GroupName"
    TIP_SESSION_ID: tp.Final[str] = "TipSessionId"
    TIP_SESSION_STATUS: tp.Final[str] = "TipSessionStatus"
    TIP_SESSION_REQUEST_CHANGE_ID: tp.Final[str] = "TipSessionRequestChangeId"
    TIP_SESSION_DELETE_REQUEST_CHANGE_ID: tp.Final[str] = "TipSessionDeleteRequestChangeId"
    CHANGE_ID_LIST: tp.Final[str] = "ChangeIdList"
    SUPPORTED_VM_SKUS: tp.Final[str] = "SupportedVmSkus"
    PREFERRED_VM_SKU: tp.Final[str] = "PreferredVmSku"
    CREATED_TIME_UTC: tp.Final[str] = "CreatedTimeUtc"
    EXPIRATION_TIME_UTC: tp.Final[str] = "ExpirationTimeUtc"
    DELETED_TIME_UTC: tp.Final[str] = "DeletedTimeUtc"


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(LIST_SEPARATOR) if v.strip()]


@dataclasses.dataclass
class EnvironmentEntity:
    entity_type: EntityType
    id: str
    environment_group: str
    metadata: dict[str, ttypes.ScalarType] = dataclasses.field(default_factory=dict)
    discarded: bool = False

    @property
    def key(self) -> tuple[EntityType, str]:
        """Identity of the entity, unique within its type."""
        return (self.entity_type, self.id.lower())

    def get_value(self, name: str) -> ttypes.ScalarType:
        return self.metadata.get(name)

    def get_required(self, name: str) -> str:
        """Return value of a required metadata field."""
        value = self.metadata.get(name)
        if value is None or str(value).strip() == "":
            msg = (
                f"Required metadata '{name}' is missing on {self.entity_type.value} "
                f"entity '{self.id}' (group '{self.environment_group}')."
            )
            raise errors.EntityMetadataError(msg)
        return str(value)

    def get_optional(self, name: str) -> str | None:
        value = self.metadata.get(name)
        if value is None or str(value).strip() == "":
            return None
        return str(value)

    @property
    def cluster_name(self) -> str:
        return self.get_required(MetadataKey.CLUSTER_NAME)

    @property
    def rack_location(self) -> str:
        return self.get_required(MetadataKey.RACK_LOCATION)

    @property
    def region(self) -> str:
        return self.get_required(MetadataKey.REGION)

    @property
    def machine_pool_name(self) -> str:
        return self.get_required(MetadataKey.MACHINE_POOL_NAME)

    @property
    def node_id(self) -> str | None:
        return self.get_optional(MetadataKey.NODE_ID)

    @property
    def node_state(self) -> str | None:
        return self.get_optional(MetadataKey.NODE_STATE)

    @property
    def tip_session_id(self) -> str | None:
        return self.get_optional(MetadataKey.TIP_SESSION_ID)

    @property
    def tip_session_status(self) -> TipSessionStatus | None:
        value = self.get_optional(MetadataKey.TIP_SESSION_STATUS)
        if value is None:
            return None
        try:
            return TipSessionStatus(value)
        except ValueError:
            msg = f"Invalid TiP session status '{value}' on entity '{self.id}'."
            raise errors.EntityMetadataError(msg) from None

    @property
    def tip_session_request_change_id(self) -> str | None:
        return self.get_optional(MetadataKey.TIP_SESSION_REQUEST_CHANGE_ID)

    @property
    def tip_session_delete_request_change_id(self) -> str | None:
        return self.get_optional(MetadataKey.TIP_SESSION_DELETE_REQUEST_CHANGE_ID)

    @property
    def supported_vm_skus(self) -> list[str]:
        return _split(self.get_optional(MetadataKey.SUPPORTED_VM_SKUS))

    @property
    def preferred_vm_sku(self) -> str | None:
        return self.get_optional(MetadataKey.PREFERRED_VM_SKU)

    def copy(self) -> "EnvironmentEntity":
        return dataclasses.replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> dict[str, tp.Any]:
        return {
            "entityType": self.entity_type.value,
            "id": self.id,
            "environmentGroup": self.environment_group,
            "metadata": dict(self.metadata),
            "discarded": self.discarded,
        }

    @classmethod
    def from_dict(cls, data: dict[str, tp.Any]) -> "EnvironmentEntity":
        return cls(
            entity_type=EntityType(data["entityType"]),
            id=data["id"],
            environment_group=data.get("environmentGroup") or "",
            metadata=dict(data.get("metadata") or {}),
            discarded=bool(data.get("discarded", False)),
        )

    @classmethod
    def node(
        cls, node_id: str, group: str, **metadata: ttypes.ScalarType
    ) -> "EnvironmentEntity":
        """Create a Node entity."""
        return cls(
            entity_type=EntityType.NODE,
            id=node_id,
            environment_group=group,
            metadata={MetadataKey.NODE_ID: node_id, **metadata},
        )


def of_type(
    entities: tp.Iterable[EnvironmentEntity],
    entity_type: EntityType,
    *,
    group: str | None = None,
    include_discarded: bool = True,
) -> list[EnvironmentEntity]:
    """Return entities of given type, optionally filtered by environment group."""
    return [
        e
        for e in entities
        if e.entity_type == entity_type
        and (group is None or e.environment_group.lower() == group.lower())
        and (include_discarded or not e.discarded)
    ]


def find(
    entities: tp.Iterable[EnvironmentEntity], entity_type: EntityType, entity_id: str
) -> EnvironmentEntity | None:
    """Find entity by its identity."""
    key = (entity_type, entity_id.lower())
    for e in entities:
        if e.key == key:
            return e
    return None


def check_unique(entities: tp.Iterable[EnvironmentEntity]) -> None:
    """Check that no two entities share the same identity."""
    seen: set[tuple[EntityType, str]] = set()
    for e in entities:
        if e.key in seen:
            msg = f"Duplicate {e.entity_type.value} entity '{e.id}'."
            raise errors.EntityMetadataError(msg)
        seen.add(e.key)


@dataclasses.dataclass
class TipSession:
    """TiP session leased on a single node."""

    tip_session_id: str
    cluster_name: str
    region: str
    node_id: str
    group_name: str
    status: TipSessionStatus = TipSessionStatus.CREATING
    change_id_list: list[str] = dataclasses.field(default_factory=list)
    created_time_utc: datetime.datetime | None = None
    expiration_time_utc: datetime.datetime | None = None
    deleted_time_utc: datetime.datetime | None = None
    supported_vm_skus: list[str] = dataclasses.field(default_factory=list)
    preferred_vm_sku: str | None = None

    def to_entity(self) -> EnvironmentEntity:
        metadata: dict[str, ttypes.ScalarType] = {
            MetadataKey.TIP_SESSION_ID: self.tip_session_id,
            MetadataKey.CLUSTER_NAME: self.cluster_name,
            MetadataKey.REGION: self.region,
            MetadataKey.NODE_ID: self.node_id,
            MetadataKey.GROUP_NAME: self.group_name,
            MetadataKey.TIP_SESSION_STATUS: self.status.value,
            MetadataKey.CHANGE_ID_LIST: LIST_SEPARATOR.join(self.change_id_list),
            MetadataKey.CREATED_TIME_UTC: helpers.to_isoformat(self.created_time_utc),
            MetadataKey.EXPIRATION_TIME_UTC: helpers.to_isoformat(self.expiration_time_utc),
            MetadataKey.DELETED_TIME_UTC: helpers.to_isoformat(self.deleted_time_utc),
            MetadataKey.SUPPORTED_VM_SKUS: LIST_SEPARATOR.join(self.supported_vm_skus),
            MetadataKey.PREFERRED_VM_SKU: self.preferred_vm_sku,
        }
        return EnvironmentEntity(
            entity_type=EntityType.TIP_SESSION,
            id=self.tip_session_id,
            environment_group=self.group_name,
            metadata=metadata,
        )

    @classmethod
    def from_entity(cls, entity: EnvironmentEntity) -> "TipSession":
        if entity.entity_type != EntityType.TIP_SESSION:
            msg = f"Entity '{entity.id}' is a {entity.entity_type.value}, not a TiP session."
            raise errors.EntityMetadataError(msg)

        return cls(
            tip_session_id=entity.id,
            cluster_name=entity.cluster_name,
            region=entity.region,
            node_id=entity.get_required(MetadataKey.NODE_ID),
            group_name=entity.get_optional(MetadataKey.GROUP_NAME) or entity.environment_group,
            status=entity.tip_session_status or TipSessionStatus.CREATING,
            change_id_list=_split(entity.get_optional(MetadataKey.CHANGE_ID_LIST)),
            created_time_utc=helpers.from_isoformat(
                entity.get_optional(MetadataKey.CREATED_TIME_UTC)
            ),
            expiration_time_utc=helpers.from_isoformat(
                entity.get_optional(MetadataKey.EXPIRATION_TIME_UTC)
            ),
            deleted_time_utc=helpers.from_isoformat(
                entity.get_optional(MetadataKey.DELETED_TIME_UTC)
            ),
            supported_vm_skus=entity.supported_vm_skus,
            preferred_vm_sku=entity.preferred_vm_sku,
        )
