"""Access to the entity pool and to the entities provisioned for an experiment."""

import logging
import typing as tp

from fleet_provisioning.environment import entities
from fleet_provisioning.environment import store as store_mod

LOGGER = logging.getLogger(__name__)

ENTITY_POOL_KEY = "entityPool"
ENTITIES_PROVISIONED_KEY = "entitiesProvisioned"

EntityList = list[entities.EnvironmentEntity]


def _load(raw: tp.Any) -> EntityList:
    return [entities.EnvironmentEntity.from_dict(d) for d in raw or []]


def _dump(entity_list: tp.Iterable[entities.EnvironmentEntity]) -> list[dict[str, tp.Any]]:
    return [e.to_dict() for e in entity_list]


def converge(
    stored: tp.Iterable[entities.EnvironmentEntity],
    local: tp.Iterable[entities.EnvironmentEntity],
) -> EntityList:
    """Converge locally changed entities into the stored copy.

    The set of entities is given by `local`. Metadata of local entities override stored metadata,
    stored metadata keys missing in the local copy are preserved.
    """
    stored_by_key = {e.key: e for e in stored}
    result: EntityList = []
    seen: set[tuple[entities.EntityType, str]] = set()
    for entity in local:
        if entity.key in seen:
            msg = f"Duplicate {entity.entity_type.value} entity '{entity.id}'."
            raise ValueError(msg)
        seen.add(entity.key)

        merged = entity.copy()
        stored_entity = stored_by_key.get(entity.key)
        if stored_entity is not None:
            merged.metadata = {**stored_entity.metadata, **entity.metadata}
        result.append(merged)
    return result


class EntityManager:
    """Load and save entity sets of a single experiment.

    An instance is created for every step invocation, nothing is cached between invocations.
    """

    def __init__(self, store: store_mod.DataStore, experiment_id: str) -> None:
        self.store = store
        self.experiment_id = experiment_id

    def _get(self, key: str) -> EntityList:
        entity_list = _load(self.store.get_state(self.experiment_id, key))
        entities.check_unique(entity_list)
        return entity_list

    def _replace(self, key: str, local: tp.Iterable[entities.EnvironmentEntity]) -> EntityList:
        local = list(local)

        def _func(raw: tp.Any) -> list[dict[str, tp.Any]]:
            return _dump(converge(stored=_load(raw), local=local))

        return _load(self.store.update_state(self.experiment_id, key, _func))

    def get_entity_pool(self) -> EntityList:
        return self._get(ENTITY_POOL_KEY)

    def save_entity_pool(self, pool: tp.Iterable[entities.EnvironmentEntity]) -> EntityList:
        return self._replace(ENTITY_POOL_KEY, pool)

    def get_entities_provisioned(self) -> EntityList:
        return self._get(ENTITIES_PROVISIONED_KEY)

    def save_entities_provisioned(
        self, provisioned: tp.Iterable[entities.EnvironmentEntity]
    ) -> EntityList:
        """Replace the set of entities provisioned for the experiment."""
        return self._replace(ENTITIES_PROVISIONED_KEY, provisioned)

    def update_entities_provisioned(
        self, added: tp.Iterable[entities.EnvironmentEntity]
    ) -> EntityList:
        """Add (or update) entities provisioned for the experiment."""
        added = list(added)

        def _func(raw: tp.Any) -> list[dict[str, tp.Any]]:
            current = _load(raw)
            added_keys = {e.key for e in added}
            kept = [e for e in current if e.key not in added_keys]
            return _dump(converge(stored=current, local=[*kept, *added]))

        result = _load(self.store.update_state(self.experiment_id, ENTITIES_PROVISIONED_KEY, _func))
        LOGGER.debug(f"Added {len(added)} provisioned entities to '{self.experiment_id}'.")
        return result

    def remove_entities_provisioned(
        self, removed: tp.Iterable[entities.EnvironmentEntity]
    ) -> EntityList:
        """Remove entities provisioned for the experiment, matched by identity."""
        removed_keys = {e.key for e in removed}

        def _func(raw: tp.Any) -> list[dict[str, tp.Any]]:
            return _dump(e for e in _load(raw) if e.key not in removed_keys)

        return _load(self.store.update_state(self.experiment_id, ENTITIES_PROVISIONED_KEY, _func))
