import pytest

from fleet_provisioning.environment import entities
from fleet_provisioning.environment import entity_manager
from fleet_provisioning.environment import store as store_mod
from fleet_provisioning.utils import errors

MK = entities.MetadataKey
EXP_ID = "exp-store"


def test_store_missing_document(store):
    assert store.get_state(EXP_ID, "state-step1") is None


def test_store_save_and_delete(store):
    store.save_state(EXP_ID, "state-step1", {"count": 1})
    assert store.get_state(EXP_ID, "state-step1") == {"count": 1}
    assert store.get_document_path(EXP_ID, "state-step1").name == "state-step1.json"

    store.save_state(EXP_ID, "state-step1", {"count": 2})
    assert store.get_state(EXP_ID, "state-step1") == {"count": 2}

    store.delete_state(EXP_ID, "state-step1")
    assert store.get_state(EXP_ID, "state-step1") is None
    # Deleting missing document is not an error
    store.delete_state(EXP_ID, "state-step1")


def test_store_leaves_no_temp_files(store):
    store.save_state(EXP_ID, "entityPool", [])
    files = {p.name for p in store.get_experiment_dir(EXP_ID).iterdir()}
    assert "entityPool.json" in files
    assert not [f for f in files if f.endswith(".tmp")]


def test_store_update(store):
    store.save_state(EXP_ID, "counter", 1)
    assert store.update_state(EXP_ID, "counter", lambda v: v + 1) == 2
    assert store.get_state(EXP_ID, "counter") == 2


@pytest.mark.parametrize(
    ("name", "expected"),
    [("exp-1", "exp-1"), ("exp/../1", "exp_.._1"), ("exp 1", "exp_1")],
)
def test_sanitize_name(name, expected):
    assert store_mod.sanitize_name(name) == expected


def test_sanitize_empty_name():
    with pytest.raises(ValueError, match="Invalid document name"):
        store_mod.sanitize_name("..")


def test_converge_preserves_stored_metadata(node_factory):
    stored = node_factory("node1", "Group A", **{MK.NODE_STATE: "Ready"})
    local = node_factory("NODE1", "Group A")
    local.metadata[MK.TIP_SESSION_ID] = "session1"

    converged = entity_manager.converge(stored=[stored], local=[local])
    assert len(converged) == 1
    assert converged[0].metadata[MK.NODE_STATE] == "Ready"
    assert converged[0].metadata[MK.TIP_SESSION_ID] == "session1"


def test_converge_rejects_duplicates(node_factory):
    with pytest.raises(ValueError, match="Duplicate"):
        entity_manager.converge(
            stored=[], local=[node_factory("a", "Group A"), node_factory("A", "Group B")]
        )


def test_entity_pool(store, node_factory):
    manager = entity_manager.EntityManager(store, EXP_ID)
    assert manager.get_entity_pool() == []

    pool = [node_factory("a1", "Group A"), node_factory("b1", "Group B")]
    manager.save_entity_pool(pool)
    loaded = manager.get_entity_pool()
    assert loaded == pool

    loaded[0].discarded = True
    manager.save_entity_pool(loaded)
    assert manager.get_entity_pool()[0].discarded


def test_entities_provisioned(store, node_factory):
    manager = entity_manager.EntityManager(store, EXP_ID)
    node_a = node_factory("a1", "Group A")
    node_b = node_factory("b1", "Group B")

    manager.update_entities_provisioned([node_a])
    manager.update_entities_provisioned([node_b])
    assert [e.id for e in manager.get_entities_provisioned()] == ["a1", "b1"]

    node_a.metadata[MK.TIP_SESSION_ID] = "session1"
    manager.update_entities_provisioned([node_a])
    provisioned = manager.get_entities_provisioned()
    assert len(provisioned) == 2
    node_a_stored = entities.find(provisioned, entities.EntityType.NODE, "a1")
    assert node_a_stored is not None
    assert node_a_stored.tip_session_id == "session1"

    manager.remove_entities_provisioned([node_factory("A1", "Group A")])
    assert [e.id for e in manager.get_entities_provisioned()] == ["b1"]

    manager.save_entities_provisioned([])
    assert manager.get_entities_provisioned() == []


def test_duplicate_entities_rejected_on_load(store, node_factory):
    store.save_state(
        EXP_ID,
        entity_manager.ENTITY_POOL_KEY,
        [node_factory("b1", "Group B").to_dict(), node_factory("B1", "Group B").to_dict()],
    )
    manager = entity_manager.EntityManager(store, EXP_ID)

    with pytest.raises(errors.EntityMetadataError, match="Duplicate Node entity 'B1'") as excinfo:
        manager.get_entity_pool()
    assert excinfo.value.reason == errors.ErrorReason.EXPECTED_ENVIRONMENT_ENTITIES_INVALID
