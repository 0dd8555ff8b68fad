import pytest

from fleet_provisioning.environment import entities
from fleet_provisioning.providers import common
from fleet_provisioning.tip import client as tip_client

NODE = entities.EntityType.NODE
TIP_SESSION = entities.EntityType.TIP_SESSION
STATUS = common.ExecutionStatus


@pytest.fixture
def provisioned_harness(harness, node_factory):
    """Experiment with one committed TiP session per group."""
    harness.set_pool(
        [
            node_factory("a1", "Group A"),
            node_factory("b1", "Group B"),
        ]
    )
    result, __ = harness.run()
    assert result.status == STATUS.SUCCEEDED
    return harness


@pytest.fixture
def cleanup(provisioned_harness):
    return provisioned_harness.with_step("step-cleanup")


def _session_ids(harness) -> dict[str, str]:
    return {s.node_id: s.id for s in harness.provisioned_of_type(TIP_SESSION)}


def test_cleanup_all_groups(cleanup, tip):
    sessions = _session_ids(cleanup)

    assert cleanup.execute("TipCleanup").status == STATUS.IN_PROGRESS_CONTINUE
    assert cleanup.execute("TipCleanup").status == STATUS.IN_PROGRESS
    assert sorted(tip.deleted) == sorted(sessions.values())

    session = entities.find(cleanup.provisioned, TIP_SESSION, sessions["a1"])
    assert session is not None
    assert session.tip_session_status == entities.TipSessionStatus.DELETING

    assert cleanup.execute("TipCleanup").status == STATUS.SUCCEEDED
    assert cleanup.provisioned == []
    for node in cleanup.pool:
        assert node.tip_session_status == entities.TipSessionStatus.DELETED


def test_cleanup_single_group(cleanup, tip):
    sessions = _session_ids(cleanup)

    result, __ = cleanup.run("TipCleanup", group="Group A")

    assert result.status == STATUS.SUCCEEDED
    assert tip.deleted == [sessions["a1"]]
    assert [n.id for n in cleanup.provisioned_of_type(NODE)] == ["b1"]
    assert [s.id for s in cleanup.provisioned_of_type(TIP_SESSION)] == [sessions["b1"]]


def test_cleanup_explicit_session(cleanup, tip):
    sessions = _session_ids(cleanup)

    result, __ = cleanup.run("TipCleanup", TipSessionId=sessions["b1"].upper())

    assert result.status == STATUS.SUCCEEDED
    assert tip.deleted == [sessions["b1"]]
    assert [n.id for n in cleanup.provisioned_of_type(NODE)] == ["a1"]


def test_cleanup_unknown_session(cleanup, tip):
    result = cleanup.execute("TipCleanup", TipSessionId="session-unknown")

    assert result.status == STATUS.FAILED
    assert result.error.reason == common.ErrorReason.EXPECTED_ENVIRONMENT_ENTITIES_NOT_FOUND
    assert not tip.deleted


def test_cleanup_nothing_to_delete(harness, tip):
    assert harness.execute("TipCleanup").status == STATUS.SUCCEEDED
    assert not tip.deleted


def test_cleanup_waits_for_deletion(cleanup, tip):
    sessions = _session_ids(cleanup)
    tip.change_results[sessions["a1"]] = tip_client.TipChangeResult.PENDING

    cleanup.execute("TipCleanup", group="Group A")
    assert cleanup.execute("TipCleanup", group="Group A").status == STATUS.IN_PROGRESS
    assert len(cleanup.provisioned_of_type(NODE)) == 2

    tip.change_results[sessions["a1"]] = tip_client.TipChangeResult.SUCCEEDED
    assert cleanup.execute("TipCleanup", group="Group A").status == STATUS.SUCCEEDED


def test_cleanup_failed_deletion(cleanup, tip):
    sessions = _session_ids(cleanup)
    tip.change_results[sessions["b1"]] = tip_client.TipChangeResult.FAILED

    result, __ = cleanup.run("TipCleanup")

    assert result.status == STATUS.FAILED
    assert result.error.reason == common.ErrorReason.TIP_REQUEST_FAILURE
    assert "node is unhealthy" in str(result.error)
    assert len(cleanup.provisioned_of_type(TIP_SESSION)) == 2


def test_cleanup_retryable_delete_error(cleanup, tip):
    sessions = _session_ids(cleanup)
    tip.delete_errors[sessions["a1"]] = tip_client.TipServiceError(
        "The semaphore timeout period has expired"
    )

    assert cleanup.execute("TipCleanup", group="Group A").status == STATUS.IN_PROGRESS
    assert not tip.deleted

    del tip.delete_errors[sessions["a1"]]
    result, __ = cleanup.run("TipCleanup", group="Group A")
    assert result.status == STATUS.SUCCEEDED
    assert tip.deleted == [sessions["a1"]]
