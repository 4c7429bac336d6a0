"""Tests for pool_manager module."""

import threading
from unittest import mock

import pytest

from pvefleet.executor import ActionExecutor
from pvefleet.models import ActionType, CommandResult, ConflictError, ExecutionMode
from pvefleet.pool_manager import (
    PoolMembershipReconciler,
    parse_pool_members,
    pool_requested,
)


@pytest.mark.parametrize("pool,expected", [
    (None, False),
    ("", False),
    ("none", False),
    ("null", False),
    ("None", False),
    ("production", True),
])
def test_pool_requested(pool, expected):
    assert pool_requested(pool) is expected


def test_parse_pool_members():
    output = '{"members": [{"vmid": 101, "type": "qemu"}, {"storage": "local", "type": "storage"}]}'

    assert parse_pool_members(output) == [101]


def test_parse_pool_members_list_form():
    assert parse_pool_members('[{"poolid": "prod", "members": [{"vmid": "7"}]}]') == [7]


def test_parse_pool_members_garbage():
    with pytest.raises(ConflictError):
        parse_pool_members("Usage: pvesh get <api_path>")


def test_no_pool_is_noop(hypervisor):
    reconciler = PoolMembershipReconciler(hypervisor)

    assert reconciler.plan(101, "none") == []
    report = reconciler.ensure_membership(101, None, ActionExecutor(hypervisor))
    assert report.succeeded
    assert hypervisor.calls == []


def test_existing_member_needs_no_action(hypervisor):
    hypervisor.pools["production"] = [101]

    assert PoolMembershipReconciler(hypervisor).plan(101, "production") == []


def test_missing_member_joins(hypervisor):
    hypervisor.vms[101] = {"name": "vm-101"}
    reconciler = PoolMembershipReconciler(hypervisor)

    report = reconciler.ensure_membership(101, "production", ActionExecutor(hypervisor))

    assert [a.kind for a in report.executed] == [ActionType.JOIN_POOL]
    assert report.executed[0].command == "pvesh set /pools/production --vms 101"
    assert hypervisor.pools["production"] == [101]


def test_repeat_calls_are_idempotent(hypervisor):
    reconciler = PoolMembershipReconciler(hypervisor)
    executor = ActionExecutor(hypervisor)

    reconciler.ensure_membership(101, "production", executor)
    second = reconciler.ensure_membership(101, "production", executor)

    assert second.executed == []
    assert hypervisor.pools["production"] == [101]


def test_unreadable_pool_is_treated_as_not_member(hypervisor):
    """Test a failed pool query still plans the join."""
    actions = PoolMembershipReconciler(hypervisor).plan(101, "missing-pool")

    assert [a.kind for a in actions] == [ActionType.JOIN_POOL]


def test_unparsable_pool_output_assumes_drift():
    channel = mock.MagicMock()
    channel.execute.return_value = CommandResult("pvesh get /pools/prod --output-format json", "not json", 0)

    actions = PoolMembershipReconciler(channel).plan(101, "prod")

    assert [a.kind for a in actions] == [ActionType.JOIN_POOL]


def test_plan_mode_join_is_only_planned(hypervisor):
    lines = []
    reconciler = PoolMembershipReconciler(hypervisor)

    report = reconciler.ensure_membership(
        101, "production", ActionExecutor(hypervisor, ExecutionMode.PLAN, echo=lines.append)
    )

    assert lines == ["[PLAN] pvesh set /pools/production --vms 101"]
    assert report.planned and not report.executed
    assert hypervisor.pools["production"] == []


def test_same_pool_shares_one_lock(hypervisor):
    reconciler = PoolMembershipReconciler(hypervisor)

    assert reconciler._lock_for("production") is reconciler._lock_for("production")
    assert reconciler._lock_for("production") is not reconciler._lock_for("staging")


def test_concurrent_joins_do_not_duplicate(hypervisor):
    """Test parallel workers joining one pool each add exactly once."""
    reconciler = PoolMembershipReconciler(hypervisor)
    executor = ActionExecutor(hypervisor)

    threads = [
        threading.Thread(target=reconciler.ensure_membership, args=(vmid, "production", executor))
        for vmid in (101, 102, 103, 101, 102, 103)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(hypervisor.pools["production"]) == [101, 102, 103]
    joins = [c for c in hypervisor.mutations if c.startswith("pvesh set")]
    assert len(joins) == 3
