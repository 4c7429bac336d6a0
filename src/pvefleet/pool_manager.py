"""
Idempotent pool membership for VMs.

Membership is checked live and a VM is only added when missing. The
check-and-join runs under a per-pool lock so concurrent workers targeting the
same pool cannot race on the membership list.
"""

import json
import logging
import threading
from typing import Dict, List, Optional

from pvefleet import commands
from pvefleet.executor import ActionExecutor
from pvefleet.inspector import Channel
from pvefleet.models import (
    Action,
    ActionType,
    CommandMode,
    ConflictError,
    ExecutionReport,
)

logger = logging.getLogger(__name__)

_NO_POOL = {"", "none", "null"}


def pool_requested(pool: Optional[str]) -> bool:
    return pool is not None and pool.strip().lower() not in _NO_POOL


def parse_pool_members(output: str) -> List[int]:
    """Extract member VM ids from `pvesh get /pools/<pool>` JSON.

    Raises:
        ConflictError: If the output is not the expected JSON shape
    """
    try:
        data = json.loads(output)
        members = data["members"] if isinstance(data, dict) else data[0]["members"]
        return [int(m["vmid"]) for m in members if "vmid" in m]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise ConflictError(f"Unparsable pool membership output: {e}") from e


class PoolMembershipReconciler:
    """Ensures VMs belong to their declared pool."""

    def __init__(self, channel: Channel) -> None:
        self.channel = channel
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, pool: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(pool, threading.Lock())

    def is_member(self, vmid: int, pool: str) -> bool:
        """Check membership; a failed query counts as not a member.

        Raises:
            ConflictError: If the pool listing cannot be parsed
        """
        result = self.channel.execute(commands.pool_show(pool), CommandMode.READ, check=False)
        if not result.ok:
            logger.warning(f"⚠️  Could not read pool '{pool}' (exit {result.exit_code}): {result.stderr}")
            return False
        return vmid in parse_pool_members(result.output)

    def plan(self, vmid: int, pool: Optional[str]) -> List[Action]:
        """Actions needed for membership; empty when none requested or already a member."""
        if not pool_requested(pool):
            return []

        try:
            if self.is_member(vmid, pool):
                logger.info(f"  VM {vmid} already in pool '{pool}' (skipping).")
                return []
        except ConflictError as e:
            logger.warning(f"⚠️  VM {vmid}: {e}; assuming not a member of '{pool}'")

        return [
            Action(
                kind=ActionType.JOIN_POOL,
                command=commands.pool_add(pool, vmid),
                key="pool",
                value=pool,
            )
        ]

    def ensure_membership(self, vmid: int, pool: Optional[str], executor: ActionExecutor) -> ExecutionReport:
        """Check and, if needed, join the pool through the executor."""
        if not pool_requested(pool):
            return ExecutionReport(vmid=vmid, mode=executor.mode)

        with self._lock_for(pool):
            return executor.apply(vmid, self.plan(vmid, pool))
