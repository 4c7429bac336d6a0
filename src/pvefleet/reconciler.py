#!/usr/bin/env python3
"""
Declarative VM reconciliation.

Compares a desired VM record with what the hypervisor reports and produces
the ordered list of idempotent actions that converge the two.

The engine does no I/O: feed it an ObservedState (or nothing, for a VM that
does not exist) and it returns a ReconcilePlan.

Usage:
    from pvefleet.reconciler import reconcile

    plan = reconcile(spec, observed, exists=True, cloud_init=defaults)
    for action in plan.actions:
        print(action.command)
"""

import logging
import re
from typing import Iterable, List, Optional

from pvefleet import commands
from pvefleet.models import (
    Action,
    ActionType,
    CloudInitDefaults,
    ObservedState,
    ReconcilePlan,
    ReconcileState,
    ValidationError,
    VMSpec,
)

logger = logging.getLogger(__name__)

_TAG_SPLIT_RE = re.compile(r"[;,]")
_MAC_SEGMENT_RE = re.compile(r"^([^=,]+)=[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}(?=,|$)")


def canonical_tags(tags: Iterable[str]) -> str:
    """Join labels the same way regardless of declaration order."""
    labels = set()
    for tag in tags:
        labels.update(t.strip() for t in _TAG_SPLIT_RE.split(tag) if t.strip())
    return ";".join(sorted(labels))


def network_matches(desired: str, observed: Optional[str], mac_pinned: bool) -> bool:
    """Compare net0 descriptors.

    Without a pinned MAC the hypervisor assigns one and reports it as
    'model=MAC'; that segment is ignored.
    """
    if observed is None:
        return False
    if observed == desired:
        return True
    if mac_pinned:
        return False
    return _MAC_SEGMENT_RE.sub(r"\1", observed) == desired


def validate_for_create(spec: VMSpec) -> None:
    """Check the fields a new VM cannot be created without.

    Raises:
        ValidationError: Listing every missing field
    """
    missing = []
    if spec.memory is None:
        missing.append("memory")
    if spec.cores is None:
        missing.append("cores")
    if not spec.is_clone and spec.disk.size_gb is None:
        missing.append("disk.size_gb")
    if not spec.name:
        missing.append("name")
    if missing:
        raise ValidationError(f"VM {spec.vmid}: cannot create without {', '.join(missing)}")


def _set(spec: VMSpec, key: str, value: object, kind: ActionType = ActionType.SET_FIELD, refresh: bool = False) -> Action:
    return Action(
        kind=kind,
        command=commands.set_option(spec.vmid, key, value),
        key=key,
        value=str(value),
        refresh=refresh,
    )


def _cloud_init_drive(spec: VMSpec) -> Action:
    value = f"{spec.disk.storage}:cloudinit"
    return Action(
        kind=ActionType.ATTACH_CLOUD_INIT,
        command=commands.set_option(spec.vmid, "ide2", value),
        key="ide2",
        value=value,
    )


def _network(spec: VMSpec) -> Action:
    return _set(spec, "net0", spec.network.descriptor, ActionType.SET_NETWORK)


def _boot(spec: VMSpec) -> Action:
    return Action(
        kind=ActionType.SET_BOOT,
        command=commands.set_boot(spec.vmid, spec.disk.slot),
        key="bootdisk",
        value=spec.disk.slot,
    )


def _autostart(spec: VMSpec) -> Action:
    return _set(spec, "onboot", spec.onboot, ActionType.SET_AUTOSTART)


def _tags(spec: VMSpec) -> Action:
    return _set(spec, "tags", canonical_tags(spec.tags), ActionType.SET_TAGS)


def _ssh_keys(path: str, spec: VMSpec) -> Action:
    # Key content lives on the node and cannot be diffed; resend every run.
    return _set(spec, "sshkeys", path, refresh=True)


def _creation_actions(spec: VMSpec) -> List[Action]:
    if spec.is_clone:
        actions = [
            Action(
                kind=ActionType.CLONE,
                command=commands.clone(spec.template_id, spec.vmid, spec.name, spec.disk.storage, spec.node),
                value=str(spec.template_id),
            ),
            _set(spec, "memory", spec.memory),
            _set(spec, "cores", spec.cores),
            _set(spec, "sockets", spec.sockets),
        ]
        if spec.cpu:
            actions.append(_set(spec, "cpu", spec.cpu))
        return actions

    if spec.node:
        logger.warning(f"VM {spec.label}: placement on '{spec.node}' only applies to clones; creating on the connected node")
    return [
        Action(
            kind=ActionType.CREATE_BLANK,
            command=commands.create(spec.vmid, spec.name, spec.memory, spec.cores, spec.sockets, spec.cpu),
        ),
        Action(
            kind=ActionType.ATTACH_DISK,
            command=commands.attach_disk(spec.vmid, spec.scsihw, spec.disk.slot, spec.disk.storage, spec.disk.size_gb),
            key=spec.disk.slot,
            value=f"{spec.disk.storage}:{spec.disk.size_gb}",
        ),
    ]


def plan_creation(spec: VMSpec, cloud_init: CloudInitDefaults) -> List[Action]:
    """Actions for a VM that does not exist yet.

    Every field is unset on a fresh VM, so the baseline is emitted without
    diffing.
    """
    validate_for_create(spec)

    actions = _creation_actions(spec)
    actions.append(_cloud_init_drive(spec))
    actions.append(_network(spec))
    actions.append(_boot(spec))
    if spec.ipconfig0:
        actions.append(_set(spec, "ipconfig0", spec.ipconfig0))
    if cloud_init.user:
        actions.append(_set(spec, "ciuser", cloud_init.user))
    if cloud_init.ssh_keys_path:
        actions.append(_ssh_keys(cloud_init.ssh_keys_path, spec))
    if spec.tags:
        actions.append(_tags(spec))
    actions.append(_autostart(spec))
    return actions


def plan_disk(spec: VMSpec, observed: ObservedState) -> List[Action]:
    """Grow the disk when it is smaller than desired; never shrink."""
    desired = spec.disk.size_gb
    if desired is None:
        return []

    slot = spec.disk.slot
    if observed.disk_size_error is not None:
        # Cannot verify the current size: request the absolute size and let
        # the hypervisor refuse it if that would shrink the disk.
        logger.warning(f"VM {spec.label}: {observed.disk_size_error}; assuming drift")
        return [
            Action(
                kind=ActionType.GROW_DISK,
                command=commands.resize(spec.vmid, slot, f"{desired}G"),
                key=slot,
                value=f"{desired}G",
            )
        ]

    current = observed.disk_size_gb
    if current is None:
        logger.warning(f"VM {spec.label}: no {slot} disk present, skipping resize")
        return []

    if desired <= current:
        return []

    delta = desired - current
    return [
        Action(
            kind=ActionType.GROW_DISK,
            command=commands.resize(spec.vmid, slot, f"+{delta}G"),
            key=slot,
            value=f"+{delta}G",
            delta_gb=delta,
        )
    ]


def plan_updates(spec: VMSpec, observed: ObservedState, cloud_init: CloudInitDefaults) -> List[Action]:
    """Actions that bring an existing VM in line with its record."""
    actions: List[Action] = []

    if spec.name and observed.name != spec.name:
        actions.append(_set(spec, "name", spec.name))

    for key, desired in (("memory", spec.memory), ("cores", spec.cores), ("sockets", spec.sockets)):
        if desired is not None and getattr(observed, key) != str(desired):
            actions.append(_set(spec, key, desired))

    if spec.cpu and observed.cpu != spec.cpu:
        actions.append(_set(spec, "cpu", spec.cpu))

    if spec.scsihw and observed.scsihw != spec.scsihw:
        actions.append(_set(spec, "scsihw", spec.scsihw))

    actions.extend(plan_disk(spec, observed))

    if not observed.has_cloud_init_drive:
        actions.append(_cloud_init_drive(spec))

    if not network_matches(spec.network.descriptor, observed.net0, mac_pinned=bool(spec.network.mac)):
        actions.append(_network(spec))

    if observed.bootdisk != spec.disk.slot:
        actions.append(_boot(spec))

    if spec.ipconfig0 and observed.ipconfig0 != spec.ipconfig0:
        actions.append(_set(spec, "ipconfig0", spec.ipconfig0))

    if cloud_init.user and observed.ciuser != cloud_init.user:
        actions.append(_set(spec, "ciuser", cloud_init.user))

    if cloud_init.ssh_keys_path:
        actions.append(_ssh_keys(cloud_init.ssh_keys_path, spec))

    if spec.tags and canonical_tags([observed.tags or ""]) != canonical_tags(spec.tags):
        actions.append(_tags(spec))

    if observed.onboot != spec.onboot:
        actions.append(_autostart(spec))

    return actions


def reconcile(
    spec: VMSpec,
    observed: Optional[ObservedState],
    exists: bool,
    cloud_init: Optional[CloudInitDefaults] = None,
) -> ReconcilePlan:
    """Compute the ordered actions for one VM.

    Args:
        spec: Desired state
        observed: Current configuration, ignored when the VM does not exist
        exists: Whether the VM exists on the node
        cloud_init: Shared cloud-init user and SSH key path

    Returns:
        ReconcilePlan; CREATING for an absent VM, otherwise RECONCILING or
        RECONCILED depending on whether any drift was found

    Raises:
        ValidationError: If an absent VM lacks a field needed to create it
    """
    cloud_init = cloud_init or CloudInitDefaults()

    if not exists:
        return ReconcilePlan(spec.vmid, ReconcileState.CREATING, plan_creation(spec, cloud_init))

    plan = ReconcilePlan(
        spec.vmid,
        ReconcileState.RECONCILING,
        plan_updates(spec, observed or ObservedState(), cloud_init),
    )
    if not plan.drift:
        return ReconcilePlan(spec.vmid, ReconcileState.RECONCILED, plan.actions)
    return plan


def plan_delete(vmid: int, exists: bool) -> List[Action]:
    """Stop (best-effort) then destroy a VM; nothing if it is already gone."""
    if not exists:
        return []
    return [
        Action(kind=ActionType.STOP, command=commands.stop(vmid)),
        Action(kind=ActionType.DESTROY, command=commands.destroy(vmid)),
    ]
