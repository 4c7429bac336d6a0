"""
Read-only inspection of VMs on the Proxmox node.

Every call goes to the hypervisor; nothing is cached between runs.
"""

import logging
import re
from typing import Dict, Optional, Protocol

from pvefleet import commands
from pvefleet.models import (
    DEFAULT_DISK_SLOT,
    CommandMode,
    CommandResult,
    ConflictError,
    ExecutionMode,
    ObservedState,
)

logger = logging.getLogger(__name__)

_SIZE_RE = re.compile(r"(?:^|,)size=(\d+(?:\.\d+)?)([KMGT]?)(?:,|$)")

_UNIT_TO_GB = {"K": 1 / (1024 * 1024), "M": 1 / 1024, "G": 1, "T": 1024, "": 1 / (1024**3)}


class Channel(Protocol):
    """What the inspector and executor need from a command channel."""

    def execute(
        self,
        command: str,
        mode: CommandMode = CommandMode.READ,
        execution: ExecutionMode = ExecutionMode.APPLY,
        check: bool = True,
    ) -> CommandResult: ...


def parse_config_dump(text: str) -> Dict[str, str]:
    """Parse `qm config` output into a key/value map.

    Each line is split on the first ": "; lines without it are skipped.
    """
    values: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(": ")
        if not sep:
            continue
        values[key.strip()] = value.strip()
    return values


def extract_size_gb(value: str) -> int:
    """Extract the size token of a disk value, in whole GB.

    Args:
        value: Disk value, e.g. 'local-lvm:vm-101-disk-0,size=20G'

    Raises:
        ConflictError: If there is no parsable size token
    """
    match = _SIZE_RE.search(value)
    if not match:
        raise ConflictError(f"Cannot parse disk size from '{value}'")
    number, unit = match.groups()
    return int(float(number) * _UNIT_TO_GB[unit])


def build_observed_state(config: Dict[str, str], disk_slot: str = DEFAULT_DISK_SLOT) -> ObservedState:
    """Turn a raw config map into a typed observation."""
    disk = config.get(disk_slot)
    size_gb: Optional[int] = None
    size_error: Optional[str] = None
    if disk:
        try:
            size_gb = extract_size_gb(disk)
        except ConflictError as e:
            size_error = str(e)

    return ObservedState(
        raw=dict(config),
        name=config.get("name"),
        memory=config.get("memory"),
        cores=config.get("cores"),
        sockets=config.get("sockets"),
        cpu=config.get("cpu"),
        scsihw=config.get("scsihw"),
        net0=config.get("net0"),
        bootdisk=config.get("bootdisk"),
        ipconfig0=config.get("ipconfig0"),
        ciuser=config.get("ciuser"),
        onboot=config.get("onboot"),
        tags=config.get("tags"),
        ide2=config.get("ide2"),
        disk_slot=disk_slot,
        disk=disk,
        disk_size_gb=size_gb,
        disk_size_error=size_error,
    )


class VMInspector:
    """Fetches VM existence and configuration from the node."""

    def __init__(self, channel: Channel) -> None:
        self.channel = channel

    def exists(self, vmid: int) -> bool:
        """Any non-zero exit from the status probe means the VM is absent."""
        result = self.channel.execute(commands.status(vmid), CommandMode.READ, check=False)
        return result.ok

    def current_config(self, vmid: int) -> Dict[str, str]:
        result = self.channel.execute(commands.config(vmid), CommandMode.READ)
        return parse_config_dump(result.output)

    def current_disk_size_gb(self, vmid: int, disk_slot: str = DEFAULT_DISK_SLOT) -> Optional[int]:
        """Return the slot's size in GB, or None when the slot is not present.

        Raises:
            ConflictError: If the slot exists but its size cannot be parsed
        """
        value = self.current_config(vmid).get(disk_slot)
        if not value:
            return None
        return extract_size_gb(value)

    def observe(self, vmid: int, disk_slot: str = DEFAULT_DISK_SLOT) -> ObservedState:
        observed = build_observed_state(self.current_config(vmid), disk_slot)
        logger.debug(f"Observed VM {vmid}: {observed.raw}")
        return observed
