"""
Inventory loading.

Reads the YAML fleet description and normalizes each entry into a VMSpec:

    vms:
      - vmid: 101
        name: web-01
        node: pve
        clone:
          template_id: 9000
        memory: 2048
        cores: 2
        sockets: 1
        cpu: host
        disk:
          size_gb: 20
          storage: local-lvm
        scsihw: virtio-scsi-pci
        net:
          bridge: vmbr0
          vlan: 20
          model: virtio
          mac: null
        ipconfig0: "ip=192.168.1.50/24,gw=192.168.1.1"
        autostart: true
        tags: [web, prod]
        pool: production
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from pvefleet.config import ProvisionConfig
from pvefleet.models import (
    DEFAULT_NET_MODEL,
    DEFAULT_SCSIHW,
    DiskSpec,
    InventoryError,
    NetworkSpec,
    VMSpec,
)

logger = logging.getLogger(__name__)


def _value(data: Dict[str, Any], key: str) -> Any:
    """Treat null, empty strings and the literal 'null' as unset."""
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, str) and value.strip() in ("", "null"):
        return None
    return value


def _int(data: Dict[str, Any], key: str, where: str) -> Optional[int]:
    value = _value(data, key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InventoryError(f"{where}: '{key}' must be an integer, got {value!r}")


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _section(data: Dict[str, Any], key: str, where: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise InventoryError(f"{where}: '{key}' must be a mapping")
    return value


def parse_vm(data: Any, config: ProvisionConfig, index: int = 0) -> VMSpec:
    """Normalize one inventory entry.

    Raises:
        InventoryError: If the entry is malformed or has no usable vmid
    """
    where = f"vms[{index}]"
    if not isinstance(data, dict):
        raise InventoryError(f"{where}: expected a mapping, got {type(data).__name__}")

    vmid = _int(data, "vmid", where)
    if vmid is None or vmid <= 0:
        raise InventoryError(f"{where}: 'vmid' must be a positive integer")
    where = f"vm {vmid}"

    disk = _section(data, "disk", where)
    net = _section(data, "net", where)
    clone = _section(data, "clone", where)

    tags = data.get("tags") or []
    if isinstance(tags, str):
        tags = [tags]
    if not isinstance(tags, list):
        raise InventoryError(f"{where}: 'tags' must be a list or a string")
    for tag in tags:
        for label in str(tag).replace(";", ",").split(","):
            if any(ch.isspace() for ch in label.strip()):
                raise InventoryError(f"{where}: tag {label.strip()!r} must not contain whitespace")

    name = _value(data, "name")
    vlan = _int(net, "vlan", where)
    pool = _value(data, "pool")
    cpu = _value(data, "cpu")
    mac = _value(net, "mac")
    node = _value(data, "node")
    ipconfig0 = _value(data, "ipconfig0")

    return VMSpec(
        vmid=vmid,
        name=str(name) if name is not None else "",
        node=str(node) if node is not None else None,
        template_id=_int(clone, "template_id", where),
        memory=_int(data, "memory", where),
        cores=_int(data, "cores", where),
        sockets=_int(data, "sockets", where) or 1,
        cpu=str(cpu) if cpu is not None else None,
        disk=DiskSpec(
            size_gb=_int(disk, "size_gb", where),
            storage=str(_value(disk, "storage") or config.default_storage),
        ),
        scsihw=str(_value(data, "scsihw") or DEFAULT_SCSIHW),
        network=NetworkSpec(
            bridge=str(_value(net, "bridge") or config.default_bridge),
            model=str(_value(net, "model") or DEFAULT_NET_MODEL),
            mac=str(mac) if mac is not None else None,
            vlan=vlan,
        ),
        ipconfig0=str(ipconfig0) if ipconfig0 is not None else None,
        autostart=_bool(data.get("autostart")),
        tags=tuple(str(t) for t in tags if str(t).strip()),
        pool=str(pool) if pool is not None else None,
    )


def load_inventory(path: Union[str, Path], config: ProvisionConfig) -> List[VMSpec]:
    """
    Load VM records from a YAML inventory file.

    Args:
        path: Path to the inventory file
        config: Supplies default storage and bridge

    Returns:
        Records in file order

    Raises:
        InventoryError: If the file is missing, unreadable or malformed
    """
    path = Path(path)
    if not path.exists():
        raise InventoryError(f"Inventory file not found: {path}")

    logger.info(f"📖 Loading inventory from: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InventoryError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict) or "vms" not in data:
        raise InventoryError("Invalid inventory: missing 'vms' key")

    entries = data["vms"] or []
    if not isinstance(entries, list):
        raise InventoryError("Invalid inventory: 'vms' must be a list")

    records: List[VMSpec] = []
    seen = set()
    for index, entry in enumerate(entries):
        spec = parse_vm(entry, config, index)
        if spec.vmid in seen:
            raise InventoryError(f"Duplicate vmid {spec.vmid} in inventory")
        seen.add(spec.vmid)
        records.append(spec)
        logger.debug(f"Loaded record for: {spec.label}")

    logger.info(f"✅ Loaded {len(records)} VM record(s)")
    return records
