"""Shared test fixtures and configuration for pvefleet tests."""

import json
import shlex
from typing import Dict, List, Optional, Tuple
from unittest import mock

import pytest

from pvefleet.config import ConnectionSettings, ProvisionConfig
from pvefleet.models import (
    CloudInitDefaults,
    CommandMode,
    CommandResult,
    DiskSpec,
    ExecutionMode,
    NetworkSpec,
    RemoteCommandError,
    VMSpec,
)


class FakeHypervisor:
    """In-memory Proxmox node that understands the qm/pvesh commands we render.

    Behaves like RemoteChannel: mutations under plan mode are not executed.
    """

    def __init__(self) -> None:
        self.vms: Dict[int, Dict[str, str]] = {}
        self.templates: Dict[int, Dict[str, str]] = {}
        self.pools: Dict[str, List[int]] = {}
        self.calls: List[Tuple[str, CommandMode, ExecutionMode]] = []
        self.failures: Dict[str, Tuple[int, str]] = {}
        self._mac_counter = 0

    # --- test helpers ---

    def fail(self, prefix: str, exit_code: int = 255, stderr: str = "boom") -> None:
        """Make every command starting with prefix fail."""
        self.failures[prefix] = (exit_code, stderr)

    @property
    def mutations(self) -> List[str]:
        """Mutating commands that were actually executed."""
        return [c for c, m, e in self.calls if m is CommandMode.MUTATE and e is ExecutionMode.APPLY]

    # --- channel protocol ---

    def execute(
        self,
        command: str,
        mode: CommandMode = CommandMode.READ,
        execution: ExecutionMode = ExecutionMode.APPLY,
        check: bool = True,
    ) -> CommandResult:
        self.calls.append((command, mode, execution))
        if mode is CommandMode.MUTATE and execution is ExecutionMode.PLAN:
            return CommandResult(command=command, planned=True)

        for prefix, (code, stderr) in self.failures.items():
            if command.startswith(prefix):
                return self._result(command, "", code, stderr, check)

        args = shlex.split(command)
        handler = getattr(self, f"_{args[0]}_{args[1]}", None)
        if handler is None:
            return self._result(command, "", 127, f"unknown command: {command}", check)
        output, code, stderr = handler(args[2:])
        return self._result(command, output, code, stderr, check)

    @staticmethod
    def _result(command: str, output: str, code: int, stderr: str, check: bool) -> CommandResult:
        if check and code != 0:
            raise RemoteCommandError(command, code, stdout=output, stderr=stderr)
        return CommandResult(command=command, output=output, exit_code=code, stderr=stderr)

    @staticmethod
    def _options(args: List[str]) -> Dict[str, str]:
        options = {}
        i = 0
        while i < len(args):
            if args[i].startswith("--"):
                options[args[i][2:]] = args[i + 1]
                i += 2
            else:
                i += 1
        return options

    def _missing(self, vmid: int) -> Tuple[str, int, str]:
        return "", 2, f"Configuration file 'nodes/pve/qemu-server/{vmid}.conf' does not exist"

    def _qm_status(self, args: List[str]) -> Tuple[str, int, str]:
        vmid = int(args[0])
        if vmid not in self.vms:
            return self._missing(vmid)
        return f"status: {self.vms[vmid].get('_status', 'stopped')}", 0, ""

    def _qm_config(self, args: List[str]) -> Tuple[str, int, str]:
        vmid = int(args[0])
        if vmid not in self.vms:
            return self._missing(vmid)
        lines = [f"{k}: {v}" for k, v in sorted(self.vms[vmid].items()) if not k.startswith("_")]
        lines.append("digest: 0123456789abcdef")
        return "\n".join(lines), 0, ""

    def _qm_create(self, args: List[str]) -> Tuple[str, int, str]:
        vmid = int(args[0])
        if vmid in self.vms:
            return "", 255, f"VM {vmid} already exists"
        self.vms[vmid] = {"ostype": "l26"}
        return self._qm_set(args)

    def _qm_clone(self, args: List[str]) -> Tuple[str, int, str]:
        template_id, vmid = int(args[0]), int(args[1])
        if template_id not in self.templates:
            return self._missing(template_id)
        if vmid in self.vms:
            return "", 255, f"VM {vmid} already exists"
        config = {
            k: v.replace(f"-{template_id}-", f"-{vmid}-") for k, v in self.templates[template_id].items()
        }
        config["name"] = self._options(args[2:])["name"]
        self.vms[vmid] = config
        return f"create full clone of drive scsi0", 0, ""

    def _qm_set(self, args: List[str]) -> Tuple[str, int, str]:
        vmid = int(args[0])
        if vmid not in self.vms:
            return self._missing(vmid)
        config = self.vms[vmid]
        for key, value in self._options(args[1:]).items():
            if key.startswith("scsi") and key != "scsihw":
                storage, size = value.split(":")
                value = f"{storage}:vm-{vmid}-disk-0,size={size}G"
            elif key == "ide2" and value.endswith(":cloudinit"):
                value = f"{value.split(':')[0]}:vm-{vmid}-cloudinit,media=cdrom"
            elif key == "net0":
                model, rest = value.split(",", 1)
                if "=" not in model:
                    self._mac_counter += 1
                    model = f"{model}=BC:24:11:00:00:{self._mac_counter:02X}"
                value = f"{model},{rest}"
            config[key] = value
        return "", 0, ""

    def _qm_resize(self, args: List[str]) -> Tuple[str, int, str]:
        vmid, slot, size = int(args[0]), args[1], args[2]
        config = self.vms[vmid]
        volume, _, _ = config[slot].partition(",size=")
        current = int(config[slot].rsplit("size=", 1)[1].rstrip("G"))
        if size.startswith("+"):
            new = current + int(size[1:].rstrip("G"))
        else:
            new = int(size.rstrip("G"))
            if new < current:
                return "", 255, "shrinking disks is not supported"
        config[slot] = f"{volume},size={new}G"
        return "", 0, ""

    def _qm_stop(self, args: List[str]) -> Tuple[str, int, str]:
        vmid = int(args[0])
        if vmid not in self.vms:
            return self._missing(vmid)
        self.vms[vmid]["_status"] = "stopped"
        return "", 0, ""

    def _qm_destroy(self, args: List[str]) -> Tuple[str, int, str]:
        vmid = int(args[0])
        if vmid not in self.vms:
            return self._missing(vmid)
        del self.vms[vmid]
        for members in self.pools.values():
            if vmid in members:
                members.remove(vmid)
        return "", 0, ""

    def _pvesh_get(self, args: List[str]) -> Tuple[str, int, str]:
        pool = args[0].split("/")[2]
        if pool not in self.pools:
            return "", 2, f"pool '{pool}' does not exist"
        members = [{"vmid": vmid, "type": "qemu", "id": f"qemu/{vmid}"} for vmid in self.pools[pool]]
        return json.dumps({"members": members}), 0, ""

    def _pvesh_set(self, args: List[str]) -> Tuple[str, int, str]:
        pool = args[0].split("/")[2]
        if pool not in self.pools:
            return "", 2, f"pool '{pool}' does not exist"
        vmid = int(self._options(args[1:])["vms"])
        if vmid not in self.pools[pool]:
            self.pools[pool].append(vmid)
        return "", 0, ""


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    """Empty fake Proxmox node with a 10G template 9000 and a 'production' pool."""
    node = FakeHypervisor()
    node.templates[9000] = {
        "name": "ubuntu-template",
        "memory": "1024",
        "cores": "1",
        "sockets": "1",
        "scsihw": "virtio-scsi-single",
        "scsi0": "local-lvm:base-9000-disk-0,size=10G",
        "ide2": "local-lvm:vm-9000-cloudinit,media=cdrom",
        "bootdisk": "scsi0",
        "boot": "c",
    }
    node.pools["production"] = []
    return node


@pytest.fixture
def connection_settings() -> ConnectionSettings:
    return ConnectionSettings(host="pve.maas", user="root", port=22)


@pytest.fixture
def provision_config(connection_settings: ConnectionSettings) -> ProvisionConfig:
    """Configuration without cloud-init key material."""
    return ProvisionConfig(
        connection=connection_settings,
        default_storage="local-lvm",
        default_bridge="vmbr0",
        cloud_init=CloudInitDefaults(user="ubuntu"),
    )


@pytest.fixture
def make_spec():
    """Factory for desired-state records with sensible defaults."""

    def _make(vmid: int = 101, **overrides) -> VMSpec:
        values = {
            "vmid": vmid,
            "name": f"vm-{vmid}",
            "memory": 2048,
            "cores": 2,
            "sockets": 1,
            "disk": DiskSpec(size_gb=20, storage="local-lvm"),
            "network": NetworkSpec(bridge="vmbr0"),
        }
        values.update(overrides)
        return VMSpec(**values)

    return _make


@pytest.fixture
def sample_vm_config() -> Dict[str, str]:
    """Configuration of an existing VM that matches make_spec(101)."""
    return {
        "name": "vm-101",
        "memory": "2048",
        "cores": "2",
        "sockets": "1",
        "scsihw": "virtio-scsi-pci",
        "scsi0": "local-lvm:vm-101-disk-0,size=20G",
        "ide2": "local-lvm:vm-101-cloudinit,media=cdrom",
        "net0": "virtio=BC:24:11:5E:12:34,bridge=vmbr0",
        "bootdisk": "scsi0",
        "boot": "c",
        "ciuser": "ubuntu",
        "onboot": "0",
    }


def ssh_channel(stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0, finished: bool = True) -> mock.MagicMock:
    """Mock paramiko Channel that hands out the given output, then reports the exit status."""
    out = [stdout] if stdout else []
    err = [stderr] if stderr else []
    channel = mock.MagicMock()
    channel.recv_ready.side_effect = lambda: bool(out)
    channel.recv.side_effect = lambda size: out.pop(0)
    channel.recv_stderr_ready.side_effect = lambda: bool(err)
    channel.recv_stderr.side_effect = lambda size: err.pop(0)
    channel.exit_status_ready.return_value = finished
    channel.recv_exit_status.return_value = exit_code
    return channel


def exec_result(channel: mock.MagicMock) -> Tuple[None, mock.MagicMock, mock.MagicMock]:
    """Shape a channel as the (stdin, stdout, stderr) triple exec_command returns."""
    stdout = mock.MagicMock()
    stdout.channel = channel
    stderr = mock.MagicMock()
    stderr.channel = channel
    return None, stdout, stderr


@pytest.fixture
def mock_ssh_client():
    """Mock SSH client for testing remote operations."""
    with mock.patch("paramiko.SSHClient") as mock_ssh:
        client = mock.MagicMock()
        mock_ssh.return_value = client

        # Mock successful command execution
        client.exec_command.side_effect = lambda *a, **k: exec_result(ssh_channel(b"command output\n"))

        yield client


def pmx_env(monkeypatch, **values: Optional[str]) -> None:
    """Replace every PMX_* variable with the given values."""
    for key in (
        "PMX_HOST", "PMX_USER", "PMX_PORT", "PMX_SSH_OPTS", "PMX_COMMAND_TIMEOUT",
        "PMX_DEFAULT_STORAGE", "PMX_DEFAULT_BRIDGE", "PMX_CI_USER", "PMX_CI_SSH_KEYS", "PMX_WORKERS",
    ):
        monkeypatch.delenv(key, raising=False)
    for key, value in values.items():
        if value is not None:
            monkeypatch.setenv(key, value)


@pytest.fixture
def mock_env(monkeypatch):
    """Set up a minimal PMX_* environment and keep .env files out of the way."""
    monkeypatch.setattr("pvefleet.config.load_dotenv", lambda *a, **k: False)
    pmx_env(monkeypatch, PMX_HOST="pve.maas", PMX_CI_USER="ubuntu")
    return monkeypatch
