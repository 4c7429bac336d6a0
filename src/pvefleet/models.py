"""Data models for declarative VM reconciliation."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

DEFAULT_SCSIHW = "virtio-scsi-pci"
DEFAULT_NET_MODEL = "virtio"
DEFAULT_DISK_SLOT = "scsi0"


class ExecutionMode(Enum):
    """Whether mutations are performed or only planned."""

    APPLY = "apply"
    PLAN = "plan"


class CommandMode(Enum):
    """Remote command classification."""

    READ = "read"
    MUTATE = "mutate"


class Operation(Enum):
    """Batch operation requested for a set of records."""

    APPLY = "apply"
    DELETE = "delete"


class ReconcileState(Enum):
    """Per-VM reconciliation state, recomputed on every run."""

    ABSENT = "absent"
    CREATING = "creating"
    RECONCILING = "reconciling"
    RECONCILED = "reconciled"


class ActionType(Enum):
    """Idempotent remote mutations the engine can emit."""

    CLONE = "clone"
    CREATE_BLANK = "create_blank"
    ATTACH_DISK = "attach_disk"
    SET_FIELD = "set_field"
    GROW_DISK = "grow_disk"
    ATTACH_CLOUD_INIT = "attach_cloud_init"
    SET_NETWORK = "set_network"
    SET_BOOT = "set_boot"
    SET_AUTOSTART = "set_autostart"
    SET_TAGS = "set_tags"
    JOIN_POOL = "join_pool"
    STOP = "stop"
    DESTROY = "destroy"

    @property
    def structural(self) -> bool:
        """Failure of a structural action leaves later actions meaningless."""
        return self in _STRUCTURAL

    @property
    def best_effort(self) -> bool:
        """Failure of a best-effort action is ignored."""
        return self is ActionType.STOP


_STRUCTURAL = frozenset(
    {ActionType.CLONE, ActionType.CREATE_BLANK, ActionType.ATTACH_DISK, ActionType.DESTROY}
)


@dataclass(frozen=True)
class DiskSpec:
    """Boot disk of a VM."""

    size_gb: Optional[int]
    storage: str
    slot: str = DEFAULT_DISK_SLOT


@dataclass(frozen=True)
class NetworkSpec:
    """Primary network adapter of a VM."""

    bridge: str
    model: str = DEFAULT_NET_MODEL
    mac: Optional[str] = None
    vlan: Optional[int] = None

    @property
    def descriptor(self) -> str:
        """Compose the net0 value in the hypervisor's own ordering."""
        net0 = self.model
        if self.mac:
            net0 = f"{net0}={self.mac}"
        net0 = f"{net0},bridge={self.bridge}"
        if self.vlan is not None:
            net0 = f"{net0},tag={self.vlan}"
        return net0


@dataclass(frozen=True)
class CloudInitDefaults:
    """Cloud-init settings shared by every VM in a run."""

    user: Optional[str] = None
    ssh_keys_path: Optional[str] = None


@dataclass(frozen=True)
class VMSpec:
    """Desired state of a single VM."""

    vmid: int
    name: str
    disk: DiskSpec
    network: NetworkSpec
    memory: Optional[int] = None
    cores: Optional[int] = None
    sockets: int = 1
    cpu: Optional[str] = None
    node: Optional[str] = None
    template_id: Optional[int] = None
    scsihw: str = DEFAULT_SCSIHW
    ipconfig0: Optional[str] = None
    autostart: bool = False
    tags: Tuple[str, ...] = ()
    pool: Optional[str] = None

    @property
    def is_clone(self) -> bool:
        """Check if the VM is cloned from a template rather than created blank."""
        return self.template_id is not None

    @property
    def onboot(self) -> str:
        """Autostart flag as the hypervisor stores it."""
        return "1" if self.autostart else "0"

    @property
    def label(self) -> str:
        return f"{self.vmid} ({self.name})"


@dataclass(frozen=True)
class ObservedState:
    """Live configuration of a VM as reported by the hypervisor."""

    raw: Dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None
    memory: Optional[str] = None
    cores: Optional[str] = None
    sockets: Optional[str] = None
    cpu: Optional[str] = None
    scsihw: Optional[str] = None
    net0: Optional[str] = None
    bootdisk: Optional[str] = None
    ipconfig0: Optional[str] = None
    ciuser: Optional[str] = None
    onboot: Optional[str] = None
    tags: Optional[str] = None
    ide2: Optional[str] = None
    disk_slot: str = DEFAULT_DISK_SLOT
    disk: Optional[str] = None
    disk_size_gb: Optional[int] = None
    disk_size_error: Optional[str] = None

    @property
    def has_cloud_init_drive(self) -> bool:
        return bool(self.ide2)


@dataclass(frozen=True)
class Action:
    """A single idempotent remote mutation."""

    kind: ActionType
    command: str
    key: Optional[str] = None
    value: Optional[str] = None
    delta_gb: Optional[int] = None
    refresh: bool = False

    def describe(self) -> str:
        if self.kind is ActionType.GROW_DISK and self.delta_gb is not None:
            return f"{self.kind.value}(+{self.delta_gb}G)"
        if self.key is not None:
            return f"{self.kind.value}({self.key}={self.value})"
        return self.kind.value


@dataclass(frozen=True)
class ReconcilePlan:
    """Ordered actions computed for one VM."""

    vmid: int
    state: ReconcileState
    actions: List[Action] = field(default_factory=list)

    @property
    def drift(self) -> List[Action]:
        """Actions caused by an actual difference, excluding unconditional refreshes."""
        return [action for action in self.actions if not action.refresh]


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one remote command."""

    command: str
    output: str = ""
    exit_code: int = 0
    stderr: str = ""
    planned: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class ExecutionReport:
    """Outcome of applying a list of actions to one VM."""

    vmid: int
    mode: ExecutionMode
    executed: List[Action] = field(default_factory=list)
    planned: List[Action] = field(default_factory=list)
    failed: List[Tuple[Action, "RemoteCommandError"]] = field(default_factory=list)
    ignored: List[Action] = field(default_factory=list)
    aborted: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.aborted

    @property
    def applied(self) -> List[Action]:
        """Actions that ran or would run, in order."""
        return self.planned if self.mode is ExecutionMode.PLAN else self.executed

    def merge(self, other: "ExecutionReport") -> None:
        self.executed.extend(other.executed)
        self.planned.extend(other.planned)
        self.failed.extend(other.failed)
        self.ignored.extend(other.ignored)
        self.aborted = self.aborted or other.aborted


@dataclass
class RecordResult:
    """Outcome of reconciling one desired-state record."""

    vmid: int
    name: str
    operation: Operation
    state: Optional[ReconcileState] = None
    actions: List[Action] = field(default_factory=list)
    success: bool = True
    skipped: bool = False
    error: Optional[str] = None
    failing_command: Optional[str] = None


@dataclass
class BatchReport:
    """Outcome of a whole batch run."""

    operation: Operation
    mode: ExecutionMode
    results: List[RecordResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> List[RecordResult]:
        return [r for r in self.results if not r.success]

    @property
    def skipped(self) -> List[RecordResult]:
        return [r for r in self.results if r.skipped]

    @property
    def exit_code(self) -> int:
        if self.failed:
            return 1
        if self.cancelled:
            return 130
        return 0


class ProvisionError(Exception):
    """Base exception for provisioning errors."""

    pass


class HypervisorConnectionError(ProvisionError):
    """Raised when the hypervisor cannot be reached at all."""

    pass


class ValidationError(ProvisionError):
    """Raised when a desired-state record is missing a required field."""

    pass


class InventoryError(ProvisionError):
    """Raised when the inventory document cannot be loaded."""

    pass


class ConflictError(ProvisionError):
    """Raised when observed state is too inconsistent to diff."""

    pass


class RemoteCommandError(ProvisionError):
    """Raised when a remote command exits non-zero or times out."""

    def __init__(self, command: str, exit_code: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        message = f"Command failed (exit {exit_code}): {command}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    @property
    def timed_out(self) -> bool:
        return self.exit_code == -1
