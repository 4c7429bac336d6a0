"""
Configuration for the provisioning run.

Connectivity, storage/bridge defaults and the shared cloud-init settings are
loaded once from the environment (optionally a .env file) and passed
explicitly to the batch driver.
"""

import os
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from pvefleet.models import CloudInitDefaults, ValidationError


@dataclass
class ConnectionSettings:
    """How to reach the Proxmox node over SSH."""

    host: str
    user: str = "root"
    port: int = 22
    ssh_options: str = ""
    command_timeout: Optional[float] = 600.0

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def option_args(self) -> List[str]:
        """Split the extra SSH options string the way a shell would.

        Raises:
            ValidationError: If the string has unbalanced quotes
        """
        try:
            return shlex.split(self.ssh_options) if self.ssh_options else []
        except ValueError as e:
            raise ValidationError(f"Invalid PMX_SSH_OPTS {self.ssh_options!r}: {e}") from e

    def option_pairs(self) -> List[Tuple[str, str]]:
        """Pair '-i'/'-o' arguments with their values.

        Both '-o Key=value' and '-oKey=value' are accepted; any other argument
        comes back with an empty value.
        """
        pairs: List[Tuple[str, str]] = []
        args = self.option_args()
        i = 0
        while i < len(args):
            arg = args[i]
            if arg in ("-i", "-o") and i + 1 < len(args):
                pairs.append((arg, args[i + 1]))
                i += 2
            elif arg.startswith(("-i", "-o")) and len(arg) > 2:
                pairs.append((arg[:2], arg[2:]))
                i += 1
            else:
                pairs.append((arg, ""))
                i += 1
        return pairs

    def connect_timeout(self) -> Optional[float]:
        """ConnectTimeout from the SSH options, if one is given.

        Raises:
            ValidationError: If the value is not a positive number
        """
        for flag, value in self.option_pairs():
            key, _, opt = value.partition("=")
            if flag != "-o" or key.strip().lower() != "connecttimeout":
                continue
            try:
                timeout = float(opt)
            except ValueError:
                raise ValidationError(f"Invalid ConnectTimeout in PMX_SSH_OPTS: {opt.strip()!r}") from None
            if timeout <= 0:
                raise ValidationError(f"ConnectTimeout must be positive, got {opt.strip()}")
            return timeout
        return None


@dataclass
class ProvisionConfig:
    """Complete configuration for one provisioning run."""

    connection: ConnectionSettings
    default_storage: str = "local-lvm"
    default_bridge: str = "vmbr0"
    cloud_init: CloudInitDefaults = field(default_factory=CloudInitDefaults)
    max_workers: int = 1

    @classmethod
    def from_environment(cls, dotenv_path: Optional[str] = None) -> "ProvisionConfig":
        """Load configuration from environment variables.

        Raises:
            ValidationError: If a numeric variable cannot be parsed
        """
        load_dotenv(dotenv_path)

        try:
            timeout = float(os.getenv("PMX_COMMAND_TIMEOUT", "600"))
            port = int(os.getenv("PMX_PORT", "22"))
            workers = int(os.getenv("PMX_WORKERS", "1"))
        except ValueError as e:
            raise ValidationError(f"Invalid numeric setting in environment: {e}") from e

        return cls(
            connection=ConnectionSettings(
                host=os.getenv("PMX_HOST", "").strip(),
                user=os.getenv("PMX_USER", "root") or "root",
                port=port,
                ssh_options=os.getenv("PMX_SSH_OPTS", ""),
                command_timeout=timeout if timeout > 0 else None,
            ),
            default_storage=os.getenv("PMX_DEFAULT_STORAGE", "local-lvm") or "local-lvm",
            default_bridge=os.getenv("PMX_DEFAULT_BRIDGE", "vmbr0") or "vmbr0",
            cloud_init=CloudInitDefaults(
                user=os.getenv("PMX_CI_USER") or None,
                ssh_keys_path=os.getenv("PMX_CI_SSH_KEYS") or None,
            ),
            max_workers=workers,
        )

    def validate(self) -> None:
        """Validate configuration settings."""
        if not self.connection.host:
            raise ValidationError("PMX_HOST is required (Proxmox host/IP)")

        if not 0 < self.connection.port < 65536:
            raise ValidationError(f"Invalid SSH port {self.connection.port}")

        self.connection.connect_timeout()

        if self.max_workers < 1:
            raise ValidationError(f"Worker count must be at least 1, got {self.max_workers}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display; never includes key material."""
        return {
            "host": self.connection.host,
            "user": self.connection.user,
            "port": self.connection.port,
            "ssh_options": self.connection.ssh_options,
            "command_timeout": self.connection.command_timeout,
            "default_storage": self.default_storage,
            "default_bridge": self.default_bridge,
            "ci_user": self.cloud_init.user,
            "ci_ssh_keys": self.cloud_init.ssh_keys_path,
            "max_workers": self.max_workers,
        }
