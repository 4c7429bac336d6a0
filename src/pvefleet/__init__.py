"""Declarative Proxmox VM provisioning."""

__version__ = "0.1.0"
