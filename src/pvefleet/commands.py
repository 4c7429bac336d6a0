"""Rendering of qm/pvesh command lines.

All values are shell-quoted; the resulting strings are what runs on the node
and what plan mode prints.
"""

import shlex
from typing import Optional


def _q(value: object) -> str:
    return shlex.quote(str(value))


def status(vmid: int) -> str:
    return f"qm status {vmid}"


def config(vmid: int) -> str:
    return f"qm config {vmid}"


def pool_show(pool: str) -> str:
    return f"pvesh get /pools/{_q(pool)} --output-format json"


def pool_add(pool: str, vmid: int) -> str:
    return f"pvesh set /pools/{_q(pool)} --vms {vmid}"


def clone(template_id: int, vmid: int, name: str, storage: Optional[str], target: Optional[str]) -> str:
    cmd = f"qm clone {template_id} {vmid} --name {_q(name)} --full 1"
    if storage:
        cmd = f"{cmd} --storage {_q(storage)}"
    if target:
        cmd = f"{cmd} --target {_q(target)}"
    return cmd


def create(vmid: int, name: str, memory: int, cores: int, sockets: int, cpu: Optional[str]) -> str:
    cmd = f"qm create {vmid} --name {_q(name)} --memory {memory} --cores {cores} --sockets {sockets}"
    if cpu:
        cmd = f"{cmd} --cpu {_q(cpu)}"
    return cmd


def attach_disk(vmid: int, scsihw: str, slot: str, storage: str, size_gb: int) -> str:
    # STORAGE:SIZE allocates a new volume of SIZE GiB
    return f"qm set {vmid} --scsihw {_q(scsihw)} --{slot} {_q(f'{storage}:{size_gb}')}"


def set_option(vmid: int, key: str, value: object) -> str:
    return f"qm set {vmid} --{key} {_q(value)}"


def set_boot(vmid: int, slot: str) -> str:
    return f"qm set {vmid} --boot c --bootdisk {slot}"


def resize(vmid: int, slot: str, size: str) -> str:
    return f"qm resize {vmid} {slot} {size}"


def stop(vmid: int) -> str:
    return f"qm stop {vmid}"


def destroy(vmid: int) -> str:
    return f"qm destroy {vmid} --purge 1 --destroy-unreferenced-disks 1"
