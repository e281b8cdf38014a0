# Made by trex099
# https://github.com/Trex099/Glint
"""
QEMU Command Builder Module

Builds the hypervisor argument vector for a VM record. Construction is
deterministic and has no side effects.
"""

from typing import List, Optional

from .config import CONFIG
from .vm_record import VMRecord


def drive_token(image_file: str) -> str:
    """The `file=` prefix of the system drive argument, used to recognise a VM's process"""
    return f"file={image_file}"


def _build_qemu_base_cmd(record: VMRecord, qemu_binary: str) -> List[str]:
    """Accelerator, memory, CPUs and the two storage attachments."""
    return [
        qemu_binary,
        "-enable-kvm",
        "-m", str(record.memory_mb),
        "-smp", str(record.cpu_count),
        "-cpu", "host",
        "-drive", f"{drive_token(record.image_file)},format=qcow2,if=virtio",
        "-drive", f"file={record.seed_file},format=raw,if=virtio,readonly=on",
        "-boot", "order=c",
    ]


def _add_network_args(qemu_cmd: List[str], record: VMRecord) -> None:
    """Primary NIC carrying SSH, then one NIC/backend pair per port forward."""
    qemu_cmd.extend([
        "-device", "virtio-net-pci,netdev=n0",
        "-netdev", f"user,id=n0,hostfwd=tcp::{record.ssh_port}-:22",
    ])
    for forward in record.port_forwards:
        # Backend ids are keyed by host port so forwards never collide
        netdev = f"n{forward.host}"
        qemu_cmd.extend([
            "-device", f"virtio-net-pci,netdev={netdev}",
            "-netdev", f"user,id={netdev},hostfwd=tcp::{forward.host}-:{forward.guest}",
        ])


def _add_display_args(qemu_cmd: List[str], record: VMRecord) -> None:
    if record.gui_mode:
        qemu_cmd.extend(["-vga", "virtio", "-display", "gtk,gl=on"])
    else:
        qemu_cmd.extend(["-nographic", "-serial", "mon:stdio"])


def build_command_line(record: VMRecord, qemu_binary: Optional[str] = None) -> List[str]:
    """
    Full QEMU argument vector for a VM

    Args:
        record: The VM to boot
        qemu_binary: Hypervisor executable, defaults to CONFIG['QEMU_BINARY']
    """
    qemu_cmd = _build_qemu_base_cmd(record, qemu_binary or CONFIG['QEMU_BINARY'])
    _add_network_args(qemu_cmd, record)
    _add_display_args(qemu_cmd, record)

    # Memory balloon and a host-seeded RNG
    qemu_cmd.extend([
        "-device", "virtio-balloon-pci",
        "-object", "rng-random,filename=/dev/urandom,id=rng0",
        "-device", "virtio-rng-pci,rng=rng0",
    ])
    return qemu_cmd
