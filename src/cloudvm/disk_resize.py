# Made by trex099
# https://github.com/Trex099/Glint
"""
Disk Resize Module

Offline resize of VM disk images with qemu-img. When the image cannot be
resized in place, a blank qcow2 container of the requested size is created
instead. That last-resort path discards the existing partition layout and
is always reported as a warning.
"""

import os
import json
import logging
from typing import Optional
from dataclasses import dataclass

from .config import CONFIG
from .core_utils import run_command, print_warning, format_bytes
from .error_handling import ResizeFailed

logger = logging.getLogger(__name__)


@dataclass
class ResizeResult:
    """Result of a disk resize operation"""
    success: bool
    message: str
    old_size: int = 0
    new_size: int = 0
    method: str = "resize"  # "resize", "recreate" or "unchanged"


def parse_size_to_bytes(size_str: str) -> int:
    """
    Convert size string to bytes.

    Args:
        size_str: Size string like '50G', '100M', '1T'

    Returns:
        Size in bytes, 0 if the string cannot be parsed
    """
    size_str = size_str.strip().upper()
    multipliers = {
        'B': 1,
        'K': 1024,
        'M': 1024 ** 2,
        'G': 1024 ** 3,
        'T': 1024 ** 4
    }

    for suffix, multiplier in multipliers.items():
        if size_str.endswith(suffix):
            try:
                value = float(size_str[:-1])
                return int(value * multiplier)
            except ValueError:
                return 0

    # Try parsing as raw bytes
    try:
        return int(size_str)
    except ValueError:
        return 0


def get_disk_info(disk_path: str, qemu_img: Optional[str] = None) -> Optional[dict]:
    """
    Get information about a disk image.

    Args:
        disk_path: Path to the disk image
        qemu_img: qemu-img binary, defaults to CONFIG['QEMU_IMG']

    Returns:
        Dictionary from `qemu-img info --output=json`, or None if unavailable
    """
    if not os.path.exists(disk_path):
        return None

    try:
        result = run_command([qemu_img or CONFIG['QEMU_IMG'], 'info', '--output=json', disk_path])
    except FileNotFoundError:
        logger.warning("qemu-img not found, cannot inspect disk images")
        return None
    if result.returncode != 0:
        logger.warning(f"qemu-img info failed for {disk_path}: {result.stderr.strip()}")
        return None
    try:
        return json.loads(result.stdout)
    except ValueError:
        logger.warning(f"Unparseable qemu-img info output for {disk_path}")
        return None


def resize_disk(disk_path: str, new_size: str, qemu_img: Optional[str] = None) -> ResizeResult:
    """
    Resize a stopped VM's disk image.

    Tries an in-place `qemu-img resize` first, adding `--shrink` when the
    target is smaller than the current virtual size. If that fails, creates
    a blank qcow2 image of the new size in its place.

    Args:
        disk_path: Path to the disk image
        new_size: New size (e.g. '20G', '512M')
        qemu_img: qemu-img binary, defaults to CONFIG['QEMU_IMG']

    Returns:
        ResizeResult with method "resize" or "recreate"

    Raises:
        ResizeFailed: if neither the resize nor the recreation succeeded
    """
    qemu_img = qemu_img or CONFIG['QEMU_IMG']
    new_size_bytes = parse_size_to_bytes(new_size)
    info = get_disk_info(disk_path, qemu_img)
    old_size = info.get('virtual-size', 0) if info else 0

    cmd = [qemu_img, 'resize']
    if old_size and new_size_bytes < old_size:
        cmd.append('--shrink')
    cmd.extend([disk_path, new_size])

    try:
        result = run_command(cmd)
    except FileNotFoundError as e:
        raise ResizeFailed(
            f"'{qemu_img}' is not installed",
            suggestions=["Install the qemu-utils package"],
            original_exception=e
        ) from e

    if result.returncode == 0:
        logger.info(f"Resized {disk_path} from {old_size} to {new_size} ({new_size_bytes} bytes)")
        return ResizeResult(
            success=True,
            message=f"Disk resized to {new_size}",
            old_size=old_size,
            new_size=new_size_bytes,
            method="resize"
        )

    resize_error = result.stderr.strip()
    logger.warning(f"In-place resize of {disk_path} failed: {resize_error}")
    print_warning(f"Could not resize {os.path.basename(disk_path)} in place, creating a blank {new_size} image instead.")
    print_warning("The previous disk contents and partition layout are not carried over.")

    result = run_command([qemu_img, 'create', '-f', 'qcow2', disk_path, new_size])
    if result.returncode != 0:
        raise ResizeFailed(
            f"Failed to resize or recreate {disk_path}",
            details=f"resize: {resize_error}\ncreate: {result.stderr.strip()}",
            suggestions=[
                "Check free disk space",
                "Verify the image is not locked by a running VM",
            ]
        )

    logger.warning(f"Recreated {disk_path} as a blank {new_size} image ({format_bytes(new_size_bytes)})")
    return ResizeResult(
        success=True,
        message=f"Created a blank {new_size} image, previous contents discarded",
        old_size=old_size,
        new_size=new_size_bytes,
        method="recreate"
    )
