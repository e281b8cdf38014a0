# Made by trex099
# https://github.com/Trex099/Glint
"""
Image Provisioning Module

Makes a VM's disk image and first-boot seed ready to attach to QEMU:
downloads the distribution cloud image once, resizes it to the requested
capacity, and packs the cloud-init user-data and meta-data documents into
a seed volume with cloud-localds.
"""

import os
import logging
import tempfile
from typing import Optional

import requests
import yaml
from passlib.hash import sha512_crypt

from .config import CONFIG
from .core_utils import (
    download_file, run_command, remove_file, format_command,
    print_info, print_success
)
from .disk_resize import resize_disk, ResizeResult
from .error_handling import DownloadFailed, SeedGenerationFailed
from .vm_record import VMRecord, seed_path_for

logger = logging.getLogger(__name__)

# Same cost as `openssl passwd -6`
HASH_ROUNDS = 5000


def hash_password(password: str) -> str:
    """Salted SHA-512 crypt hash for the cloud-init `passwd` field"""
    return sha512_crypt.using(rounds=HASH_ROUNDS).hash(password)


def build_user_data(hostname: str, username: str, password: str) -> str:
    """Render the #cloud-config identity document."""
    document = {
        'hostname': hostname,
        'ssh_pwauth': True,
        'disable_root': False,
        'users': [
            {
                'name': username,
                'sudo': 'ALL=(ALL) NOPASSWD:ALL',
                'groups': 'sudo',
                'shell': '/bin/bash',
                'lock_passwd': False,
                'passwd': hash_password(password),
            }
        ],
        'chpasswd': {
            'list': f"root:{password}\n{username}:{password}\n",
            'expire': False,
        },
    }
    return "#cloud-config\n" + yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def build_meta_data(vm_name: str, hostname: str) -> str:
    """Render the instance document."""
    return yaml.safe_dump(
        {'instance-id': f"iid-{vm_name}", 'local-hostname': hostname},
        sort_keys=False, default_flow_style=False
    )


class ImageProvisioner:
    """
    Provisions disk images and seed volumes for VMs in one directory
    """

    def __init__(self, vms_dir: str, qemu_img: Optional[str] = None, seed_tool: Optional[str] = None):
        self.vms_dir = os.path.abspath(vms_dir)
        self.qemu_img = qemu_img or CONFIG['QEMU_IMG']
        self.seed_tool = seed_tool or CONFIG['SEED_TOOL']

    def ensure_base_image(self, url: str, target_path: str) -> bool:
        """
        Make sure the cloud image exists at target_path

        Downloads into `<target>.tmp` and renames into place on success. An
        existing target is never touched.

        Returns:
            True if a download happened, False if the image was already present

        Raises:
            DownloadFailed: on any network or write error
        """
        if os.path.exists(target_path):
            logger.info(f"Base image already present at {target_path}, skipping download")
            return False

        os.makedirs(os.path.dirname(os.path.abspath(target_path)), exist_ok=True)
        tmp_path = f"{target_path}.tmp"
        print_info(f"Downloading {url}")
        try:
            download_file(
                url, tmp_path,
                timeout=CONFIG['DOWNLOAD_TIMEOUT'],
                chunk_size=CONFIG['DOWNLOAD_CHUNK_SIZE']
            )
            os.replace(tmp_path, target_path)
        except (requests.RequestException, OSError) as e:
            logger.error(f"Download of {url} failed: {e}")
            raise DownloadFailed(
                f"Failed to download base image from {url}",
                details=str(e),
                suggestions=[
                    "Check your internet connection",
                    "Verify the image URL is still published by the distribution",
                ],
                original_exception=e
            ) from e
        finally:
            if os.path.exists(tmp_path):
                remove_file(tmp_path, quiet=True)

        print_success(f"Base image saved to {target_path}")
        return True

    def resize_image(self, path: str, new_size: str) -> ResizeResult:
        """Resize the image in place, recreating it blank as a last resort"""
        return resize_disk(path, new_size, qemu_img=self.qemu_img)

    def render_metadata(self, hostname: str, username: str, password: str,
                        vm_name: str, work_dir: str):
        """
        Write user-data and meta-data into work_dir

        Returns:
            (user_data_path, meta_data_path)
        """
        user_data_path = os.path.join(work_dir, 'user-data')
        meta_data_path = os.path.join(work_dir, 'meta-data')
        with open(user_data_path, 'w', encoding='utf-8') as f:
            f.write(build_user_data(hostname, username, password))
        with open(meta_data_path, 'w', encoding='utf-8') as f:
            f.write(build_meta_data(vm_name, hostname))
        return user_data_path, meta_data_path

    def build_seed(self, hostname: str, username: str, password: str, vm_name: str) -> str:
        """
        Render both metadata documents and pack them into a fresh seed volume

        The rendered documents live in a temporary directory that is removed
        whatever happens. The previous seed is replaced only when packing
        succeeds.

        Returns:
            Path of the seed volume

        Raises:
            SeedGenerationFailed: if the seed tool is missing or exits nonzero
        """
        os.makedirs(self.vms_dir, exist_ok=True)
        seed_path = seed_path_for(self.vms_dir, vm_name)

        with tempfile.TemporaryDirectory(prefix=f".{vm_name}-seed-", dir=self.vms_dir) as work_dir:
            user_data, meta_data = self.render_metadata(hostname, username, password, vm_name, work_dir)
            staged_seed = os.path.join(work_dir, 'seed.iso')
            cmd = [self.seed_tool, staged_seed, user_data, meta_data]
            try:
                result = run_command(cmd)
            except FileNotFoundError as e:
                raise SeedGenerationFailed(
                    f"'{self.seed_tool}' is not installed",
                    suggestions=["Install the cloud-image-utils package"],
                    original_exception=e
                ) from e

            if result.returncode != 0 or not os.path.exists(staged_seed):
                logger.error(f"Seed generation failed: {format_command(cmd)}: {result.stderr.strip()}")
                raise SeedGenerationFailed(
                    f"Failed to generate the cloud-init seed for VM '{vm_name}'",
                    details=result.stderr.strip() or f"exit code {result.returncode}",
                    suggestions=["Run cloud-localds manually to see the full error"]
                )
            os.replace(staged_seed, seed_path)

        logger.info(f"Generated seed {seed_path} for VM '{vm_name}'")
        print_success(f"Cloud-init seed ready: {seed_path}")
        return seed_path

    def provision(self, record: VMRecord) -> str:
        """
        Download, resize and seed a VM's image, in that order

        A failed step stops the sequence. Files produced by earlier steps are
        left in place so a retry skips them.
        """
        self.ensure_base_image(record.image_url, record.image_file)
        self.resize_image(record.image_file, record.disk_size)
        return self.build_seed(record.hostname, record.username, record.password, record.name)
