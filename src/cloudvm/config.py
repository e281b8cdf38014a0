# Made by trex099
# https://github.com/Trex099/Glint
"""
Configuration module for cloudvm

This module provides configuration settings for the application and the
static catalog of supported guest operating systems.
"""

import os
import json
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)

HOME_DIR = os.path.abspath(os.path.expanduser(os.environ.get('CLOUDVM_HOME', '~/vms')))

# Default configuration
CONFIG = {
    'VMS_DIR': HOME_DIR,
    'LOG_DIR': os.path.join(HOME_DIR, 'logs'),
    'LOG_LEVEL': 'INFO',
    'QEMU_BINARY': 'qemu-system-x86_64',
    'QEMU_IMG': 'qemu-img',
    'SEED_TOOL': 'cloud-localds',
    'DEFAULT_MEMORY': 2048,
    'DEFAULT_CPUS': 2,
    'DEFAULT_DISK_SIZE': '20G',
    'DEFAULT_SSH_PORT': 2222,
    'STOP_GRACE_SECONDS': 2,
    'DOWNLOAD_CHUNK_SIZE': 1024 * 1024,
    # Connect/idle timeout for requests, not a cap on total transfer time
    'DOWNLOAD_TIMEOUT': 30,
}


@dataclass(frozen=True)
class OSProfile:
    """One entry of the OS catalog."""
    label: str
    os_type: str
    codename: str
    image_url: str
    default_hostname: str
    default_username: str
    default_password: str


# Read-only after import; order is the order shown to the user
OS_CATALOG: Tuple[OSProfile, ...] = (
    OSProfile(
        'Ubuntu 22.04', 'ubuntu', 'jammy',
        'https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img',
        'ubuntu22', 'ubuntu', 'ubuntu',
    ),
    OSProfile(
        'Ubuntu 24.04', 'ubuntu', 'noble',
        'https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img',
        'ubuntu24', 'ubuntu', 'ubuntu',
    ),
    OSProfile(
        'Debian 11', 'debian', 'bullseye',
        'https://cloud.debian.org/images/cloud/bullseye/latest/debian-11-generic-amd64.qcow2',
        'debian11', 'debian', 'debian',
    ),
    OSProfile(
        'Debian 12', 'debian', 'bookworm',
        'https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-amd64.qcow2',
        'debian12', 'debian', 'debian',
    ),
    OSProfile(
        'Fedora 40', 'fedora', '40',
        'https://download.fedoraproject.org/pub/fedora/linux/releases/40/Cloud/x86_64/images/'
        'Fedora-Cloud-Base-Generic.x86_64-40-1.14.qcow2',
        'fedora40', 'fedora', 'fedora',
    ),
    OSProfile(
        'CentOS Stream 9', 'centos', 'stream9',
        'https://cloud.centos.org/centos/9-stream/x86_64/images/'
        'CentOS-Stream-GenericCloud-9-latest.x86_64.qcow2',
        'centos9', 'centos', 'centos',
    ),
    OSProfile(
        'AlmaLinux 9', 'almalinux', '9',
        'https://repo.almalinux.org/almalinux/9/cloud/x86_64/images/'
        'AlmaLinux-9-GenericCloud-latest.x86_64.qcow2',
        'almalinux9', 'alma', 'alma',
    ),
    OSProfile(
        'Rocky Linux 9', 'rockylinux', '9',
        'https://download.rockylinux.org/pub/rocky/9/images/x86_64/'
        'Rocky-9-GenericCloud.latest.x86_64.qcow2',
        'rocky9', 'rocky', 'rocky',
    ),
)


def get_os_profile(label: str) -> OSProfile:
    """
    Look up a catalog entry by its human-readable label

    Raises:
        NotFoundError: if no entry has that label
    """
    for profile in OS_CATALOG:
        if profile.label == label:
            return profile
    # Imported here, error_handling pulls in core_utils which reads CONFIG
    from .error_handling import NotFoundError
    raise NotFoundError(
        f"Unknown operating system '{label}'",
        suggestions=[f"Choose one of: {', '.join(p.label for p in OS_CATALOG)}"]
    )


CONFIG_FILE = os.path.join(HOME_DIR, 'config.json')


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from file

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    path = config_file or CONFIG_FILE
    try:
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as f:
                user_config = json.load(f)

            # Update default config with user config
            CONFIG.update(user_config)
            logger.info(f"Loaded configuration from {path}")
        else:
            logger.debug(f"Configuration file {path} not found, using defaults")
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load configuration: {e}")

    return CONFIG


def setup_logging(log_dir: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """Attach the file handler for the cloudvm logger tree (idempotent)."""
    root = logging.getLogger('cloudvm')
    if root.handlers:
        return root

    root.setLevel(getattr(logging, (level or CONFIG['LOG_LEVEL']).upper(), logging.INFO))

    log_dir = log_dir or CONFIG['LOG_DIR']
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, 'cloudvm.log'), encoding='utf-8')
    except OSError as e:
        # Still usable without a log file, status lines go to the console
        logger.warning(f"Could not open log directory {log_dir}: {e}")
        root.addHandler(logging.NullHandler())
        return root

    file_handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return root


# Load configuration on module import
load_config()
