# Made by trex099
# https://github.com/Trex099/Glint
"""
VM record data model

A VMRecord is the persisted description of one virtual machine. Image and
seed paths are derived from the VM name and the store directory and are
never set independently.
"""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional

from .error_handling import ValidationError

CREATED_FORMAT = '%Y-%m-%d %H:%M:%S'

# Persisted key order
RECORD_KEYS = (
    'VM_NAME', 'OS_TYPE', 'CODENAME', 'IMG_URL', 'HOSTNAME', 'USERNAME',
    'PASSWORD', 'DISK_SIZE', 'MEMORY', 'CPUS', 'SSH_PORT', 'GUI_MODE',
    'PORT_FORWARDS', 'IMG_FILE', 'SEED_FILE', 'CREATED',
)

# Fields that may never change after creation
IMMUTABLE_FIELDS = frozenset({'name', 'os_type', 'codename', 'image_url',
                              'image_file', 'seed_file', 'created_at'})

# Fields whose change requires a fresh seed volume
IDENTITY_FIELDS = frozenset({'hostname', 'username', 'password'})


class PortForward(NamedTuple):
    """A host-port to guest-port TCP mapping."""
    host: int
    guest: int

    def __str__(self):
        return f"{self.host}:{self.guest}"


def image_path_for(vms_dir: str, name: str) -> str:
    return os.path.join(os.path.abspath(vms_dir), f"{name}.img")


def seed_path_for(vms_dir: str, name: str) -> str:
    return os.path.join(os.path.abspath(vms_dir), f"{name}-seed.iso")


def format_port_forwards(forwards) -> str:
    return ','.join(str(PortForward(*fw)) for fw in forwards)


def parse_port_forwards(text: str) -> List[PortForward]:
    """Parse the persisted 'h:g,h:g' form. Empty text means no forwards."""
    forwards = []
    for pair in filter(None, (p.strip() for p in text.split(','))):
        host, _, guest = pair.partition(':')
        forwards.append(PortForward(int(host), int(guest)))
    return forwards


@dataclass
class VMRecord:
    """Persisted configuration of one VM"""
    name: str
    os_type: str
    codename: str
    image_url: str
    hostname: str
    username: str
    password: str
    disk_size: str
    memory_mb: int
    cpu_count: int
    ssh_port: int
    image_file: str
    seed_file: str
    gui_mode: bool = False
    port_forwards: List[PortForward] = field(default_factory=list)
    created_at: str = ''

    @classmethod
    def new(cls, vms_dir: str, *, name: str, os_type: str, codename: str, image_url: str,
            hostname: str, username: str, password: str, disk_size: str,
            memory_mb: int, cpu_count: int, ssh_port: int, gui_mode: bool = False,
            port_forwards=None, created_at: Optional[str] = None) -> 'VMRecord':
        """Build a record with derived paths and a creation stamp."""
        return cls(
            name=name, os_type=os_type, codename=codename, image_url=image_url,
            hostname=hostname, username=username, password=password,
            disk_size=disk_size, memory_mb=int(memory_mb), cpu_count=int(cpu_count),
            ssh_port=int(ssh_port), gui_mode=bool(gui_mode),
            port_forwards=[PortForward(*fw) for fw in (port_forwards or [])],
            image_file=image_path_for(vms_dir, name),
            seed_file=seed_path_for(vms_dir, name),
            created_at=created_at or datetime.now().strftime(CREATED_FORMAT),
        )

    def copy(self, **changes) -> 'VMRecord':
        """Independent copy, optionally with some fields changed"""
        clone = replace(self, **changes)
        if 'port_forwards' not in changes:
            clone.port_forwards = list(self.port_forwards)
        return clone

    @property
    def ssh_command(self) -> str:
        return f"ssh -p {self.ssh_port} {self.username}@localhost"

    def to_mapping(self) -> Dict[str, str]:
        """Flat KEY -> string mapping in persisted key order."""
        return {
            'VM_NAME': self.name,
            'OS_TYPE': self.os_type,
            'CODENAME': self.codename,
            'IMG_URL': self.image_url,
            'HOSTNAME': self.hostname,
            'USERNAME': self.username,
            'PASSWORD': self.password,
            'DISK_SIZE': self.disk_size,
            'MEMORY': str(self.memory_mb),
            'CPUS': str(self.cpu_count),
            'SSH_PORT': str(self.ssh_port),
            'GUI_MODE': 'true' if self.gui_mode else 'false',
            'PORT_FORWARDS': format_port_forwards(self.port_forwards),
            'IMG_FILE': self.image_file,
            'SEED_FILE': self.seed_file,
            'CREATED': self.created_at,
        }

    @classmethod
    def from_mapping(cls, data: Dict[str, str], source: str = '<mapping>') -> 'VMRecord':
        """
        Build a record from a parsed KEY -> string mapping

        Raises:
            ValidationError: if a key is missing or a value cannot be parsed
        """
        missing = [key for key in RECORD_KEYS if key not in data]
        if missing:
            raise ValidationError(
                f"VM record {source} is missing {', '.join(missing)}",
                kind='record', value=source,
                suggestions=["Recreate the VM or restore the file from a backup"]
            )
        try:
            gui = data['GUI_MODE'].lower()
            if gui not in ('true', 'false'):
                raise ValueError(f"GUI_MODE must be true or false, got {data['GUI_MODE']!r}")
            return cls(
                name=data['VM_NAME'],
                os_type=data['OS_TYPE'],
                codename=data['CODENAME'],
                image_url=data['IMG_URL'],
                hostname=data['HOSTNAME'],
                username=data['USERNAME'],
                password=data['PASSWORD'],
                disk_size=data['DISK_SIZE'],
                memory_mb=int(data['MEMORY']),
                cpu_count=int(data['CPUS']),
                ssh_port=int(data['SSH_PORT']),
                gui_mode=gui == 'true',
                port_forwards=parse_port_forwards(data['PORT_FORWARDS']),
                image_file=data['IMG_FILE'],
                seed_file=data['SEED_FILE'],
                created_at=data['CREATED'],
            )
        except ValueError as e:
            raise ValidationError(
                f"VM record {source} is malformed: {e}",
                kind='record', value=source,
                original_exception=e
            ) from e
