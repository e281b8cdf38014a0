# Made by trex099
# https://github.com/Trex099/Glint
"""
VM Lifecycle Module

LifecycleController orchestrates the store, the provisioner and the
process supervisor for every user-facing VM operation. It never prompts:
destructive steps ask the `confirm(message) -> bool` callable it was given,
and all input goes through validate().
"""

import os
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .config import CONFIG, get_os_profile
from .config_store import ConfigStore
from .core_utils import is_port_in_use, remove_file, print_info, print_success, print_warning
from .disk_resize import get_disk_info, parse_size_to_bytes
from .error_handling import (
    VMError, ValidationError, ImageMissing, PortInUse, ProcessError, ErrorSeverity
)
from .provisioner import ImageProvisioner
from .session_manager import ProcessSupervisor, SessionInfo
from .validation import validate
from .vm_record import VMRecord, PortForward, IMMUTABLE_FIELDS, IDENTITY_FIELDS

logger = logging.getLogger(__name__)

# Editable attribute -> validation kind
EDITABLE_FIELDS = {
    'hostname': 'hostname',
    'username': 'username',
    'password': 'password',
    'memory_mb': 'memory',
    'cpu_count': 'cpus',
    'ssh_port': 'port',
    'gui_mode': 'bool',
    'port_forwards': 'port_forwards',
    'disk_size': 'size',
}

FIELD_ALIASES = {
    'memory': 'memory_mb',
    'cpus': 'cpu_count',
    'port': 'ssh_port',
    'gui': 'gui_mode',
    'forwards': 'port_forwards',
    'disk': 'disk_size',
    'size': 'disk_size',
}

PASSWORD_MASK = '********'


def _decline(message: str) -> bool:
    return False


class LifecycleController:
    """
    Create, start, stop, edit, resize, delete and inspect VMs
    """

    def __init__(self, store: ConfigStore, provisioner: ImageProvisioner,
                 supervisor: ProcessSupervisor, confirm: Optional[Callable[[str], bool]] = None):
        """
        Args:
            store: Where VM records live
            provisioner: Builds images and seed volumes
            supervisor: Starts, finds and stops QEMU processes
            confirm: Asked before destructive steps; without one they are declined
        """
        self.store = store
        self.provisioner = provisioner
        self.supervisor = supervisor
        self.confirm = confirm or _decline

    @classmethod
    def from_config(cls, confirm: Optional[Callable[[str], bool]] = None,
                    vms_dir: Optional[str] = None) -> 'LifecycleController':
        """Controller wired to the configured VM directory and tools"""
        vms_dir = vms_dir or CONFIG['VMS_DIR']
        return cls(
            ConfigStore(vms_dir),
            ImageProvisioner(vms_dir),
            ProcessSupervisor(vms_dir),
            confirm=confirm,
        )

    @property
    def vms_dir(self) -> str:
        return self.store.vms_dir

    # --- Helpers ---

    def _other_records(self, name: Optional[str] = None) -> List[VMRecord]:
        """All loadable records except `name`; unreadable ones are logged and skipped"""
        records = []
        for other in self.store.list():
            if other == name:
                continue
            try:
                records.append(self.store.load(other))
            except VMError as e:
                logger.warning(f"Skipping unreadable record '{other}': {e}")
        return records

    def _rebuild_seed(self, record: VMRecord) -> str:
        return self.provisioner.build_seed(record.hostname, record.username, record.password, record.name)

    @staticmethod
    def _resolve_field(field: str) -> str:
        field = field.strip().lower().replace('-', '_')
        return FIELD_ALIASES.get(field, field)

    @staticmethod
    def _check_forwards(ssh_port: int, forwards: List[PortForward]) -> None:
        if any(fw.host == ssh_port for fw in forwards):
            raise ValidationError(
                f"Host port {ssh_port} is already used for SSH",
                kind='port_forwards', value=ssh_port,
                suggestions=["Forward a different host port"]
            )

    # --- Operations ---

    def create(self, spec: Mapping[str, Any]) -> VMRecord:
        """
        Validate a new VM definition, provision it and persist it

        `spec` holds raw field values: name, os (a catalog label) and
        optionally hostname, username, password, disk_size, memory, cpus,
        ssh_port, gui_mode, port_forwards. Missing fields take the OS
        defaults or the configured defaults.

        The record is saved only after provisioning succeeded.
        """
        name = validate('name', spec.get('name'))
        if self.store.exists(name):
            raise ValidationError(
                f"A VM named '{name}' already exists",
                kind='name', value=name,
                suggestions=["Choose another name or delete the existing VM"]
            )
        profile = get_os_profile(spec.get('os') or '')

        def field(key, kind, default):
            value = spec.get(key)
            return validate(kind, default if value is None or value == '' else value)

        hostname = field('hostname', 'hostname', profile.default_hostname)
        username = field('username', 'username', profile.default_username)
        password = field('password', 'password', profile.default_password)
        disk_size = field('disk_size', 'size', CONFIG['DEFAULT_DISK_SIZE'])
        memory_mb = field('memory', 'memory', CONFIG['DEFAULT_MEMORY'])
        cpu_count = field('cpus', 'cpus', CONFIG['DEFAULT_CPUS'])
        ssh_port = field('ssh_port', 'port', CONFIG['DEFAULT_SSH_PORT'])
        gui_mode = validate('bool', spec.get('gui_mode') or False)
        forwards = [PortForward(*fw) for fw in validate('port_forwards', spec.get('port_forwards'))]
        self._check_forwards(ssh_port, forwards)

        if is_port_in_use(ssh_port):
            raise PortInUse(
                f"Port {ssh_port} is already in use on this host",
                suggestions=["Choose a different SSH port"]
            )
        for other in self._other_records(name):
            if other.ssh_port == ssh_port:
                print_warning(f"VM '{other.name}' is also configured for SSH port {ssh_port}; "
                              "only one of them can run at a time.")

        record = VMRecord.new(
            self.vms_dir,
            name=name, os_type=profile.os_type, codename=profile.codename,
            image_url=profile.image_url, hostname=hostname, username=username,
            password=password, disk_size=disk_size, memory_mb=memory_mb,
            cpu_count=cpu_count, ssh_port=ssh_port, gui_mode=gui_mode,
            port_forwards=forwards,
        )
        logger.info(f"Creating VM '{name}' ({profile.label}, {disk_size}, {memory_mb} MiB, {cpu_count} CPUs)")
        self.provisioner.provision(record)
        self.store.save(record)
        print_success(f"VM '{name}' created. SSH: {record.ssh_command}")
        return record

    def start(self, name: str, foreground: bool = True) -> Union[int, SessionInfo]:
        """Start a stopped VM, regenerating its seed first if it is missing"""
        record = self.store.load(name)
        if self.supervisor.is_running(record):
            raise ProcessError(
                f"VM '{name}' is already running",
                code="CVM-E701",
                severity=ErrorSeverity.WARNING,
                suggestions=[f"Connect with: {record.ssh_command}"]
            )

        holders = self.supervisor.running_ports(self._other_records(name))
        if record.ssh_port in holders:
            raise PortInUse(
                f"SSH port {record.ssh_port} is held by running VM '{holders[record.ssh_port]}'",
                suggestions=[f"Stop '{holders[record.ssh_port]}' or change the SSH port of '{name}'"]
            )
        if is_port_in_use(record.ssh_port):
            raise PortInUse(
                f"SSH port {record.ssh_port} is already in use on this host",
                suggestions=[f"Edit '{name}' to use a different SSH port"]
            )

        return self.supervisor.launch(record, foreground=foreground, ensure_seed=self._rebuild_seed)

    def stop(self, name: str) -> bool:
        """Stop a VM. Stopping a stopped VM is a no-op that returns False."""
        record = self.store.load(name)
        return self.supervisor.terminate(record)

    def restart(self, name: str) -> SessionInfo:
        self.stop(name)
        return self.start(name, foreground=False)

    def edit(self, name: str, field: str, value: Any) -> VMRecord:
        """
        Change one field of a VM

        Identity fields (hostname, username, password) trigger a fresh seed.
        Disk size changes go through resize(). The stored record is only
        replaced once every dependent step succeeded.
        """
        attr = self._resolve_field(field)
        if attr in IMMUTABLE_FIELDS:
            raise ValidationError(
                f"'{attr}' cannot be changed after creation",
                kind=attr, value=value,
                suggestions=["Create a new VM instead"]
            )
        if attr not in EDITABLE_FIELDS:
            raise ValidationError(
                f"Unknown field '{field}'",
                kind='field', value=field,
                suggestions=[f"Editable fields: {', '.join(EDITABLE_FIELDS)}"]
            )
        if attr == 'disk_size':
            return self.resize(name, value)

        record = self.store.load(name)
        new_value = validate(EDITABLE_FIELDS[attr], value)
        if attr == 'port_forwards':
            new_value = [PortForward(*fw) for fw in new_value]
            self._check_forwards(record.ssh_port, new_value)
        if attr == 'ssh_port':
            self._check_forwards(new_value, record.port_forwards)
            if is_port_in_use(new_value):
                print_warning(f"Port {new_value} is currently in use on this host; "
                              "starting the VM will fail until it is free.")

        if getattr(record, attr) == new_value:
            print_info(f"'{attr}' of VM '{name}' is unchanged.")
            return record

        updated = record.copy(**{attr: new_value})
        if self.supervisor.is_running(record):
            print_warning(f"VM '{name}' is running; the change applies at the next start.")
        if attr in IDENTITY_FIELDS:
            logger.info(f"Regenerating seed for VM '{name}' after {attr} change")
            self._rebuild_seed(updated)

        self.store.save(updated)
        logger.info(f"Edited '{attr}' of VM '{name}'")
        return updated

    def delete(self, name: str) -> bool:
        """
        Remove a VM with its image, seed and record after confirmation

        Returns:
            False if the user declined, True once everything is removed
        """
        if not self.store.exists(name):
            # Raises NotFoundError
            self.store.load(name)
        if not self.confirm(f"Permanently delete VM '{name}' with its disk image and seed?"):
            print_info(f"Deletion of VM '{name}' cancelled.")
            return False

        record = self.store.load(name)
        if self.supervisor.is_running(record):
            print_warning(f"VM '{name}' is running, stopping it first.")
            self.supervisor.terminate(record)

        for path in (record.image_file, record.seed_file, self.supervisor.log_path(name)):
            remove_file(path, quiet=True)
        self.supervisor.clear_lease(name)
        self.store.delete(name)
        logger.info(f"Deleted VM '{name}'")
        print_success(f"VM '{name}' deleted.")
        return True

    def resize(self, name: str, new_size: str) -> VMRecord:
        """
        Change the disk capacity of a stopped VM

        Shrinking asks for confirmation; a declined shrink leaves the VM as
        it was. The record is saved only if the image operation succeeded.
        """
        record = self.store.load(name)
        new_size = validate('size', new_size)
        if self.supervisor.is_running(record):
            raise ProcessError(
                f"VM '{name}' must be stopped before resizing its disk",
                code="CVM-E702",
                severity=ErrorSeverity.WARNING,
                suggestions=[f"Stop '{name}' first"]
            )

        old_bytes = parse_size_to_bytes(record.disk_size)
        new_bytes = parse_size_to_bytes(new_size)
        if new_bytes == old_bytes:
            print_info(f"Disk of VM '{name}' is already {record.disk_size}.")
            return record
        if new_bytes < old_bytes and not self.confirm(
                f"Shrink '{name}' from {record.disk_size} to {new_size}? Data beyond the new size will be lost."):
            print_info("Resize cancelled.")
            return record

        if not os.path.exists(record.image_file):
            raise ImageMissing(
                f"Disk image for VM '{name}' is missing: {record.image_file}",
                suggestions=["Delete and recreate the VM"]
            )

        result = self.provisioner.resize_image(record.image_file, new_size)
        updated = record.copy(disk_size=new_size)
        self.store.save(updated)
        if result.method == 'resize':
            print_success(f"Disk of VM '{name}' resized to {new_size}.")
            if new_bytes > old_bytes:
                print_info("Grow the partition and filesystem inside the guest to use the new space.")
        return updated

    def info(self, name: str) -> Dict[str, Any]:
        """Read-only description of a VM with the password masked"""
        record = self.store.load(name)
        running = self.supervisor.is_running(record)
        disk = get_disk_info(record.image_file, self.provisioner.qemu_img) or {}
        return {
            'name': record.name,
            'os': f"{record.os_type} {record.codename}",
            'image_url': record.image_url,
            'hostname': record.hostname,
            'username': record.username,
            'password': PASSWORD_MASK,
            'disk_size': record.disk_size,
            'memory_mb': record.memory_mb,
            'cpu_count': record.cpu_count,
            'ssh_port': record.ssh_port,
            'gui_mode': record.gui_mode,
            'port_forwards': [str(fw) for fw in record.port_forwards],
            'created_at': record.created_at,
            'status': 'running' if running else 'stopped',
            'ssh_command': record.ssh_command,
            'image_file': record.image_file,
            'image_present': os.path.exists(record.image_file),
            'seed_file': record.seed_file,
            'seed_present': os.path.exists(record.seed_file),
            'image_actual_size': disk.get('actual-size'),
            'image_virtual_size': disk.get('virtual-size'),
        }

    def performance(self, name: str) -> Dict[str, Any]:
        """info() plus live process figures when the VM is running"""
        data = self.info(name)
        data['process'] = None
        if data['status'] == 'running':
            data['process'] = self.supervisor.stats(self.store.load(name))
        return data

    def list_vms(self) -> List[Tuple[str, bool]]:
        """(name, running) for every stored VM"""
        result = []
        for name in self.store.list():
            try:
                running = self.supervisor.is_running(self.store.load(name))
            except VMError as e:
                logger.warning(f"Cannot read VM '{name}': {e}")
                running = False
            result.append((name, running))
        return result
