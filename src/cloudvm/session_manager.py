# Made by trex099
# https://github.com/Trex099/Glint
"""
Session Management Module

Launches QEMU for a VM record, answers liveness queries and stops it again.

Each launch writes a session lease, `<name>.session.json`, holding the
process id and its creation time. A lease only counts while the process it
names is alive, is not a zombie, has the recorded creation time and still
carries the VM's system drive argument. Without a valid lease the process
table is scanned for that drive argument and a matching process is adopted.
"""

import os
import json
import time
import logging
import subprocess
from datetime import datetime
from dataclasses import dataclass, asdict, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import psutil

from .config import CONFIG
from .core_utils import print_info, print_success, print_warning, remove_file, format_command
from .error_handling import ImageMissing, SeedGenerationFailed, ProcessError
from .qemu_builder import build_command_line, drive_token
from .vm_record import VMRecord

logger = logging.getLogger(__name__)

LEASE_SUFFIX = '.session.json'
# psutil reports create_time as a float; allow for rounding in the lease file
CREATE_TIME_TOLERANCE = 0.01


@dataclass
class SessionInfo:
    """Session lease for one running VM"""
    vm_name: str
    pid: int
    create_time: float
    ssh_port: int
    start_time: datetime
    command_line: List[str] = field(default_factory=list)
    log_file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = asdict(self)
        data['start_time'] = self.start_time.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionInfo':
        """Create SessionInfo from dictionary"""
        data = dict(data)
        if isinstance(data.get('start_time'), str):
            data['start_time'] = datetime.fromisoformat(data['start_time'])
        return cls(**data)


def cmdline_has_drive(cmdline: Iterable[str], image_file: str) -> bool:
    """
    True if one of the arguments is a drive spec whose `file=` option is
    exactly image_file. Options are compared whole, so `/vms/a.img` never
    matches `/vms/a.img.bak`.
    """
    token = drive_token(image_file)
    return any(token in arg.split(',') for arg in cmdline)


class ProcessSupervisor:
    """
    Maps VM records to QEMU processes
    """

    def __init__(self, vms_dir: str, qemu_binary: Optional[str] = None,
                 grace_seconds: Optional[float] = None, startup_check_seconds: float = 0.5):
        self.vms_dir = os.path.abspath(vms_dir)
        self.qemu_binary = qemu_binary or CONFIG['QEMU_BINARY']
        self.grace_seconds = CONFIG['STOP_GRACE_SECONDS'] if grace_seconds is None else grace_seconds
        self.startup_check_seconds = startup_check_seconds

    # --- Leases ---

    def lease_path(self, vm_name: str) -> str:
        return os.path.join(self.vms_dir, f"{vm_name}{LEASE_SUFFIX}")

    def log_path(self, vm_name: str) -> str:
        return os.path.join(self.vms_dir, f"{vm_name}.log")

    def _save_lease(self, session: SessionInfo) -> None:
        path = self.lease_path(session.vm_name)
        tmp_path = f"{path}.tmp"
        os.makedirs(self.vms_dir, exist_ok=True)
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(session.to_dict(), f, indent=2)
        os.replace(tmp_path, path)
        logger.debug(f"Wrote session lease for VM '{session.vm_name}' (PID {session.pid})")

    def load_lease(self, vm_name: str) -> Optional[SessionInfo]:
        """Read the lease file as-is, without checking the process"""
        path = self.lease_path(vm_name)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return SessionInfo.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Corrupted session lease for VM '{vm_name}': {e}")
            remove_file(path, quiet=True)
            return None

    def clear_lease(self, vm_name: str) -> None:
        remove_file(self.lease_path(vm_name), quiet=True)

    def _record_session(self, record: VMRecord, proc: psutil.Process,
                        cmdline: List[str], log_file: Optional[str] = None) -> SessionInfo:
        create_time = proc.create_time()
        session = SessionInfo(
            vm_name=record.name,
            pid=proc.pid,
            create_time=create_time,
            ssh_port=record.ssh_port,
            start_time=datetime.fromtimestamp(create_time),
            command_line=list(cmdline),
            log_file=log_file,
        )
        self._save_lease(session)
        return session

    # --- Liveness ---

    @staticmethod
    def _is_live(proc: psutil.Process) -> bool:
        try:
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def _validate_lease(self, record: VMRecord, session: SessionInfo) -> Optional[psutil.Process]:
        try:
            proc = psutil.Process(session.pid)
            if not self._is_live(proc):
                return None
            if abs(proc.create_time() - session.create_time) > CREATE_TIME_TOLERANCE:
                return None
            if not cmdline_has_drive(proc.cmdline(), record.image_file):
                return None
            return proc
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    def _scan_process_table(self, record: VMRecord) -> Optional[psutil.Process]:
        for proc in psutil.process_iter(['pid', 'cmdline']):
            cmdline = proc.info.get('cmdline') or []
            if cmdline_has_drive(cmdline, record.image_file) and self._is_live(proc):
                return proc
        return None

    def find_process(self, record: VMRecord) -> Optional[psutil.Process]:
        """
        The live QEMU process for a VM, or None

        A stale lease is removed. A process found only by scanning is
        adopted by writing a fresh lease for it.
        """
        session = self.load_lease(record.name)
        if session is not None:
            proc = self._validate_lease(record, session)
            if proc is not None:
                return proc
            logger.info(f"Removing stale session lease for VM '{record.name}' (PID {session.pid})")
            self.clear_lease(record.name)

        proc = self._scan_process_table(record)
        if proc is None:
            return None
        try:
            cmdline = proc.cmdline()
            self._record_session(record, proc, cmdline)
        except (psutil.NoSuchProcess, psutil.AccessDenied, OSError) as e:
            logger.warning(f"Could not adopt PID {proc.pid} for VM '{record.name}': {e}")
            return proc
        logger.info(f"Adopted running process {proc.pid} for VM '{record.name}'")
        return proc

    def is_running(self, record: VMRecord) -> bool:
        return self.find_process(record) is not None

    def running_ports(self, records: Iterable[VMRecord], exclude: Optional[str] = None) -> Dict[int, str]:
        """SSH port -> VM name for every running VM, optionally skipping one by name"""
        ports = {}
        for record in records:
            if record.name == exclude:
                continue
            if self.is_running(record):
                ports[record.ssh_port] = record.name
        return ports

    # --- Launch / terminate ---

    def _check_artifacts(self, record: VMRecord, ensure_seed: Optional[Callable[[VMRecord], Any]]) -> None:
        if not os.path.exists(record.image_file):
            raise ImageMissing(
                f"Disk image for VM '{record.name}' is missing: {record.image_file}",
                suggestions=["Delete and recreate the VM to download a fresh image"]
            )
        if os.path.exists(record.seed_file):
            return
        if ensure_seed is not None:
            print_warning(f"Cloud-init seed for '{record.name}' is missing, regenerating it.")
            ensure_seed(record)
        if not os.path.exists(record.seed_file):
            raise SeedGenerationFailed(
                f"Cloud-init seed for VM '{record.name}' is missing: {record.seed_file}",
                suggestions=["Edit the VM password to regenerate the seed"]
            )

    def launch(self, record: VMRecord, foreground: bool = True,
               ensure_seed: Optional[Callable[[VMRecord], Any]] = None) -> Union[int, SessionInfo]:
        """
        Start QEMU for a VM

        Args:
            record: The VM to start
            foreground: Attach QEMU to this terminal and wait for it to exit
            ensure_seed: Called with the record when the seed volume is missing

        Returns:
            The QEMU exit code in foreground mode, the SessionInfo otherwise

        Raises:
            ImageMissing: the disk image does not exist
            SeedGenerationFailed: the seed is missing and could not be rebuilt
            ProcessError: QEMU could not be started
        """
        self._check_artifacts(record, ensure_seed)
        cmd = build_command_line(record, self.qemu_binary)
        logger.info(f"Launching VM '{record.name}': {format_command(cmd)}")

        if foreground:
            return self._launch_foreground(record, cmd)
        return self._launch_background(record, cmd)

    def _spawn(self, record: VMRecord, cmd: List[str], **popen_kwargs) -> subprocess.Popen:
        try:
            return subprocess.Popen(cmd, **popen_kwargs)
        except OSError as e:
            raise ProcessError(
                f"Failed to start QEMU for VM '{record.name}': {e}",
                details=format_command(cmd),
                suggestions=[
                    f"Verify {self.qemu_binary} is installed",
                    "Check that /dev/kvm exists and is accessible",
                ],
                original_exception=e
            ) from e

    def _launch_foreground(self, record: VMRecord, cmd: List[str]) -> int:
        print_info(f"Starting VM '{record.name}'. SSH: {record.ssh_command}")
        if not record.gui_mode:
            print_info("Press Ctrl+A then X to quit the console.")
        process = self._spawn(record, cmd)
        try:
            try:
                self._record_session(record, psutil.Process(process.pid), cmd)
            except (psutil.NoSuchProcess, OSError) as e:
                logger.warning(f"Could not write session lease for VM '{record.name}': {e}")
            returncode = process.wait()
        finally:
            self.clear_lease(record.name)
        logger.info(f"VM '{record.name}' exited with code {returncode}")
        return returncode

    def _launch_background(self, record: VMRecord, cmd: List[str]) -> SessionInfo:
        log_file = self.log_path(record.name)
        os.makedirs(self.vms_dir, exist_ok=True)
        with open(log_file, 'ab') as log:
            log.write(f"--- {datetime.now().isoformat(timespec='seconds')} {format_command(cmd)}\n".encode('utf-8'))
            log.flush()
            process = self._spawn(
                record, cmd,
                stdin=subprocess.DEVNULL, stdout=log, stderr=subprocess.STDOUT,
                start_new_session=True
            )

        time.sleep(self.startup_check_seconds)
        if process.poll() is not None:
            raise ProcessError(
                f"QEMU exited immediately for VM '{record.name}' (code {process.returncode})",
                details=self._tail(log_file),
                suggestions=[f"See {log_file} for the full output"]
            )

        try:
            session = self._record_session(record, psutil.Process(process.pid), cmd, log_file)
        except psutil.NoSuchProcess as e:
            raise ProcessError(
                f"QEMU for VM '{record.name}' exited during startup",
                details=self._tail(log_file),
                original_exception=e
            ) from e
        print_success(f"VM '{record.name}' started in the background (PID {process.pid})")
        print_info(f"SSH: {record.ssh_command}")
        return session

    @staticmethod
    def _tail(path: str, lines: int = 20) -> str:
        try:
            with open(path, 'r', encoding='utf-8', errors='replace') as f:
                return ''.join(f.readlines()[-lines:]).strip()
        except OSError:
            return ''

    def terminate(self, record: VMRecord) -> bool:
        """
        Stop a VM: SIGTERM, wait the grace period, then SIGKILL if still alive

        Returns:
            True if a process was stopped, False if the VM was not running
        """
        proc = self.find_process(record)
        if proc is None:
            print_info(f"VM '{record.name}' is not running.")
            self.clear_lease(record.name)
            return False

        logger.info(f"Sending SIGTERM to VM '{record.name}' (PID {proc.pid})")
        try:
            proc.terminate()
            _, alive = psutil.wait_procs([proc], timeout=self.grace_seconds)
            if alive:
                logger.warning(f"VM '{record.name}' did not exit after {self.grace_seconds}s, sending SIGKILL")
                for p in alive:
                    p.kill()
                psutil.wait_procs(alive, timeout=self.grace_seconds)
        except psutil.NoSuchProcess:
            logger.info(f"Process for VM '{record.name}' was already terminated")
        except psutil.AccessDenied as e:
            raise ProcessError(
                f"Not allowed to stop VM '{record.name}' (PID {proc.pid})",
                suggestions=["The process belongs to another user, stop it as that user"],
                original_exception=e
            ) from e
        finally:
            self.clear_lease(record.name)

        print_success(f"Stopped VM '{record.name}'")
        return True

    def stats(self, record: VMRecord, sample_seconds: float = 0.2) -> Optional[Dict[str, Any]]:
        """Live resource usage of a running VM, None if it is not running"""
        proc = self.find_process(record)
        if proc is None:
            return None
        try:
            cpu_percent = proc.cpu_percent(interval=sample_seconds)
            with proc.oneshot():
                create_time = proc.create_time()
                memory_info = proc.memory_info()
                threads = proc.num_threads()
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None

        uptime = datetime.now() - datetime.fromtimestamp(create_time)
        return {
            'pid': proc.pid,
            'uptime_seconds': int(uptime.total_seconds()),
            'uptime_formatted': str(uptime).split('.')[0],
            'start_time': datetime.fromtimestamp(create_time).isoformat(timespec='seconds'),
            'cpu_percent': round(cpu_percent, 1),
            'memory_mb': round(memory_info.rss / (1024 * 1024), 1),
            'threads': threads,
        }
