"""Tests for process supervision with real short-lived child processes."""

import json
import os
import subprocess
import sys
import time
from datetime import datetime

import psutil
import pytest

from cloudvm.error_handling import ImageMissing, SeedGenerationFailed
from cloudvm.session_manager import ProcessSupervisor, SessionInfo, cmdline_has_drive


def _touch(path):
    with open(path, 'wb') as f:
        f.write(b'x')


@pytest.fixture
def ready_record(make_record):
    """A record whose image and seed files exist."""
    record = make_record()
    _touch(record.image_file)
    _touch(record.seed_file)
    return record


@pytest.fixture
def supervisor(vms_dir, fake_qemu):
    return ProcessSupervisor(str(vms_dir), qemu_binary=fake_qemu,
                             grace_seconds=2, startup_check_seconds=0.2)


@pytest.fixture
def spawn():
    """Start a bare child process carrying arbitrary arguments."""
    children = []

    def _spawn(*args, code="import time; time.sleep(60)"):
        proc = subprocess.Popen([sys.executable, '-c', code, *args])
        children.append(proc)
        return proc

    yield _spawn
    for proc in children:
        if proc.poll() is None:
            proc.kill()
        proc.wait()


class TestDriveMatching:
    """Tests for command line correlation."""

    def test_exact_option_matches(self):
        assert cmdline_has_drive(['qemu', '-drive', 'file=/vms/a.img,format=qcow2,if=virtio'], '/vms/a.img')

    def test_similar_paths_do_not_match(self):
        cmd = ['qemu', '-drive', 'file=/vms/a.img.bak,format=qcow2', '-drive', 'file=/vms/ba.img']
        assert not cmdline_has_drive(cmd, '/vms/a.img')


class TestLaunchAndTerminate:
    """Tests for background launch, liveness and termination."""

    def test_background_launch_then_terminate(self, supervisor, ready_record):
        """is_running is false right after a successful terminate."""
        session = supervisor.launch(ready_record, foreground=False)
        try:
            assert isinstance(session, SessionInfo)
            assert supervisor.is_running(ready_record)
            assert os.path.exists(supervisor.lease_path('web01'))

            assert supervisor.terminate(ready_record) is True
            assert not supervisor.is_running(ready_record)
            assert not os.path.exists(supervisor.lease_path('web01'))
        finally:
            if psutil.pid_exists(session.pid):
                psutil.Process(session.pid).kill()

    def test_terminate_not_running_is_a_no_op(self, supervisor, ready_record):
        assert supervisor.terminate(ready_record) is False

    def test_sigkill_after_grace_period(self, vms_dir, ready_record, spawn):
        """A process ignoring SIGTERM is killed once the grace period ends."""
        code = ("import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
                "time.sleep(60)")
        proc = spawn('-drive', f"file={ready_record.image_file},format=qcow2", code=code)
        time.sleep(0.3)
        supervisor = ProcessSupervisor(str(vms_dir), grace_seconds=0.5)

        started = time.monotonic()
        assert supervisor.terminate(ready_record) is True
        assert time.monotonic() - started < 5
        assert proc.poll() is not None

    def test_foreground_returns_exit_code(self, vms_dir, ready_record, fake_qemu_exits):
        supervisor = ProcessSupervisor(str(vms_dir), qemu_binary=fake_qemu_exits)

        assert supervisor.launch(ready_record, foreground=True) == 0
        assert not os.path.exists(supervisor.lease_path('web01'))

    def test_missing_image(self, supervisor, make_record):
        with pytest.raises(ImageMissing):
            supervisor.launch(make_record(), foreground=False)

    def test_missing_seed_calls_ensure_seed(self, vms_dir, make_record, fake_qemu_exits):
        record = make_record()
        _touch(record.image_file)
        rebuilt = []

        def ensure_seed(rec):
            rebuilt.append(rec.name)
            _touch(rec.seed_file)

        supervisor = ProcessSupervisor(str(vms_dir), qemu_binary=fake_qemu_exits)
        assert supervisor.launch(record, foreground=True, ensure_seed=ensure_seed) == 0
        assert rebuilt == ['web01']

    def test_missing_seed_without_repair_fails(self, supervisor, make_record):
        record = make_record()
        _touch(record.image_file)
        with pytest.raises(SeedGenerationFailed):
            supervisor.launch(record, foreground=False, ensure_seed=lambda rec: None)


class TestLeases:
    """Tests for lease validation and adoption."""

    def test_stale_lease_is_removed(self, supervisor, ready_record):
        lease = SessionInfo(vm_name='web01', pid=os.getpid(), create_time=0.0,
                            ssh_port=2222, start_time=datetime.now())
        with open(supervisor.lease_path('web01'), 'w', encoding='utf-8') as f:
            json.dump(lease.to_dict(), f)

        assert not supervisor.is_running(ready_record)
        assert not os.path.exists(supervisor.lease_path('web01'))

    def test_corrupt_lease_is_removed(self, supervisor, ready_record):
        with open(supervisor.lease_path('web01'), 'w', encoding='utf-8') as f:
            f.write('{not json')

        assert not supervisor.is_running(ready_record)
        assert not os.path.exists(supervisor.lease_path('web01'))

    def test_unleased_process_is_adopted(self, supervisor, ready_record, spawn):
        proc = spawn('-drive', f"file={ready_record.image_file},format=qcow2,if=virtio")
        time.sleep(0.3)

        assert supervisor.is_running(ready_record)
        lease = supervisor.load_lease('web01')
        assert lease.pid == proc.pid
        assert lease.create_time == pytest.approx(psutil.Process(proc.pid).create_time())

    def test_zombie_is_not_running(self, supervisor, ready_record, spawn):
        proc = spawn('-drive', f"file={ready_record.image_file},format=qcow2", code="pass")
        deadline = time.monotonic() + 5
        while psutil.Process(proc.pid).status() != psutil.STATUS_ZOMBIE and time.monotonic() < deadline:
            time.sleep(0.05)

        assert not supervisor.is_running(ready_record)

    def test_running_ports(self, supervisor, ready_record, make_record, spawn):
        other = make_record('db01', ssh_port=2223)
        spawn('-drive', f"file={ready_record.image_file},format=qcow2")
        time.sleep(0.3)

        assert supervisor.running_ports([ready_record, other]) == {2222: 'web01'}
        assert supervisor.running_ports([ready_record, other], exclude='web01') == {}

    def test_stats_for_running_vm(self, supervisor, ready_record, spawn):
        proc = spawn('-drive', f"file={ready_record.image_file},format=qcow2")
        time.sleep(0.3)

        stats = supervisor.stats(ready_record, sample_seconds=0.05)
        assert stats['pid'] == proc.pid
        assert stats['threads'] >= 1
        assert stats['memory_mb'] > 0

    def test_stats_for_stopped_vm(self, supervisor, ready_record):
        assert supervisor.stats(ready_record) is None
