"""Shared test fixtures."""

import json
import logging
import os
import subprocess
import sys

import pytest

from cloudvm import core_utils
from cloudvm import lifecycle as lifecycle_module
from cloudvm.config_store import ConfigStore
from cloudvm.disk_resize import parse_size_to_bytes
from cloudvm.lifecycle import LifecycleController
from cloudvm.provisioner import ImageProvisioner
from cloudvm.session_manager import ProcessSupervisor
from cloudvm.vm_record import VMRecord


# Keep setup_logging() from opening a log file in the real home directory
logging.getLogger('cloudvm').addHandler(logging.NullHandler())


class FakeTools:
    """Stands in for qemu-img and cloud-localds behind subprocess.run."""

    def __init__(self, events):
        self.events = events
        self.calls = []
        self.fail = set()
        self.sizes = {}
        self.seed_documents = []

    def __call__(self, cmd, **kwargs):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        tool = os.path.basename(cmd[0])
        if tool == 'qemu-img':
            return self._qemu_img(cmd)
        if tool == 'cloud-localds':
            return self._seed(cmd)
        raise AssertionError(f"unexpected command {cmd}")

    @staticmethod
    def _result(cmd, returncode=0, stdout='', stderr=''):
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def _qemu_img(self, cmd):
        action, path = cmd[1], cmd[-2] if cmd[1] in ('resize', 'create') else cmd[-1]
        if action == 'info':
            self.events.append('info')
            if not os.path.exists(path):
                return self._result(cmd, 1, stderr='No such file')
            size = self.sizes.get(path, 2 * 1024 ** 3)
            return self._result(cmd, stdout=json.dumps({'virtual-size': size, 'actual-size': 1024 ** 2}))
        if action == 'resize':
            self.events.append('resize')
            if 'resize' in self.fail:
                return self._result(cmd, 1, stderr='Image format does not support resize')
            self.sizes[path] = parse_size_to_bytes(cmd[-1])
            return self._result(cmd)
        if action == 'create':
            self.events.append('create')
            if 'create' in self.fail:
                return self._result(cmd, 1, stderr='Could not create image')
            with open(path, 'wb') as f:
                f.write(b'blank')
            self.sizes[path] = parse_size_to_bytes(cmd[-1])
            return self._result(cmd)
        raise AssertionError(f"unexpected qemu-img call {cmd}")

    def _seed(self, cmd):
        self.events.append('seed')
        seed, user_data, meta_data = cmd[1], cmd[2], cmd[3]
        with open(user_data, encoding='utf-8') as f:
            user_text = f.read()
        with open(meta_data, encoding='utf-8') as f:
            meta_text = f.read()
        self.seed_documents.append((user_text, meta_text))
        if 'seed' in self.fail:
            return self._result(cmd, 2, stderr='genisoimage: command failed')
        with open(seed, 'wb') as f:
            f.write(b'SEED')
        return self._result(cmd)


class FakeResponse:
    def __init__(self, payload=b'QFI\xfb' + b'\0' * 1024, status=200):
        self.payload = payload
        self.status = status
        self.headers = {'content-length': str(len(payload))}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            import requests
            raise requests.HTTPError(f"{self.status} Error")

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.payload), chunk_size):
            yield self.payload[i:i + chunk_size]


class FakeDownloads:
    def __init__(self, events):
        self.events = events
        self.urls = []
        self.status = 200
        self.error = None

    def __call__(self, url, stream=False, timeout=None):
        self.events.append('download')
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return FakeResponse(status=self.status)


class Confirmer:
    """Records confirmation questions and answers with a fixed value."""

    def __init__(self, answer=False):
        self.answer = answer
        self.questions = []

    def __call__(self, message):
        self.questions.append(message)
        return self.answer


@pytest.fixture
def vms_dir(tmp_path):
    path = tmp_path / "vms"
    path.mkdir()
    return path


@pytest.fixture
def events():
    return []


@pytest.fixture
def fake_tools(monkeypatch, events):
    tools = FakeTools(events)
    monkeypatch.setattr(core_utils.subprocess, "run", tools)
    return tools


@pytest.fixture
def fake_downloads(monkeypatch, events):
    downloads = FakeDownloads(events)
    monkeypatch.setattr(core_utils.requests, "get", downloads)
    return downloads


@pytest.fixture
def fake_qemu(tmp_path):
    """Executable that behaves like a hypervisor which runs until killed."""
    script = tmp_path / "fake-qemu"
    script.write_text(f"#!{sys.executable}\nimport time\ntime.sleep(60)\n")
    script.chmod(0o755)
    return str(script)


@pytest.fixture
def fake_qemu_exits(tmp_path):
    """Executable that behaves like a hypervisor whose guest powers off at once."""
    script = tmp_path / "fake-qemu-exit"
    script.write_text(f"#!{sys.executable}\nimport sys\nsys.exit(0)\n")
    script.chmod(0o755)
    return str(script)


@pytest.fixture
def confirmer():
    return Confirmer(answer=False)


@pytest.fixture
def free_ports(monkeypatch):
    """Every host port reports as free."""
    monkeypatch.setattr(lifecycle_module, "is_port_in_use", lambda port: False)


@pytest.fixture
def controller(vms_dir, fake_tools, fake_downloads, confirmer, free_ports, fake_qemu_exits):
    supervisor = ProcessSupervisor(str(vms_dir), qemu_binary=fake_qemu_exits,
                                   grace_seconds=2, startup_check_seconds=0.2)
    return LifecycleController(
        ConfigStore(str(vms_dir)),
        ImageProvisioner(str(vms_dir), qemu_img='qemu-img', seed_tool='cloud-localds'),
        supervisor,
        confirm=confirmer,
    )


@pytest.fixture
def web01_spec():
    return {
        'name': 'web01',
        'os': 'Ubuntu 22.04',
        'hostname': 'web01',
        'username': 'ubuntu',
        'password': 's3cret',
        'disk_size': '20G',
        'memory': '2048',
        'cpus': '2',
        'ssh_port': '2222',
        'gui_mode': False,
        'port_forwards': '',
    }


@pytest.fixture
def make_record(vms_dir):
    def _make(name='web01', **overrides):
        fields = dict(
            name=name, os_type='ubuntu', codename='jammy',
            image_url='https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img',
            hostname=name, username='ubuntu', password='s3cret', disk_size='20G',
            memory_mb=2048, cpu_count=2, ssh_port=2222,
            created_at='2024-05-01 12:00:00',
        )
        fields.update(overrides)
        return VMRecord.new(str(vms_dir), **fields)
    return _make
