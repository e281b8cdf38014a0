"""Tests for the lifecycle controller scenarios."""

import os

import pytest

from cloudvm import lifecycle as lifecycle_module
from cloudvm.error_handling import (
    ValidationError, NotFoundError, PortInUse, SeedGenerationFailed, DownloadFailed, ProcessError
)
from cloudvm.vm_record import PortForward


@pytest.fixture
def web01(controller, web01_spec, events, fake_tools):
    """web01 created and provisioned, with the event log reset."""
    record = controller.create(web01_spec)
    del events[:]
    fake_tools.calls.clear()
    return record


class TestCreate:
    """Tests for VM creation."""

    def test_web01_scenario(self, controller, web01_spec, vms_dir, events, monkeypatch):
        """Creating web01 provisions in order and persists derived paths."""
        render = controller.provisioner.render_metadata

        def spy(*args, **kwargs):
            events.append('render')
            return render(*args, **kwargs)

        monkeypatch.setattr(controller.provisioner, 'render_metadata', spy)

        record = controller.create(web01_spec)

        stored = controller.store.load('web01')
        assert stored == record
        assert stored.image_file == os.path.join(str(vms_dir), 'web01.img')
        assert stored.seed_file == os.path.join(str(vms_dir), 'web01-seed.iso')
        assert (stored.os_type, stored.codename) == ('ubuntu', 'jammy')
        assert (stored.disk_size, stored.memory_mb, stored.cpu_count, stored.ssh_port) == ('20G', 2048, 2, 2222)
        assert stored.gui_mode is False
        assert stored.port_forwards == []
        assert [e for e in events if e != 'info'] == ['download', 'resize', 'render', 'seed']

    def test_defaults_come_from_os_profile(self, controller):
        record = controller.create({'name': 'deb', 'os': 'Debian 12'})

        assert (record.hostname, record.username, record.password) == ('debian12', 'debian', 'debian')
        assert record.codename == 'bookworm'

    def test_duplicate_name_rejected(self, controller, web01, web01_spec):
        with pytest.raises(ValidationError):
            controller.create(web01_spec)

    def test_unknown_os(self, controller, web01_spec):
        web01_spec['os'] = 'Plan 9'
        with pytest.raises(NotFoundError):
            controller.create(web01_spec)

    def test_invalid_field_creates_nothing(self, controller, web01_spec, vms_dir, events):
        web01_spec['disk_size'] = '20'
        with pytest.raises(ValidationError):
            controller.create(web01_spec)
        assert events == []
        assert os.listdir(vms_dir) == []

    def test_port_bound_on_host(self, controller, web01_spec, monkeypatch):
        monkeypatch.setattr(lifecycle_module, 'is_port_in_use', lambda port: port == 2222)
        with pytest.raises(PortInUse):
            controller.create(web01_spec)
        assert controller.store.list() == []

    def test_forward_cannot_reuse_ssh_port(self, controller, web01_spec):
        web01_spec['port_forwards'] = '2222:80'
        with pytest.raises(ValidationError):
            controller.create(web01_spec)

    def test_stored_port_collision_only_warns(self, controller, web01, web01_spec):
        web01_spec['name'] = 'web02'
        record = controller.create(web01_spec)
        assert record.ssh_port == web01.ssh_port

    def test_provisioning_failure_leaves_no_record(self, controller, web01_spec, fake_tools):
        fake_tools.fail.add('seed')
        with pytest.raises(SeedGenerationFailed):
            controller.create(web01_spec)
        assert not controller.store.exists('web01')

    def test_download_failure_leaves_no_record(self, controller, web01_spec, fake_downloads):
        fake_downloads.status = 503
        with pytest.raises(DownloadFailed):
            controller.create(web01_spec)
        assert controller.store.list() == []


class TestEdit:
    """Tests for single-field edits."""

    def test_password_edit_rebuilds_seed(self, controller, web01, events, fake_tools):
        """Changing the password regenerates the seed and leaves other fields alone."""
        updated = controller.edit('web01', 'password', 'n3w-pass')

        assert events.count('seed') == 1
        user_text, _ = fake_tools.seed_documents[-1]
        assert 'root:n3w-pass' in user_text

        stored = controller.store.load('web01')
        assert stored.password == 'n3w-pass'
        assert stored == updated
        assert stored.copy(password=web01.password) == web01

    def test_memory_edit_does_not_touch_seed(self, controller, web01, events):
        controller.edit('web01', 'memory', '4096')
        assert controller.store.load('web01').memory_mb == 4096
        assert 'seed' not in events

    def test_forwards_edit(self, controller, web01):
        controller.edit('web01', 'forwards', '8080:80,8443:443')
        assert controller.store.load('web01').port_forwards == [PortForward(8080, 80), PortForward(8443, 443)]

    def test_immutable_field(self, controller, web01):
        with pytest.raises(ValidationError):
            controller.edit('web01', 'os_type', 'debian')

    def test_invalid_value_keeps_record(self, controller, web01):
        with pytest.raises(ValidationError):
            controller.edit('web01', 'username', 'Root')
        assert controller.store.load('web01') == web01

    def test_seed_failure_keeps_record(self, controller, web01, fake_tools):
        fake_tools.fail.add('seed')
        with pytest.raises(SeedGenerationFailed):
            controller.edit('web01', 'hostname', 'renamed')
        assert controller.store.load('web01').hostname == 'web01'

    def test_unknown_vm(self, controller):
        with pytest.raises(NotFoundError):
            controller.edit('ghost', 'memory', '1024')


class TestDelete:
    """Tests for deletion."""

    def test_declined_delete_keeps_everything(self, controller, web01, confirmer):
        confirmer.answer = False

        assert controller.delete('web01') is False

        assert confirmer.questions
        assert controller.store.exists('web01')
        assert os.path.exists(web01.image_file)
        assert os.path.exists(web01.seed_file)

    def test_confirmed_delete_removes_everything(self, controller, web01, confirmer, vms_dir):
        confirmer.answer = True

        assert controller.delete('web01') is True

        assert os.listdir(vms_dir) == []

    def test_delete_unknown_vm_asks_nothing(self, controller, confirmer):
        with pytest.raises(NotFoundError):
            controller.delete('ghost')
        assert confirmer.questions == []


class TestResize:
    """Tests for disk resizing."""

    def test_declined_shrink_keeps_size(self, controller, web01, confirmer, fake_tools):
        """Shrinking 20G to 10G asks first; declining changes nothing."""
        confirmer.answer = False

        record = controller.resize('web01', '10G')

        assert len(confirmer.questions) == 1
        assert record.disk_size == '20G'
        assert controller.store.load('web01').disk_size == '20G'
        assert not any(c[1] == 'resize' for c in fake_tools.calls)

    def test_confirmed_shrink(self, controller, web01, confirmer, fake_tools):
        confirmer.answer = True

        controller.resize('web01', '10G')

        assert controller.store.load('web01').disk_size == '10G'
        assert ['qemu-img', 'resize', '--shrink', web01.image_file, '10G'] in fake_tools.calls

    def test_grow_needs_no_confirmation(self, controller, web01, confirmer):
        controller.resize('web01', '40G')

        assert confirmer.questions == []
        assert controller.store.load('web01').disk_size == '40G'

    def test_same_size_is_a_no_op(self, controller, web01, fake_tools):
        controller.resize('web01', '20480M')
        assert fake_tools.calls == []

    def test_invalid_size(self, controller, web01):
        with pytest.raises(ValidationError):
            controller.resize('web01', '-10G')

    def test_disk_size_edit_goes_through_resize(self, controller, web01):
        controller.edit('web01', 'disk_size', '30G')
        assert controller.store.load('web01').disk_size == '30G'


class TestStartStop:
    """Tests for starting and stopping through the controller."""

    def test_start_with_missing_seed_reprovisions(self, controller, web01, events):
        """A missing seed is rebuilt before launch instead of failing."""
        os.remove(web01.seed_file)

        assert controller.start('web01', foreground=True) == 0

        assert events.count('seed') == 1
        assert os.path.exists(web01.seed_file)

    def test_start_refuses_port_bound_on_host(self, controller, web01, monkeypatch):
        monkeypatch.setattr(lifecycle_module, 'is_port_in_use', lambda port: True)
        with pytest.raises(PortInUse):
            controller.start('web01')

    def test_start_refuses_port_held_by_running_vm(self, controller, web01, web01_spec, monkeypatch):
        web01_spec['name'] = 'web02'
        controller.create(web01_spec)
        monkeypatch.setattr(controller.supervisor, 'running_ports', lambda records, exclude=None: {2222: 'web01'})

        with pytest.raises(PortInUse) as exc:
            controller.start('web02')
        assert 'web01' in str(exc.value)

    def test_start_refuses_running_vm(self, controller, web01, monkeypatch):
        monkeypatch.setattr(controller.supervisor, 'is_running', lambda record: True)
        with pytest.raises(ProcessError):
            controller.start('web01')

    def test_resize_refused_while_running(self, controller, web01, monkeypatch):
        monkeypatch.setattr(controller.supervisor, 'is_running', lambda record: True)
        with pytest.raises(ProcessError):
            controller.resize('web01', '40G')

    def test_stop_when_not_running(self, controller, web01):
        assert controller.stop('web01') is False


class TestQueries:
    """Tests for info, performance and listing."""

    def test_info_masks_password(self, controller, web01):
        info = controller.info('web01')

        assert info['password'] != web01.password
        assert info['status'] == 'stopped'
        assert info['ssh_command'] == 'ssh -p 2222 ubuntu@localhost'
        assert info['image_present'] and info['seed_present']
        assert info['image_virtual_size'] == 20 * 1024 ** 3

    def test_performance_when_stopped(self, controller, web01):
        assert controller.performance('web01')['process'] is None

    def test_list_vms(self, controller, web01, web01_spec):
        web01_spec.update(name='api', ssh_port='2300')
        controller.create(web01_spec)

        assert controller.list_vms() == [('api', False), ('web01', False)]
