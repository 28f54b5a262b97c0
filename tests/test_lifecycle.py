import pytest
from proxmoxer.core import ResourceException

from conftest import resource
from pvebulk import lifecycle as lifecycle_module
from pvebulk.lifecycle import (
    ClusterOracle,
    ResourceLifecycle,
    is_upid,
    owner_from_error,
    wait_for_task,
)
from pvebulk.pve_utils import ForeignOwnershipError, NotFoundError, StructuralFailureError

UPID = 'UPID:pve1:0000ABCD:00112233:65000000:qmcreate:100:root@pam:'


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(lifecycle_module.time, 'sleep', lambda seconds: None)


@pytest.fixture
def lifecycle(proxmox):
    return ResourceLifecycle(proxmox, ClusterOracle(proxmox), 'pve1', task_timeout=20)


def test_snapshot_normalizes_cluster_resources(proxmox) -> None:
    proxmox.cluster.resources.get.return_value = [
        resource(100, template=1),
        resource(101, node='pve2', status='running'),
        resource(200, kind='lxc'),
        {'id': 'storage/pve1/local', 'type': 'storage'},
    ]
    vms = ClusterOracle(proxmox).snapshot()

    proxmox.cluster.resources.get.assert_called_with(type='vm')
    assert sorted(vms) == [100, 101, 200]
    assert vms[100]['template'] is True
    assert vms[101] == {'vmid': 101, 'name': 'vm101', 'node': 'pve2', 'status': 'running',
                        'template': False, 'type': 'qemu'}
    assert vms[200]['type'] == 'lxc'


def test_oracle_owner_and_exists(proxmox) -> None:
    proxmox.cluster.resources.get.return_value = [resource(101, node='pve2')]
    oracle = ClusterOracle(proxmox)
    assert oracle.exists(101)
    assert not oracle.exists(102)
    assert oracle.owner_of(101) == 'pve2'
    assert oracle.owner_of(102) is None


def test_owner_from_error() -> None:
    error = ResourceException(500, "Internal Server Error",
                              "unable to create VM 100 - VM 100 already exists on node 'pve3'")
    assert owner_from_error(error) == 'pve3'
    assert owner_from_error(Exception("storage full")) is None


def test_is_upid() -> None:
    assert is_upid(UPID)
    assert not is_upid(None)
    assert not is_upid({'data': UPID})


def test_wait_for_task_ok(proxmox) -> None:
    proxmox.nodes.return_value.tasks.return_value.status.get.side_effect = [
        {'status': 'running'},
        {'status': 'stopped', 'exitstatus': 'OK'},
    ]
    assert wait_for_task(proxmox, 'pve1', UPID, "Create VM 100")


def test_wait_for_task_failed_exit(proxmox) -> None:
    proxmox.nodes.return_value.tasks.return_value.status.get.return_value = {
        'status': 'stopped', 'exitstatus': 'command failed'}
    assert not wait_for_task(proxmox, 'pve1', UPID)


def test_wait_for_task_timeout(proxmox) -> None:
    proxmox.nodes.return_value.tasks.return_value.status.get.return_value = {'status': 'running'}
    assert not wait_for_task(proxmox, 'pve1', UPID, max_wait=4, check_interval=2)


def test_wait_for_task_tolerates_unknown_task_at_first(proxmox) -> None:
    proxmox.nodes.return_value.tasks.return_value.status.get.side_effect = [
        ResourceException(404, "Not Found", "no such task"),
        {'status': 'stopped', 'exitstatus': 'OK'},
    ]
    assert wait_for_task(proxmox, 'pve1', UPID)


def test_create_posts_to_own_node(proxmox, lifecycle) -> None:
    assert lifecycle.create(100, {'name': 't100-x', 'memory': 2048}) is True
    proxmox.nodes.assert_called_with('pve1')
    proxmox.nodes.return_value.qemu.post.assert_called_once_with(vmid=100, name='t100-x', memory=2048)


def test_create_waits_for_task(proxmox, lifecycle) -> None:
    api = proxmox.nodes.return_value
    api.qemu.post.return_value = UPID
    api.tasks.return_value.status.get.return_value = {'status': 'stopped', 'exitstatus': 'OK'}
    assert lifecycle.create(100, {'name': 'x'})


def test_create_failed_task_is_structural(proxmox, lifecycle) -> None:
    api = proxmox.nodes.return_value
    api.qemu.post.return_value = UPID
    api.tasks.return_value.status.get.return_value = {'status': 'stopped', 'exitstatus': 'error'}
    with pytest.raises(StructuralFailureError):
        lifecycle.create(100, {'name': 'x'})


def test_create_on_vmid_owned_by_this_node_updates_only(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100, node='pve1')]
    assert lifecycle.create(100, {'name': 'x'}) is False
    proxmox.nodes.return_value.qemu.post.assert_not_called()


def test_create_on_foreign_vmid_raises_before_posting(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100, node='pve2')]
    with pytest.raises(ForeignOwnershipError) as exc:
        lifecycle.create(100, {'name': 'x'})
    assert exc.value.owner == 'pve2'
    proxmox.nodes.return_value.qemu.post.assert_not_called()


def test_create_error_naming_other_node_is_foreign(proxmox, lifecycle) -> None:
    proxmox.nodes.return_value.qemu.post.side_effect = ResourceException(
        500, "Internal Server Error", "unable to create VM 100 - VM 100 already exists on node 'pve2'")
    with pytest.raises(ForeignOwnershipError):
        lifecycle.create(100, {'name': 'x'})


def test_create_other_error_is_structural(proxmox, lifecycle) -> None:
    proxmox.nodes.return_value.qemu.post.side_effect = ResourceException(
        400, "Parameter verification failed", "name: invalid format")
    with pytest.raises(StructuralFailureError) as exc:
        lifecycle.create(100, {'name': 'bad name'})
    assert exc.value.vmid == 100


def test_configure_error_is_structural(proxmox, lifecycle) -> None:
    proxmox.nodes.return_value.qemu.return_value.config.post.side_effect = ResourceException(
        500, "Internal Server Error", "import failed")
    with pytest.raises(StructuralFailureError):
        lifecycle.configure(100, "Disk import", scsi0='local-lvm:0,import-from=local:import/x.img')


def test_query_status(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100)]
    status = proxmox.nodes.return_value.qemu.return_value.status.current.get
    status.return_value = {'status': 'running'}
    assert lifecycle.query_status(100) == 'running'
    status.return_value = {'status': 'paused'}
    assert lifecycle.query_status(100) == 'unknown'


def test_query_status_unknown_vmid(lifecycle) -> None:
    with pytest.raises(NotFoundError):
        lifecycle.query_status(100)


def test_operations_target_owning_node(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(300, node='pve2')]
    assert lifecycle.destroy(300)
    proxmox.nodes.assert_called_with('pve2')


def test_destroy_params(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100)]
    delete = proxmox.nodes.return_value.qemu.return_value.delete
    lifecycle.destroy(100)
    delete.assert_called_with(purge=1)
    lifecycle.destroy(100, skiplock=True)
    delete.assert_called_with(purge=1, skiplock=1)


def test_destroy_failure_returns_false(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100)]
    proxmox.nodes.return_value.qemu.return_value.delete.side_effect = ResourceException(
        500, "Internal Server Error", "VM is locked (backup)")
    assert lifecycle.destroy(100) is False


def test_force_stop_params(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100)]
    stop = proxmox.nodes.return_value.qemu.return_value.status.stop.post
    lifecycle.force_stop(100, timeout=10)
    stop.assert_called_with(timeout=10)
    lifecycle.force_stop(100, skiplock=True)
    stop.assert_called_with(skiplock=1)


def test_shutdown_passes_timeout(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100)]
    assert lifecycle.shutdown(100, timeout=60)
    proxmox.nodes.return_value.qemu.return_value.status.shutdown.post.assert_called_once_with(timeout=60)


def test_is_template(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100, template=1), resource(101)]
    assert lifecycle.is_template(100)
    assert not lifecycle.is_template(101)
    assert not lifecycle.is_template(102)


def test_promote_to_template(proxmox, lifecycle) -> None:
    lifecycle.promote_to_template(100)
    proxmox.nodes.return_value.qemu.return_value.template.post.assert_called_once_with()


def test_create_on_local_container_is_structural(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100, node='pve1', kind='lxc')]
    with pytest.raises(StructuralFailureError):
        lifecycle.create(100, {'name': 'x'})
    proxmox.nodes.return_value.qemu.post.assert_not_called()


def test_get_config_error_is_structural(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100)]
    proxmox.nodes.return_value.qemu.return_value.config.get.side_effect = ResourceException(
        500, "Internal Server Error", "Configuration file 'nodes/pve1/qemu-server/100.conf' does not exist")
    with pytest.raises(StructuralFailureError):
        lifecycle.get_config(100)


def test_template_on_other_node_is_not_ours(proxmox, lifecycle) -> None:
    proxmox.cluster.resources.get.return_value = [resource(100, node='pve2', template=1)]
    assert not lifecycle.is_template(100)
