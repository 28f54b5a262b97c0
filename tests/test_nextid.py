import pytest
from proxmoxer.core import ResourceException

from pvebulk.nextid import (
    backup_datacenter_cfg,
    get_next_free_vmid,
    get_nextid_range,
    parse_nextid,
    set_nextid_range,
    validate_range,
    verify_nextid,
)
from pvebulk.pve_utils import PveError


@pytest.mark.parametrize("value,expected", [
    ("lower=100000,upper=999999999", (100000, 999999999)),
    ({'lower': '5000', 'upper': '6000'}, (5000, 6000)),
    ("lower=100000", (100000, None)),
    (None, (None, None)),
    ("", (None, None)),
])
def test_parse_nextid(value, expected) -> None:
    assert parse_nextid(value) == expected


def test_validate_range() -> None:
    validate_range(100000, 999999999)
    with pytest.raises(ValueError):
        validate_range(5000, 5000)
    with pytest.raises(ValueError):
        validate_range(0, 10)


def test_set_nextid_range_writes_cluster_option(proxmox) -> None:
    set_nextid_range(proxmox, 100000, 999999999)
    proxmox.cluster.options.put.assert_called_once_with(**{'next-id': 'lower=100000,upper=999999999'})


def test_set_nextid_range_rejects_inverted_range(proxmox) -> None:
    with pytest.raises(ValueError):
        set_nextid_range(proxmox, 999, 100)
    proxmox.cluster.options.put.assert_not_called()


def test_set_nextid_range_api_error(proxmox) -> None:
    proxmox.cluster.options.put.side_effect = ResourceException(403, "Forbidden", "Permission check failed")
    with pytest.raises(PveError):
        set_nextid_range(proxmox)


def test_get_nextid_range(proxmox) -> None:
    proxmox.cluster.options.get.return_value = {'keyboard': 'en-us', 'next-id': 'lower=100000,upper=999999999'}
    assert get_nextid_range(proxmox) == (100000, 999999999)
    proxmox.cluster.options.get.return_value = {}
    assert get_nextid_range(proxmox) == (None, None)


def test_verify_nextid(proxmox) -> None:
    proxmox.cluster.nextid.get.return_value = '100000'
    assert verify_nextid(proxmox, 100000) == (True, 100000)
    proxmox.cluster.nextid.get.return_value = 104
    assert verify_nextid(proxmox, 100000) == (False, 104)


def test_next_free_vmid_unusable_answer(proxmox) -> None:
    proxmox.cluster.nextid.get.side_effect = ResourceException(500, "Internal Server Error", "no free id")
    assert get_next_free_vmid(proxmox) is None
    assert verify_nextid(proxmox, 100000) == (False, None)


def test_backup_datacenter_cfg(tmp_path) -> None:
    cfg = tmp_path / 'datacenter.cfg'
    cfg.write_text('keyboard: en-us\n')
    backup = backup_datacenter_cfg(str(cfg))
    assert backup.startswith(str(cfg) + '.backup.')
    with open(backup) as f:
        assert f.read() == 'keyboard: en-us\n'


def test_backup_missing_datacenter_cfg(tmp_path) -> None:
    assert backup_datacenter_cfg(str(tmp_path / 'datacenter.cfg')) is None
