"""
Cluster-wide automatic VMID range (datacenter option 'next-id')

Templates live below the range and get their VMIDs by hand through the
block allocator; everything created with an automatic VMID lands inside it.
"""

import os
import shutil
from datetime import datetime
from typing import Optional, Tuple

from proxmoxer.core import ResourceException

from pvebulk.pve_utils import logger, PveError


def validate_range(lower: int, upper: int):
    if lower < 1 or upper < 1:
        raise ValueError("next-id bounds must be positive")
    if lower >= upper:
        raise ValueError(f"next-id lower ({lower}) must be below upper ({upper})")


def parse_nextid(value) -> Tuple[Optional[int], Optional[int]]:
    """
    Parse a next-id option as returned by /cluster/options

    Proxmox returns either a property string ("lower=100000,upper=999999999")
    or an already decoded dict, depending on backend and version.
    """
    if not value:
        return (None, None)
    if isinstance(value, str):
        parts = dict(item.split('=', 1) for item in value.split(',') if '=' in item)
    else:
        parts = value
    lower = parts.get('lower')
    upper = parts.get('upper')
    return (int(lower) if lower is not None else None,
            int(upper) if upper is not None else None)


def backup_datacenter_cfg(path: str = '/etc/pve/datacenter.cfg') -> Optional[str]:
    """
    Copy datacenter.cfg to a timestamped backup next to it

    Returns:
        Backup path, or None when the file is not readable from here
    """
    if not os.path.isfile(path):
        return None
    backup = f"{path}.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}"
    shutil.copy2(path, backup)
    return backup


def get_nextid_range(proxmox) -> Tuple[Optional[int], Optional[int]]:
    options = proxmox.cluster.options.get()
    return parse_nextid(options.get('next-id'))


def set_nextid_range(proxmox, lower: int = 100000, upper: int = 999999999):
    """Store the automatic VMID range in the cluster options"""
    validate_range(lower, upper)
    try:
        proxmox.cluster.options.put(**{'next-id': f"lower={lower},upper={upper}"})
    except ResourceException as e:
        raise PveError(f"Failed to set next-id: {e}") from e


def get_next_free_vmid(proxmox) -> Optional[int]:
    """Ask the cluster which VMID it would assign next; None if the answer is unusable"""
    try:
        value = proxmox.cluster.nextid.get()
    except ResourceException as e:
        logger.info(f"→ /cluster/nextid query failed: {e}")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.info(f"→ /cluster/nextid returned unexpected value: {value}")
        return None


def verify_nextid(proxmox, lower: int) -> Tuple[bool, Optional[int]]:
    """
    Check that automatic allocation now hands out VMIDs inside the range

    Returns:
        (ok, next_vmid)
    """
    next_vmid = get_next_free_vmid(proxmox)
    return (next_vmid is not None and next_vmid >= lower, next_vmid)
