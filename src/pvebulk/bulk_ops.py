"""
Range operations: delete or stop every VM/template from a base VMID upwards

Each operation scans at most max_check VMIDs starting at base. VMIDs that
do not exist are skipped quietly; containers are never touched.
"""

from typing import Callable, Dict

from pvebulk.lifecycle import ClusterOracle, ResourceLifecycle
from pvebulk.pve_utils import logger, NotFoundError


def _kind(vm: Dict) -> str:
    return 'TEMPLATE' if vm['template'] else 'VM'


def _run_range(oracle: ClusterOracle, base: int, max_check: int, count: int,
               action: Callable[[int, Dict], bool], count_found: bool) -> Dict[str, int]:
    """
    Apply action to every qemu VMID in base..base+max_check-1

    Args:
        count: stop after this many (0 = unlimited); counts examined VMs if
               count_found, otherwise successful actions
        action: callable(vmid, vm_info) -> True if acted on

    Returns:
        {'found': n, 'acted': n, 'skipped': n}
    """
    summary = {'found': 0, 'acted': 0, 'skipped': 0}
    vms = oracle.snapshot()

    logger.info(f"→ Scanning for VMs starting from VMID {base}...")

    for vmid in range(base, base + max_check):
        limit_on = summary['found'] if count_found else summary['acted']
        if count and limit_on >= count:
            logger.info(f"→ Reached count limit ({count}), stopping.")
            break

        vm = vms.get(vmid)
        if not vm or vm['type'] != 'qemu':
            continue

        summary['found'] += 1
        try:
            acted = action(vmid, vm)
        except NotFoundError:
            # Removed by someone else since the scan
            logger.info(f"  VMID {vmid} disappeared, skipping")
            acted = False

        if acted:
            summary['acted'] += 1
        else:
            summary['skipped'] += 1

    return summary


def cleanup_templates(lifecycle: ResourceLifecycle, oracle: ClusterOracle, base: int,
                      count: int = 0, dry_run: bool = False, max_check: int = 100) -> Dict[str, int]:
    """
    Delete templates from base upwards; normal VMs are left alone

    Returns:
        {'found': n, 'acted': n, 'skipped': n} where acted = templates deleted
    """
    def delete_template(vmid: int, vm: Dict) -> bool:
        if not vm['template']:
            logger.info(f"  ✗ VMID {vmid}: not a template, skipping (may be a normal VM)")
            return False
        if dry_run:
            logger.info(f"  [DRY-RUN] Would delete VMID {vmid} ({vm['name']})")
            return True
        logger.info(f"  Deleting template VMID {vmid} ({vm['name']})...")
        if lifecycle.destroy(vmid):
            logger.info(f"  ✓ Successfully deleted VMID {vmid}")
            return True
        logger.info(f"  ✗ Failed to delete VMID {vmid}")
        return False

    return _run_range(oracle, base, max_check, count, delete_template, count_found=False)


def cleanup_vms(lifecycle: ResourceLifecycle, oracle: ClusterOracle, base: int,
                count: int = 0, include_templates: bool = False, dry_run: bool = False,
                max_check: int = 1000, stop_timeout: int = 10) -> Dict[str, int]:
    """
    Delete VMs from base upwards, stopping running ones first

    Templates are kept unless include_templates is set.

    Returns:
        {'found': n, 'acted': n, 'skipped': n} where acted = VMs deleted
    """
    def delete_vm(vmid: int, vm: Dict) -> bool:
        if vm['template'] and not include_templates:
            return False

        kind = _kind(vm)
        status = lifecycle.query_status(vmid)

        if dry_run:
            logger.info(f"  [DRY-RUN] Would delete {kind} VMID {vmid} ({vm['name']}) [status: {status}]")
            return True

        if status == 'running':
            logger.info(f"  Stopping running {kind} VMID {vmid} ({vm['name']})...")
            if not lifecycle.force_stop(vmid, timeout=stop_timeout):
                lifecycle.force_stop(vmid, skiplock=True)

        logger.info(f"  Deleting {kind} VMID {vmid} ({vm['name']})...")
        if lifecycle.destroy(vmid, skiplock=True):
            logger.info(f"  ✓ Successfully deleted VMID {vmid}")
            return True
        logger.info(f"  ✗ Failed to delete VMID {vmid}")
        return False

    return _run_range(oracle, base, max_check, count, delete_vm, count_found=False)


def stop_vms(lifecycle: ResourceLifecycle, oracle: ClusterOracle, base: int,
             count: int = 0, include_templates: bool = False, dry_run: bool = False,
             max_check: int = 1000, shutdown_timeout: int = 60,
             hard_timeout: int = 10) -> Dict[str, int]:
    """
    Stop running VMs from base upwards: guest shutdown first, then hard stop

    Returns:
        {'found': n, 'acted': n, 'skipped': n} where acted = VMs now stopped
    """
    def stop_vm(vmid: int, vm: Dict) -> bool:
        if vm['template'] and not include_templates:
            return False

        kind = _kind(vm)
        status = lifecycle.query_status(vmid)
        if status != 'running':
            logger.info(f"  Skipping {kind} VMID {vmid} ({vm['name']}) [status: {status}]")
            return True

        if dry_run:
            logger.info(f"  [DRY-RUN] Would stop {kind} VMID {vmid} ({vm['name']}) [status: {status}]")
            return True

        logger.info(f"  Requesting shutdown for {kind} VMID {vmid} ({vm['name']})...")
        if not lifecycle.shutdown(vmid, timeout=shutdown_timeout):
            logger.info(f"  Shutdown failed or timed out for VMID {vmid}, will try hard stop...")

        if lifecycle.query_status(vmid) == 'running':
            logger.info(f"  Forcing stop for {kind} VMID {vmid} ({vm['name']})...")
            if not lifecycle.force_stop(vmid, timeout=hard_timeout):
                logger.info(f"  Stop with timeout failed for VMID {vmid}, trying skiplock...")
                lifecycle.force_stop(vmid, skiplock=True)

        final = lifecycle.query_status(vmid)
        if final == 'stopped':
            logger.info(f"  ✓ Successfully stopped VMID {vmid}")
            return True
        logger.info(f"  ✗ Failed to stop VMID {vmid} (status: {final})")
        return False

    return _run_range(oracle, base, max_check, count, stop_vm, count_found=True)


def soft_stop_vms(lifecycle: ResourceLifecycle, oracle: ClusterOracle, base: int,
                  count: int = 0, include_templates: bool = False, dry_run: bool = False,
                  max_check: int = 1000, shutdown_timeout: int = 60) -> Dict[str, int]:
    """
    Stop running VMs from base upwards: guest shutdown, plain stop if that fails

    Returns:
        {'found': n, 'acted': n, 'skipped': n} where acted = VMs now stopped
    """
    def soft_stop_vm(vmid: int, vm: Dict) -> bool:
        if vm['template'] and not include_templates:
            return False

        kind = _kind(vm)
        status = lifecycle.query_status(vmid)
        if status != 'running':
            logger.info(f"  Skipping {kind} VMID {vmid} ({vm['name']}) [status: {status}]")
            return True

        if dry_run:
            logger.info(f"  [DRY-RUN] Would soft stop {kind} VMID {vmid} ({vm['name']}) [status: {status}]")
            return True

        logger.info(f"  Soft stopping {kind} VMID {vmid} ({vm['name']})...")
        if not lifecycle.shutdown(vmid, timeout=shutdown_timeout):
            logger.info("    Shutdown timeout/failed, falling back to stop...")
            lifecycle.force_stop(vmid)

        final = lifecycle.query_status(vmid)
        if final == 'stopped':
            logger.info(f"  ✓ Successfully stopped VMID {vmid}")
            return True
        logger.info(f"  ✗ Failed to stop VMID {vmid} (status: {final})")
        return False

    return _run_range(oracle, base, max_check, count, soft_stop_vm, count_found=True)
