"""
Cluster occupancy and VM lifecycle over the Proxmox API

ClusterOracle answers "is this VMID taken, and by which node" from the
cluster resource list, which every member sees identically.
ResourceLifecycle wraps the qemu endpoints the bulk commands need and
translates proxmoxer errors into the error types the provisioning loop
classifies.
"""

import re
import time
from typing import Dict, Optional

from proxmoxer.core import ResourceException

from pvebulk.pve_utils import (
    logger,
    NotFoundError,
    ForeignOwnershipError,
    StructuralFailureError,
)

# e.g. "unable to create VM 100 - VM 100 already exists on node 'pve2'"
_OWNER_RE = re.compile(r"already exists on node '([^']+)'")


def owner_from_error(error: Exception) -> Optional[str]:
    """Extract the owning node from a Proxmox 'already exists' error, if present"""
    match = _OWNER_RE.search(str(error))
    return match.group(1) if match else None


def is_upid(result) -> bool:
    return isinstance(result, str) and result.startswith('UPID:')


def wait_for_task(proxmox, node: str, upid: str, task_description: str = "task",
                  max_wait: int = 600, check_interval: int = 2) -> bool:
    """
    Wait for a Proxmox task (identified by UPID) to complete

    Args:
        proxmox: ProxmoxAPI instance
        node: Node name
        upid: Task UPID
        task_description: Description of the task
        max_wait: Maximum time to wait in seconds

    Returns:
        True if task completed successfully, False if failed or timeout
    """
    elapsed = 0

    while elapsed <= max_wait:
        try:
            task_status = proxmox.nodes(node).tasks(upid).status.get()
        except ResourceException as e:
            # Freshly started tasks are not always visible yet
            logger.debug(f"Task status for {upid} not available: {e}")
            task_status = {}

        if task_status.get('status') == 'stopped':
            exitstatus = task_status.get('exitstatus', '')
            if exitstatus == 'OK':
                logger.debug(f"{task_description} completed")
                return True
            logger.info(f"→ {task_description} failed with exit status: {exitstatus}")
            return False

        if elapsed % 10 == 0 and elapsed > 0:
            logger.info(f"→ {task_description} in progress... ({elapsed}s elapsed)")

        time.sleep(check_interval)
        elapsed += check_interval

    logger.error(f"{task_description} timed out after {max_wait} seconds")
    return False


class ClusterOracle:
    """Cluster-wide VMID occupancy, read from /cluster/resources"""

    def __init__(self, proxmox):
        self.proxmox = proxmox

    def snapshot(self) -> Dict[int, Dict]:
        """
        Get every VM and container in the cluster

        Returns:
            Dict of vmid -> {'vmid', 'name', 'node', 'status', 'template', 'type'}
        """
        vms = {}
        for res in self.proxmox.cluster.resources.get(type='vm'):
            if 'vmid' not in res:
                continue
            vmid = int(res['vmid'])
            vms[vmid] = {
                'vmid': vmid,
                'name': res.get('name', 'unknown'),
                'node': res.get('node', ''),
                'status': res.get('status', 'unknown'),
                'template': bool(int(res.get('template', 0) or 0)),
                'type': res.get('type', 'qemu'),
            }
        return vms

    def lookup(self, vmid: int) -> Optional[Dict]:
        return self.snapshot().get(vmid)

    def exists(self, vmid: int) -> bool:
        return self.lookup(vmid) is not None

    def owner_of(self, vmid: int) -> Optional[str]:
        vm = self.lookup(vmid)
        return vm['node'] if vm else None


class ResourceLifecycle:
    """
    qemu lifecycle operations for one cluster

    Args:
        proxmox: ProxmoxAPI instance
        oracle: ClusterOracle for the same cluster
        node: node new VMs are created on
        task_timeout: seconds to wait for long-running tasks such as disk import
    """

    def __init__(self, proxmox, oracle: ClusterOracle, node: str, task_timeout: int = 600):
        self.proxmox = proxmox
        self.oracle = oracle
        self.node = node
        self.task_timeout = task_timeout

    def _node_of(self, vmid: int) -> str:
        node = self.oracle.owner_of(vmid)
        if not node:
            raise NotFoundError(vmid)
        return node

    def _wait(self, node: str, result, description: str, max_wait: Optional[int] = None) -> bool:
        if not is_upid(result):
            return True
        return wait_for_task(self.proxmox, node, result, description,
                             max_wait=self.task_timeout if max_wait is None else max_wait)

    def create(self, vmid: int, spec: Dict) -> bool:
        """
        Create a VM with the given VMID on this node

        Args:
            vmid: VMID to create
            spec: qemu create parameters (name, memory, net0, ...)

        Returns:
            True if the VM was created, False if it already existed on this node

        Raises:
            ForeignOwnershipError: VMID belongs to another node
            StructuralFailureError: VMID holds a local container, or Proxmox refused or failed the create
        """
        existing = self.oracle.lookup(vmid)
        if existing and existing['node'] != self.node:
            raise ForeignOwnershipError(vmid, existing['node'])
        if existing:
            if existing['type'] != 'qemu':
                raise StructuralFailureError(vmid, f"VMID is taken by a local {existing['type']} resource, not a VM")
            logger.info(f"→ VMID {vmid} already exists on this node, will only update config")
            return False

        logger.info(f"→ Creating VM {vmid} ({spec.get('name', '')}) on node {self.node}")
        try:
            result = self.proxmox.nodes(self.node).qemu.post(vmid=vmid, **spec)
        except ResourceException as e:
            owner = owner_from_error(e)
            if owner and owner != self.node:
                raise ForeignOwnershipError(vmid, owner) from e
            raise StructuralFailureError(vmid, f"create failed: {e}") from e

        if not self._wait(self.node, result, f"Create VM {vmid}"):
            raise StructuralFailureError(vmid, "create task did not finish successfully")
        return True

    def configure(self, vmid: int, description: str = "Configure", **params):
        """Apply config params to a VM on this node; long-running changes are awaited"""
        try:
            result = self.proxmox.nodes(self.node).qemu(vmid).config.post(**params)
        except ResourceException as e:
            raise StructuralFailureError(vmid, f"{description.lower()} failed: {e}") from e
        if not self._wait(self.node, result, f"{description} VM {vmid}"):
            raise StructuralFailureError(vmid, f"{description.lower()} task did not finish successfully")

    def get_config(self, vmid: int) -> Dict:
        node = self._node_of(vmid)
        try:
            return self.proxmox.nodes(node).qemu(vmid).config.get()
        except ResourceException as e:
            raise StructuralFailureError(vmid, f"reading config failed: {e}") from e

    def is_template(self, vmid: int) -> bool:
        """True only for a template owned by this node"""
        vm = self.oracle.lookup(vmid)
        return bool(vm and vm['template'] and vm['node'] == self.node)

    def promote_to_template(self, vmid: int):
        """Convert a VM on this node to a template"""
        logger.info(f"→ Converting VM {vmid} to template")
        try:
            result = self.proxmox.nodes(self.node).qemu(vmid).template.post()
        except ResourceException as e:
            raise StructuralFailureError(vmid, f"template conversion failed: {e}") from e
        if not self._wait(self.node, result, f"Template conversion of VM {vmid}"):
            raise StructuralFailureError(vmid, "template conversion did not finish successfully")

    def query_status(self, vmid: int) -> str:
        """
        Get the run state of a VM

        Returns:
            'running', 'stopped' or 'unknown'

        Raises:
            NotFoundError: VMID does not exist in the cluster
        """
        node = self._node_of(vmid)
        try:
            status = self.proxmox.nodes(node).qemu(vmid).status.current.get()
        except ResourceException as e:
            logger.debug(f"Status query for VM {vmid} failed: {e}")
            return 'unknown'
        state = status.get('status', 'unknown')
        return state if state in ('running', 'stopped') else 'unknown'

    def shutdown(self, vmid: int, timeout: int = 60) -> bool:
        """Request a guest shutdown and wait up to timeout seconds; True if the task succeeded"""
        node = self._node_of(vmid)
        try:
            result = self.proxmox.nodes(node).qemu(vmid).status.shutdown.post(timeout=timeout)
        except ResourceException as e:
            logger.info(f"→ Shutdown request for VM {vmid} failed: {e}")
            return False
        return self._wait(node, result, f"Shutdown of VM {vmid}", max_wait=timeout + 10)

    def force_stop(self, vmid: int, timeout: Optional[int] = None, skiplock: bool = False) -> bool:
        """Hard-stop a VM; True if the stop task succeeded"""
        node = self._node_of(vmid)
        params = {}
        if timeout is not None:
            params['timeout'] = timeout
        if skiplock:
            params['skiplock'] = 1
        try:
            result = self.proxmox.nodes(node).qemu(vmid).status.stop.post(**params)
        except ResourceException as e:
            logger.info(f"→ Stop request for VM {vmid} failed: {e}")
            return False
        return self._wait(node, result, f"Stop of VM {vmid}", max_wait=(timeout or 60) + 10)

    def destroy(self, vmid: int, skiplock: bool = False) -> bool:
        """Destroy a VM and purge it from jobs and configs; True if the task succeeded"""
        node = self._node_of(vmid)
        params = {'purge': 1}
        if skiplock:
            params['skiplock'] = 1
        try:
            result = self.proxmox.nodes(node).qemu(vmid).delete(**params)
        except ResourceException as e:
            logger.error(f"Failed to delete VMID {vmid}: {e}")
            return False
        return self._wait(node, result, f"Destroy VM {vmid}")

    def storage_has_volume(self, storage: str, volid: str) -> bool:
        """Check that a volume exists in a storage as seen from this node"""
        try:
            contents = self.proxmox.nodes(self.node).storage(storage).content.get()
        except ResourceException as e:
            logger.debug(f"Could not list storage {storage}: {e}")
            return False
        return any(item.get('volid') == volid for item in contents)
