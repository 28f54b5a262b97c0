"""
Template provisioning into a contiguous VMID block

ProvisionSession drives the allocator: pick a base, create one template
per VMID from there, and on a structural failure blacklist the base and
try the next one, up to max_attempts.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from pvebulk.allocator import BlockAllocator
from pvebulk.lifecycle import ResourceLifecycle
from pvebulk.pve_utils import (
    logger,
    PveError,
    ForeignOwnershipError,
    ExhaustedError,
    TemplateSelectionError,
)

CREATED = 'created'
EXISTING = 'existing'
SKIPPED_FOREIGN = 'skipped-foreign'


def build_template_list(catalog: List[Dict], selection: Optional[str] = None,
                        order: Optional[str] = None) -> List[Dict]:
    """
    Pick the templates to install, in install order

    Args:
        catalog: full template catalog
        selection: comma list of catalog indices or template names
        order: comma list of catalog indices; wins over selection

    Returns:
        Selected template dicts

    Raises:
        TemplateSelectionError: if nothing valid was selected
    """
    result = []

    if order:
        logger.info(f"→ Template install order: {order}")
        for idx in (part.strip() for part in order.split(',')):
            if idx.isdigit() and int(idx) < len(catalog):
                result.append(catalog[int(idx)])
            else:
                logger.warning(f"Invalid index '{idx}', skipping")
    elif selection:
        logger.info(f"→ Selected templates: {selection}")
        by_name = {t['name']: t for t in catalog}
        for sel in (part.strip() for part in selection.split(',')):
            if sel.isdigit():
                if int(sel) < len(catalog):
                    result.append(catalog[int(sel)])
                else:
                    logger.warning(f"Invalid index '{sel}', skipping")
            elif sel in by_name:
                result.append(by_name[sel])
            else:
                logger.warning(f"No template named '{sel}', skipping")
    else:
        result = list(catalog)

    if not result:
        raise TemplateSelectionError("No templates selected to install")
    return result


def image_volid(image_storage: str, template: Dict) -> str:
    return f"{image_storage}:import/{template['image']}"


class TemplateProvisioner:
    """
    Create one cloud template at a given VMID

    Steps: create the VM, import the cloud image as scsi0, attach the
    cloud-init drive, boot from scsi0, enable the guest agent, convert to
    template. A VMID that already holds a template is left alone.
    """

    def __init__(self, lifecycle: ResourceLifecycle, image_storage: str = 'local'):
        self.lifecycle = lifecycle
        self.image_storage = image_storage

    def missing_images(self, templates: List[Dict]) -> List[Dict]:
        """Templates whose cloud image is not present in the image storage"""
        return [t for t in templates
                if not self.lifecycle.storage_has_volume(self.image_storage, image_volid(self.image_storage, t))]

    def __call__(self, vmid: int, template: Dict) -> str:
        name = f"t{vmid}-{template['name']}"
        logger.info(f"--- checking template: {vmid} ({name}) ---")

        if self.lifecycle.is_template(vmid):
            logger.info(f"✓ Template already exists for VMID {vmid}, skipping")
            return EXISTING

        storage = template['storage']
        created = self.lifecycle.create(vmid, {
            'name': name,
            'memory': template['memory'],
            'net0': f"virtio,bridge={template['bridge']}",
        })

        needs_disk = created or 'scsi0' not in self.lifecycle.get_config(vmid)
        if needs_disk:
            source = image_volid(self.image_storage, template)
            logger.info(f"→ Importing disk {source} -> VM {vmid} on storage {storage}")
            self.lifecycle.configure(vmid, "Disk import",
                                     scsihw='virtio-scsi-pci',
                                     scsi0=f"{storage}:0,import-from={source}")
        else:
            logger.info(f"→ Disk already attached to VM {vmid}, skipping import")

        logger.info(f"→ Attaching cloud-init drive, boot order and guest agent on VM {vmid}")
        self.lifecycle.configure(vmid, "Cloud-init setup",
                                 ide2=f"{storage}:cloudinit",
                                 boot='order=scsi0',
                                 agent='enabled=1')

        self.lifecycle.promote_to_template(vmid)
        logger.info(f"✓ Done: {vmid} ({template['name']})")
        return CREATED


class State(Enum):
    SCANNING = 'scanning'
    ATTEMPTING = 'attempting'
    BASE_REJECTED = 'base-rejected'
    SUCCESS = 'success'
    FATAL = 'fatal'


@dataclass
class ProvisionResult:
    state: State
    base: Optional[int] = None
    outcomes: Dict[int, str] = field(default_factory=dict)
    attempts: int = 0
    rejected: List[int] = field(default_factory=list)

    @property
    def created(self) -> List[int]:
        return [vmid for vmid, outcome in self.outcomes.items() if outcome == CREATED]

    @property
    def skipped(self) -> List[int]:
        return [vmid for vmid, outcome in self.outcomes.items() if outcome == SKIPPED_FOREIGN]


class ProvisionSession:
    """
    Allocate a block and materialize one resource per VMID, retrying on rejection

    Args:
        allocator: BlockAllocator whose blacklist is reset when run() starts
        materialize: callable(vmid, item) -> outcome; raises ForeignOwnershipError
                     or another PveError on failure
        max_attempts: rejected bases tolerated before giving up
        foreign_policy: 'skip' leaves a foreign-owned VMID out of the block,
                        'reject' abandons the whole base
        retry_delay: seconds to sleep before rescanning
        base_override: base used for the first attempt instead of scanning
    """

    def __init__(self, allocator: BlockAllocator, materialize: Callable[[int, object], str],
                 max_attempts: int = 5, foreign_policy: str = 'skip', retry_delay: float = 2.0,
                 base_override: Optional[int] = None, sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if foreign_policy not in ('skip', 'reject'):
            raise ValueError(f"Unknown foreign policy '{foreign_policy}'")
        self.allocator = allocator
        self.materialize = materialize
        self.max_attempts = max_attempts
        self.foreign_policy = foreign_policy
        self.retry_delay = retry_delay
        self.base_override = base_override
        self.sleep = sleep

    def _scan(self, block_size: int, attempts: int) -> Optional[int]:
        if self.base_override is not None and attempts == 0:
            if not self.allocator.fits_range(self.base_override, block_size):
                raise ValueError(f"Base {self.base_override} does not fit {block_size} VMIDs in "
                                 f"{self.allocator.min_id}-{self.allocator.max_id}")
            logger.info(f"→ Using requested VMID base {self.base_override}")
            return self.base_override
        return self.allocator.pick_base(block_size)

    def _attempt(self, base: int, items: List, outcomes: Dict[int, str]) -> State:
        for offset, item in enumerate(items):
            vmid = base + offset
            try:
                outcomes[vmid] = self.materialize(vmid, item)
            except ForeignOwnershipError as e:
                if self.foreign_policy == 'skip':
                    logger.info(f"→ Skipping VMID {vmid} (belongs to node '{e.owner}')")
                    outcomes[vmid] = SKIPPED_FOREIGN
                    continue
                logger.info(f"→ VMID {vmid} belongs to node '{e.owner}', rejecting base {base}")
                return State.BASE_REJECTED
            except PveError as e:
                logger.info(f"→ Creation failed for VMID {vmid} ({e}), marking base {base} as occupied")
                return State.BASE_REJECTED
        return State.SUCCESS

    def run(self, items: List) -> ProvisionResult:
        """
        Provision all items into one block

        Returns:
            ProvisionResult in state SUCCESS

        Raises:
            ExhaustedError: no usable base in range, or max_attempts bases rejected
        """
        block_size = len(items)
        if block_size < 1:
            raise ValueError("Nothing to provision")

        blacklist = self.allocator.blacklist
        # Fresh session: forget bases rejected by earlier runs
        blacklist.reset()

        result = ProvisionResult(state=State.SCANNING)
        reason = ''

        while True:
            if result.state is State.SCANNING:
                logger.info(f"=== Attempt {result.attempts + 1} of {self.max_attempts} ===")
                marked = sorted(blacklist.marked())
                logger.debug(f"Blacklisted bases: {marked if marked else '(none)'}")

                base = self._scan(block_size, result.attempts)
                if base is None:
                    reason = (f"No free VMID base for {block_size} VMIDs in "
                              f"{self.allocator.min_id}-{self.allocator.max_id}")
                    result.state = State.FATAL
                    continue
                logger.info(f"→ Selected VMID base: {base}")
                result.base = base
                result.outcomes = {}
                result.state = State.ATTEMPTING

            elif result.state is State.ATTEMPTING:
                result.state = self._attempt(result.base, items, result.outcomes)

            elif result.state is State.BASE_REJECTED:
                blacklist.mark(result.base)
                result.rejected.append(result.base)
                result.attempts += 1
                if result.attempts >= self.max_attempts:
                    reason = f"Could not find a usable VMID base after {self.max_attempts} attempts"
                    result.state = State.FATAL
                    continue
                logger.info(f"→ Base {result.base} failed, retrying with the next free base "
                            f"in {self.retry_delay}s...")
                self.sleep(self.retry_delay)
                result.state = State.SCANNING

            elif result.state is State.SUCCESS:
                return result

            else:
                raise ExhaustedError(reason, result)
