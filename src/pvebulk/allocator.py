"""
Contiguous VMID block allocation

Finds a stride-aligned base such that block_size consecutive VMIDs are
unused anywhere in the cluster, skipping bases that an earlier attempt in
the same session rejected.

Nothing here holds a lock. A block reported free can be taken by another
node before the caller creates anything in it, and two allocators on the
same host share the marker directory without coordination. The first
race surfaces as a create failure that ProvisionSession classifies; the
second requires sessions on one host to run one at a time.
"""

from pathlib import Path
from typing import Iterator, Optional, Set

from pvebulk.pve_utils import logger


class BlacklistStore:
    """Bases rejected during the current provisioning session"""

    def mark(self, base: int):
        raise NotImplementedError

    def is_marked(self, base: int) -> bool:
        raise NotImplementedError

    def reset(self):
        raise NotImplementedError

    def marked(self) -> Set[int]:
        raise NotImplementedError


class MemoryBlacklistStore(BlacklistStore):
    """Process-local blacklist, used by tests and dry runs"""

    def __init__(self):
        self._bases: Set[int] = set()

    def mark(self, base: int):
        self._bases.add(base)

    def is_marked(self, base: int) -> bool:
        return base in self._bases

    def reset(self):
        self._bases.clear()

    def marked(self) -> Set[int]:
        return set(self._bases)


class FileBlacklistStore(BlacklistStore):
    """
    One marker file per rejected base in a host directory

    Markers survive the process so a retry started as a fresh invocation
    still sees them. Only the file's existence matters.
    """

    PREFIX = '.vmid_base_'
    SUFFIX = '_occupied'

    def __init__(self, directory: str = '/tmp'):
        self.directory = Path(directory)

    def _path(self, base: int) -> Path:
        return self.directory / f"{self.PREFIX}{base}{self.SUFFIX}"

    def mark(self, base: int):
        path = self._path(base)
        self.directory.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
        # Markers may be written by root and read by an unprivileged dry run
        try:
            path.chmod(0o666)
        except PermissionError as e:
            logger.debug(f"Could not chmod {path}: {e}")
        logger.debug(f"Blacklist marker written: {path}")

    def is_marked(self, base: int) -> bool:
        return self._path(base).is_file()

    def reset(self):
        if not self.directory.is_dir():
            return
        for path in self.directory.glob(f"{self.PREFIX}*{self.SUFFIX}"):
            path.unlink(missing_ok=True)

    def marked(self) -> Set[int]:
        bases = set()
        if not self.directory.is_dir():
            return bases
        for path in self.directory.glob(f"{self.PREFIX}*{self.SUFFIX}"):
            value = path.name[len(self.PREFIX):-len(self.SUFFIX)]
            if value.isdigit():
                bases.add(int(value))
        return bases


class BlockAllocator:
    """
    Lowest-first scan for a free, non-blacklisted block of VMIDs

    Args:
        oracle: anything with exists(vmid) -> bool answering for the whole cluster
        blacklist: BlacklistStore shared with the provisioning loop
        min_id: lowest VMID a block may use
        max_id: highest VMID a block may use
        stride: spacing between candidate bases
    """

    def __init__(self, oracle, blacklist: BlacklistStore,
                 min_id: int = 100, max_id: int = 99999, stride: int = 100):
        if min_id < 1 or min_id > max_id:
            raise ValueError(f"Invalid VMID range {min_id}-{max_id}")
        if stride < 1:
            raise ValueError("stride must be >= 1")
        self.oracle = oracle
        self.blacklist = blacklist
        self.min_id = min_id
        self.max_id = max_id
        self.stride = stride

    def fits_range(self, base: int, block_size: int) -> bool:
        """Check that base..base+block_size-1 lies inside min_id..max_id"""
        return block_size >= 1 and base >= self.min_id and base + block_size - 1 <= self.max_id

    def is_block_free(self, base: int, block_size: int) -> bool:
        """
        Check that base..base+block_size-1 are all unused in the cluster

        Stops at the first occupied VMID. A block running past max_id is
        never free.
        """
        for offset in range(block_size):
            vmid = base + offset
            if vmid > self.max_id:
                logger.debug(f"VMID {vmid} > max {self.max_id}, base {base} is invalid")
                return False
            if self.oracle.exists(vmid):
                logger.debug(f"VMID {vmid} is in use, base {base} not available")
                return False
        return True

    def candidate_bases(self, block_size: int) -> Iterator[int]:
        """Yield stride-aligned bases whose whole block fits in range, lowest first"""
        if block_size < 1:
            raise ValueError("block_size must be >= 1")
        first = -(-self.min_id // self.stride) * self.stride
        last = self.max_id - block_size + 1
        return iter(range(first, last + 1, self.stride))

    def pick_base(self, block_size: int) -> Optional[int]:
        """
        Find the lowest free, non-blacklisted base for block_size VMIDs

        Args:
            block_size: number of consecutive VMIDs needed

        Returns:
            Base VMID, or None if no candidate in range is usable
        """
        candidates = self.candidate_bases(block_size)
        logger.debug(f"pick_base: range={self.min_id}-{self.max_id}, stride={self.stride}, "
                     f"block_size={block_size}")

        found_candidate = False
        for base in candidates:
            found_candidate = True
            if self.blacklist.is_marked(base):
                logger.debug(f"Base {base} is blacklisted, skipping")
                continue
            if self.is_block_free(base, block_size):
                logger.debug(f"Base {base} selected")
                return base

        if not found_candidate:
            logger.debug(f"No possible base in {self.min_id}-{self.max_id} for {block_size} VMIDs")
        else:
            logger.debug(f"No free base found in {self.min_id}-{self.max_id}")
        return None
