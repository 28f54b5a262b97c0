"""Automatic VMID range commands"""

import sys

from pvebulk.nextid import (
    backup_datacenter_cfg,
    get_next_free_vmid,
    get_nextid_range,
    set_nextid_range,
    validate_range,
    verify_nextid,
)
from pvebulk.pve_utils import (
    PveConfig,
    connect_proxmox,
    non_negative_int,
    logger,
    PveError,
    PveConnectionError,
)


def setup_set_parser(parser):
    """Setup argument parser for nextid set command"""
    parser.add_argument('--lower', type=non_negative_int,
                        help='First automatic VMID (default: from config, 100000)')
    parser.add_argument('--upper', type=non_negative_int,
                        help='Last automatic VMID (default: from config, 999999999)')


def _connect(args):
    try:
        config = PveConfig(args.config)
    except FileNotFoundError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    try:
        proxmox = connect_proxmox(config)
    except PveConnectionError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info("✓ Connected to Proxmox")
    return config, proxmox


def handle_set(args):
    """Handle nextid set command"""
    config, proxmox = _connect(args)

    default_lower, default_upper = config.get_nextid_range()
    lower = args.lower if args.lower is not None else default_lower
    upper = args.upper if args.upper is not None else default_upper
    try:
        validate_range(lower, upper)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"→ Configuring next-id VMID range: {lower} - {upper} (automatic assignment)")

    backup = backup_datacenter_cfg(config.get_datacenter_cfg())
    if backup:
        logger.info(f"→ Backed up datacenter.cfg to {backup}")
    else:
        logger.info("→ datacenter.cfg not readable here, no backup taken")

    try:
        set_nextid_range(proxmox, lower, upper)
    except PveError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info("✓ next-id written to cluster options")

    stored_lower, stored_upper = get_nextid_range(proxmox)
    logger.info(f"→ Current next-id: lower={stored_lower}, upper={stored_upper}")

    ok, next_vmid = verify_nextid(proxmox, lower)
    if ok:
        logger.info(f"✓ Next automatic VMID: {next_vmid}")
    else:
        logger.warning(f"⚠️  Unexpected next automatic VMID: {next_vmid}")
        logger.warning("   (Manual VMIDs still work: qm create <vmid> --name <name>)")

    print(f"\n{'=' * 80}")
    print("Summary:")
    print(f"  Templates / manual VMIDs: below {lower} (assigned by hand)")
    print(f"  Normal VMs:               {lower} - {upper} (automatic)")
    print("  Applies to every node in the cluster; existing VMIDs are not changed.")
    print(f"{'=' * 80}")


def handle_show(args):
    """Handle nextid show command"""
    config, proxmox = _connect(args)
    lower, upper = get_nextid_range(proxmox)

    print(f"\n{'=' * 80}")
    if lower is None and upper is None:
        print("  next-id: not configured (Proxmox default)")
    else:
        print(f"  next-id: lower={lower}, upper={upper}")
    print(f"  Next automatic VMID: {get_next_free_vmid(proxmox)}")
    print(f"{'=' * 80}")
