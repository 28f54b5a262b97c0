"""Cloud template commands"""

import socket
import sys

from pvebulk.allocator import BlockAllocator, FileBlacklistStore, MemoryBlacklistStore
from pvebulk.bulk_ops import cleanup_templates
from pvebulk.lifecycle import ClusterOracle, ResourceLifecycle
from pvebulk.provision import (
    ProvisionSession,
    TemplateProvisioner,
    build_template_list,
    image_volid,
    SKIPPED_FOREIGN,
)
from pvebulk.pve_utils import (
    PveConfig,
    connect_proxmox,
    resolve_node,
    load_template_catalog,
    non_negative_int,
    logger,
    PveConnectionError,
    PveNodeError,
    ExhaustedError,
    TemplateSelectionError,
    FOREIGN_POLICIES,
)


def setup_provision_parser(parser):
    """Setup argument parser for template provision command"""
    parser.add_argument('--templates', dest='selection',
                        help='Templates to install: comma list of indices or names (e.g. 0,2 or debian-12-cloud)')
    parser.add_argument('--order',
                        help='Install order as comma list of indices (e.g. 2,0,1); overrides --templates')
    parser.add_argument('--catalog',
                        help='YAML template catalog (default: from config, else built-in)')
    parser.add_argument('--base', type=non_negative_int,
                        help='Try this VMID base first instead of scanning')
    parser.add_argument('--min-vmid', type=non_negative_int,
                        help='Lowest template VMID (default: from config, 100)')
    parser.add_argument('--max-vmid', type=non_negative_int,
                        help='Highest template VMID (default: from config, 99999)')
    parser.add_argument('--stride', type=non_negative_int,
                        help='Spacing between candidate bases (default: from config, 100)')
    parser.add_argument('--max-attempts', type=non_negative_int,
                        help='Bases to try before giving up (default: from config, 5)')
    parser.add_argument('--foreign-policy', choices=FOREIGN_POLICIES,
                        help="What a VMID owned by another node does: 'skip' that VMID or 'reject' the base")
    parser.add_argument('--node',
                        help='Node to create templates on (default: from config or this host)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Only show which base would be used')


def setup_cleanup_parser(parser):
    """Setup argument parser for template cleanup command"""
    parser.add_argument('--base', type=non_negative_int, required=True,
                        help='First VMID to scan (e.g. 100 deletes templates 100, 101, 102...)')
    parser.add_argument('--count', type=non_negative_int, default=0,
                        help='Delete at most this many templates (default: all)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Only show what would be deleted')


def setup_list_parser(parser):
    """Setup argument parser for template list command"""
    parser.add_argument('--catalog',
                        help='YAML template catalog (default: from config, else built-in)')


def _load_config(args) -> PveConfig:
    try:
        return PveConfig(args.config)
    except FileNotFoundError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)


def _connect(config: PveConfig):
    try:
        proxmox = connect_proxmox(config)
    except PveConnectionError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info("✓ Connected to Proxmox")
    return proxmox


def _load_catalog(args, config: PveConfig):
    catalog_file = args.catalog or config.get_catalog_file()
    try:
        catalog = load_template_catalog(catalog_file)
    except (OSError, TemplateSelectionError) as e:
        logger.error(str(e))
        sys.exit(1)
    if not catalog_file:
        # Built-in entries follow the configured defaults
        for template in catalog:
            template['storage'] = config.get_storage()
            template['bridge'] = config.get_bridge()
            template['memory'] = config.get_default_memory()
    return catalog


def handle_list(args):
    """Handle template list command"""
    config = _load_config(args)
    catalog = _load_catalog(args, config)

    print("\n" + "=" * 80)
    print("Available templates:")
    print("=" * 80)
    for idx, template in enumerate(catalog):
        print(f"  [{idx}] {template['name']:<20} {template['image']:<40} {template['memory']} MB")
    print("=" * 80)


def handle_provision(args):
    """Handle template provision command"""
    config = _load_config(args)
    catalog = _load_catalog(args, config)

    try:
        templates = build_template_list(catalog, args.selection, args.order)
    except TemplateSelectionError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"→ Templates to install: {len(templates)}")
    for idx, template in enumerate(templates):
        logger.info(f"→   [{idx}] {template['name']}")

    vmid_min, vmid_max = config.get_vmid_range()
    min_id = args.min_vmid if args.min_vmid is not None else vmid_min
    max_id = args.max_vmid if args.max_vmid is not None else vmid_max
    stride = args.stride if args.stride is not None else config.get_stride()
    max_attempts = args.max_attempts if args.max_attempts is not None else config.get_max_attempts()
    foreign_policy = args.foreign_policy or config.get_foreign_policy()

    proxmox = _connect(config)
    oracle = ClusterOracle(proxmox)

    try:
        node = resolve_node(proxmox, config, args.node,
                            required_memory=max(t['memory'] for t in templates))
    except PveNodeError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"==> Cloud templates provisioning started on node: {node} (host {socket.gethostname()})")

    if args.dry_run:
        try:
            allocator = BlockAllocator(oracle, MemoryBlacklistStore(), min_id, max_id, stride)
        except ValueError as e:
            logger.error(str(e))
            sys.exit(1)
        if args.base is not None:
            base = args.base
            if not allocator.fits_range(base, len(templates)):
                logger.error(f"Base {base} does not fit {len(templates)} VMIDs in {min_id}-{max_id}")
                sys.exit(1)
            if not allocator.is_block_free(base, len(templates)):
                logger.error(f"VMIDs {base}-{base + len(templates) - 1} are not all free")
                sys.exit(1)
        else:
            base = allocator.pick_base(len(templates))
            if base is None:
                logger.error(f"No free VMID base for {len(templates)} templates in {min_id}-{max_id}")
                sys.exit(1)
        print(f"\n[DRY-RUN] Would install {len(templates)} template(s) at VMIDs "
              f"{base}-{base + len(templates) - 1} on node {node}")
        for offset, template in enumerate(templates):
            print(f"  {base + offset}: t{base + offset}-{template['name']}")
        return

    lifecycle = ResourceLifecycle(proxmox, oracle, node)
    provisioner = TemplateProvisioner(lifecycle, config.get_image_storage())

    missing = provisioner.missing_images(templates)
    if missing:
        for template in missing:
            logger.error(f"Cloud image {image_volid(config.get_image_storage(), template)} not found "
                         f"on node {node}")
            if template.get('url'):
                logger.error(f"  Download it first from {template['url']}")
        sys.exit(1)

    try:
        allocator = BlockAllocator(oracle, FileBlacklistStore(config.get_blacklist_dir()),
                                   min_id, max_id, stride)
        session = ProvisionSession(
            allocator,
            provisioner,
            max_attempts=max_attempts,
            foreign_policy=foreign_policy,
            retry_delay=config.get_retry_delay(),
            base_override=args.base,
        )
        result = session.run(templates)
    except ExhaustedError as e:
        logger.error(str(e))
        if e.result is not None and e.result.rejected:
            logger.error(f"Rejected bases: {', '.join(str(b) for b in e.result.rejected)}")
        sys.exit(1)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    print("\n" + "=" * 80)
    logger.info("✓ All templates processed successfully")
    print("=" * 80)
    print(f"  Base VMID: {result.base}")
    print(f"  Attempts:  {result.attempts + 1}")
    for vmid, outcome in sorted(result.outcomes.items()):
        print(f"  {vmid}: {outcome}")
    if result.skipped:
        print(f"\n  {len(result.skipped)} VMID(s) {SKIPPED_FOREIGN}: "
              f"{', '.join(str(v) for v in result.skipped)}")
    print("=" * 80)


def handle_cleanup(args):
    """Handle template cleanup command"""
    config = _load_config(args)
    proxmox = _connect(config)
    oracle = ClusterOracle(proxmox)
    lifecycle = ResourceLifecycle(proxmox, oracle, config.get_node() or '')

    logger.info("==> Template cleanup started")
    logger.info(f"→ Base VMID: {args.base}")
    if args.count:
        logger.info(f"→ Template count limit: {args.count}")
    if args.dry_run:
        logger.info("→ DRY RUN MODE (no actual deletion)")

    summary = cleanup_templates(lifecycle, oracle, args.base, count=args.count,
                                dry_run=args.dry_run, max_check=config.get_template_max_check())

    print(f"\n{'=' * 80}")
    print("Summary:")
    print(f"  Templates found:   {summary['found']}")
    print(f"  Templates deleted: {summary['acted']}")
    print(f"  Skipped:           {summary['skipped']}")
    print(f"{'=' * 80}")

    if args.dry_run:
        logger.info("→ This was a DRY RUN. To actually delete, run without --dry-run.")
