"""VM range commands"""

import sys

from pvebulk.bulk_ops import cleanup_vms, stop_vms, soft_stop_vms
from pvebulk.lifecycle import ClusterOracle, ResourceLifecycle
from pvebulk.pve_utils import (
    PveConfig,
    connect_proxmox,
    non_negative_int,
    logger,
    PveConnectionError,
)


def _add_range_arguments(parser, count_help: str):
    parser.add_argument('--base', type=non_negative_int, required=True,
                        help='First VMID to scan (e.g. 100000 covers 100000, 100001, ...)')
    parser.add_argument('--count', type=non_negative_int, default=0,
                        help=count_help)
    parser.add_argument('--include-templates', action='store_true',
                        help='Also act on templates (default: only normal VMs)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Only show what would be done')


def setup_cleanup_parser(parser):
    """Setup argument parser for VM cleanup command"""
    _add_range_arguments(parser, 'Delete at most this many VMs (default: all)')


def setup_stop_parser(parser):
    """Setup argument parser for VM stop command"""
    _add_range_arguments(parser, 'Examine at most this many VMs (default: all)')
    parser.add_argument('--shutdown-timeout', type=non_negative_int,
                        help='Seconds to wait for guest shutdown (default: from config, 60)')
    parser.add_argument('--hard-timeout', type=non_negative_int,
                        help='Seconds to wait for a hard stop (default: from config, 10)')


def setup_soft_stop_parser(parser):
    """Setup argument parser for VM soft-stop command"""
    _add_range_arguments(parser, 'Examine at most this many VMs (default: all)')
    parser.add_argument('--shutdown-timeout', type=non_negative_int,
                        help='Seconds to wait for guest shutdown (default: from config, 60)')


def _prepare(args, title: str):
    """Load configuration, connect and log the run parameters"""
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

    logger.info(f"==> {title} started")
    logger.info(f"→ Base VMID: {args.base}")
    if args.count:
        logger.info(f"→ VM count limit: {args.count}")
    logger.info(f"→ Include templates: {'YES' if args.include_templates else 'NO (only VMs)'}")
    if args.dry_run:
        logger.info("→ DRY RUN MODE (nothing will be changed)")

    oracle = ClusterOracle(proxmox)
    lifecycle = ResourceLifecycle(proxmox, oracle, config.get_node() or '')
    return config, oracle, lifecycle


def _print_summary(title: str, verb: str, summary: dict, dry_run: bool):
    print(f"\n{'=' * 80}")
    print(f"{title} completed:")
    print(f"  VMs/Templates found:   {summary['found']}")
    print(f"  VMs/Templates {verb}: {summary['acted']}")
    print(f"  VMs/Templates skipped: {summary['skipped']}")
    print(f"{'=' * 80}")
    if dry_run:
        logger.info("→ This was a DRY RUN. Run without --dry-run to apply.")


def handle_cleanup(args):
    """Handle VM cleanup command"""
    config, oracle, lifecycle = _prepare(args, "VM cleanup")
    summary = cleanup_vms(lifecycle, oracle, args.base,
                          count=args.count,
                          include_templates=args.include_templates,
                          dry_run=args.dry_run,
                          max_check=config.get_max_check(),
                          stop_timeout=config.get_hard_stop_timeout())
    _print_summary("Cleanup", "deleted", summary, args.dry_run)


def handle_stop(args):
    """Handle VM stop command"""
    config, oracle, lifecycle = _prepare(args, "VM stop")
    shutdown_timeout = args.shutdown_timeout if args.shutdown_timeout is not None else config.get_shutdown_timeout()
    hard_timeout = args.hard_timeout if args.hard_timeout is not None else config.get_hard_stop_timeout()
    summary = stop_vms(lifecycle, oracle, args.base,
                       count=args.count,
                       include_templates=args.include_templates,
                       dry_run=args.dry_run,
                       max_check=config.get_max_check(),
                       shutdown_timeout=shutdown_timeout,
                       hard_timeout=hard_timeout)
    _print_summary("Stop", "stopped", summary, args.dry_run)


def handle_soft_stop(args):
    """Handle VM soft-stop command"""
    config, oracle, lifecycle = _prepare(args, "VM soft stop")
    shutdown_timeout = args.shutdown_timeout if args.shutdown_timeout is not None else config.get_shutdown_timeout()
    summary = soft_stop_vms(lifecycle, oracle, args.base,
                            count=args.count,
                            include_templates=args.include_templates,
                            dry_run=args.dry_run,
                            max_check=config.get_max_check(),
                            shutdown_timeout=shutdown_timeout)
    _print_summary("Soft stop", "stopped", summary, args.dry_run)
