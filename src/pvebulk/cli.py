#!/usr/bin/env python3
"""
Proxmox Bulk CLI Entry Point

Main CLI application that provides commands for template provisioning,
range operations on VMs and the cluster's automatic VMID range.
"""

import argparse
import sys

from pvebulk.commands import template, vm, nextid
from pvebulk.pve_utils import setup_logging

CONFIG_HELP = ('Path to configuration file (default: searches ./pvebulk.ini, '
               '~/.config/pvebulk/pvebulk.ini, ~/.pvebulk.ini)')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pvebulk',
        description='Proxmox bulk template and VM management',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Templates
  pvebulk template list
  pvebulk template provision
  pvebulk template provision --templates 0,2
  pvebulk template provision --templates debian-12-cloud,ubuntu-24-cloud
  pvebulk template provision --order 2,0,1 --dry-run
  pvebulk template cleanup --base 100 --count 4

  # VM ranges
  pvebulk vm stop --base 100000
  pvebulk vm soft-stop --base 100000 --count 10
  pvebulk vm cleanup --base 100000 --include-templates --dry-run

  # Automatic VMID range
  pvebulk nextid set --lower 100000 --upper 999999999
  pvebulk nextid show
        '''
    )
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Show debug output (allocator scan details)')
    parser.add_argument('--log-file',
                        help='Also write log output to this file')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute', required=True)

    # Template command
    template_parser = subparsers.add_parser('template', help='Cloud template commands')
    template_subparsers = template_parser.add_subparsers(dest='action', help='Template action', required=True)

    template_list = template_subparsers.add_parser('list', help='List the template catalog')
    template_list.add_argument('--config', default=None, help=CONFIG_HELP)
    template.setup_list_parser(template_list)

    template_provision = template_subparsers.add_parser(
        'provision', help='Create templates in a free, contiguous VMID block')
    template_provision.add_argument('--config', default=None, help=CONFIG_HELP)
    template.setup_provision_parser(template_provision)

    template_cleanup = template_subparsers.add_parser('cleanup', help='Delete templates from a base VMID upwards')
    template_cleanup.add_argument('--config', default=None, help=CONFIG_HELP)
    template.setup_cleanup_parser(template_cleanup)

    # VM command
    vm_parser = subparsers.add_parser('vm', help='VM range commands')
    vm_subparsers = vm_parser.add_subparsers(dest='action', help='VM action', required=True)

    vm_cleanup = vm_subparsers.add_parser('cleanup', help='Delete VMs from a base VMID upwards')
    vm_cleanup.add_argument('--config', default=None, help=CONFIG_HELP)
    vm.setup_cleanup_parser(vm_cleanup)

    vm_stop = vm_subparsers.add_parser('stop', help='Shut down VMs, forcing a stop if needed')
    vm_stop.add_argument('--config', default=None, help=CONFIG_HELP)
    vm.setup_stop_parser(vm_stop)

    vm_soft_stop = vm_subparsers.add_parser('soft-stop', help='Shut down VMs, plain stop on timeout')
    vm_soft_stop.add_argument('--config', default=None, help=CONFIG_HELP)
    vm.setup_soft_stop_parser(vm_soft_stop)

    # Next-ID command
    nextid_parser = subparsers.add_parser('nextid', help='Cluster automatic VMID range')
    nextid_subparsers = nextid_parser.add_subparsers(dest='action', help='Next-ID action', required=True)

    nextid_set = nextid_subparsers.add_parser('set', help='Set the automatic VMID range')
    nextid_set.add_argument('--config', default=None, help=CONFIG_HELP)
    nextid.setup_set_parser(nextid_set)

    nextid_show = nextid_subparsers.add_parser('show', help='Show the automatic VMID range')
    nextid_show.add_argument('--config', default=None, help=CONFIG_HELP)

    return parser


HANDLERS = {
    ('template', 'list'): template.handle_list,
    ('template', 'provision'): template.handle_provision,
    ('template', 'cleanup'): template.handle_cleanup,
    ('vm', 'cleanup'): vm.handle_cleanup,
    ('vm', 'stop'): vm.handle_stop,
    ('vm', 'soft-stop'): vm.handle_soft_stop,
    ('nextid', 'set'): nextid.handle_set,
    ('nextid', 'show'): nextid.handle_show,
}


def main(argv=None):
    """Main CLI entry point"""
    args = build_parser().parse_args(argv)

    if args.verbose or args.log_file:
        setup_logging('DEBUG' if args.verbose else 'INFO', args.log_file)

    try:
        HANDLERS[(args.command, args.action)](args)
    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
