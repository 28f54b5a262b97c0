#!/usr/bin/env python3
"""
Proxmox Bulk Tooling Utilities

Common functions for Proxmox API connection, configuration loading,
node selection, error types and the cloud template catalog.
"""

import argparse
import configparser
import logging
import os
import socket
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import yaml
from proxmoxer import ProxmoxAPI

# Configure logging
# Use a logger named after the module
logger = logging.getLogger(__name__)


def _install_handlers(level: int = logging.INFO):
    # Handler for INFO/WARNING (stdout) - filters out ERROR and above
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.addFilter(lambda record: record.levelno < logging.ERROR)
    console_handler.setFormatter(logging.Formatter('%(message)s'))

    # Handler for ERROR/CRITICAL (stderr)
    error_handler = logging.StreamHandler(sys.stderr)
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(logging.Formatter('Error: %(message)s'))

    logger.addHandler(console_handler)
    logger.addHandler(error_handler)
    logger.setLevel(level)


# Set up default logging configuration if not already configured
if not logger.handlers:
    _install_handlers()


# Custom exceptions for better error handling

class PveError(Exception):
    """Base exception for Proxmox-related errors"""
    pass


class PveConnectionError(PveError):
    """Raised when connection to Proxmox fails"""
    pass


class PveNodeError(PveError):
    """Raised when node selection or node-related operations fail"""
    pass


class NotFoundError(PveError):
    """Raised when a referenced VMID does not exist anywhere in the cluster"""

    def __init__(self, vmid: int):
        super().__init__(f"VMID {vmid} not found in cluster")
        self.vmid = vmid


class ForeignOwnershipError(PveError):
    """Raised when a VMID already belongs to a different cluster node"""

    def __init__(self, vmid: int, owner: str):
        super().__init__(f"VMID {vmid} belongs to node '{owner}'")
        self.vmid = vmid
        self.owner = owner


class StructuralFailureError(PveError):
    """Raised when creating or configuring a VMID fails for a non-ownership reason"""

    def __init__(self, vmid: int, reason: str):
        super().__init__(f"VMID {vmid}: {reason}")
        self.vmid = vmid
        self.reason = reason


class ExhaustedError(PveError):
    """Raised when no usable VMID block is left in range or within the retry budget"""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class TemplateSelectionError(PveError):
    """Raised when the template selection is empty or the catalog is invalid"""
    pass


# Cloud templates provisioned by default, in install order
TEMPLATES = [
    {
        'name': 'ubuntu-24-cloud',
        'url': 'https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img',
        'image': 'noble-server-cloudimg-amd64.img',
        'storage': 'local-lvm',
        'bridge': 'vmbr0',
        'memory': 2048,
    },
    {
        'name': 'ubuntu-22-cloud',
        'url': 'https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img',
        'image': 'jammy-server-cloudimg-amd64.img',
        'storage': 'local-lvm',
        'bridge': 'vmbr0',
        'memory': 2048,
    },
    {
        'name': 'ubuntu-20-cloud',
        'url': 'https://cloud-images.ubuntu.com/focal/current/focal-server-cloudimg-amd64.img',
        'image': 'focal-server-cloudimg-amd64.img',
        'storage': 'local-lvm',
        'bridge': 'vmbr0',
        'memory': 2048,
    },
    {
        'name': 'debian-12-cloud',
        'url': 'https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-genericcloud-amd64.qcow2',
        'image': 'debian-12-genericcloud-amd64.qcow2',
        'storage': 'local-lvm',
        'bridge': 'vmbr0',
        'memory': 2048,
    },
]

BACKENDS = ('local', 'https')
FOREIGN_POLICIES = ('skip', 'reject')


def find_config_file(config_file: Optional[str] = None) -> Optional[str]:
    """
    Find configuration file in standard locations.

    Search order:
    1. Explicit path (if provided)
    2. Current directory: ./pvebulk.ini
    3. XDG config directory: ~/.config/pvebulk/pvebulk.ini
    4. Home directory: ~/.pvebulk.ini

    Args:
        config_file: Explicit path to config file, or None to search

    Returns:
        Path to found config file, or None if nothing was found

    Raises:
        FileNotFoundError: If an explicit config file does not exist
    """
    if config_file:
        if os.path.isfile(config_file):
            return config_file
        raise FileNotFoundError(f"Configuration file '{config_file}' not found")

    search_paths = [
        Path.cwd() / "pvebulk.ini",
        Path.home() / ".config" / "pvebulk" / "pvebulk.ini",
        Path.home() / ".pvebulk.ini",
    ]

    for path in search_paths:
        if path.is_file():
            return str(path)

    # Running on a cluster member needs no config at all
    return None


class PveConfig:
    """Load and parse bulk tooling configuration from INI file"""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize PveConfig.

        Args:
            config_file: Path to config file, or None to search in standard locations
        """
        self.config_file = find_config_file(config_file)
        self.config = configparser.ConfigParser()

        if self.config_file and not self.config.read(self.config_file):
            raise FileNotFoundError(f"Configuration file '{self.config_file}' not found")

        self._validate_config()

    def _validate_config(self):
        """Validate backend settings and numeric ranges"""
        backend = self.get_backend()
        if backend not in BACKENDS:
            raise ValueError(f"Unknown backend '{backend}' (expected one of: {', '.join(BACKENDS)})")
        if backend == 'https' and not self.config.has_option('proxmox', 'host'):
            raise ValueError("Backend 'https' requires 'host' in section [proxmox]")

        vmid_min, vmid_max = self.get_vmid_range()
        if vmid_min < 1 or vmid_min > vmid_max:
            raise ValueError(f"Invalid VMID range {vmid_min}-{vmid_max}")
        if self.get_stride() < 1:
            raise ValueError("stride must be >= 1")
        if self.get_max_attempts() < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.get_foreign_policy() not in FOREIGN_POLICIES:
            raise ValueError(f"foreign_policy must be one of: {', '.join(FOREIGN_POLICIES)}")

    def get_backend(self) -> str:
        """Get proxmoxer backend ('local' runs pvesh on this host)"""
        return self.config.get('proxmox', 'backend', fallback='local').strip().lower()

    def get_proxmox_host(self) -> str:
        """Get Proxmox host URL"""
        return self.config.get('proxmox', 'host')

    def get_verify_ssl(self) -> bool:
        """Get SSL verification setting (defaults to True for security)"""
        return self.config.getboolean('proxmox', 'verify_ssl', fallback=True)

    def get_timeout(self) -> int:
        """Get API request timeout in seconds (default: 30)"""
        return self.config.getint('proxmox', 'timeout', fallback=30)

    def get_node(self) -> Optional[str]:
        """Get the node templates are created on"""
        node = self.config.get('proxmox', 'node', fallback='').strip()
        return node if node else None

    def get_auth_method(self) -> Tuple[str, Dict]:
        """
        Determine authentication method and return credentials
        Returns: (method, credentials_dict)
        method is either 'token' or 'password'
        """
        token_id = self.config.get('proxmox', 'token_id', fallback='').strip()
        token_secret = self.config.get('proxmox', 'token_secret', fallback='').strip()

        if token_id and token_secret:
            # Format: user@realm!tokenname (e.g., root@pam!bulk)
            if '!' in token_id:
                user, token_name = token_id.split('!', 1)
            else:
                raise ValueError("token_id must be in format: user@realm!tokenname")

            return ('token', {
                'user': user,
                'token_name': token_name,
                'token_value': token_secret
            })

        username = self.config.get('proxmox', 'user', fallback='').strip()
        password = self.config.get('proxmox', 'password', fallback='').strip()

        if username and password:
            return ('password', {'user': username, 'password': password})

        raise ValueError("No valid authentication method found in config. "
                        "Provide either token_id/token_secret or user/password")

    def get_storage(self) -> str:
        """Get default template disk storage"""
        return self.config.get('defaults', 'storage', fallback='local-lvm')

    def get_bridge(self) -> str:
        """Get default network bridge"""
        return self.config.get('defaults', 'bridge', fallback='vmbr0')

    def get_default_memory(self) -> int:
        """Get default memory in MB"""
        return self.config.getint('defaults', 'memory', fallback=2048)

    def get_image_storage(self) -> str:
        """Get storage holding the downloaded cloud images (import content)"""
        return self.config.get('defaults', 'image_storage', fallback='local')

    def get_catalog_file(self) -> Optional[str]:
        """Get optional YAML template catalog path"""
        catalog = self.config.get('defaults', 'catalog', fallback='').strip()
        return catalog if catalog else None

    def get_vmid_range(self) -> Tuple[int, int]:
        """Get template VMID range"""
        vmid_min = self.config.getint('allocator', 'min_vmid', fallback=100)
        vmid_max = self.config.getint('allocator', 'max_vmid', fallback=99999)
        return (vmid_min, vmid_max)

    def get_stride(self) -> int:
        return self.config.getint('allocator', 'stride', fallback=100)

    def get_max_attempts(self) -> int:
        return self.config.getint('allocator', 'max_attempts', fallback=5)

    def get_retry_delay(self) -> float:
        return self.config.getfloat('allocator', 'retry_delay', fallback=2.0)

    def get_blacklist_dir(self) -> str:
        return self.config.get('allocator', 'blacklist_dir', fallback='/tmp')

    def get_foreign_policy(self) -> str:
        """Get what a VMID owned by another node does to the block: 'skip' or 'reject'"""
        return self.config.get('allocator', 'foreign_policy', fallback='skip').strip().lower()

    def get_max_check(self) -> int:
        """Get how many VMIDs range operations scan from the base"""
        return self.config.getint('bulk', 'max_check', fallback=1000)

    def get_template_max_check(self) -> int:
        return self.config.getint('bulk', 'template_max_check', fallback=100)

    def get_shutdown_timeout(self) -> int:
        return self.config.getint('bulk', 'shutdown_timeout', fallback=60)

    def get_hard_stop_timeout(self) -> int:
        return self.config.getint('bulk', 'hard_stop_timeout', fallback=10)

    def get_nextid_range(self) -> Tuple[int, int]:
        """Get the automatic VMID range for normal VMs"""
        lower = self.config.getint('nextid', 'lower', fallback=100000)
        upper = self.config.getint('nextid', 'upper', fallback=999999999)
        return (lower, upper)

    def get_datacenter_cfg(self) -> str:
        return self.config.get('nextid', 'datacenter_cfg', fallback='/etc/pve/datacenter.cfg')


def load_template_catalog(catalog_file: Optional[str] = None) -> List[Dict]:
    """
    Load the template catalog

    Args:
        catalog_file: YAML file holding a list of template mappings, or None
                      for the built-in catalog

    Returns:
        List of template dicts with 'name', 'image', 'storage', 'bridge', 'memory'
    """
    if not catalog_file:
        return [dict(t) for t in TEMPLATES]

    with open(catalog_file) as f:
        entries = yaml.safe_load(f)

    if not isinstance(entries, list) or not entries:
        raise TemplateSelectionError(f"Template catalog '{catalog_file}' must be a non-empty list")

    catalog = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get('name') or not entry.get('image'):
            raise TemplateSelectionError(f"Invalid catalog entry in '{catalog_file}': {entry}")
        catalog.append({
            'name': str(entry['name']),
            'url': entry.get('url', ''),
            'image': str(entry['image']),
            'storage': entry.get('storage', 'local-lvm'),
            'bridge': entry.get('bridge', 'vmbr0'),
            'memory': int(entry.get('memory', 2048)),
        })
    return catalog


def connect_proxmox(config: PveConfig) -> ProxmoxAPI:
    """
    Connect to Proxmox API using configuration

    The 'local' backend shells out to pvesh and must run as root on a
    cluster member; 'https' talks to the REST API of a remote host.

    Args:
        config: PveConfig instance

    Returns:
        ProxmoxAPI instance
    """
    backend = config.get_backend()

    if backend == 'local':
        if os.geteuid() != 0:
            raise PveConnectionError("The local backend must run as root (sudo pvebulk ...)")
        try:
            proxmox = ProxmoxAPI(backend='local', service='PVE')
            proxmox.version.get()
            return proxmox
        except Exception as e:
            raise PveConnectionError(f"Error talking to local pvesh: {e}") from e

    host = config.get_proxmox_host()
    # Remove protocol from host if present
    if host.startswith('https://'):
        host = host[8:]
    elif host.startswith('http://'):
        host = host[7:]

    # Remove port if present for ProxmoxAPI (it adds it automatically)
    if ':' in host:
        host = host.split(':')[0]
    host = host.rstrip('/')

    verify_ssl = config.get_verify_ssl()
    if not verify_ssl:
        logger.warning("⚠️  SSL verification is disabled - only do this in a trusted lab network")

    timeout = config.get_timeout()
    auth_method, credentials = config.get_auth_method()

    try:
        if auth_method == 'token':
            proxmox = ProxmoxAPI(
                host,
                user=credentials['user'],
                token_name=credentials['token_name'],
                token_value=credentials['token_value'],
                verify_ssl=verify_ssl,
                timeout=timeout
            )
        else:  # password
            proxmox = ProxmoxAPI(
                host,
                user=credentials['user'],
                password=credentials['password'],
                verify_ssl=verify_ssl,
                timeout=timeout
            )

        # Test connection
        proxmox.version.get()
        return proxmox

    except Exception as e:
        raise PveConnectionError(f"Error connecting to Proxmox: {e}") from e


def select_best_node(proxmox: ProxmoxAPI, required_memory: int = 0) -> str:
    """
    Select the best node based on available resources

    Algorithm: Calculate score = (available_memory / total_memory + available_cpu / total_cpu) / 2
    Select node with highest score

    Args:
        proxmox: ProxmoxAPI instance
        required_memory: Required memory in MB

    Returns:
        Node name
    """
    nodes = proxmox.nodes.get()

    if not nodes:
        raise PveNodeError("No nodes found in Proxmox cluster")

    best_node = None
    best_score = -1

    for node in nodes:
        node_name = node['node']

        # Skip offline nodes
        if node.get('status') != 'online':
            continue

        node_status = proxmox.nodes(node_name).status.get()

        total_memory = node_status['memory']['total']
        available_memory = total_memory - node_status['memory']['used']

        total_cpu = node_status['cpuinfo']['cpus']
        available_cpu = total_cpu * (1 - node_status['cpu'])

        if available_memory < required_memory * 1024 * 1024:  # Convert MB to bytes
            continue

        score = (available_memory / total_memory + available_cpu / total_cpu) / 2

        if score > best_score:
            best_score = score
            best_node = node_name

    if not best_node:
        raise PveNodeError("No suitable node found with enough resources")

    return best_node


def resolve_node(proxmox: ProxmoxAPI, config: PveConfig, override: Optional[str] = None,
                 required_memory: int = 0) -> str:
    """
    Decide which node new templates are created on

    Order: CLI override, [proxmox] node, local hostname (local backend),
    best node by free resources (https backend).
    """
    if override:
        return override
    node = config.get_node()
    if node:
        return node
    if config.get_backend() == 'local':
        # pvesh node names are the short hostname
        return socket.gethostname().split('.')[0]
    return select_best_node(proxmox, required_memory)


def non_negative_int(value: str) -> int:
    """argparse type for VMIDs and counts"""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a number")
    if number < 0:
        raise argparse.ArgumentTypeError(f"'{value}' must not be negative")
    return number


def setup_logging(level: str = 'INFO', log_file: Optional[str] = None):
    """
    Configure logging for the application

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file in addition to the console
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()
    _install_handlers(log_level)

    # File handler if specified
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logger.addHandler(file_handler)
