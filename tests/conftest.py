"""Shared doubles for the cluster oracle and the Proxmox API tree."""

from unittest.mock import MagicMock

import pytest


class FakeOracle:
    """Occupancy oracle backed by a dict of vmid -> owning node."""

    def __init__(self, occupied=None, templates=()):
        self.occupied = dict(occupied or {})
        self.templates = set(templates)
        self.queries = []

    def exists(self, vmid):
        self.queries.append(vmid)
        return vmid in self.occupied

    def owner_of(self, vmid):
        return self.occupied.get(vmid)

    def lookup(self, vmid):
        if vmid not in self.occupied:
            return None
        return {
            'vmid': vmid,
            'name': f"vm{vmid}",
            'node': self.occupied[vmid],
            'status': 'stopped',
            'template': vmid in self.templates,
            'type': 'qemu',
        }


def resource(vmid, node='pve1', name=None, status='stopped', template=0, kind='qemu'):
    return {
        'id': f"{kind}/{vmid}",
        'vmid': vmid,
        'name': name or f"vm{vmid}",
        'node': node,
        'status': status,
        'template': template,
        'type': kind,
    }


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def proxmox():
    api = MagicMock()
    api.cluster.resources.get.return_value = []
    return api
