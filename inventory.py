"""
Inventory Model: YAML topology -> typed Nodes -> nornir inventory.

Two layouts are accepted:

Ansible style::

    all:
      children:
        masters:
          hosts:
            caas-master-1: {ansible_host: 10.0.1.11}
        workers:
          hosts: {}

Flat style::

    masters:
      caas-master-1: {address: 10.0.1.11, user: ubuntu}
    workers: {}

The first declared control-plane node becomes the primary: it runs
`kubeadm init` and is the single source of the join credential.
"""
import fnmatch
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from nornir.core import Nornir
from nornir.core.inventory import (
    ConnectionOptions,
    Defaults,
    Group,
    Groups,
    Host,
    Hosts,
    Inventory as NornirInventory,
    ParentGroups,
)
from nornir.plugins.runners import ThreadedRunner

from core.errors import ConfigError, InventoryError
from core.models import Node, NodeRole
from core.settings import ClusterConfig, ExecutorSettings

CONTROL_PLANE_GROUPS = ("masters", "control_plane", "k8s_control_plane")
WORKER_GROUPS = ("workers", "k8s_worker")

LOCAL_ADDRESSES = ("@local", "localhost", "127.0.0.1")

_ADDRESS_KEYS = ("address", "ansible_host", "hostname")
_USER_KEYS = ("user", "ansible_user", "ansible_ssh_user", "username")
_KEY_KEYS = ("ssh_key", "ansible_ssh_private_key_file")
_PORT_KEYS = ("port", "ansible_port")


def _first(attrs: dict, keys) -> Optional[str]:
    for key in keys:
        if attrs.get(key):
            return str(attrs[key])
    return None


@dataclass(frozen=True)
class Inventory:
    """Ordered node set: control planes in declaration order, then workers."""
    nodes: tuple

    @property
    def primary(self) -> Node:
        return next(n for n in self.nodes if n.role is NodeRole.PRIMARY)

    @property
    def control_planes(self) -> List[Node]:
        return [n for n in self.nodes if n.role.is_control_plane]

    @property
    def workers(self) -> List[Node]:
        return [n for n in self.nodes if n.role is NodeRole.WORKER]

    def by_roles(self, roles) -> List[Node]:
        return [n for n in self.nodes if n.role in roles]

    def select(self, limit: Optional[str]) -> List[Node]:
        """
        Nodes matching a limit expression: comma separated group names
        ('masters', 'workers'), node names or fnmatch globs. A '!' prefix
        excludes. No limit selects every node.
        """
        if not limit:
            return list(self.nodes)

        patterns = [p.strip() for p in limit.split(",") if p.strip()]
        includes = [p for p in patterns if not p.startswith("!")]
        excludes = [p[1:] for p in patterns if p.startswith("!")]

        def matches(node: Node, pattern: str) -> bool:
            if pattern in ("all", "*"):
                return True
            if pattern in CONTROL_PLANE_GROUPS:
                return node.role.is_control_plane
            if pattern in WORKER_GROUPS:
                return node.role is NodeRole.WORKER
            return fnmatch.fnmatch(node.name, pattern)

        selected = [n for n in self.nodes if not includes or any(matches(n, p) for p in includes)]
        return [n for n in selected if not any(matches(n, p) for p in excludes)]


def _group_hosts(data: dict, names) -> Optional[Dict[str, dict]]:
    """Finds the first present group among `names`, in either layout."""
    children = ((data.get("all") or {}).get("children")) if isinstance(data.get("all"), dict) else None
    for name in names:
        if children and name in children:
            group = children[name] or {}
            return group.get("hosts") or {}
        if name in data:
            group = data[name] or {}
            # Ansible group without the all/children wrapper
            if isinstance(group, dict) and set(group) == {"hosts"}:
                return group["hosts"] or {}
            return group
    return None


def _parse_nodes(hosts: Dict[str, dict], role_for_index) -> List[Node]:
    nodes = []
    for index, (name, attrs) in enumerate(hosts.items()):
        attrs = attrs or {}
        address = _first(attrs, _ADDRESS_KEYS)
        if not address:
            raise InventoryError(
                f"Node '{name}' has no connection address",
                hint="Set 'ansible_host' (or 'address') for every node.",
            )
        port = _first(attrs, _PORT_KEYS)
        nodes.append(Node(
            name=str(name),
            role=role_for_index(index),
            address=address,
            user=_first(attrs, _USER_KEYS),
            ssh_key=_first(attrs, _KEY_KEYS),
            port=int(port) if port else 22,
        ))
    return nodes


def parse_inventory(data: dict) -> Inventory:
    """Builds the Inventory from already-loaded YAML data."""
    if not isinstance(data, dict):
        raise InventoryError("Inventory must be a mapping")

    cp_hosts = _group_hosts(data, CONTROL_PLANE_GROUPS)
    if not cp_hosts:
        raise InventoryError(
            "No control-plane nodes declared",
            hint=f"Declare at least one node under one of: {', '.join(CONTROL_PLANE_GROUPS)}.",
        )
    worker_hosts = _group_hosts(data, WORKER_GROUPS) or {}

    control_planes = _parse_nodes(
        cp_hosts, lambda i: NodeRole.PRIMARY if i == 0 else NodeRole.SECONDARY
    )
    workers = _parse_nodes(worker_hosts, lambda i: NodeRole.WORKER)

    names = [n.name for n in control_planes + workers]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise InventoryError(f"Node(s) declared in more than one group: {', '.join(duplicates)}")

    return Inventory(nodes=tuple(control_planes + workers))


def load_inventory(path: str = "inventory/hosts.yml") -> Inventory:
    inventory_path = Path(path)
    if not inventory_path.exists():
        raise ConfigError(
            f"Inventory file not found: {inventory_path}",
            hint="Pass --inventory or create inventory/hosts.yml.",
        )
    try:
        with open(inventory_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise InventoryError(f"Invalid YAML in {inventory_path}: {e}")
    return parse_inventory(data)


# --- NORNIR ---

def build_nornir(inventory: Inventory, config: ClusterConfig, settings: ExecutorSettings) -> Nornir:
    """
    Maps Nodes to nornir hosts (groups 'masters'/'workers') on a threaded
    runner bounded by the fan-out limit. Cluster parameters travel in the
    defaults so every task sees the same resolved values.
    """
    defaults = Defaults(data={"cluster_config": config, "executor_settings": settings})
    groups = Groups({name: Group(name=name, defaults=defaults) for name in ("masters", "workers")})

    hosts = Hosts()
    for node in inventory.nodes:
        local = node.address in LOCAL_ADDRESSES
        extras = {
            "auth_strict_key": False,
            "timeout_socket": settings.connect_timeout,
            "timeout_transport": settings.connect_timeout,
            "timeout_ops": settings.command_timeout,
        }
        if node.ssh_key:
            extras["auth_private_key"] = node.ssh_key

        hosts[node.name] = Host(
            name=node.name,
            hostname=node.address,
            username=node.user or config.ssh_user,
            port=node.port,
            platform="linux_local" if local else "generic",
            groups=ParentGroups([groups[node.group]]),
            data={"node": node, "role": node.role.value},
            connection_options={"scrapli": ConnectionOptions(platform="generic", extras=extras)},
            defaults=defaults,
        )

    return Nornir(
        inventory=NornirInventory(hosts=hosts, groups=groups, defaults=defaults),
        runner=ThreadedRunner(num_workers=settings.fan_out),
    )
