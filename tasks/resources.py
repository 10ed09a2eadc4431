"""
Declarative desired-state resources.

Each resource inspects the host (read-only) in `diff` and returns a short
description of the change it needs, or None when the host already matches.
`apply` converges the host. Simulate mode only ever calls `diff`; the
PlannedState overlay lets later resources see what earlier ones would have
done, so a dry run covers the same resources a real run applies.
"""
import difflib
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from nornir.core.task import Task, Result

from utils.linux import (
    run_command,
    read_file,
    write_file,
    file_exists,
    package_version,
    apt_install,
    apt_hold,
    systemctl,
    service_is_active,
    service_is_enabled,
    is_module_loaded,
    load_module,
    is_swap_active,
    disable_swap,
    interface_ipv4,
)


@dataclass
class PlannedState:
    """Per-node overlay of simulated changes. Inert outside simulate mode."""
    active: bool = False
    files: Dict[str, Optional[str]] = field(default_factory=dict)
    packages: Dict[str, str] = field(default_factory=dict)
    services: Dict[str, Tuple[bool, bool]] = field(default_factory=dict)
    modules: Set[str] = field(default_factory=set)
    flags: Set[str] = field(default_factory=set)
    # Services/handlers to fire later in the same phase
    notified: Set[str] = field(default_factory=set)


class Resource:
    name: str = "resource"
    sensitive: bool = False
    notify: Optional[str] = None

    def diff(self, task: Task, state: PlannedState) -> Optional[str]:
        raise NotImplementedError

    def apply(self, task: Task, state: PlannedState) -> Result:
        raise NotImplementedError

    def record(self, state: PlannedState) -> None:
        """Updates the overlay as if `apply` had succeeded."""


def _version_matches(installed: str, wanted: str) -> bool:
    return installed == wanted or installed.startswith(f"{wanted}-") or installed.startswith(f"{wanted}~")


@dataclass
class Package(Resource):
    """Deb package at a pinned version (any version when `version` is None)."""
    package: str
    version: Optional[str] = None
    hold: bool = False

    @property
    def name(self) -> str:
        return f"package {self.package}"

    def _pin(self) -> str:
        if not self.version:
            return self.package
        if "-" in self.version:
            return f"{self.package}={self.version}"
        return shlex.quote(f"{self.package}={self.version}*")

    def diff(self, task, state):
        if state.active and self.package in state.packages:
            current = state.packages[self.package]
        else:
            current = package_version(task, self.package)

        if current is None:
            return f"install {self.package}{'=' + self.version if self.version else ''}"
        if self.version and not _version_matches(current, self.version):
            return f"change {self.package} {current} -> {self.version}"
        return None

    def apply(self, task, state):
        res = apt_install(task, self._pin())
        if res.failed or not self.hold:
            return res
        return apt_hold(task, [self.package])

    def record(self, state):
        state.packages[self.package] = self.version or "planned"


@dataclass
class File(Resource):
    """File with exact content, owner and mode."""
    path: str
    content: str
    owner: str = "root:root"
    mode: str = "644"
    sensitive: bool = False
    notify: Optional[str] = None

    @property
    def name(self) -> str:
        return f"file {self.path}"

    def diff(self, task, state):
        if state.active and self.path in state.files:
            current = state.files[self.path]
        else:
            current = read_file(task, self.path)

        if current is None:
            return f"create {self.path}"
        if current.rstrip("\n") == self.content.rstrip("\n"):
            return None
        if self.sensitive:
            return f"update {self.path} (content hidden)"

        delta = list(difflib.unified_diff(current.splitlines(), self.content.splitlines(), lineterm="", n=0))
        added = sum(1 for l in delta if l.startswith("+") and not l.startswith("+++"))
        removed = sum(1 for l in delta if l.startswith("-") and not l.startswith("---"))
        return f"update {self.path} (+{added} -{removed} lines)"

    def apply(self, task, state):
        return write_file(task, self.path, self.content, owner=self.owner, permissions=self.mode,
                          sensitive=self.sensitive)

    def record(self, state):
        state.files[self.path] = self.content


@dataclass
class Service(Resource):
    """
    systemd unit state. Restarted when a resource notified it during the phase
    and it was already running.
    """
    service: str
    enabled: bool = True
    running: bool = True

    @property
    def name(self) -> str:
        return f"service {self.service}"

    def _current(self, task, state) -> Tuple[bool, bool]:
        if state.active and self.service in state.services:
            return state.services[self.service]
        return service_is_enabled(task, self.service), service_is_active(task, self.service)

    def diff(self, task, state):
        enabled, active = self._current(task, state)
        actions = []
        if self.enabled and not enabled:
            actions.append("enable")
        if self.running and not active:
            actions.append("start")
        elif self.running and self.service in state.notified:
            actions.append("restart")
        return f"{' + '.join(actions)} {self.service}" if actions else None

    def apply(self, task, state):
        enabled, active = service_is_enabled(task, self.service), service_is_active(task, self.service)
        if self.enabled and not enabled:
            action = "enable --now" if self.running and not active else "enable"
            res = systemctl(task, self.service, action)
            if res.failed:
                return res
            active = active or self.running
        if self.running and not active:
            return systemctl(task, self.service, "start")
        if self.running and self.service in state.notified:
            return systemctl(task, self.service, "restart")
        return Result(host=task.host, changed=True, result=f"{self.service} converged")

    def record(self, state):
        state.services[self.service] = (self.enabled, self.running)


@dataclass
class Handler(Resource):
    """Command that only runs when notified earlier in the phase (e.g. sysctl reload)."""
    handler: str
    cmd: str

    @property
    def name(self) -> str:
        return f"handler {self.handler}"

    def diff(self, task, state):
        return f"run {self.handler}" if self.handler in state.notified else None

    def apply(self, task, state):
        return run_command(task, self.cmd, sudo=True)


@dataclass
class KernelModule(Resource):
    module: str

    @property
    def name(self) -> str:
        return f"module {self.module}"

    def diff(self, task, state):
        if state.active and self.module in state.modules:
            return None
        return None if is_module_loaded(task, self.module) else f"modprobe {self.module}"

    def apply(self, task, state):
        return load_module(task, self.module)

    def record(self, state):
        state.modules.add(self.module)


@dataclass
class SwapOff(Resource):
    """Swap disabled at runtime."""
    name: str = "swap off (runtime)"

    def diff(self, task, state):
        if state.active and "swapoff" in state.flags:
            return None
        return "swapoff -a" if is_swap_active(task) else None

    def apply(self, task, state):
        return disable_swap(task)

    def record(self, state):
        state.flags.add("swapoff")


@dataclass
class KubeletNodeIP(Resource):
    """
    kubelet --node-ip pinned to the address of the host traffic interface,
    so multi-homed nodes register (and serve) on the right network.
    """
    interface: str
    path: str = "/etc/default/kubelet"

    @property
    def name(self) -> str:
        return f"kubelet node-ip ({self.interface})"

    @staticmethod
    def render(address: str) -> str:
        return f"KUBELET_EXTRA_ARGS=--node-ip={address}\n"

    def diff(self, task, state):
        if state.active and f"node-ip:{self.interface}" in state.flags:
            return None
        address = interface_ipv4(task, self.interface)
        if address is None:
            return f"set node-ip from {self.interface} (no IPv4 address found)"
        current = read_file(task, self.path)
        if current is not None and current.rstrip("\n") == self.render(address).rstrip("\n"):
            return None
        return f"set node-ip {address} in {self.path}"

    def apply(self, task, state):
        address = interface_ipv4(task, self.interface)
        if address is None:
            return Result(
                host=task.host,
                failed=True,
                result=f"No IPv4 address on interface '{self.interface}' (HOST_INTERFACE)",
            )
        return write_file(task, self.path, self.render(address))

    def record(self, state):
        state.flags.add(f"node-ip:{self.interface}")


_SWAP_LINE = re.compile(r"^[^#].*\sswap\s")


@dataclass
class FstabSwapOff(Resource):
    """Swap entries commented out in /etc/fstab so they stay off after reboot."""
    name: str = "swap off (fstab)"
    path: str = "/etc/fstab"

    def _rewrite(self, content: str) -> str:
        lines = []
        for line in content.splitlines():
            lines.append(f"# {line} # Disabled by hakube" if _SWAP_LINE.search(line) else line)
        return "\n".join(lines) + "\n"

    def _current(self, task, state) -> Optional[str]:
        if state.active and self.path in state.files:
            return state.files[self.path]
        return read_file(task, self.path)

    def diff(self, task, state):
        current = self._current(task, state)
        if not current:
            return None
        if self._rewrite(current).rstrip("\n") == current.rstrip("\n"):
            return None
        return f"comment swap entries in {self.path}"

    def apply(self, task, state):
        current = read_file(task, self.path) or ""
        return write_file(task, self.path, self._rewrite(current))

    def record(self, state):
        current = state.files.get(self.path)
        state.files[self.path] = self._rewrite(current) if current else current


@dataclass
class Command(Resource):
    """
    Imperative step made idempotent by a marker path: it runs only while
    `creates` does not exist.
    """
    label: str
    cmd: str
    creates: str
    sensitive: bool = False
    sudo: bool = True

    @property
    def name(self) -> str:
        return self.label

    def diff(self, task, state):
        if state.active and self.creates in state.files:
            return None
        return None if file_exists(task, self.creates) else f"run {self.label}"

    def apply(self, task, state):
        return run_command(task, self.cmd, sudo=self.sudo, sensitive=self.sensitive)

    def record(self, state):
        state.files[self.creates] = ""


@dataclass
class Untaint(Resource):
    """Removes a NoSchedule taint from every node through the local admin kubeconfig."""
    taint_key: str
    kubeconfig: str = "/etc/kubernetes/admin.conf"

    @property
    def name(self) -> str:
        return f"untaint {self.taint_key}"

    def diff(self, task, state):
        if state.active and f"untaint:{self.taint_key}" in state.flags:
            return None
        query = (
            f"kubectl --kubeconfig={self.kubeconfig} get nodes "
            "-o jsonpath='{.items[*].spec.taints[*].key}'"
        )
        res = run_command(task, query, sudo=True)
        if not res.failed and self.taint_key not in res.result:
            return None
        return f"remove taint {self.taint_key}:NoSchedule"

    def apply(self, task, state):
        cmd = f"kubectl --kubeconfig={self.kubeconfig} taint nodes --all {self.taint_key}:NoSchedule-"
        return run_command(task, cmd, sudo=True)

    def record(self, state):
        state.flags.add(f"untaint:{self.taint_key}")


ResourceList = List[Resource]
