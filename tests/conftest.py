import base64
import re
import shlex
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import pytest
from nornir.core.task import Result

import inventory as inventory_model
from core.dryrun import DryRunExecutor
from core.engine import PhaseController
from core.errors import ConnectivityError
from core.executor import RemoteExecutor
from core.settings import ExecutorSettings, resolve_config
from utils import linux

CLUSTER_INPUTS = {
    "AF_API_TOKEN": "af-secret-token-123",
    "K8S_API_IP": "10.0.1.100",
    "APT_PROXY": "10.0.1.50",
    "DTH_INTERFACE": "ens7",
    "HOST_INTERFACE": "ens4",
}

INVENTORY_DATA = {
    "all": {
        "children": {
            "masters": {
                "hosts": {
                    "cp-1": {"ansible_host": "10.0.1.11"},
                    "cp-2": {"ansible_host": "10.0.1.12"},
                    "cp-3": {"ansible_host": "10.0.1.13"},
                }
            },
            "workers": {
                "hosts": {
                    "wk-1": {"ansible_host": "10.0.1.21"},
                    "wk-2": {"ansible_host": "10.0.1.22"},
                }
            },
        }
    }
}

TOKEN = "abc123.0123456789abcdef"
CA_HASH = "sha256:" + "a1" * 32
CERT_KEY = "b2" * 32

SERVICE_PACKAGES = {"containerd": "containerd.io", "kubelet": "kubelet"}

_WRITE_RE = re.compile(
    r"echo '(?P<payload>[^']*)' \| base64 -d > (?P<tmp>\S+) && "
    r"install -D -m (?P<mode>\d+) -o \S+ -g \S+ \S+ (?P<path>\S+)"
)


@dataclass
class FakeHost:
    """In-memory Ubuntu node: files, packages, services, kernel state."""
    name: str
    files: Dict[str, str] = field(default_factory=lambda: {
        "/etc/fstab": "UUID=1234 / ext4 defaults 0 1\n/swap.img none swap sw 0 0\n",
    })
    modes: Dict[str, str] = field(default_factory=dict)
    packages: Dict[str, str] = field(default_factory=dict)
    held: Set[str] = field(default_factory=set)
    services: Dict[str, List[bool]] = field(default_factory=dict)
    modules: Set[str] = field(default_factory=set)
    swap_active: bool = True
    interfaces: Dict[str, str] = field(default_factory=dict)


class FakeCluster:
    """
    Stands in for the whole fleet behind `utils.linux._dispatch`.
    Commands are interpreted against per-host state; kubeadm keeps a
    cluster-wide view (token, members, taints).
    """

    def __init__(self, addresses: Dict[str, str]):
        self.hosts = {
            name: FakeHost(name, interfaces={"ens4": address}) for name, address in addresses.items()
        }
        self.unreachable: Set[str] = set()
        self.fail_on: Dict[str, str] = {}
        self.commands: List[Tuple[str, str]] = []
        self.unknown: List[Tuple[str, str]] = []
        self.initialized = False
        self.members: Dict[str, str] = {}
        self.taints: Set[str] = set()
        self.token_output: Optional[str] = None
        self.certs_output: Optional[str] = None
        self.on_command = None
        self._lock = threading.Lock()

    # --- DISPATCH SEAM ---

    def dispatch(self, task, cmd: str) -> Result:
        name = task.host.name
        if self.on_command:
            self.on_command(name, cmd)
        with self._lock:
            self.commands.append((name, cmd))
            if name in self.unreachable:
                raise ConnectivityError(name, "Connection refused")
            inner = self._unwrap(cmd)
            marker = self.fail_on.get(name)
            if marker and marker in inner:
                return Result(host=task.host, failed=True, result=f"injected failure: {marker}")
            ok, output = self._handle(self.hosts[name], inner)
        return Result(host=task.host, result=output, failed=not ok)

    @staticmethod
    def _unwrap(cmd: str) -> str:
        if cmd.startswith("sudo -n sh -c "):
            return shlex.split(cmd[len("sudo -n sh -c "):])[0]
        return cmd

    def commands_for(self, host: str) -> List[str]:
        return [self._unwrap(c) for h, c in self.commands if h == host]

    def mutating_commands(self) -> List[Tuple[str, str]]:
        """Commands a read-only inspection never issues."""
        readonly = ("test -e", "cat ", "dpkg-query", "systemctl is-", "swapon --show", "uptime", "ip -4 ",
                    "kubectl --kubeconfig=/etc/kubernetes/admin.conf get")
        return [(h, c) for h, c in ((h, self._unwrap(c)) for h, c in self.commands)
                if not c.startswith(readonly)]

    # --- INTERPRETER ---

    def _handle(self, host: FakeHost, cmd: str) -> Tuple[bool, str]:
        if cmd == "uptime":
            return True, " 10:00:00 up 1 day,  1 user,  load average: 0.00, 0.01, 0.05"

        if cmd.startswith("test -e "):
            path = cmd[len("test -e "):].strip()
            if path.startswith("/sys/module/"):
                return path.rsplit("/", 1)[1] in host.modules, ""
            return path in host.files, ""

        if cmd.startswith("cat "):
            path = cmd[len("cat "):].strip()
            if path not in host.files:
                return False, f"cat: {path}: No such file or directory"
            return True, host.files[path]

        match = _WRITE_RE.search(cmd)
        if match:
            host.files[match.group("path")] = base64.b64decode(match.group("payload")).decode("utf-8")
            host.modes[match.group("path")] = match.group("mode")
            return True, ""

        if cmd.startswith("mkdir -p /var/backups/hakube && cp -p "):
            return True, ""

        if cmd.startswith("rm -f "):
            for path in cmd[len("rm -f "):].split():
                host.files.pop(path, None)
            return True, ""

        if cmd.startswith("dpkg-query "):
            package = cmd.split()[-1]
            if package not in host.packages:
                return False, f"dpkg-query: no packages found matching {package}"
            return True, host.packages[package]

        if cmd == "apt-get update":
            return True, "Reading package lists... Done"

        if "apt-get install" in cmd:
            specs = shlex.split(cmd.split("--allow-change-held-packages", 1)[1])
            for spec in specs:
                package, _, version = spec.partition("=")
                if version.endswith("*"):
                    version = version[:-1] + "-1"
                host.packages[package] = version or "1.0-1"
            return True, "Setting up packages"

        if cmd.startswith("apt-mark hold "):
            host.held.update(cmd.split()[2:])
            return True, ""

        if cmd.startswith("systemctl "):
            return self._systemctl(host, cmd.split()[1:])

        if cmd.startswith("modprobe "):
            host.modules.add(cmd.split()[1])
            return True, ""

        if cmd == "sysctl --system":
            return True, "* Applying /etc/sysctl.d/k8s.conf ..."

        if cmd.startswith("swapon --show"):
            return True, "/swap.img\n" if host.swap_active else ""

        if cmd == "swapoff -a":
            host.swap_active = False
            return True, ""

        if cmd.startswith("ip -4 -o addr show dev "):
            name = cmd.split()[-1]
            if name not in host.interfaces:
                return False, f'Device "{name}" does not exist.'
            address = host.interfaces[name]
            return True, f"2: {name}    inet {address}/24 brd 10.0.1.255 scope global {name}\\       valid_lft forever"

        if "download.docker.com" in cmd:
            host.files["/etc/apt/keyrings/docker.gpg"] = "KEY"
            host.files["/etc/apt/sources.list.d/docker.list"] = "deb docker"
            return True, ""

        if "pkgs.k8s.io" in cmd and "gpg" in cmd:
            host.files["/etc/apt/keyrings/kubernetes-apt-keyring.gpg"] = "KEY"
            return True, ""

        if "containernetworking/plugins" in cmd:
            host.files[re.search(r"touch (\S+)", cmd).group(1)] = ""
            return True, ""

        if cmd.startswith("kubeadm "):
            return self._kubeadm(host, cmd)

        if cmd.startswith("kubectl "):
            return self._kubectl(host, cmd)

        match = re.match(r"mkdir -p \S+ && cp /etc/kubernetes/admin.conf (\S+) && chown", cmd)
        if match:
            if "/etc/kubernetes/admin.conf" not in host.files:
                return False, "cp: cannot stat '/etc/kubernetes/admin.conf'"
            host.files[match.group(1)] = host.files["/etc/kubernetes/admin.conf"]
            return True, ""

        self.unknown.append((host.name, cmd))
        return False, f"fake cluster: unknown command: {cmd}"

    def _systemctl(self, host: FakeHost, args: List[str]) -> Tuple[bool, str]:
        service = args[-1]
        state = host.services.setdefault(service, [False, False])
        action = " ".join(args[:-1])

        if action == "is-active":
            return state[1], "active" if state[1] else "inactive"
        if action == "is-enabled":
            return state[0], "enabled" if state[0] else "disabled"

        if SERVICE_PACKAGES.get(service) not in host.packages:
            return False, f"Failed to {action} {service}.service: Unit {service}.service not found."
        if action in ("enable", "enable --now"):
            state[0] = True
        if action in ("start", "restart", "enable --now"):
            state[1] = True
        return True, ""

    def _kubeadm(self, host: FakeHost, cmd: str) -> Tuple[bool, str]:
        args = cmd.split()

        if args[1] == "init" and args[2] == "--config":
            if "kubeadm" not in host.packages:
                return False, "kubeadm: command not found"
            self.initialized = True
            self._become_member(host, "control-plane")
            host.files["/etc/kubernetes/super-admin.conf"] = "super-admin"
            return True, "Your Kubernetes control-plane has initialized successfully!"

        if args[1] == "token":
            if not self.initialized:
                return False, "failed to load admin kubeconfig"
            if self.token_output is not None:
                return True, self.token_output
            return True, f"kubeadm join 10.0.1.100:6443 --token {TOKEN} --discovery-token-ca-cert-hash {CA_HASH} "

        if args[1:4] == ["init", "phase", "upload-certs"]:
            if not self.initialized:
                return False, "failed to load admin kubeconfig"
            if self.certs_output is not None:
                return True, self.certs_output
            return True, f"[upload-certs] Storing the certificates in Secret \"kubeadm-certs\"\n" \
                         f"[upload-certs] Using certificate key:\n{CERT_KEY}\n"

        if args[1] == "join":
            if not self.initialized:
                return False, "error execution phase preflight: couldn't validate the identity of the API Server"
            token = args[args.index("--token") + 1]
            ca_hash = args[args.index("--discovery-token-ca-cert-hash") + 1]
            if token != TOKEN or ca_hash != CA_HASH:
                return False, "error execution phase preflight: invalid bootstrap token"
            if "--control-plane" in args:
                if args[args.index("--certificate-key") + 1] != CERT_KEY:
                    return False, "error downloading certs: invalid certificate key"
                self._become_member(host, "control-plane")
            else:
                self._become_member(host, "worker")
            return True, "This node has joined the cluster"

        self.unknown.append((host.name, cmd))
        return False, f"fake kubeadm: unsupported {cmd}"

    def _become_member(self, host: FakeHost, kind: str) -> None:
        self.members[host.name] = kind
        host.files["/etc/kubernetes/kubelet.conf"] = "kubelet"
        host.services["kubelet"] = [True, True]
        if kind == "control-plane":
            host.files["/etc/kubernetes/admin.conf"] = "admin"
            self.taints.add(host.name)

    def _kubectl(self, host: FakeHost, cmd: str) -> Tuple[bool, str]:
        if "/etc/kubernetes/admin.conf" not in host.files or not self.initialized:
            return False, "The connection to the server localhost:8080 was refused"
        if " get nodes " in cmd:
            keys = ["node-role.kubernetes.io/control-plane" for _ in sorted(self.taints)]
            return True, " ".join(keys)
        if " taint nodes --all " in cmd:
            self.taints.clear()
            return True, "node/cp-1 untainted"
        self.unknown.append((host.name, cmd))
        return False, f"fake kubectl: unsupported {cmd}"


# --- FIXTURES ---

@pytest.fixture
def cluster_config():
    config, _ = resolve_config(CLUSTER_INPUTS)
    return config


@pytest.fixture
def topology():
    return inventory_model.parse_inventory(INVENTORY_DATA)


@pytest.fixture
def executor_settings(tmp_path):
    return ExecutorSettings(fan_out=5, retries=1, retry_delay=0, log_file=str(tmp_path / "hakube.log"))


@pytest.fixture
def fake_cluster(monkeypatch, topology):
    cluster = FakeCluster({n.name: n.address for n in topology.nodes})
    monkeypatch.setattr(linux, "_dispatch", cluster.dispatch)
    return cluster


@pytest.fixture
def make_controller(fake_cluster, cluster_config, topology, executor_settings):
    """Builds a PhaseController over the fake cluster."""

    def _make(phases=None, limit=None, check=False, config=None, inv=None):
        config = config or cluster_config
        inv = inv or topology
        nr = inventory_model.build_nornir(inv, config, executor_settings)
        executor = RemoteExecutor(nr)
        return PhaseController(
            inv, config, DryRunExecutor(executor) if check else executor, phases=phases, limit=limit
        )

    return _make
