from typing import List

from core.models import Node
from core.settings import ClusterConfig
from tasks.resources import Resource, Command, File, KubeletNodeIP, Package, Service

K8S_KEYRING = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
K8S_REPO_LIST = "/etc/apt/sources.list.d/kubernetes.list"
CNI_BIN_DIR = "/opt/cni/bin"

KUBE_PACKAGES = ["kubelet", "kubeadm", "kubectl"]


def k8s_repo_resources(node: Node, config: ClusterConfig) -> List[Resource]:
    """pkgs.k8s.io repository for the configured minor release."""
    minor = config.kubernetes_minor
    key_url = f"https://pkgs.k8s.io/core:/stable:/{minor}/deb/Release.key"

    add_key = (
        "install -m 0755 -d /etc/apt/keyrings && "
        f"curl -fsSL {key_url} | gpg --batch --yes --dearmor -o {K8S_KEYRING} && "
        f"chmod a+r {K8S_KEYRING}"
    )
    repo_content = f"deb [signed-by={K8S_KEYRING}] https://pkgs.k8s.io/core:/stable:/{minor}/deb/ /\n"

    return [
        Command(f"kubernetes apt key ({minor})", add_key, creates=K8S_KEYRING),
        File(K8S_REPO_LIST, repo_content),
    ]


def kube_tool_resources(node: Node, config: ClusterConfig) -> List[Resource]:
    """
    kubelet/kubeadm/kubectl and cri-tools pinned and held, CNI plugins, kubelet
    node-ip taken from the host interface, kubelet enabled.
    """
    cni_version = config.cni_plugin_version
    cni_marker = f"{CNI_BIN_DIR}/.hakube-cni-{cni_version}"
    cni_url = (
        "https://github.com/containernetworking/plugins/releases/download/"
        f"{cni_version}/cni-plugins-linux-$(dpkg --print-architecture)-{cni_version}.tgz"
    )
    install_cni = (
        f"mkdir -p {CNI_BIN_DIR} && "
        f"curl -fsSL {cni_url} | tar -xz -C {CNI_BIN_DIR} && "
        f"touch {cni_marker}"
    )

    resources: List[Resource] = [Package(pkg, config.kube_version, hold=True) for pkg in KUBE_PACKAGES]
    resources += [
        Package("cri-tools", config.cri_tools_version, hold=True),
        Command(f"cni plugins {cni_version}", install_cni, creates=cni_marker),
        File("/etc/crictl.yaml", "runtime-endpoint: unix:///run/containerd/containerd.sock\n"),
        KubeletNodeIP(config.host_interface),
        # Crash-loops until kubeadm configures it, so only enabled here
        Service("kubelet", enabled=True, running=False),
    ]
    return resources
