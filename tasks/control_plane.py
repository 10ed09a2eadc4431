from typing import List

import yaml

from core.models import Node, NodeRole, PhaseContext
from core.settings import ClusterConfig
from tasks.resources import Resource, Command, File

KUBEADM_CONFIG = "/etc/kubernetes/kubeadm-config.yaml"
KUBE_VIP_MANIFEST = "/etc/kubernetes/manifests/kube-vip.yaml"
ADMIN_CONF = "/etc/kubernetes/admin.conf"
SUPER_ADMIN_CONF = "/etc/kubernetes/super-admin.conf"
KUBELET_CONF = "/etc/kubernetes/kubelet.conf"
CRI_SOCKET = "unix:///run/containerd/containerd.sock"


def _minor(config: ClusterConfig) -> int:
    return int(config.kubernetes_minor.split(".")[1])


def render_kubeadm_config(node: Node, config: ClusterConfig) -> str:
    """
    InitConfiguration + ClusterConfiguration for the primary control plane.
    v1beta4 from 1.31 on. The kubelet node-ip comes from /etc/default/kubelet
    (written in prepare), the same as on joining nodes.
    """
    api_version = "kubeadm.k8s.io/v1beta4" if _minor(config) >= 31 else "kubeadm.k8s.io/v1beta3"

    init_cfg = {
        "apiVersion": api_version,
        "kind": "InitConfiguration",
        "localAPIEndpoint": {"advertiseAddress": node.address, "bindPort": 6443},
        "nodeRegistration": {
            "name": node.name,
            "criSocket": CRI_SOCKET,
        },
    }
    cluster_cfg = {
        "apiVersion": api_version,
        "kind": "ClusterConfiguration",
        "kubernetesVersion": config.kubernetes_release,
        "controlPlaneEndpoint": config.api_endpoint,
        "apiServer": {"certSANs": [config.k8s_api_ip, node.address]},
        "networking": {"podSubnet": config.pod_network_cidr},
    }
    return yaml.safe_dump_all([init_cfg, cluster_cfg], sort_keys=False)


def render_kube_vip_manifest(config: ClusterConfig, kubeconfig: str) -> str:
    """kube-vip static pod in ARP mode, holding the API VIP on the failover interface."""
    env = {
        "vip_arp": "true",
        "port": "6443",
        "vip_interface": config.dth_interface,
        "vip_cidr": "32",
        "cp_enable": "true",
        "cp_namespace": "kube-system",
        "vip_leaderelection": "true",
        "vip_leasename": "plndr-cp-lock",
        "vip_leaseduration": "5",
        "vip_renewdeadline": "3",
        "vip_retryperiod": "1",
        "address": config.k8s_api_ip,
    }
    manifest = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": "kube-vip", "namespace": "kube-system"},
        "spec": {
            "containers": [{
                "name": "kube-vip",
                "image": f"ghcr.io/kube-vip/kube-vip:{config.kube_vip_version}",
                "imagePullPolicy": "IfNotPresent",
                "args": ["manager"],
                "env": [{"name": k, "value": v} for k, v in env.items()],
                "securityContext": {"capabilities": {"add": ["NET_ADMIN", "NET_RAW"]}},
                "volumeMounts": [{"mountPath": "/etc/kubernetes/admin.conf", "name": "kubeconfig"}],
            }],
            "hostAliases": [{"hostnames": ["kubernetes"], "ip": "127.0.0.1"}],
            "hostNetwork": True,
            "volumes": [{"hostPath": {"path": kubeconfig}, "name": "kubeconfig"}],
        },
    }
    return yaml.safe_dump(manifest, sort_keys=False)


def kube_vip_resource(node: Node, config: ClusterConfig) -> File:
    # From 1.29 admin.conf has no rights before the cluster exists; the primary bootstraps with super-admin.conf
    if node.role is NodeRole.PRIMARY and _minor(config) >= 29:
        kubeconfig = SUPER_ADMIN_CONF
    else:
        kubeconfig = ADMIN_CONF
    return File(KUBE_VIP_MANIFEST, render_kube_vip_manifest(config, kubeconfig), mode="600")


# --- PHASE BUILDERS ---

def init_resources(node: Node, ctx: PhaseContext) -> List[Resource]:
    """
    Primary control plane: VIP first (the API endpoint is the VIP), then
    kubeadm init. Re-runs are no-ops once admin.conf exists.
    """
    config = ctx.config
    init_cmd = f"kubeadm init --config {KUBEADM_CONFIG} --upload-certs"
    return [
        kube_vip_resource(node, config),
        File(KUBEADM_CONFIG, render_kubeadm_config(node, config), mode="600"),
        Command("kubeadm init", init_cmd, creates=ADMIN_CONF),
    ]


def join_master_resources(node: Node, ctx: PhaseContext) -> List[Resource]:
    """
    Secondary control planes. kube-vip goes in after the join: kubeadm's
    preflight wants an empty manifests directory.
    """
    join_cmd = (
        f"kubeadm join {ctx.join.join_flags()} "
        f"--apiserver-advertise-address {node.address} --node-name {node.name} --cri-socket {CRI_SOCKET}"
    )
    return [
        Command("kubeadm join (control-plane)", join_cmd, creates=KUBELET_CONF, sensitive=True),
        kube_vip_resource(node, ctx.config),
    ]
