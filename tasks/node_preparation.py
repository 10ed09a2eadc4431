from typing import Dict, List

from core.models import Node
from core.settings import ClusterConfig
from tasks.resources import (
    Resource,
    File,
    Handler,
    KernelModule,
    Package,
    SwapOff,
    FstabSwapOff,
)

KERNEL_MODULES = ["overlay", "br_netfilter"]

SYSCTL_PARAMS: Dict[str, str] = {
    "net.bridge.bridge-nf-call-iptables": "1",
    "net.bridge.bridge-nf-call-ip6tables": "1",
    "net.ipv4.ip_forward": "1",
}

BASE_PACKAGES = ["apt-transport-https", "ca-certificates", "curl", "gnupg"]

APT_PROXY_CONF = "/etc/apt/apt.conf.d/01hakube-proxy"
APT_AUTH_CONF = "/etc/apt/auth.conf.d/hakube-artifactory.conf"


def proxy_url(apt_proxy: str) -> str:
    """'10.0.1.50' -> 'http://10.0.1.50:3142' (apt-cacher-ng default port)."""
    if "://" in apt_proxy:
        return apt_proxy
    host = apt_proxy if ":" in apt_proxy else f"{apt_proxy}:3142"
    return f"http://{host}"


def _proxy_host(apt_proxy: str) -> str:
    return proxy_url(apt_proxy).split("://", 1)[1].rstrip("/")


def apt_proxy_resources(node: Node, config: ClusterConfig) -> List[Resource]:
    """Routes apt through the shared proxy and registers the artifactory credentials."""
    url = proxy_url(config.apt_proxy)
    proxy_conf = (
        f'Acquire::http::Proxy "{url}";\n'
        f'Acquire::https::Proxy "DIRECT";\n'
    )
    auth_conf = (
        f"machine {_proxy_host(config.apt_proxy)}\n"
        f"login {config.af_username}\n"
        f"password {config.af_api_token}\n"
    )
    return [
        File(APT_PROXY_CONF, proxy_conf),
        File(APT_AUTH_CONF, auth_conf, mode="600", sensitive=True),
    ]


def kernel_resources(node: Node, config: ClusterConfig) -> List[Resource]:
    """Kernel modules (loaded now and on boot), bridge/forwarding sysctls, swap off."""
    sysctl_content = "\n".join(f"{key} = {value}" for key, value in SYSCTL_PARAMS.items()) + "\n"

    resources: List[Resource] = [
        File("/etc/modules-load.d/k8s.conf", "\n".join(KERNEL_MODULES) + "\n"),
    ]
    resources += [KernelModule(mod) for mod in KERNEL_MODULES]
    resources += [
        File("/etc/sysctl.d/k8s.conf", sysctl_content, notify="sysctl"),
        Handler("sysctl", "sysctl --system"),
        SwapOff(),
        FstabSwapOff(),
    ]
    return resources


def base_package_resources(node: Node, config: ClusterConfig) -> List[Resource]:
    return [Package(pkg) for pkg in BASE_PACKAGES]
