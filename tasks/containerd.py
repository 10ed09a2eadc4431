from typing import List

from core.models import Node
from core.settings import ClusterConfig
from tasks.resources import Resource, Command, File, Package, Service

CONTAINERD_CONFIG = "/etc/containerd/config.toml"
DOCKER_KEYRING = "/etc/apt/keyrings/docker.gpg"
DOCKER_REPO_LIST = "/etc/apt/sources.list.d/docker.list"


def render_containerd_config(config: ClusterConfig) -> str:
    """
    containerd 1.7 (config version 2) with the systemd cgroup driver,
    the pinned pause image and, when a registry mirror is set, the mirror
    endpoints with the service-account credentials.
    """
    lines = [
        "version = 2",
        "",
        '[plugins."io.containerd.grpc.v1.cri"]',
        f'  sandbox_image = "registry.k8s.io/pause:{config.pause_version}"',
        "",
        '[plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc]',
        '  runtime_type = "io.containerd.runc.v2"',
        "",
        '[plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]',
        "  SystemdCgroup = true",
    ]

    if config.registry_mirror:
        mirror = config.registry_mirror.rstrip("/")
        if "://" not in mirror:
            mirror = f"https://{mirror}"
        mirror_host = mirror.split("://", 1)[1]
        for upstream in ("docker.io", "registry.k8s.io", "ghcr.io"):
            lines += [
                "",
                f'[plugins."io.containerd.grpc.v1.cri".registry.mirrors."{upstream}"]',
                f'  endpoint = ["{mirror}"]',
            ]
        lines += [
            "",
            f'[plugins."io.containerd.grpc.v1.cri".registry.configs."{mirror_host}".auth]',
            f'  username = "{config.af_username}"',
            f'  password = "{config.caas_sa_af_token}"',
        ]

    return "\n".join(lines) + "\n"


def containerd_resources(node: Node, config: ClusterConfig) -> List[Resource]:
    """Container runtime: docker apt repo, pinned containerd.io, CRI config, running service."""
    add_repo = (
        "install -m 0755 -d /etc/apt/keyrings && "
        f"curl -fsSL https://download.docker.com/linux/ubuntu/gpg | gpg --batch --yes --dearmor -o {DOCKER_KEYRING} && "
        f"chmod a+r {DOCKER_KEYRING} && "
        f'echo "deb [arch=$(dpkg --print-architecture) signed-by={DOCKER_KEYRING}] '
        'https://download.docker.com/linux/ubuntu $(. /etc/os-release && echo $VERSION_CODENAME) stable" '
        f"> {DOCKER_REPO_LIST}"
    )

    return [
        Command("docker apt repository", add_repo, creates=DOCKER_REPO_LIST),
        Package("containerd.io", config.containerd_version, hold=True),
        File(
            CONTAINERD_CONFIG,
            render_containerd_config(config),
            mode="600",
            sensitive=bool(config.registry_mirror),
            notify="containerd",
        ),
        Service("containerd"),
    ]
