from typing import List

from core.models import Node, PhaseContext
from tasks.control_plane import CRI_SOCKET, KUBELET_CONF
from tasks.resources import Resource, Command


def join_worker_resources(node: Node, ctx: PhaseContext) -> List[Resource]:
    """Workers only ever see the WorkerJoin view (no certificate key)."""
    join_cmd = f"kubeadm join {ctx.join.join_flags()} --node-name {node.name} --cri-socket {CRI_SOCKET}"
    return [
        Command("kubeadm join (worker)", join_cmd, creates=KUBELET_CONF, sensitive=True),
    ]
