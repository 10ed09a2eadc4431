from typing import List

from core.models import Node, NodeRole, PhaseContext
from tasks.control_plane import ADMIN_CONF
from tasks.resources import Resource, Command, Service, Untaint

CONTROL_PLANE_TAINT = "node-role.kubernetes.io/control-plane"


def _home(user: str) -> str:
    return "/root" if user == "root" else f"/home/{user}"


def post_config_resources(node: Node, ctx: PhaseContext) -> List[Resource]:
    """
    Finalization: operator kubeconfig on control planes and kubelet running
    everywhere. With no workers the control planes double as workers, so the
    primary lifts their NoSchedule taint.
    """
    user = node.user or ctx.config.ssh_user
    kubeconfig = f"{_home(user)}/.kube/config"

    resources: List[Resource] = []
    if node.role.is_control_plane:
        copy_cmd = (
            f"mkdir -p {_home(user)}/.kube && "
            f"cp {ADMIN_CONF} {kubeconfig} && "
            f"chown {user}:{user} {_home(user)}/.kube {kubeconfig}"
        )
        resources.append(Command(f"kubeconfig for {user}", copy_cmd, creates=kubeconfig))

    resources.append(Service("kubelet", enabled=True, running=True))

    if node.role is NodeRole.PRIMARY and not ctx.workers:
        resources.append(Untaint(CONTROL_PLANE_TAINT))

    return resources
