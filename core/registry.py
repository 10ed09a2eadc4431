from typing import Callable, Dict, List, Set

from core.models import Node, NodeRole, Phase, PhaseContext, PHASE_ORDER
from tasks.containerd import containerd_resources
from tasks.control_plane import init_resources, join_master_resources
from tasks.kube_packages import k8s_repo_resources, kube_tool_resources
from tasks.node_preparation import apt_proxy_resources, base_package_resources, kernel_resources
from tasks.post_config import post_config_resources
from tasks.resources import Resource
from tasks.worker import join_worker_resources

Builder = Callable[[Node, PhaseContext], List[Resource]]
TaskChain = List[Builder]


def _prep(fn) -> Builder:
    """Adapts a (node, config) builder to the (node, ctx) signature."""
    def builder(node: Node, ctx: PhaseContext) -> List[Resource]:
        return fn(node, ctx.config)
    builder.__name__ = fn.__name__
    return builder


PREPARE_CHAIN: TaskChain = [
    _prep(apt_proxy_resources),
    _prep(base_package_resources),
    _prep(kernel_resources),
    _prep(containerd_resources),
    _prep(k8s_repo_resources),
    _prep(kube_tool_resources),
]

PHASE_REGISTRY: Dict[Phase, Dict[NodeRole, TaskChain]] = {

    Phase.PREPARE: {
        NodeRole.PRIMARY: PREPARE_CHAIN,
        NodeRole.SECONDARY: PREPARE_CHAIN,
        NodeRole.WORKER: PREPARE_CHAIN,
    },

    Phase.INIT: {
        NodeRole.PRIMARY: [init_resources],
    },

    Phase.JOIN_MASTERS: {
        NodeRole.SECONDARY: [join_master_resources],
    },

    Phase.JOIN_WORKERS: {
        NodeRole.WORKER: [join_worker_resources],
    },

    Phase.POST_CONFIG: {
        NodeRole.PRIMARY: [post_config_resources],
        NodeRole.SECONDARY: [post_config_resources],
        NodeRole.WORKER: [post_config_resources],
    },
}

# Tag vocabulary of the original deploy script
TAG_ALIASES: Dict[str, List[Phase]] = {
    "prepare": [Phase.PREPARE],
    "prep": [Phase.PREPARE],
    "preparation": [Phase.PREPARE],
    "system": [Phase.PREPARE],
    "init": [Phase.INIT],
    "master-init": [Phase.INIT],
    "join-masters": [Phase.JOIN_MASTERS],
    "master-join": [Phase.JOIN_MASTERS],
    "masters": [Phase.JOIN_MASTERS],
    "join-workers": [Phase.JOIN_WORKERS],
    "worker-join": [Phase.JOIN_WORKERS],
    "workers": [Phase.JOIN_WORKERS],
    "join": [Phase.JOIN_MASTERS, Phase.JOIN_WORKERS],
    "post-config": [Phase.POST_CONFIG],
    "config": [Phase.POST_CONFIG],
    "finalize": [Phase.POST_CONFIG],
}


def resolve_tags(tags: List[str]) -> Set[Phase]:
    """Maps tag names (and aliases) to phases. Raises ValueError on unknown tags."""
    phases: Set[Phase] = set()
    unknown = []
    for tag in tags:
        key = tag.strip().lower()
        if not key:
            continue
        if key not in TAG_ALIASES:
            unknown.append(tag)
            continue
        phases.update(TAG_ALIASES[key])
    if unknown:
        raise ValueError(f"Unknown tag(s): {', '.join(unknown)}. Run 'hakube tags' to list them.")
    return phases


def select_phases(tags: List[str], skip_tags: List[str]) -> List[Phase]:
    """Ordered phases left after applying include (empty means all) and skip lists."""
    included = resolve_tags(tags) if tags else set(PHASE_ORDER)
    skipped = resolve_tags(skip_tags) if skip_tags else set()
    return [p for p in PHASE_ORDER if p in included and p not in skipped]


def build_resources(phase: Phase, node: Node, ctx: PhaseContext) -> List[Resource]:
    """Flattens the task chain registered for (phase, role) into the node's resource list."""
    resources: List[Resource] = []
    for builder in PHASE_REGISTRY[phase].get(node.role, []):
        resources.extend(builder(node, ctx))
    return resources
