from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class TaskStatus(str, Enum):
    OK = "OK"  # Converged already, nothing to do
    CHANGED = "CHANGED"  # Resources were (or would be) changed
    WARNING = "WARNING"  # Succeeded with non-critical issues
    FAILED = "FAILED"  # Blocks the node for the rest of the phase
    SKIPPED = "SKIPPED"  # Not executed (cancelled, blocked, filtered)


@dataclass
class StandardResult:
    """
    Standard payload to be included in Nornir's Result.result.
    """
    status: TaskStatus
    message: str
    data: Optional[Any] = None  # Change descriptions collected for the node


@dataclass
class SubTaskResult:
    """Lightweight result object for a single resource step."""
    success: bool
    message: str
    exception: Optional[Exception] = None
    data: Optional[Any] = None  # Change description, None when already converged


# --- TOPOLOGY ---

class NodeRole(str, Enum):
    PRIMARY = "control-plane-primary"
    SECONDARY = "control-plane-secondary"
    WORKER = "worker"

    @property
    def is_control_plane(self) -> bool:
        return self is not NodeRole.WORKER


@dataclass(frozen=True)
class Node:
    name: str
    role: NodeRole
    address: str
    user: Optional[str] = None
    ssh_key: Optional[str] = None
    port: int = 22

    @property
    def group(self) -> str:
        return "workers" if self.role is NodeRole.WORKER else "masters"


# --- PHASES ---

class Phase(str, Enum):
    PREPARE = "prepare"
    INIT = "init"
    JOIN_MASTERS = "join-masters"
    JOIN_WORKERS = "join-workers"
    POST_CONFIG = "post-config"

    @property
    def order(self) -> int:
        return PHASE_ORDER.index(self)

    @property
    def targets(self) -> List[NodeRole]:
        return PHASE_TARGETS[self]

    @property
    def is_join(self) -> bool:
        return self in (Phase.JOIN_MASTERS, Phase.JOIN_WORKERS)


PHASE_ORDER = [Phase.PREPARE, Phase.INIT, Phase.JOIN_MASTERS, Phase.JOIN_WORKERS, Phase.POST_CONFIG]

PHASE_TARGETS: Dict[Phase, List[NodeRole]] = {
    Phase.PREPARE: [NodeRole.PRIMARY, NodeRole.SECONDARY, NodeRole.WORKER],
    Phase.INIT: [NodeRole.PRIMARY],
    Phase.JOIN_MASTERS: [NodeRole.SECONDARY],
    Phase.JOIN_WORKERS: [NodeRole.WORKER],
    Phase.POST_CONFIG: [NodeRole.PRIMARY, NodeRole.SECONDARY, NodeRole.WORKER],
}


@dataclass(frozen=True)
class PhaseContext:
    """Inputs available to the resource builders of a phase."""
    config: Any  # ClusterConfig
    nodes: Tuple[Node, ...]
    # JoinCredential for control-plane joins, WorkerJoin for worker joins
    join: Optional[Any] = None

    @property
    def primary(self) -> Node:
        return next(n for n in self.nodes if n.role is NodeRole.PRIMARY)

    @property
    def workers(self) -> List[Node]:
        return [n for n in self.nodes if n.role is NodeRole.WORKER]


# --- RESULTS ---

class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Change:
    """One resource that was (or would be) changed on a node."""
    resource: str
    action: str


@dataclass
class RunResult:
    node: str
    phase: Phase
    status: RunStatus
    message: str
    role: Optional[NodeRole] = None
    changes: List[Change] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status is RunStatus.FAILED


@dataclass
class RunReport:
    """Aggregated per-node, per-phase outcome of one orchestrator run."""
    simulate: bool = False
    aborted: bool = False
    results: List[RunResult] = field(default_factory=list)

    def add(self, result: RunResult) -> None:
        self.results.append(result)

    def for_phase(self, phase: Phase) -> List[RunResult]:
        return [r for r in self.results if r.phase is phase]

    @property
    def failures(self) -> List[RunResult]:
        return [r for r in self.results if r.failed]

    @property
    def critical_failures(self) -> List[RunResult]:
        """Failures on nodes the cluster cannot be healthy without (any control plane)."""
        return [r for r in self.failures if r.role is not None and r.role.is_control_plane]

    @property
    def change_count(self) -> int:
        return sum(len(r.changes) for r in self.results)

    @property
    def exit_code(self) -> int:
        if self.aborted:
            return 130
        return 1 if self.critical_failures else 0
