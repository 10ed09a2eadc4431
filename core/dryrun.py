from typing import Dict, List

from core.errors import HakubeError
from core.executor import RemoteExecutor
from core.models import Node, Phase, PhaseContext, RunResult


class DryRunExecutor:
    """
    Simulate-only view of a RemoteExecutor. Same targeting, same resources,
    same RunResult shape; resources are diffed but never applied.
    """

    simulate = True

    def __init__(self, inner: RemoteExecutor):
        self._inner = inner

    @property
    def cancel_event(self):
        return self._inner.cancel_event

    def precheck(self, phase: Phase, nodes: List[Node]) -> Dict[str, RunResult]:
        return self._inner.precheck(phase, nodes)

    def apply(self, phase: Phase, nodes: List[Node], ctx: PhaseContext) -> List[RunResult]:
        return self._inner.apply(phase, nodes, ctx, simulate=True)

    def run_task(self, node, task_func, name):
        raise HakubeError(f"'{name}' changes remote state and cannot run in a dry run")
