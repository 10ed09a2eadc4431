import threading
from typing import Callable, Dict, List, Optional

from nornir.core import Nornir
from nornir.core.task import MultiResult, Task, Result

from core.decorators import automated_step, automated_substep
from core.errors import TaskApplicationError
from core.models import (
    Change,
    Node,
    Phase,
    PhaseContext,
    RunResult,
    RunStatus,
    StandardResult,
    SubTaskResult,
    TaskStatus,
)
from core.registry import build_resources
from tasks import fail
from tasks.connectivity import check_ssh_connection
from tasks.resources import PlannedState, Resource
from utils.logger import redact


# --- NODE-LEVEL TASKS ---

@automated_substep()
def _converge(task: Task, resource: Resource, state: PlannedState, simulate: bool) -> SubTaskResult:
    """Brings one resource to its desired state (or reports what that would take)."""
    drift = resource.diff(task, state)
    if drift is None:
        return SubTaskResult(success=True, message="already converged")

    if resource.notify:
        state.notified.add(resource.notify)

    if simulate:
        resource.record(state)
        return SubTaskResult(success=True, message=f"would {drift}", data=Change(resource.name, drift))

    res = resource.apply(task, state)
    if res.failed:
        return SubTaskResult(success=False, message=redact(str(res.result).strip())[-300:] or "failed")

    return SubTaskResult(success=True, message=drift, data=Change(resource.name, drift))


@automated_step("Apply Phase")
def apply_phase(
        task: Task,
        phase: Phase,
        ctx: PhaseContext,
        simulate: bool,
        planned: Dict[str, PlannedState],
        cancel_event: threading.Event,
) -> Result:
    """
    Converges every resource the phase declares for this node, sequentially
    and in order. Stops at the first failing resource.
    """
    node: Node = task.host.data["node"]

    if cancel_event.is_set():
        return Result(host=task.host, result=StandardResult(TaskStatus.SKIPPED, "cancelled before start", data=[]))

    # The overlay survives across phases in a dry run; a real run reads the host every time
    state = planned.setdefault(node.name, PlannedState(active=True)) if simulate else PlannedState()
    state.notified.clear()

    resources = build_resources(phase, node, ctx)
    changes: List[Change] = []

    for index, resource in enumerate(resources):
        if cancel_event.is_set():
            return Result(
                host=task.host,
                result=StandardResult(
                    TaskStatus.SKIPPED, f"cancelled after {index}/{len(resources)} resources", data=changes
                )
            )

        step = _converge(task, resource, state, simulate)

        if not step.success:
            error = TaskApplicationError(node.name, resource.name, step.message)
            return fail(task, str(error), data=changes)
        if step.data:
            changes.append(step.data)

    if not changes:
        message = f"{len(resources)} resources already converged"
    elif simulate:
        message = f"would change {len(changes)} of {len(resources)} resources"
    else:
        message = f"changed {len(changes)} of {len(resources)} resources"

    return Result(
        host=task.host,
        changed=bool(changes) and not simulate,
        result=StandardResult(TaskStatus.CHANGED if changes else TaskStatus.OK, message, data=changes)
    )


# --- EXECUTOR ---

def _payload(multi_result: MultiResult) -> StandardResult:
    """Extracts our StandardResult, falling back when the task blew up outside the decorators."""
    task_result = multi_result[0]
    payload = task_result.result
    if isinstance(payload, StandardResult):
        return payload
    status = TaskStatus.FAILED if task_result.failed else TaskStatus.OK
    message = str(task_result.exception or payload)
    return StandardResult(status, redact(message))


def to_run_result(phase: Phase, node: Node, payload: StandardResult) -> RunResult:
    if payload.status is TaskStatus.FAILED:
        status = RunStatus.FAILED
    elif payload.status is TaskStatus.SKIPPED:
        status = RunStatus.SKIPPED
    else:
        status = RunStatus.SUCCESS
    changes = list(payload.data) if isinstance(payload.data, list) else []
    return RunResult(node=node.name, phase=phase, status=status, message=payload.message,
                     role=node.role, changes=changes)


class RemoteExecutor:
    """
    Applies phase resources to a node subset through nornir's threaded
    runner and returns one RunResult per node, in the order given.
    """

    simulate = False

    def __init__(self, nornir: Nornir, cancel_event: Optional[threading.Event] = None):
        self.nr = nornir
        self.cancel_event = cancel_event or threading.Event()
        self._planned: Dict[str, PlannedState] = {}

    def _subset(self, nodes: List[Node]) -> Nornir:
        names = {n.name for n in nodes}
        return self.nr.filter(filter_func=lambda h: h.name in names)

    def precheck(self, phase: Phase, nodes: List[Node]) -> Dict[str, RunResult]:
        """Connectivity check. Returns a failed RunResult for each unreachable node."""
        if not nodes:
            return {}
        agg = self._subset(nodes).run(task=check_ssh_connection, name=f"precheck {phase.value}", on_failed=True)

        failures = {}
        for node in nodes:
            payload = _payload(agg[node.name])
            if payload.status is TaskStatus.FAILED:
                failures[node.name] = to_run_result(phase, node, payload)
        return failures

    def apply(self, phase: Phase, nodes: List[Node], ctx: PhaseContext,
              simulate: Optional[bool] = None) -> List[RunResult]:
        if not nodes:
            return []
        simulate = self.simulate if simulate is None else simulate

        agg = self._subset(nodes).run(
            task=apply_phase,
            name=phase.value,
            phase=phase,
            ctx=ctx,
            simulate=simulate,
            planned=self._planned,
            cancel_event=self.cancel_event,
            on_failed=True,
        )
        return [to_run_result(phase, node, _payload(agg[node.name])) for node in nodes]

    def run_task(self, node: Node, task_func: Callable[..., Result], name: str) -> StandardResult:
        """Runs a single imperative task on one node (e.g. credential extraction)."""
        agg = self._subset([node]).run(task=task_func, name=name, on_failed=True)
        return _payload(agg[node.name])
