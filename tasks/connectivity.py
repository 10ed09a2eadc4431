from nornir.core.task import Task, Result

from core.errors import ConnectivityError
from core.models import TaskStatus, StandardResult
from tasks import fail
from utils.linux import run_command
from utils.logger import sys_logger


def check_ssh_connection(task: Task) -> Result:
    """
    Lightweight task that runs 'uptime' to verify connectivity and
    authentication. Transport retries and timeouts come from run_command.
    """
    try:
        cmd = run_command(task, "uptime")
    except ConnectivityError as e:
        sys_logger.warning(f"[{task.host.name}] precheck failed: {e.reason}")
        return fail(task, f"Unreachable: {e.reason}")

    if cmd.failed:
        return fail(task, f"Connection check failed: {str(cmd.result)[-200:]}")

    uptime_str = str(cmd.result).strip()
    return Result(host=task.host, result=StandardResult(TaskStatus.OK, f"Connected ({uptime_str})"))
