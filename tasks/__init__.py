from nornir.core.task import Task, Result

from core.models import TaskStatus, StandardResult


def fail(task: Task, message: str, data=None) -> Result:
    """
    Helper to return a failed Result carrying a FAILED StandardResult.
    """
    return Result(
        host=task.host,
        failed=True,
        result=StandardResult(TaskStatus.FAILED, message, data=data)
    )

__all__ = [
    "fail"
]
