from functools import wraps
from typing import Optional

from nornir.core.task import Task, Result
from rich.markup import escape

from core.errors import HakubeError
from core.models import TaskStatus, StandardResult, SubTaskResult
from core.state import config as global_config
from utils.logger import console, sys_logger


def automated_step(step_name: str):
    """
    Decorator that makes node-level tasks robust.
    1. Logs start and end to file.
    2. Catches exceptions so one node never takes the run down.
    3. Ensures the return value carries a StandardResult.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(task: Task, *args, **kwargs) -> Result:
            host_name = task.host.name
            sys_logger.info(f"START task='{step_name}' host='{host_name}'")

            try:
                result = func(task, *args, **kwargs)

                status = "UNKNOWN"
                if isinstance(result.result, StandardResult):
                    status = result.result.status.value

                sys_logger.info(f"END task='{step_name}' host='{host_name}' status='{status}'")
                return result

            except HakubeError as e:
                sys_logger.error(f"FAIL task='{step_name}' host='{host_name}': {e}")
                return Result(
                    host=task.host,
                    failed=True,
                    result=StandardResult(status=TaskStatus.FAILED, message=str(e))
                )

            except Exception as e:
                error_msg = f"CRITICAL EXCEPTION in '{step_name}': {str(e)}"
                sys_logger.error(error_msg, exc_info=True)

                return Result(
                    host=task.host,
                    failed=True,
                    result=StandardResult(
                        status=TaskStatus.FAILED,
                        message=f"System Error: {str(e)}"
                    )
                )

        return wrapper

    return decorator


def automated_substep(step_name: Optional[str] = None):
    """
    Decorator for resource-level steps.
    The step is named after the resource (second positional argument)
    unless a fixed name is given. Console lines appear from verbosity 1.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(task: Task, *args, **kwargs) -> SubTaskResult:
            host_name = task.host.name
            name = step_name or getattr(args[0] if args else None, "name", func.__name__)

            sys_logger.info(f"[{host_name}] [SUB-START] '{name}'")

            try:
                result = func(task, *args, **kwargs)
            except Exception as e:
                error_msg = f"Exception in '{name}': {str(e)}"
                sys_logger.error(f"[{host_name}] [SUB-CRASH] {error_msg}", exc_info=True)
                if global_config.VERBOSE:
                    console.print(f"    [bold red]💥 CRASH[/bold red] [dim]{host_name}[/dim] {escape(name)}: {escape(str(e))}")
                return SubTaskResult(success=False, message=error_msg, exception=e)

            if not result.success:
                status_log = "FAIL"
            elif result.data:
                status_log = "CHANGED"
            else:
                status_log = "OK"
            log_msg = f"[{host_name}] [SUB-END] '{name}' -> {status_log} ({result.message})"

            if result.success:
                sys_logger.info(log_msg)
            else:
                sys_logger.warning(log_msg)

            if global_config.VERBOSE:
                if not result.success:
                    console.print(f"    [red]✖[/red] [dim]{host_name}[/dim] {escape(name)}: [dim]{escape(result.message)}[/dim]")
                elif result.data:
                    detail = f": [dim]{escape(result.message)}[/dim]" if global_config.VERBOSITY >= 2 else ""
                    console.print(f"    [yellow]✨[/yellow] [dim]{host_name}[/dim] {escape(name)}{detail}")
                else:
                    console.print(f"    [green]✔[/green] [dim]{host_name}[/dim] [dim]{escape(name)}[/dim]")

            return result

        return wrapper

    return decorator
