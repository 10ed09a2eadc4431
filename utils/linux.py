import base64
import datetime
import logging
import re
import shlex
import subprocess
import time
import uuid
from typing import List, Optional, Union

from nornir.core.exceptions import NornirSubTaskError
from nornir.core.task import Task, Result
from nornir_scrapli.tasks import send_command
from scrapli.exceptions import ScrapliException

from core.errors import ConnectivityError
from core.settings import ExecutorSettings
from utils.logger import sys_logger

RC_MARKER = "__HAKUBE_RC="
_RC_REGEX = re.compile(rf"{RC_MARKER}(\d+)\s*$")

BACKUP_DIR = "/var/backups/hakube"


def _settings(task: Task) -> ExecutorSettings:
    return task.host.get("executor_settings") or ExecutorSettings()


# --- CORE EXECUTION ---

def run_command(task: Task, cmd: str, sudo: bool = False, sensitive: bool = False) -> Result:
    """
    Unified command dispatcher.
    Handles:
    1. Sudo privilege escalation (passwordless, whole command line)
    2. Platform dispatch (local vs remote SSH)
    3. Bounded retries when the connection cannot be opened

    Task-level failures (non-zero exit, transport errors once the command
    was sent) are returned, never retried.

    Raises:
        ConnectivityError: the host stayed unreachable after all retries.
    """
    if sudo:
        cmd = f"sudo -n sh -c {shlex.quote(cmd)}"

    settings = _settings(task)
    shown = "<sensitive command>" if sensitive else cmd
    sys_logger.debug(f"[{task.host.name}] RUN {shown}")

    attempts = max(1, settings.retries)
    for attempt in range(1, attempts + 1):
        try:
            result = _dispatch(task, cmd)
            break
        except ConnectivityError as e:
            sys_logger.warning(f"[{task.host.name}] transport failure ({attempt}/{attempts}): {e.reason}")
            if attempt == attempts:
                raise
            time.sleep(settings.retry_delay)

    if result.failed and "sudo: a password is required" in str(result.result):
        return Result(
            host=task.host,
            failed=True,
            result=f"Sudo privileges missing for user '{task.host.username}' "
                   f"on '{task.host.hostname}' (NOPASSWD required)."
        )
    return result


def _dispatch(task: Task, cmd: str) -> Result:
    """Executes one command line on the host. Single seam between tasks and the transport."""
    if task.host.platform == "linux_local":
        return _run_local_subprocess(task, cmd)
    return _run_remote(task, cmd)


def _run_local_subprocess(task: Task, command: str) -> Result:
    """Internal helper for local execution."""
    use_shell = any(op in command for op in ("|", "&&", "||", ">", ";"))
    timeout = _settings(task).command_timeout

    try:
        proc = subprocess.run(
            command if use_shell else shlex.split(command),
            shell=use_shell,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            universal_newlines=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return Result(host=task.host, failed=True, result=f"Timed out after {timeout}s")
    except OSError as e:
        return Result(host=task.host, failed=True, result=f"Local execution exception: {e}")

    output = proc.stdout
    if proc.returncode != 0:
        output += f"\nError: {proc.stderr}"

    return Result(
        host=task.host,
        result=output,
        failed=proc.returncode != 0,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )


def _drop_connection(task: Task) -> None:
    """Closes a connection left in an unknown state. The next command reopens it."""
    if "scrapli" not in task.host.connections:
        return
    try:
        task.host.close_connection("scrapli")
    except Exception as e:  # plugin left half-initialised by a failed open
        sys_logger.debug(f"[{task.host.name}] closing broken connection: {e}")
    task.host.connections.pop("scrapli", None)


def _open_connection(task: Task) -> None:
    """
    Opens (or reuses) the scrapli session before anything is sent.

    Raises:
        ConnectivityError: the session could not be established. Nothing ran
            on the host, so the caller may retry.
    """
    try:
        task.host.get_connection("scrapli", task.nornir.config)
    except (ScrapliException, OSError) as e:
        _drop_connection(task)
        raise ConnectivityError(task.host.name, str(e)) from e


def _run_remote(task: Task, command: str) -> Result:
    """
    Runs a command over scrapli. The generic driver does not report exit codes,
    so the command echoes its own status and we parse it back.

    Once the command is sent, a transport error (ops timeout, dropped session)
    is a task failure: the command may still be running, so it is never re-sent.
    """
    wrapped = f"{command}; echo \"{RC_MARKER}$?\""

    _open_connection(task)
    try:
        multi_result = task.run(
            task=send_command,
            command=wrapped,
            timeout_ops=_settings(task).command_timeout,
            severity_level=logging.DEBUG,
        )
    except NornirSubTaskError as e:
        _drop_connection(task)
        cause = e.result[0].exception if len(e.result) else e
        return Result(
            host=task.host,
            failed=True,
            result=f"Command outcome unknown (transport error after send): {cause}",
        )

    raw = str(multi_result[0].result)
    match = _RC_REGEX.search(raw)
    output = _RC_REGEX.sub("", raw).rstrip()
    returncode = int(match.group(1)) if match else 1

    return Result(host=task.host, result=output, failed=returncode != 0, stdout=output)


# --- FILE OPERATIONS ---

def file_exists(task: Task, path: str) -> bool:
    """Checks whether a path exists on the host."""
    return not run_command(task, f"test -e {path}").failed


def read_file(task: Task, path: str) -> Optional[str]:
    """Returns the file content, or None when the file does not exist."""
    if not file_exists(task, path):
        return None

    res = run_command(task, f"cat {path}", sudo=True)
    if res.failed:
        return None
    return res.result


def write_file(
        task: Task,
        path: str,
        content: str,
        owner: str = "root:root",
        permissions: str = "644",
        sensitive: bool = False,
) -> Result:
    """
    Writes content to a file on the host (base64 over the command channel).
    Includes automatic versioned backup of the previous content.
    """
    user, _, group = owner.partition(":")
    group = group or user
    payload = base64.b64encode(content.encode("utf-8")).decode("ascii")
    tmp_path = f"/tmp/hakube_{uuid.uuid4().hex}"

    # 1. Backup
    if file_exists(task, path):
        safe_filename = path.replace("/", "_")
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = f"{BACKUP_DIR}/{safe_filename}.{timestamp}.bak"
        res_bkp = run_command(task, f"mkdir -p {BACKUP_DIR} && cp -p {path} {backup_path}", sudo=True)
        if res_bkp.failed:
            return Result(host=task.host, failed=True, result=f"Backup failed: {res_bkp.result}")

    # 2. Transfer + install (creates parent directories, sets owner and mode)
    cmd = (
        f"echo '{payload}' | base64 -d > {tmp_path} && "
        f"install -D -m {permissions} -o {user} -g {group} {tmp_path} {path} && "
        f"rm -f {tmp_path}"
    )
    res = run_command(task, cmd, sudo=True, sensitive=sensitive)
    if res.failed:
        run_command(task, f"rm -f {tmp_path}", sudo=True)
        return Result(host=task.host, failed=True, result=f"Write failed: {res.result}")

    return Result(host=task.host, changed=True, result="File updated (Backup saved)")


# --- PACKAGE MANAGEMENT (APT) ---

def package_version(task: Task, package: str) -> Optional[str]:
    """Installed version of a deb package, None when not installed."""
    res = run_command(task, f"dpkg-query -W -f='${{Version}}' {package}")
    if res.failed or not res.result.strip():
        return None
    return res.result.strip()


def apt_install(task: Task, packages: Union[str, List[str]], update: bool = True) -> Result:
    """Installs packages via apt-get. Pinned versions use the 'name=version' form."""
    if isinstance(packages, list):
        pkg_str = " ".join(packages)
    else:
        pkg_str = packages

    if update:
        res_up = run_command(task, "apt-get update", sudo=True)
        if res_up.failed:
            return Result(host=task.host, failed=True, result=f"Apt update failed: {res_up.result}")

    cmd = (
        "DEBIAN_FRONTEND=noninteractive apt-get install -y "
        f"--allow-downgrades --allow-change-held-packages {pkg_str}"
    )
    return run_command(task, cmd, sudo=True)


def apt_hold(task: Task, packages: List[str]) -> Result:
    """Prevents automatic upgrades using apt-mark hold."""
    return run_command(task, f"apt-mark hold {' '.join(packages)}", sudo=True)


# --- SYSTEM SERVICES ---

def systemctl(task: Task, service: str, action: str, sudo: bool = True) -> Result:
    """
    Manages systemd services.
    Actions: start, stop, restart, reload, enable, 'enable --now'
    """
    return run_command(task, f"systemctl {action} {service}", sudo=sudo)


def service_is_active(task: Task, service: str) -> bool:
    res = run_command(task, f"systemctl is-active {service}")
    return not res.failed and res.result.strip() == "active"


def service_is_enabled(task: Task, service: str) -> bool:
    res = run_command(task, f"systemctl is-enabled {service}")
    return not res.failed and res.result.strip() == "enabled"


# --- KERNEL ---

def is_module_loaded(task: Task, module: str) -> bool:
    return file_exists(task, f"/sys/module/{module}")


def load_module(task: Task, module: str) -> Result:
    return run_command(task, f"modprobe {module}", sudo=True)


def is_swap_active(task: Task) -> bool:
    res = run_command(task, "swapon --show=NAME --noheadings")
    return bool(res.result.strip()) if not res.failed else False


def disable_swap(task: Task) -> Result:
    return run_command(task, "swapoff -a", sudo=True)


# --- NETWORK ---

_INET_REGEX = re.compile(r"\binet (\d+\.\d+\.\d+\.\d+)/")


def interface_ipv4(task: Task, interface: str) -> Optional[str]:
    """First IPv4 address on an interface, None when it has none (or does not exist)."""
    res = run_command(task, f"ip -4 -o addr show dev {interface}")
    if res.failed:
        return None
    match = _INET_REGEX.search(res.result)
    return match.group(1) if match else None
