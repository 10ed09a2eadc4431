import pytest
from nornir.core.inventory import Host
from nornir.core.task import Result
from scrapli.exceptions import ScrapliConnectionNotOpened, ScrapliTimeout

from core.errors import ConnectivityError
from core.settings import ExecutorSettings
from inventory import build_nornir, parse_inventory
from utils import linux


@pytest.fixture
def local_nr(cluster_config, tmp_path):
    inv = parse_inventory({"masters": {"local": {"address": "localhost"}}})
    settings = ExecutorSettings(retries=3, retry_delay=0, command_timeout=30, log_file=str(tmp_path / "log"))
    return build_nornir(inv, cluster_config, settings)


def _run(nr, fn):
    res = nr.run(task=lambda task: Result(host=task.host, result=fn(task)), on_failed=True)["local"][0]
    if res.exception:
        raise res.exception
    return res.result


def test_local_command_success(local_nr):
    res = _run(local_nr, lambda t: linux.run_command(t, "echo hello"))
    assert not res.failed
    assert res.result.strip() == "hello"


def test_local_command_failure_carries_stderr(local_nr):
    res = _run(local_nr, lambda t: linux.run_command(t, "ls /definitely/not/here"))
    assert res.failed
    assert "Error:" in res.result


def test_sudo_wraps_whole_command_line(local_nr, monkeypatch):
    seen = []

    def fake_dispatch(task, cmd):
        seen.append(cmd)
        return Result(host=task.host, result="")

    monkeypatch.setattr(linux, "_dispatch", fake_dispatch)
    _run(local_nr, lambda t: linux.run_command(t, "mkdir -p /x && cp a /x/b", sudo=True))

    assert seen == ["sudo -n sh -c 'mkdir -p /x && cp a /x/b'"]


def test_transport_failures_are_retried(local_nr, monkeypatch):
    attempts = []

    def flaky(task, cmd):
        attempts.append(cmd)
        if len(attempts) < 3:
            raise ConnectivityError(task.host.name, "timed out")
        return Result(host=task.host, result="ok")

    monkeypatch.setattr(linux, "_dispatch", flaky)
    res = _run(local_nr, lambda t: linux.run_command(t, "uptime"))

    assert res.result == "ok"
    assert len(attempts) == 3


def test_retries_are_bounded(local_nr, monkeypatch):
    attempts = []

    def down(task, cmd):
        attempts.append(cmd)
        raise ConnectivityError(task.host.name, "no route to host")

    monkeypatch.setattr(linux, "_dispatch", down)
    with pytest.raises(ConnectivityError):
        _run(local_nr, lambda t: linux.run_command(t, "uptime"))
    assert len(attempts) == 3


def test_task_failures_are_not_retried(local_nr, monkeypatch):
    attempts = []

    def failing(task, cmd):
        attempts.append(cmd)
        return Result(host=task.host, failed=True, result="sudo: a password is required")

    monkeypatch.setattr(linux, "_dispatch", failing)
    res = _run(local_nr, lambda t: linux.run_command(t, "apt-get update", sudo=True))

    assert len(attempts) == 1
    assert res.failed
    assert "NOPASSWD" in res.result


class _Session:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def test_timeout_after_send_is_a_task_failure(local_nr, monkeypatch):
    sent = []
    session = _Session()

    def timed_out(task, command, **kwargs):
        sent.append(command)
        raise ScrapliTimeout("timed out sending input to device")

    monkeypatch.setattr(Host, "get_connection", lambda self, *args, **kwargs: session)
    monkeypatch.setattr(linux, "send_command", timed_out)
    monkeypatch.setattr(linux, "_dispatch", linux._run_remote)

    def run(task):
        task.host.connections["scrapli"] = session
        return linux.run_command(task, "kubeadm init --config /etc/kubernetes/kubeadm-config.yaml", sudo=True)

    res = _run(local_nr, run)

    assert len(sent) == 1
    assert res.failed
    assert "timed out" in res.result
    assert session.closed
    assert "scrapli" not in local_nr.inventory.hosts["local"].connections


def test_open_failures_are_retried(local_nr, monkeypatch):
    opens = []

    def refused(self, *args, **kwargs):
        opens.append(self.name)
        raise ScrapliConnectionNotOpened("connection refused")

    monkeypatch.setattr(Host, "get_connection", refused)
    monkeypatch.setattr(linux, "_dispatch", linux._run_remote)

    with pytest.raises(ConnectivityError):
        _run(local_nr, lambda t: linux.run_command(t, "uptime"))
    assert len(opens) == 3
