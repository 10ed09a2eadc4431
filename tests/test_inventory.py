import pytest

from core.errors import ConfigError, InventoryError
from core.models import NodeRole
from inventory import build_nornir, load_inventory, parse_inventory


def test_first_declared_control_plane_is_primary(topology):
    assert topology.primary.name == "cp-1"
    assert [n.role for n in topology.control_planes] == [NodeRole.PRIMARY, NodeRole.SECONDARY, NodeRole.SECONDARY]
    assert [n.name for n in topology.workers] == ["wk-1", "wk-2"]


def test_flat_layout():
    inv = parse_inventory({
        "k8s_control_plane": {"m1": {"address": "10.0.0.1", "user": "admin", "ssh_key": "~/.ssh/id", "port": 2222}},
        "k8s_worker": {"w1": {"address": "10.0.0.2"}},
    })

    primary = inv.primary
    assert (primary.name, primary.user, primary.ssh_key, primary.port) == ("m1", "admin", "~/.ssh/id", 2222)
    assert [(n.name, n.role) for n in inv.workers] == [("w1", NodeRole.WORKER)]


def test_empty_worker_group_is_valid():
    inv = parse_inventory({"masters": {"hosts": {"m1": {"ansible_host": "10.0.0.1"}}}, "workers": {"hosts": None}})
    assert inv.workers == []


def test_no_control_plane():
    with pytest.raises(InventoryError, match="control-plane"):
        parse_inventory({"workers": {"w1": {"address": "10.0.0.2"}}})


def test_node_without_address():
    with pytest.raises(InventoryError, match="m1"):
        parse_inventory({"masters": {"m1": {"user": "ubuntu"}}})


def test_duplicate_node():
    with pytest.raises(InventoryError, match="n1"):
        parse_inventory({
            "masters": {"n1": {"address": "10.0.0.1"}},
            "workers": {"n1": {"address": "10.0.0.1"}},
        })


@pytest.mark.parametrize("limit,expected", [
    (None, ["cp-1", "cp-2", "cp-3", "wk-1", "wk-2"]),
    ("masters", ["cp-1", "cp-2", "cp-3"]),
    ("workers", ["wk-1", "wk-2"]),
    ("cp-2,wk-*", ["cp-2", "wk-1", "wk-2"]),
    ("all,!cp-1", ["cp-2", "cp-3", "wk-1", "wk-2"]),
    ("!workers", ["cp-1", "cp-2", "cp-3"]),
    ("nothing-matches", []),
])
def test_select(topology, limit, expected):
    assert [n.name for n in topology.select(limit)] == expected


def test_missing_inventory_file(tmp_path):
    with pytest.raises(ConfigError):
        load_inventory(str(tmp_path / "hosts.yml"))


def test_load_inventory_file(tmp_path):
    path = tmp_path / "hosts.yml"
    path.write_text(
        "all:\n"
        "  children:\n"
        "    masters:\n"
        "      hosts:\n"
        "        cp-1: {ansible_host: 10.0.1.11, ansible_user: admin}\n"
    )
    inv = load_inventory(str(path))
    assert inv.primary.address == "10.0.1.11"
    assert inv.primary.user == "admin"


def test_build_nornir(cluster_config, executor_settings, topology):
    nr = build_nornir(topology, cluster_config, executor_settings)

    host = nr.inventory.hosts["cp-1"]
    assert host.hostname == "10.0.1.11"
    assert host.username == "ubuntu"
    assert host.platform == "generic"
    assert host.data["node"] == topology.primary
    assert host.get("cluster_config") is cluster_config
    assert host.get("executor_settings") is executor_settings
    assert "masters" in host.groups
    assert "workers" in nr.inventory.hosts["wk-1"].groups
    assert nr.runner.num_workers == executor_settings.fan_out

    extras = host.connection_options["scrapli"].extras
    assert extras["auth_strict_key"] is False
    assert extras["timeout_ops"] == executor_settings.command_timeout


def test_local_address_runs_without_ssh(cluster_config, executor_settings):
    inv = parse_inventory({"masters": {"local": {"address": "localhost"}}})
    nr = build_nornir(inv, cluster_config, executor_settings)
    assert nr.inventory.hosts["local"].platform == "linux_local"
