import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from core.errors import ConfigError
from utils.logger import sys_logger, register_secret

# --- DEFAULTS & REQUIREMENTS ---

REQUIRED_KEYS = [
    "AF_API_TOKEN",
    "K8S_API_IP",
    "APT_PROXY",
    "DTH_INTERFACE",
    "HOST_INTERFACE",
]

DEFAULTS: Dict[str, str] = {
    "AF_USERNAME": "sa_tdi-caas-r",
    "KUBE_VERSION": "1.32.2-1.1",
    "CRI_TOOLS_VERSION": "1.32.0-1.1",
    "KUBE_VIP_VERSION": "v0.6.4",
    "CONTAINERD_VERSION": "1.7.13",
    "PAUSE_VERSION": "3.10",
    "CNI_PLUGIN_VERSION": "v1.4.0",
    "DTH_INTERFACE": "ens7",
    "HOST_INTERFACE": "ens4",
    "SSH_USER": "ubuntu",
    "POD_NETWORK_CIDR": "10.244.0.0/16",
    "REGISTRY_MIRROR": "",
}

# Optional keys without a default: join material supplied from outside the run
OPTIONAL_KEYS = ["CAAS_SA_AF_TOKEN", "JOIN_TOKEN", "DISCOVERY_HASH", "CERTIFICATE_KEY"]

ALIASES = {"ANSIBLE_SSH_USER": "SSH_USER"}

SECRET_KEYS = ("AF_API_TOKEN", "CAAS_SA_AF_TOKEN", "JOIN_TOKEN", "CERTIFICATE_KEY")

KNOWN_KEYS = set(REQUIRED_KEYS) | set(DEFAULTS) | set(OPTIONAL_KEYS)


# --- DATACLASSES (SCHEMA) ---

@dataclass(frozen=True)
class ClusterConfig:
    """Resolved deployment parameters. Built once per run."""
    af_username: str
    af_api_token: str
    caas_sa_af_token: str
    k8s_api_ip: str
    apt_proxy: str
    dth_interface: str
    host_interface: str
    kube_version: str
    cri_tools_version: str
    kube_vip_version: str
    containerd_version: str
    pause_version: str
    cni_plugin_version: str
    ssh_user: str
    pod_network_cidr: str
    registry_mirror: str = ""
    join_token: str = ""
    discovery_hash: str = ""
    certificate_key: str = ""

    @property
    def api_endpoint(self) -> str:
        return f"{self.k8s_api_ip}:6443"

    @property
    def kubernetes_release(self) -> str:
        """'1.32.2-1.1' (deb version) -> 'v1.32.2'."""
        return "v" + self.kube_version.lstrip("v").split("-", 1)[0]

    @property
    def kubernetes_minor(self) -> str:
        """'1.32.2-1.1' -> 'v1.32', used by the pkgs.k8s.io repo layout."""
        major, minor = self.kubernetes_release.lstrip("v").split(".")[:2]
        return f"v{major}.{minor}"

    def summary(self) -> Dict[str, str]:
        """Key/value view with secrets masked, for operator display."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name.upper() in SECRET_KEYS and value:
                value = "********"
            out[f.name.upper()] = value
        return out


@dataclass(frozen=True)
class ExecutorSettings:
    """Transport and fan-out parameters of the Remote Executor."""
    fan_out: int = 5
    connect_timeout: int = 10
    command_timeout: int = 900
    retries: int = 3
    retry_delay: float = 2.0
    log_file: str = "hakube.log"


# --- RESOLVER ---

def resolve_config(inputs: Mapping[str, Optional[str]]) -> Tuple[ClusterConfig, Dict[str, str]]:
    """
    Builds a ClusterConfig out of flat named inputs.
    Pure: no I/O besides logging. Raises ConfigError naming every missing key.

    Returns:
        (config, provenance) where provenance maps each key to
        'supplied', 'default' or 'derived'.
    """
    # 1. Normalize keys (aliases, case) and drop empty values
    supplied: Dict[str, str] = {}
    for raw_key, value in inputs.items():
        key = ALIASES.get(raw_key.upper(), raw_key.upper())
        if value is None or str(value).strip() == "":
            continue
        if key in KNOWN_KEYS:
            supplied[key] = str(value).strip()

    provenance: Dict[str, str] = {}
    values: Dict[str, str] = {}

    # 2. Defaults for unset keys
    for key in set(REQUIRED_KEYS) | set(DEFAULTS) | set(OPTIONAL_KEYS):
        if key in supplied:
            values[key] = supplied[key]
            provenance[key] = "supplied"
        elif key in DEFAULTS:
            values[key] = DEFAULTS[key]
            provenance[key] = "default"

    # 3. Derived: registry token follows the artifactory token unless overridden
    if "CAAS_SA_AF_TOKEN" not in values and values.get("AF_API_TOKEN"):
        values["CAAS_SA_AF_TOKEN"] = values["AF_API_TOKEN"]
        provenance["CAAS_SA_AF_TOKEN"] = "derived"

    # 4. Validate every required key at once
    missing = [key for key in REQUIRED_KEYS if not values.get(key)]
    if missing:
        raise ConfigError(
            f"Missing required configuration: {', '.join(missing)}",
            missing=missing,
            hint="Export the variables (or add them to cluster_config.yaml / .env) and run again.",
        )

    for key in sorted(provenance):
        sys_logger.info(f"CONFIG key='{key}' source='{provenance[key]}'")

    for key in SECRET_KEYS:
        if values.get(key):
            register_secret(values[key])

    config = ClusterConfig(**{
        f.name: values.get(f.name.upper(), "") for f in fields(ClusterConfig)
    })
    return config, provenance


# --- LOADER LOGIC ---

def _read_yaml(path: Path) -> dict:
    """
    Reads the config file with every scalar kept as written ('3.10' stays
    '3.10', not the float 3.1). Typed values are cast by their consumer.
    """
    try:
        with open(path, "r") as f:
            data = yaml.load(f, Loader=yaml.BaseLoader) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at top level")
    return data


def _executor_settings(section) -> ExecutorSettings:
    if not section:
        return ExecutorSettings()
    if not isinstance(section, dict):
        raise ConfigError("'executor' must be a mapping", hint="See cluster_config.example.yaml.")

    args = {}
    for f in fields(ExecutorSettings):
        if f.name not in section:
            continue
        try:
            args[f.name] = f.type(section[f.name])
        except ValueError:
            raise ConfigError(
                f"executor.{f.name} must be {f.type.__name__}, got '{section[f.name]}'",
                hint="See cluster_config.example.yaml.",
            )
    return ExecutorSettings(**args)


def load_settings(
        config_path: Optional[str] = "cluster_config.yaml",
        environ: Optional[Mapping[str, str]] = None,
        explicit: bool = False,
) -> Tuple[ClusterConfig, ExecutorSettings, Dict[str, str]]:
    """
    Loads configuration merging: Defaults < YAML File < Environment Vars.

    Args:
        config_path: YAML file with flat keys and an optional 'executor' mapping.
        environ: Environment mapping (defaults to os.environ).
        explicit: The path was given by the operator, so it must exist.
    """
    environ = os.environ if environ is None else environ

    # 1. Load YAML Config
    file_config: dict = {}
    if config_path:
        path = Path(config_path)
        if path.exists():
            file_config = _read_yaml(path)
        elif explicit:
            raise ConfigError(f"Configuration file not found: {path}", hint="Check the --config path.")

    executor = _executor_settings(file_config.pop("executor", None))

    # 2. Merge: Env > File
    inputs: Dict[str, Optional[str]] = {}
    for key, value in file_config.items():
        inputs[str(key).upper()] = None if value is None else str(value)

    # Aliases first so the canonical name wins when both are exported
    for key in list(ALIASES) + sorted(KNOWN_KEYS):
        if environ.get(key):
            inputs[ALIASES.get(key, key)] = environ[key]

    config, provenance = resolve_config(inputs)
    return config, executor, provenance
