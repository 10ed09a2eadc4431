from typing import List, Optional


class HakubeError(Exception):
    """Base class for every error the orchestrator raises on purpose."""

    hint: Optional[str] = None


class ConfigError(HakubeError):
    """
    Required configuration is missing or a referenced file does not exist.
    Raised before any node is contacted.
    """

    def __init__(self, message: str, missing: Optional[List[str]] = None, hint: Optional[str] = None):
        self.missing = list(missing or [])
        self.hint = hint
        super().__init__(message)


class InventoryError(HakubeError):
    """Malformed inventory (no control plane, node without address...)."""

    def __init__(self, message: str, hint: Optional[str] = None):
        self.hint = hint
        super().__init__(message)


class ConnectivityError(HakubeError):
    """A node could not be reached over the transport."""

    def __init__(self, node: str, reason: str):
        self.node = node
        self.reason = reason
        super().__init__(f"{node} unreachable: {reason}")


class TaskApplicationError(HakubeError):
    """A declarative resource failed to converge on a node."""

    def __init__(self, node: str, resource: str, reason: str):
        self.node = node
        self.resource = resource
        self.reason = reason
        super().__init__(f"'{resource}' failed on {node}: {reason}")


class CredentialExtractionError(HakubeError):
    """The primary control plane did not yield a usable join credential."""
