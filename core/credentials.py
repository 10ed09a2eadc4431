import re
import threading
from dataclasses import dataclass, field
from typing import Optional, Tuple

from nornir.core.task import Task, Result

from core.decorators import automated_step
from core.errors import CredentialExtractionError
from core.models import TaskStatus, StandardResult
from core.settings import ClusterConfig
from utils.linux import run_command
from utils.logger import register_secret, sys_logger

TOKEN_RE = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
HASH_RE = re.compile(r"^sha256:[a-f0-9]{64}$")
CERT_KEY_RE = re.compile(r"^[a-f0-9]{64}$")

_JOIN_LINE_RE = re.compile(
    r"kubeadm join\s+(?P<endpoint>\S+)\s+--token\s+(?P<token>\S+)\s+"
    r"--discovery-token-ca-cert-hash\s+(?P<hash>\S+)"
)

ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"


@dataclass(frozen=True)
class WorkerJoin:
    """What a worker needs to join. Carries no certificate key."""
    endpoint: str
    token: str = field(repr=False)
    discovery_hash: str
    simulated: bool = False

    def join_flags(self) -> str:
        return f"{self.endpoint} --token {self.token} --discovery-token-ca-cert-hash {self.discovery_hash}"


@dataclass(frozen=True)
class JoinCredential:
    """
    Token, discovery hash and certificate key minted on the primary control
    plane. Lives in memory for one run only.
    """
    endpoint: str
    token: str = field(repr=False)
    discovery_hash: str
    certificate_key: str = field(repr=False)
    simulated: bool = False

    def for_workers(self) -> WorkerJoin:
        return WorkerJoin(self.endpoint, self.token, self.discovery_hash, self.simulated)

    def for_control_plane(self) -> "JoinCredential":
        return self

    def join_flags(self) -> str:
        return (
            f"{self.endpoint} --token {self.token} --discovery-token-ca-cert-hash {self.discovery_hash} "
            f"--control-plane --certificate-key {self.certificate_key}"
        )

    @classmethod
    def placeholder(cls, endpoint: str) -> "JoinCredential":
        """Stand-in used by dry runs, where init never mints a real token."""
        return cls(
            endpoint=endpoint,
            token="abcdef.0123456789abcdef",
            discovery_hash="sha256:" + "0" * 64,
            certificate_key="0" * 64,
            simulated=True,
        )


def validate_credential(
        endpoint: str,
        token: str,
        discovery_hash: str,
        certificate_key: str,
        require_certificate_key: bool = True,
) -> JoinCredential:
    """Raises CredentialExtractionError on empty or malformed material."""
    problems = []
    if not endpoint:
        problems.append("empty API endpoint")
    if not TOKEN_RE.match(token or ""):
        problems.append("malformed or empty bootstrap token")
    if not HASH_RE.match(discovery_hash or ""):
        problems.append("malformed or empty discovery hash")
    if (certificate_key or require_certificate_key) and not CERT_KEY_RE.match(certificate_key or ""):
        problems.append("malformed or empty certificate key")
    if problems:
        raise CredentialExtractionError("; ".join(problems))

    for secret in (token, certificate_key):
        register_secret(secret)
    return JoinCredential(endpoint, token, discovery_hash, certificate_key)


def parse_join_command(output: str) -> Tuple[str, str, str]:
    """Parses the output of 'kubeadm token create --print-join-command'."""
    match = _JOIN_LINE_RE.search(output or "")
    if not match:
        raise CredentialExtractionError("no 'kubeadm join' command found in token output")
    return match.group("endpoint"), match.group("token"), match.group("hash")


def parse_certificate_key(output: str) -> str:
    """The key is the last bare 64-hex line printed by 'kubeadm init phase upload-certs'."""
    for line in reversed((output or "").splitlines()):
        candidate = line.strip()
        if CERT_KEY_RE.match(candidate):
            return candidate
    raise CredentialExtractionError("no certificate key found in upload-certs output")


def credential_from_config(config: ClusterConfig) -> Optional[JoinCredential]:
    """Join material supplied by the operator, used when init is skipped."""
    if not (config.join_token and config.discovery_hash):
        return None
    return validate_credential(
        config.api_endpoint,
        config.join_token,
        config.discovery_hash,
        config.certificate_key,
        require_certificate_key=False,
    )


@automated_step("Extract Join Credential")
def extract_join_credential(task: Task) -> Result:
    """
    Runs on the primary control plane after init. Token issuance is
    kubeadm's own idempotent operation; the certificate key is re-uploaded.
    """
    res_token = run_command(
        task, f"kubeadm token create --print-join-command --kubeconfig {ADMIN_KUBECONFIG}",
        sudo=True, sensitive=True,
    )
    if res_token.failed:
        raise CredentialExtractionError(f"token creation failed: {str(res_token.result)[-200:]}")

    res_certs = run_command(
        task, f"kubeadm init phase upload-certs --upload-certs --kubeconfig {ADMIN_KUBECONFIG}",
        sudo=True, sensitive=True,
    )
    if res_certs.failed:
        raise CredentialExtractionError(f"certificate upload failed: {str(res_certs.result)[-200:]}")

    endpoint, token, discovery_hash = parse_join_command(res_token.result)
    certificate_key = parse_certificate_key(res_certs.result)
    credential = validate_credential(endpoint, token, discovery_hash, certificate_key)

    sys_logger.info(f"[{task.host.name}] join credential extracted for endpoint {endpoint}")
    return Result(
        host=task.host,
        result=StandardResult(status=TaskStatus.OK, message="Join credential extracted", data=credential)
    )


class CredentialExchange:
    """
    Single-writer / multiple-reader holder of the run's JoinCredential.
    Published once; every later read gets the same immutable value.
    """

    def __init__(self):
        self._credential: Optional[JoinCredential] = None
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self._credential is not None

    def publish(self, credential: JoinCredential) -> None:
        with self._lock:
            if self._credential is not None:
                raise CredentialExtractionError("join credential already published for this run")
            self._credential = credential

    def control_plane(self) -> JoinCredential:
        credential = self._require()
        if not credential.certificate_key:
            raise CredentialExtractionError("control-plane joins need a certificate key (CERTIFICATE_KEY)")
        return credential.for_control_plane()

    def workers(self) -> WorkerJoin:
        return self._require().for_workers()

    def _require(self) -> JoinCredential:
        if self._credential is None:
            raise CredentialExtractionError("no join credential available")
        return self._credential
