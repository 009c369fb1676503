"""Common interface for distro bootstrap strategies.

A strategy turns cluster topology and generated secrets into ordered script
collections. It never runs anything itself and holds no cluster state.
"""
from abc import ABC, abstractmethod
from typing import Dict, FrozenSet, Optional, Sequence, Tuple

from ..scripts import ExecutorKind, Script, ScriptCollection

ETCD_CLIENT_PORT = 2379


def etcd_endpoints(datastore_ips: Sequence[str]) -> str:
    """Build the comma separated etcd endpoint list for the given addresses.

    An empty sequence gives an empty string.
    """
    return ",".join(f"https://{ip}:{ETCD_CLIENT_PORT}" for ip in datastore_ips)


class DistroStrategy(ABC):
    """Generates the remote scripts that bootstrap one Kubernetes distro."""

    name: str = ""
    default_cni: str = ""
    alternative_cnis: FrozenSet[str] = frozenset()
    etcd_cert_dir: str = ""
    # State field that receives the output of join_secret_script
    join_secret_field: str = ""

    @abstractmethod
    def validate_version(self, version: str) -> bool:
        """Return True if ``version`` is acceptable for this distro."""

    def supported_cni(self, name: str) -> Tuple[bool, bool]:
        """Report whether a CNI plugin is known and whether it is the built-in one.

        Returns:
            tuple: (valid, is_default)
        """
        if not name:
            return False, False
        if name == self.default_cni:
            return True, True
        if name in self.alternative_cnis:
            return True, False
        return False, False

    def etcd_cert_transfer_script(self, ca_cert: str, peer_cert: str, peer_key: str) -> ScriptCollection:
        """Write the etcd CA, peer certificate and key to the node."""
        collection = ScriptCollection()
        collection.append(Script(
            name="save etcd certificate",
            can_retry=False,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=f"""
sudo mkdir -vp {self.etcd_cert_dir}

cat <<EOF > ca.pem
{ca_cert}
EOF

cat <<EOF > etcd.pem
{peer_cert}
EOF

cat <<EOF > etcd-key.pem
{peer_key}
EOF

sudo mv -v ca.pem etcd.pem etcd-key.pem {self.etcd_cert_dir}
""",
        ))
        return collection

    def node_prepare_script(self, version: str) -> ScriptCollection:
        """Host preparation that must run before a node joins. Empty by default."""
        return ScriptCollection()

    def initial_join_secrets(self) -> Dict[str, str]:
        """Secrets generated locally before control plane 0 is configured.

        Keys are state field names (``bootstrap_token``, ``certificate_key``).
        """
        return {}

    @abstractmethod
    def control_plane0_script(
        self,
        version: str,
        datastore_ips: Sequence[str],
        public_ip: str,
        *,
        builtin_cni: bool,
        token: Optional[str] = None,
        certificate_key: Optional[str] = None,
    ) -> ScriptCollection:
        """Scripts that bring up the first control plane."""

    @abstractmethod
    def join_secret_script(self) -> ScriptCollection:
        """Script whose output is the join secret captured from control plane 0."""

    @abstractmethod
    def control_plane_n_script(
        self,
        version: str,
        datastore_ips: Sequence[str],
        public_ip: str,
        token: str,
        *,
        builtin_cni: bool,
        certificate_key: Optional[str] = None,
        discovery_hash: Optional[str] = None,
    ) -> ScriptCollection:
        """Scripts that join an additional control plane."""

    @abstractmethod
    def worker_join_script(
        self,
        version: str,
        server_address: str,
        token: str,
        *,
        discovery_hash: Optional[str] = None,
    ) -> ScriptCollection:
        """Scripts that join a worker node."""

    def worker_server_address(self, public_lb: str, private_lb: str) -> str:
        """Load balancer address workers should join through."""
        return public_lb

    @abstractmethod
    def kubeconfig_script(self) -> ScriptCollection:
        """Script whose output is the admin kubeconfig."""

    def rewrite_kubeconfig(self, raw: str, lb_public_ip: str) -> str:
        """Point a captured kubeconfig at the load balancer."""
        return raw

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
