"""k3s bootstrap strategy.

Control planes run ``k3s server`` against the external etcd datastore; the
server token is read back from control plane 0 and shared with every other
node. Joining nodes get the token through ``K3S_TOKEN`` rather than a flag.
"""
import re
from typing import Optional, Sequence

from ..scripts import ExecutorKind, Script, ScriptCollection
from .base import DistroStrategy, etcd_endpoints

K3S_VERSION_RE = re.compile(r'^(\d+)\.(\d+)\.(\d+)$')
SUPPORTED_MINORS = range(25, 31)


def is_valid_k3s_version(version: str) -> bool:
    """Accept stable ``1.MINOR.PATCH`` releases from the supported channels.

    k3s publishes no ``x.y.0`` release on its stable channels, so patch 0 is
    rejected along with pre-release suffixes and ``v`` prefixes.
    """
    if not isinstance(version, str):
        return False
    match = K3S_VERSION_RE.match(version)
    if not match:
        return False
    major, minor, patch = (int(p) for p in match.groups())
    return major == 1 and minor in SUPPORTED_MINORS and patch >= 1


class K3sDistro(DistroStrategy):
    """Lightweight, single binary distro."""

    name = "k3s"
    default_cni = "flannel"
    alternative_cnis = frozenset({"cilium", "calico", "none"})
    etcd_cert_dir = "/var/lib/etcd"
    join_secret_field = "bootstrap_token"

    def validate_version(self, version: str) -> bool:
        return is_valid_k3s_version(version)

    def _server_flags(self, builtin_cni: bool) -> str:
        if builtin_cni:
            return ""
        return "\t--flannel-backend=none \\\n\t--disable-network-policy \\\n"

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
        label = "with CNI" if builtin_cni else "without CNI"
        collection = ScriptCollection()
        collection.append(Script(
            name=f"Start K3s Controlplane-[0] {label}",
            can_retry=True,
            max_retries=9,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=f"""
cat <<EOF > control-setup.sh
#!/bin/bash
curl -sfL https://get.k3s.io | INSTALL_K3S_CHANNEL="{version}" sh -s - server \\
	--node-taint CriticalAddonsOnly=true:NoExecute \\
	--datastore-endpoint "{etcd_endpoints(datastore_ips)}" \\
	--datastore-cafile={self.etcd_cert_dir}/ca.pem \\
	--datastore-keyfile={self.etcd_cert_dir}/etcd-key.pem \\
	--datastore-certfile={self.etcd_cert_dir}/etcd.pem \\
{self._server_flags(builtin_cni)}	--tls-san {public_ip}
EOF

sudo chmod +x control-setup.sh
sudo ./control-setup.sh
""",
        ))
        return collection

    def join_secret_script(self) -> ScriptCollection:
        collection = ScriptCollection()
        collection.append(Script(
            name="Get k3s server token",
            can_retry=False,
            executor=ExecutorKind.LINUX_BASH,
            shell_script="""
sudo cat /var/lib/rancher/k3s/server/token
""",
        ))
        return collection

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
        label = "with CNI" if builtin_cni else "without CNI"
        collection = ScriptCollection()
        collection.append(Script(
            name=f"Start K3s Controlplane-[1..N] {label}",
            can_retry=True,
            max_retries=9,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=f"""
umask 077
cat <<EOF > control-setupN.sh
#!/bin/bash
curl -sfL https://get.k3s.io | K3S_TOKEN="{token}" INSTALL_K3S_CHANNEL="{version}" sh -s - server \\
	--datastore-endpoint "{etcd_endpoints(datastore_ips)}" \\
	--datastore-cafile={self.etcd_cert_dir}/ca.pem \\
	--datastore-keyfile={self.etcd_cert_dir}/etcd-key.pem \\
	--datastore-certfile={self.etcd_cert_dir}/etcd.pem \\
	--node-taint CriticalAddonsOnly=true:NoExecute \\
{self._server_flags(builtin_cni)}	--tls-san {public_ip}
EOF

sudo chmod +x control-setupN.sh
sudo ./control-setupN.sh
""",
        ))
        return collection

    def worker_join_script(
        self,
        version: str,
        server_address: str,
        token: str,
        *,
        discovery_hash: Optional[str] = None,
    ) -> ScriptCollection:
        collection = ScriptCollection()
        collection.append(Script(
            name="Join the workerplane-[0..M]",
            can_retry=True,
            max_retries=3,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=f"""
umask 077
cat <<EOF > worker-setup.sh
#!/bin/bash
curl -sfL https://get.k3s.io | K3S_TOKEN="{token}" INSTALL_K3S_CHANNEL="{version}" sh -s - agent --server https://{server_address}:6443
EOF

sudo chmod +x worker-setup.sh
sudo ./worker-setup.sh
""",
        ))
        return collection

    def worker_server_address(self, public_lb: str, private_lb: str) -> str:
        return private_lb or public_lb

    def kubeconfig_script(self) -> ScriptCollection:
        collection = ScriptCollection()
        collection.append(Script(
            name="k3s kubeconfig",
            can_retry=False,
            executor=ExecutorKind.LINUX_BASH,
            shell_script="""
sudo cat /etc/rancher/k3s/k3s.yaml
""",
        ))
        return collection

    def rewrite_kubeconfig(self, raw: str, lb_public_ip: str) -> str:
        # k3s writes the kubeconfig against the local listener
        return raw.replace("127.0.0.1", lb_public_ip)
