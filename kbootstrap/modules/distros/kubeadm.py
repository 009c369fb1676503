"""kubeadm bootstrap strategy.

Control plane 0 is initialised from a rendered ``kubeadm-config.yml`` that
points at the external etcd datastore. The bootstrap token and certificate key
are generated locally up front; the discovery CA hash is read back from
control plane 0 once it is up.

The kubeadm configuration is rendered with Jinja2 from
``templates/kubeadm-config.yaml.j2`` with the following context:
- bootstrap_token / certificate_key: join secrets
- public_ip: load balancer address, used as API SAN and control plane endpoint
- etcd_endpoints: list of ``https://<ip>:2379`` entries
- etcd_cert_dir: where the etcd certificates were written
- kubernetes_version: ``MAJOR.MINOR``
- pod_subnet: pod network CIDR

Joins render ``templates/kubeadm-join.yaml.j2`` so that tokens and keys are
never passed on the ``kubeadm`` command line. Init and join are skipped on a
node that already carries ``admin.conf`` or ``kubelet.conf``.
"""
import logging
import os
import re
from typing import Dict, Optional, Sequence

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

from ..certs import generate_bootstrap_token, generate_certificate_key
from ..errors import BootstrapError
from ..scripts import ExecutorKind, Script, ScriptCollection
from .base import DistroStrategy, etcd_endpoints

logger = logging.getLogger("kbootstrap.distros.kubeadm")

KUBEADM_VERSION_RE = re.compile(r'^1\.(\d+)$')
SUPPORTED_MINORS = frozenset({28, 29, 30, 31})
POD_SUBNET = "10.244.0.0/16"


class ConfigurationError(BootstrapError):
    """Raised when the kubeadm configuration cannot be rendered."""
    pass


def is_valid_kubeadm_version(version: str) -> bool:
    """Accept ``1.MINOR`` for minors that have a pkgs.k8s.io package repository."""
    if not isinstance(version, str):
        return False
    match = KUBEADM_VERSION_RE.match(version)
    return bool(match) and int(match.group(1)) in SUPPORTED_MINORS


def get_template_path() -> str:
    """Get the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')


def _render(template_name: str, **context) -> str:
    env = Environment(
        loader=FileSystemLoader(get_template_path()),
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
    )
    try:
        template = env.get_template(template_name)
        return template.render(**context)
    except TemplateNotFound as e:
        raise ConfigurationError(f"kubeadm configuration template not found: {e}") from e
    except TemplateSyntaxError as e:
        raise ConfigurationError(f"Template syntax error: {e}") from e
    except UndefinedError as e:
        raise ConfigurationError(f"Missing required template variable: {e}") from e


def render_kubeadm_config(
    version: str,
    bootstrap_token: str,
    certificate_key: str,
    public_ip: str,
    datastore_ips: Sequence[str],
    etcd_cert_dir: str,
) -> str:
    """Render the InitConfiguration + ClusterConfiguration document.

    Raises:
        ConfigurationError: If a value is missing or the template is broken
    """
    if not bootstrap_token or not certificate_key:
        raise ConfigurationError("bootstrap token and certificate key are required for kubeadm init")

    endpoints = etcd_endpoints(datastore_ips)
    logger.debug(f"Rendering kubeadm configuration for v{version} with {len(datastore_ips)} etcd endpoint(s)")
    return _render(
        'kubeadm-config.yaml.j2',
        bootstrap_token=bootstrap_token,
        certificate_key=certificate_key,
        public_ip=public_ip,
        etcd_endpoints=endpoints.split(",") if endpoints else [],
        etcd_cert_dir=etcd_cert_dir,
        kubernetes_version=version,
        pod_subnet=POD_SUBNET,
    )


def render_join_config(
    api_server: str,
    bootstrap_token: str,
    discovery_hash: str,
    certificate_key: Optional[str] = None,
) -> str:
    """Render a JoinConfiguration. A certificate key makes it a control plane join.

    Raises:
        ConfigurationError: If a value is missing or the template is broken
    """
    if not bootstrap_token or not discovery_hash:
        raise ConfigurationError("bootstrap token and discovery hash are required for kubeadm join")
    return _render(
        'kubeadm-join.yaml.j2',
        api_server=api_server,
        bootstrap_token=bootstrap_token,
        discovery_hash=discovery_hash,
        certificate_key=certificate_key,
    )


def _join_shell_script(config: str) -> str:
    # join secrets stay out of argv; kubelet.conf exists once the node has joined
    return f"""
umask 077
cat <<EOF > kubeadm-join.yml
{config}
EOF

if [ ! -f /etc/kubernetes/kubelet.conf ]; then
  sudo kubeadm join --config kubeadm-join.yml
fi
"""


class KubeadmDistro(DistroStrategy):
    """Upstream reference tooling."""

    name = "kubeadm"
    default_cni = "none"
    alternative_cnis = frozenset({"cilium", "flannel", "calico"})
    etcd_cert_dir = "/etc/kubernetes/pki/etcd"
    join_secret_field = "discovery_token_ca_cert_hash"

    def validate_version(self, version: str) -> bool:
        return is_valid_kubeadm_version(version)

    def initial_join_secrets(self) -> Dict[str, str]:
        return {
            'bootstrap_token': generate_bootstrap_token(),
            'certificate_key': generate_certificate_key(),
        }

    def node_prepare_script(self, version: str) -> ScriptCollection:
        """Kernel settings, containerd and the kubeadm/kubelet/kubectl packages."""
        collection = ScriptCollection()
        collection.append(Script(
            name="disable swap and some kernel module adjustments",
            can_retry=False,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=r"""
sudo sed -i '/ swap / s/^\(.*\)$/#\1/g' /etc/fstab
sudo swapoff -a

cat <<EOF | sudo tee /etc/modules-load.d/k8s.conf
overlay
br_netfilter
EOF

sudo modprobe overlay
sudo modprobe br_netfilter

cat <<EOF | sudo tee /etc/sysctl.d/k8s.conf
net.bridge.bridge-nf-call-iptables  = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward                 = 1
EOF

sudo sysctl --system
""",
        ))
        collection.append(Script(
            name="install containerd",
            can_retry=True,
            max_retries=3,
            executor=ExecutorKind.LINUX_BASH,
            shell_script="""
sudo apt-get update
sudo apt-get install -y ca-certificates curl gnupg

sudo install -m 0755 -d /etc/apt/keyrings
curl -fsSL https://download.docker.com/linux/ubuntu/gpg | sudo gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg
sudo chmod a+r /etc/apt/keyrings/docker.gpg

echo \\
  "deb [arch="$(dpkg --print-architecture)" signed-by=/etc/apt/keyrings/docker.gpg] https://download.docker.com/linux/ubuntu \\
  "$(. /etc/os-release && echo "$VERSION_CODENAME")" stable" | \\
  sudo tee /etc/apt/sources.list.d/docker.list > /dev/null

sudo apt-get update
sudo apt-get install containerd.io -y
""",
        ))
        collection.append(Script(
            name="containerd config",
            can_retry=True,
            max_retries=3,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=r"""
sudo mkdir -p /etc/containerd
containerd config default > config.toml
sudo mv -v config.toml /etc/containerd/config.toml
sudo sed -i 's/SystemdCgroup \= false/SystemdCgroup \= true/g' /etc/containerd/config.toml
sudo systemctl restart containerd
sudo systemctl enable containerd
""",
        ))
        collection.append(Script(
            name="install kubeadm, kubectl, kubelet",
            can_retry=True,
            max_retries=9,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=f"""
sudo apt-get update -y
sudo apt-get install -y apt-transport-https ca-certificates curl gpg

curl -fsSL https://pkgs.k8s.io/core:/stable:/v{version}/deb/Release.key | sudo gpg --dearmor --yes -o /etc/apt/keyrings/kubernetes-apt-keyring.gpg

echo 'deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg] https://pkgs.k8s.io/core:/stable:/v{version}/deb/ /' | sudo tee /etc/apt/sources.list.d/kubernetes.list

sudo apt-get update
sudo apt-get install -y kubelet kubeadm kubectl
sudo apt-mark hold kubelet kubeadm kubectl
sudo systemctl enable kubelet
""",
        ))
        return collection

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
        config = render_kubeadm_config(
            version, token, certificate_key, public_ip, datastore_ips, self.etcd_cert_dir
        )
        collection = ScriptCollection()
        collection.append(Script(
            name="store configuration for Controlplane0",
            can_retry=True,
            max_retries=3,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=f"""
umask 077
cat <<EOF > kubeadm-config.yml
{config}
EOF
""",
        ))
        # admin.conf exists once init has run on this node
        collection.append(Script(
            name="kubeadm init",
            can_retry=True,
            max_retries=3,
            executor=ExecutorKind.LINUX_BASH,
            shell_script="""
if [ ! -f /etc/kubernetes/admin.conf ]; then
  sudo kubeadm init --config kubeadm-config.yml --upload-certs
fi
""",
        ))
        return collection

    def join_secret_script(self) -> ScriptCollection:
        collection = ScriptCollection()
        collection.append(Script(
            name="fetch discovery token ca cert hash",
            can_retry=False,
            executor=ExecutorKind.LINUX_BASH,
            shell_script="""
sudo openssl x509 -in /etc/kubernetes/pki/ca.crt -noout -pubkey | openssl rsa -pubin -outform DER 2>/dev/null | sha256sum | cut -d' ' -f1
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
        if not certificate_key or not discovery_hash:
            raise ConfigurationError("certificate key and discovery hash are required to join a control plane")
        config = render_join_config(public_ip, token, discovery_hash, certificate_key)
        collection = ScriptCollection()
        collection.append(Script(
            name="Join Controlplane-[1..N]",
            can_retry=True,
            max_retries=3,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=_join_shell_script(config),
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
        if not discovery_hash:
            raise ConfigurationError("discovery hash is required to join a worker")
        collection = ScriptCollection()
        collection.append(Script(
            name="Join kubeadm workerplane",
            can_retry=True,
            max_retries=3,
            executor=ExecutorKind.LINUX_BASH,
            shell_script=_join_shell_script(render_join_config(server_address, token, discovery_hash)),
        ))
        return collection

    def kubeconfig_script(self) -> ScriptCollection:
        collection = ScriptCollection()
        collection.append(Script(
            name="fetch kubeconfig",
            can_retry=False,
            executor=ExecutorKind.LINUX_BASH,
            shell_script="""
sudo cat /etc/kubernetes/admin.conf
""",
        ))
        return collection
