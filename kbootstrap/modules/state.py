"""Data models for the persisted cluster bootstrap state.

The :class:`ClusterBootstrapState` document is owned by a single
:class:`~kbootstrap.modules.orchestrator.BootstrapOrchestrator`, which is the
only code that mutates it.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from .errors import StateInconsistency


class Operation(str, Enum):
    """What the caller intends to do with the cluster."""
    CREATE = 'create'
    RESUME = 'resume'
    DELETE = 'delete'


class BootstrapPhase(str, Enum):
    """Phases of the bootstrap state machine."""
    UNINITIALIZED = 'uninitialized'
    CONFIGURED = 'configured'
    CONTROL_PLANES_PARTIAL = 'controlplanes_partial'
    CONTROL_PLANES_COMPLETE = 'controlplanes_complete'
    WORKERS_PARTIAL = 'workers_partial'
    WORKERS_COMPLETE = 'workers_complete'


class IPSet(BaseModel):
    """Addresses of every node role, either all public or all private."""
    control_planes: List[str] = Field(default_factory=list)
    data_stores: List[str] = Field(default_factory=list)
    worker_planes: List[str] = Field(default_factory=list)
    load_balancer: str = ""


class SSHInfo(BaseModel):
    """SSH identity used to reach the nodes."""
    private_key: str = ""
    username: str = ""


class ClusterMetadata(BaseModel):
    """Identifies a cluster for storage purposes."""
    cluster_name: str
    provider: str = "local"
    region: str = "default"
    cluster_type: str = "ha"


def _check_pairs(public: IPSet, private: IPSet) -> None:
    if len(public.control_planes) != len(private.control_planes):
        raise StateInconsistency(
            f"control plane address mismatch: {len(public.control_planes)} public vs "
            f"{len(private.control_planes)} private"
        )
    if len(public.data_stores) != len(private.data_stores):
        raise StateInconsistency(
            f"datastore address mismatch: {len(public.data_stores)} public vs "
            f"{len(private.data_stores)} private"
        )


class CloudResourceState(BaseModel):
    """Topology handed over by the provisioning layer."""
    ssh: SSHInfo = Field(default_factory=SSHInfo)
    metadata: ClusterMetadata
    public_ips: IPSet = Field(default_factory=IPSet)
    private_ips: IPSet = Field(default_factory=IPSet)

    @model_validator(mode='after')
    def _paired_addresses(self) -> 'CloudResourceState':
        _check_pairs(self.public_ips, self.private_ips)
        if not self.public_ips.control_planes:
            raise StateInconsistency("at least one control plane is required")
        return self


class ClusterBootstrapState(BaseModel):
    """The persisted bootstrap document."""
    metadata: ClusterMetadata
    distro: str

    ca_cert: str = ""
    etcd_cert: str = ""
    etcd_key: str = ""

    public_ips: IPSet = Field(default_factory=IPSet)
    private_ips: IPSet = Field(default_factory=IPSet)
    ssh_info: SSHInfo = Field(default_factory=SSHInfo)

    version: Optional[str] = None
    cni_plugin: Optional[str] = None

    bootstrap_token: Optional[str] = None
    certificate_key: Optional[str] = None
    discovery_token_ca_cert_hash: Optional[str] = None
    kubeconfig: Optional[str] = None

    etcd_certs_placed: List[int] = Field(default_factory=list)
    control_planes_configured: List[int] = Field(default_factory=list)
    workers_configured: List[int] = Field(default_factory=list)

    @model_validator(mode='after')
    def _paired_addresses(self) -> 'ClusterBootstrapState':
        _check_pairs(self.public_ips, self.private_ips)
        return self

    @classmethod
    def from_cloud(cls, cloud: CloudResourceState, distro: str) -> 'ClusterBootstrapState':
        """Build a fresh document from the provisioning layer's topology."""
        return cls(
            metadata=cloud.metadata.model_copy(),
            distro=distro,
            public_ips=cloud.public_ips.model_copy(deep=True),
            private_ips=cloud.private_ips.model_copy(deep=True),
            ssh_info=cloud.ssh.model_copy(),
        )

    @property
    def has_certs(self) -> bool:
        return bool(self.ca_cert and self.etcd_cert and self.etcd_key)

    @property
    def control_plane_count(self) -> int:
        return len(self.public_ips.control_planes)

    @property
    def worker_count(self) -> int:
        return len(self.public_ips.worker_planes)

    def all_control_planes_configured(self) -> bool:
        return len(self.control_planes_configured) == self.control_plane_count

    @property
    def phase(self) -> BootstrapPhase:
        if not (self.version and self.cni_plugin):
            return BootstrapPhase.UNINITIALIZED
        if not self.control_planes_configured:
            return BootstrapPhase.CONFIGURED
        if not self.all_control_planes_configured():
            return BootstrapPhase.CONTROL_PLANES_PARTIAL
        if not self.workers_configured:
            if self.worker_count == 0:
                return BootstrapPhase.WORKERS_COMPLETE
            return BootstrapPhase.CONTROL_PLANES_COMPLETE
        if len(self.workers_configured) < self.worker_count:
            return BootstrapPhase.WORKERS_PARTIAL
        return BootstrapPhase.WORKERS_COMPLETE


def mark(markers: List[int], index: int) -> None:
    """Record ``index`` in a progress marker list, keeping it sorted and unique."""
    if index not in markers:
        markers.append(index)
        markers.sort()
