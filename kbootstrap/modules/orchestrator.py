"""Cluster bootstrap orchestration.

:class:`BootstrapOrchestrator` drives one cluster through its bootstrap state
machine::

    setup -> version -> cni -> configure_control_plane(0..N-1) -> join_workerplane(0..M-1)

Every public method holds the orchestrator lock for its whole
read-modify-persist sequence, so calls on the same instance are serialised.
A step returns only after its scripts succeeded and the updated document was
written back to storage.
"""
import logging
import threading
from typing import Any, Dict, Optional, Union

from ..config import BootstrapConfig
from .certs import generate_cluster_certs
from .distros import DistroStrategy, get_distro
from .errors import (
    BootstrapError,
    InvalidVersion,
    ProgressNotRecorded,
    ScriptExecFailure,
    StateInconsistency,
    StorageFailure,
    UnsupportedCNI,
)
from .executor import ScriptExecutor
from .scripts import ScriptCollection
from .state import (
    BootstrapPhase,
    CloudResourceState,
    ClusterBootstrapState,
    Operation,
    mark,
)
from .storage import StorageBackend

CONTROL_PLANE = "controlplane"
WORKER_PLANE = "workerplane"


class BootstrapOrchestrator:
    """Bootstraps an HA cluster on already provisioned machines.

    Args:
        cloud_state: Topology handed over by the provisioning layer
        distro: Distro name (``k3s``, ``kubeadm``) or a strategy instance
        executor: Runs script collections on the nodes
        config: Package configuration
        logger: Logger to report progress on (defaults to ``kbootstrap.orchestrator``)
    """

    def __init__(
        self,
        cloud_state: CloudResourceState,
        distro: Union[str, DistroStrategy],
        executor: ScriptExecutor,
        *,
        config: Optional[BootstrapConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.cloud_state = cloud_state
        self.strategy = get_distro(distro) if isinstance(distro, str) else distro
        self.executor = executor
        self.config = config or BootstrapConfig()
        self.logger = logger or logging.getLogger("kbootstrap.orchestrator")
        self._lock = threading.Lock()
        self._document: Optional[ClusterBootstrapState] = None
        self._storage: Optional[StorageBackend] = None

    # -- read-only views -------------------------------------------------

    @property
    def state(self) -> ClusterBootstrapState:
        """Deep copy of the current document."""
        with self._lock:
            return self._require_document().model_copy(deep=True)

    @property
    def phase(self) -> BootstrapPhase:
        with self._lock:
            if self._document is None:
                return BootstrapPhase.UNINITIALIZED
            return self._document.phase

    # -- state machine ---------------------------------------------------

    def setup(self, storage: StorageBackend, operation: Operation) -> None:
        """Load the persisted document or initialise a fresh one.

        Args:
            storage: Backend holding the document
            operation: CREATE initialises a missing document, RESUME and DELETE require one

        Raises:
            StorageFailure: If the backend cannot be reached
            StateInconsistency: If the stored document does not match the topology,
                or no document exists for RESUME/DELETE
            CertGenFailure: If the etcd certificates cannot be generated
        """
        operation = Operation(operation)
        meta = self.cloud_state.metadata
        with self._lock:
            storage.setup(meta.provider, meta.cluster_name, meta.region, meta.cluster_type)
            storage.connect()
            document = storage.read()

            if document is not None:
                self._check_consistency(document)
                self.logger.info(
                    f"📂 Loaded bootstrap state for {meta.cluster_name} "
                    f"(phase: {document.phase.value})"
                )
            elif operation is Operation.CREATE:
                document = ClusterBootstrapState.from_cloud(self.cloud_state, self.strategy.name)
                certs = generate_cluster_certs(self.cloud_state.private_ips.data_stores)
                document.ca_cert = certs.ca_cert
                document.etcd_cert = certs.etcd_cert
                document.etcd_key = certs.etcd_key
                storage.write(document)
                self.logger.info(f"🆕 Initialised bootstrap state for {meta.cluster_name} ({self.strategy.name})")
            else:
                raise StateInconsistency(
                    f"No bootstrap state found for {meta.cluster_name}, cannot {operation.value}"
                )

            self._document = document
            self._storage = storage

    def version(self, version: str) -> None:
        """Validate and record the Kubernetes version.

        Raises:
            InvalidVersion: If the distro rejects the version. The document is not changed.
            StateInconsistency: If control planes were already bootstrapped with another version
        """
        with self._lock:
            document = self._require_document()
            if not self.strategy.validate_version(version):
                raise InvalidVersion(version, self.strategy.name)
            if document.version == version:
                return
            if document.control_planes_configured and document.version:
                raise StateInconsistency(
                    f"Cluster already bootstrapped with {self.strategy.name} {document.version}, "
                    f"cannot switch to {version}"
                )
            updated = document.model_copy(update={'version': version})
            self._persist(updated)
            self.logger.info(f"📌 {self.strategy.name} version set to {version}")

    def cni(self, name: str) -> bool:
        """Validate and record the CNI plugin.

        Returns:
            bool: True when a plugin other than the distro's built-in one was selected

        Raises:
            UnsupportedCNI: If the distro does not know the plugin. The document is not changed.
        """
        with self._lock:
            document = self._require_document()
            valid, is_default = self.strategy.supported_cni(name)
            if not valid:
                raise UnsupportedCNI(name, self.strategy.name)
            if document.cni_plugin != name:
                if document.control_planes_configured and document.cni_plugin:
                    raise StateInconsistency(
                        f"Cluster already bootstrapped with CNI {document.cni_plugin}, cannot switch to {name}"
                    )
                self._persist(document.model_copy(update={'cni_plugin': name}))
                self.logger.info(f"🌐 CNI set to {name}{' (built-in)' if is_default else ''}")
            return not is_default

    def configure_control_plane(self, index: int, storage: Optional[StorageBackend] = None) -> None:
        """Bootstrap control plane ``index``.

        Index 0 initialises the cluster, every other index joins it. After the
        last control plane the admin kubeconfig is captured.

        Args:
            index: Position of the node in the control plane list
            storage: Backend to persist to (defaults to the one given to setup)

        Raises:
            StateInconsistency: If version/CNI are missing, the index is out of range
                or control plane 0 is not bootstrapped yet
            ScriptExecFailure: If a remote step failed
            ProgressNotRecorded: If the node was configured but the marker could not be saved
        """
        with self._lock:
            if storage is not None:
                self._storage = storage
            document = self._require_configured()
            self._check_index(index, document.control_plane_count, CONTROL_PLANE)

            if index in document.control_planes_configured:
                self.logger.info(f"⏭️  Controlplane-[{index}] already configured, skipping")
                self._capture_kubeconfig_if_done()
                return

            if index > 0 and 0 not in document.control_planes_configured:
                raise StateInconsistency(
                    f"Controlplane-[0] must be configured before Controlplane-[{index}]"
                )

            host = document.public_ips.control_planes[index]
            self.logger.info(f"🚀 Configuring Controlplane-[{index}] ({host})")

            if index not in document.etcd_certs_placed:
                self._run(self.strategy.etcd_cert_transfer_script(
                    document.ca_cert, document.etcd_cert, document.etcd_key
                ), host, CONTROL_PLANE, index)
                placed = document.model_copy(deep=True)
                mark(placed.etcd_certs_placed, index)
                self._persist(placed)

            prepare = self.strategy.node_prepare_script(document.version)
            if not prepare.is_empty():
                self._run(prepare, host, CONTROL_PLANE, index)

            if index == 0:
                self._configure_first_control_plane(host)
            else:
                self._join_control_plane(index, host)

            self._record_progress(CONTROL_PLANE, index)
            self.logger.info(f"✅ Controlplane-[{index}] configured")
            self._capture_kubeconfig_if_done()

    def join_workerplane(self, index: int, storage: Optional[StorageBackend] = None) -> None:
        """Join worker ``index`` to the cluster.

        Raises:
            StateInconsistency: If a control plane is not bootstrapped yet or the index is out of range
            ScriptExecFailure: If a remote step failed
            ProgressNotRecorded: If the node joined but the marker could not be saved
        """
        with self._lock:
            if storage is not None:
                self._storage = storage
            document = self._require_configured()
            self._check_index(index, document.worker_count, WORKER_PLANE)

            if not document.all_control_planes_configured():
                raise StateInconsistency(
                    f"All {document.control_plane_count} control planes must be configured before "
                    f"workers join ({len(document.control_planes_configured)} done)"
                )
            if index in document.workers_configured:
                self.logger.info(f"⏭️  Workerplane-[{index}] already joined, skipping")
                return
            if not document.bootstrap_token:
                raise StateInconsistency("No join token recorded for the cluster")

            host = document.public_ips.worker_planes[index]
            self.logger.info(f"🚀 Joining Workerplane-[{index}] ({host})")

            collection = self.strategy.node_prepare_script(document.version)
            collection.extend(self.strategy.worker_join_script(
                document.version,
                self.strategy.worker_server_address(
                    document.public_ips.load_balancer, document.private_ips.load_balancer
                ),
                document.bootstrap_token,
                discovery_hash=document.discovery_token_ca_cert_hash,
            ))
            self._run(collection, host, WORKER_PLANE, index)

            self._record_progress(WORKER_PLANE, index)
            self.logger.info(f"✅ Workerplane-[{index}] joined")

    # -- helpers ---------------------------------------------------------

    def _configure_first_control_plane(self, host: str) -> None:
        document = self._document
        if not document.bootstrap_token:
            secrets = self.strategy.initial_join_secrets()
            if secrets:
                # written before init, never regenerated afterwards
                self._persist(document.model_copy(update=secrets))
                document = self._document

        self._run(self.strategy.control_plane0_script(
            document.version,
            document.private_ips.data_stores,
            document.public_ips.load_balancer,
            builtin_cni=self._builtin_cni(),
            token=document.bootstrap_token,
            certificate_key=document.certificate_key,
        ), host, CONTROL_PLANE, 0)

        collection = self.strategy.join_secret_script()
        step = collection[0].name if len(collection) else "join secret"
        output = self._run(collection, host, CONTROL_PLANE, 0).strip()
        if not output:
            raise ScriptExecFailure(step, 1, host, reason="no output", index=0, role=CONTROL_PLANE)
        self._document = document.model_copy(update={self.strategy.join_secret_field: output})
        self.logger.info(f"🔑 Captured {self.strategy.join_secret_field.replace('_', ' ')} from Controlplane-[0]")

    def _join_control_plane(self, index: int, host: str) -> None:
        document = self._document
        if not document.bootstrap_token:
            raise StateInconsistency("No join token recorded for the cluster")
        self._run(self.strategy.control_plane_n_script(
            document.version,
            document.private_ips.data_stores,
            document.public_ips.load_balancer,
            document.bootstrap_token,
            builtin_cni=self._builtin_cni(),
            certificate_key=document.certificate_key,
            discovery_hash=document.discovery_token_ca_cert_hash,
        ), host, CONTROL_PLANE, index)

    def _capture_kubeconfig_if_done(self) -> None:
        document = self._document
        if document.kubeconfig or not document.all_control_planes_configured():
            return
        last = document.control_plane_count - 1
        host = document.public_ips.control_planes[last]
        raw = self._run(self.strategy.kubeconfig_script(), host, CONTROL_PLANE, last)
        kubeconfig = self.strategy.rewrite_kubeconfig(raw, document.public_ips.load_balancer)
        self._persist(document.model_copy(update={'kubeconfig': kubeconfig}))
        self.logger.info("📄 Captured admin kubeconfig")

    def _builtin_cni(self) -> bool:
        _, is_default = self.strategy.supported_cni(self._document.cni_plugin)
        return is_default

    def _run(self, collection: ScriptCollection, host: str, role: str, index: int) -> str:
        try:
            return self.executor.execute(collection, host)
        except ScriptExecFailure as e:
            self.logger.error(f"❌ {role}-[{index}]: {e}")
            raise e.for_node(role, index) from e

    def _persist(self, document: ClusterBootstrapState) -> None:
        """Write ``document`` and adopt it as the in-memory state."""
        if self._storage is None:
            raise StorageFailure("no storage configured, call setup() first")
        self._storage.write(document)
        self._document = document

    def _record_progress(self, role: str, index: int) -> None:
        updated = self._document.model_copy(deep=True)
        mark(updated.control_planes_configured if role == CONTROL_PLANE else updated.workers_configured, index)
        try:
            self._persist(updated)
        except StorageFailure as e:
            raise ProgressNotRecorded(role, index, e) from e

    def _require_document(self) -> ClusterBootstrapState:
        if self._document is None:
            raise StateInconsistency("Bootstrap state is not loaded, call setup() first")
        return self._document

    def _require_configured(self) -> ClusterBootstrapState:
        document = self._require_document()
        if not document.version:
            raise StateInconsistency("Kubernetes version is not set")
        if not document.cni_plugin:
            raise StateInconsistency("CNI plugin is not set")
        return document

    @staticmethod
    def _check_index(index: int, count: int, role: str) -> None:
        if not 0 <= index < count:
            raise StateInconsistency(f"{role} index {index} out of range (cluster has {count})")

    def _check_consistency(self, document: ClusterBootstrapState) -> None:
        if document.distro != self.strategy.name:
            raise StateInconsistency(
                f"Stored state was created with {document.distro}, not {self.strategy.name}"
            )
        if document.public_ips != self.cloud_state.public_ips:
            raise StateInconsistency("Public addresses differ from the stored bootstrap state")
        if document.private_ips != self.cloud_state.private_ips:
            raise StateInconsistency("Private addresses differ from the stored bootstrap state")


def bootstrap_cluster(
    orchestrator: BootstrapOrchestrator,
    storage: StorageBackend,
    version: str,
    cni: str,
    operation: Operation = Operation.CREATE,
) -> Dict[str, Any]:
    """Run the whole state machine: control planes in order, then every worker.

    Control planes stop at the first failure. Workers are independent, so a
    failed worker is recorded and the next one is attempted.

    Returns:
        dict: Bootstrap results and status
    """
    results: Dict[str, Any] = {
        'success': False,
        'controlplanes': {},
        'workers': {},
        'errors': [],
    }
    log = orchestrator.logger

    orchestrator.setup(storage, operation)
    orchestrator.version(version)
    orchestrator.cni(cni)

    document = orchestrator.state
    for index in range(document.control_plane_count):
        try:
            orchestrator.configure_control_plane(index, storage)
            results['controlplanes'][index] = {'success': True, 'message': 'configured'}
        except BootstrapError as e:
            results['controlplanes'][index] = {'success': False, 'message': str(e)}
            results['errors'].append(str(e))
            log.error(f"Stopping after Controlplane-[{index}] failure")
            results['phase'] = orchestrator.phase.value
            return results

    for index in range(document.worker_count):
        try:
            orchestrator.join_workerplane(index, storage)
            results['workers'][index] = {'success': True, 'message': 'joined'}
        except BootstrapError as e:
            results['workers'][index] = {'success': False, 'message': str(e)}
            results['errors'].append(str(e))

    results['success'] = not results['errors']
    results['phase'] = orchestrator.phase.value
    return results
