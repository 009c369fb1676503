import re
import threading
import time

import pytest

from kbootstrap.modules.errors import (
    InvalidVersion,
    ProgressNotRecorded,
    ScriptExecFailure,
    StateInconsistency,
    StorageFailure,
    UnsupportedCNI,
)
from kbootstrap.modules.orchestrator import BootstrapOrchestrator, bootstrap_cluster
from kbootstrap.modules.state import BootstrapPhase, Operation
from kbootstrap.modules.storage import LocalStorage

LB = "203.0.113.1"


class FlakyStorage(LocalStorage):
    """LocalStorage whose writes start failing after ``writes_left`` more writes."""

    writes_left = None

    def write(self, document):
        if self.writes_left is not None:
            if self.writes_left <= 0:
                raise StorageFailure("disk full")
            self.writes_left -= 1
        super().write(document)


@pytest.fixture
def make_orchestrator(topology, executor, config):
    def build(distro="k3s", cloud=None, runner=None):
        return BootstrapOrchestrator(cloud or topology, distro, runner or executor, config=config)
    return build


@pytest.fixture
def k3s_ready(make_orchestrator, storage):
    orchestrator = make_orchestrator("k3s")
    orchestrator.setup(storage, Operation.CREATE)
    orchestrator.version("1.27.4")
    orchestrator.cni("flannel")
    return orchestrator


def configure_all(orchestrator, storage):
    for index in range(orchestrator.state.control_plane_count):
        orchestrator.configure_control_plane(index, storage)
    for index in range(orchestrator.state.worker_count):
        orchestrator.join_workerplane(index, storage)


def test_setup_create_generates_certs(make_orchestrator, storage):
    orchestrator = make_orchestrator()
    orchestrator.setup(storage, Operation.CREATE)
    state = orchestrator.state
    assert state.has_certs
    assert "BEGIN CERTIFICATE" in state.ca_cert
    assert state.distro == "k3s"
    assert orchestrator.phase is BootstrapPhase.UNINITIALIZED
    assert storage.read().model_dump() == state.model_dump()


def test_setup_resume_without_state(make_orchestrator, storage):
    with pytest.raises(StateInconsistency):
        make_orchestrator().setup(storage, Operation.RESUME)
    with pytest.raises(StateInconsistency):
        make_orchestrator().setup(storage, Operation.DELETE)


def test_setup_adopts_existing_state(make_orchestrator, storage):
    first = make_orchestrator()
    first.setup(storage, Operation.CREATE)
    first.version("1.27.4")

    second = make_orchestrator()
    second.setup(storage, Operation.RESUME)
    assert second.state.version == "1.27.4"
    assert second.state.ca_cert == first.state.ca_cert


def test_setup_rejects_other_distro(make_orchestrator, storage):
    make_orchestrator("k3s").setup(storage, Operation.CREATE)
    with pytest.raises(StateInconsistency):
        make_orchestrator("kubeadm").setup(storage, Operation.RESUME)


def test_setup_rejects_changed_topology(make_orchestrator, storage, topology_factory):
    make_orchestrator().setup(storage, Operation.CREATE)
    with pytest.raises(StateInconsistency):
        make_orchestrator(cloud=topology_factory(control_planes=2)).setup(storage, Operation.RESUME)


def test_setup_unreachable_storage(make_orchestrator, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    with pytest.raises(StorageFailure):
        make_orchestrator().setup(LocalStorage(blocker), Operation.CREATE)


def test_invalid_version_leaves_state_untouched(make_orchestrator, storage):
    orchestrator = make_orchestrator()
    orchestrator.setup(storage, Operation.CREATE)
    before = storage.path.read_text()
    with pytest.raises(InvalidVersion) as exc:
        orchestrator.version("1.27.0")
    assert exc.value.version == "1.27.0"
    assert orchestrator.state.version is None
    assert storage.path.read_text() == before


def test_version_persisted(make_orchestrator, storage):
    orchestrator = make_orchestrator()
    orchestrator.setup(storage, Operation.CREATE)
    orchestrator.version("1.26.7")
    assert storage.read().version == "1.26.7"


def test_cni_reports_non_default(make_orchestrator, storage):
    orchestrator = make_orchestrator()
    orchestrator.setup(storage, Operation.CREATE)
    assert orchestrator.cni("flannel") is False
    assert orchestrator.cni("cilium") is True
    assert storage.read().cni_plugin == "cilium"
    with pytest.raises(UnsupportedCNI):
        orchestrator.cni("")
    assert orchestrator.state.cni_plugin == "cilium"


def test_kubeadm_cni(make_orchestrator, storage):
    orchestrator = make_orchestrator("kubeadm")
    orchestrator.setup(storage, Operation.CREATE)
    assert orchestrator.cni("cilium") is True
    with pytest.raises(UnsupportedCNI):
        orchestrator.cni("")


def test_methods_require_setup(make_orchestrator):
    orchestrator = make_orchestrator()
    with pytest.raises(StateInconsistency):
        orchestrator.version("1.27.4")
    assert orchestrator.phase is BootstrapPhase.UNINITIALIZED


def test_configure_requires_version_and_cni(make_orchestrator, storage):
    orchestrator = make_orchestrator()
    orchestrator.setup(storage, Operation.CREATE)
    with pytest.raises(StateInconsistency):
        orchestrator.configure_control_plane(0, storage)
    orchestrator.version("1.27.4")
    with pytest.raises(StateInconsistency):
        orchestrator.configure_control_plane(0, storage)


def test_k3s_full_bootstrap(k3s_ready, storage, executor):
    configure_all(k3s_ready, storage)
    state = k3s_ready.state

    assert state.control_planes_configured == [0, 1, 2]
    assert state.workers_configured == [0]
    assert state.etcd_certs_placed == [0, 1, 2]
    assert k3s_ready.phase is BootstrapPhase.WORKERS_COMPLETE
    assert state.bootstrap_token == executor.outputs["Get k3s server token"]
    assert f"server: https://{LB}:6443" in state.kubeconfig
    assert "127.0.0.1" not in state.kubeconfig

    assert executor.calls == [
        ("203.0.113.7", ["save etcd certificate"]),
        ("203.0.113.7", ["Start K3s Controlplane-[0] with CNI"]),
        ("203.0.113.7", ["Get k3s server token"]),
        ("203.0.113.9", ["save etcd certificate"]),
        ("203.0.113.9", ["Start K3s Controlplane-[1..N] with CNI"]),
        ("203.0.113.10", ["save etcd certificate"]),
        ("203.0.113.10", ["Start K3s Controlplane-[1..N] with CNI"]),
        ("203.0.113.10", ["k3s kubeconfig"]),
        ("203.0.113.20", ["Join the workerplane-[0..M]"]),
    ]

    cp0 = executor.script_named("Start K3s Controlplane-[0] with CNI").shell_script
    assert '--datastore-endpoint "https://192.168.5.2:2379"' in cp0
    assert f"--tls-san {LB}" in cp0
    cpn = executor.script_named("Start K3s Controlplane-[1..N] with CNI").shell_script
    assert f'K3S_TOKEN="{state.bootstrap_token}"' in cpn
    worker = executor.script_named("Join the workerplane-[0..M]").shell_script
    assert "--server https://192.168.0.1:6443" in worker


def test_round_trip_after_full_bootstrap(k3s_ready, storage):
    configure_all(k3s_ready, storage)
    assert storage.read().model_dump() == k3s_ready.state.model_dump()


def test_end_to_end_topology(k3s_ready, storage):
    for index in range(3):
        k3s_ready.configure_control_plane(index, storage)
    persisted = storage.read()
    assert persisted.public_ips.load_balancer == LB
    assert persisted.private_ips.control_planes == ["192.168.0.7", "192.168.0.9", "192.168.0.10"]
    assert persisted.private_ips.data_stores == ["192.168.5.2"]
    assert persisted.control_planes_configured == [0, 1, 2]


def test_non_default_cni_disables_flannel(make_orchestrator, storage, executor):
    orchestrator = make_orchestrator()
    orchestrator.setup(storage, Operation.CREATE)
    orchestrator.version("1.27.4")
    orchestrator.cni("cilium")
    orchestrator.configure_control_plane(0, storage)
    script = executor.script_named("Start K3s Controlplane-[0] without CNI").shell_script
    assert "--flannel-backend=none" in script


def test_controlplane0_is_idempotent(k3s_ready, storage, executor):
    k3s_ready.configure_control_plane(0, storage)
    first = k3s_ready.state
    runs = len(executor.calls)

    k3s_ready.configure_control_plane(0, storage)
    second = k3s_ready.state
    assert len(executor.calls) == runs
    assert second.bootstrap_token == first.bootstrap_token
    assert second.ca_cert == first.ca_cert
    assert second.etcd_key == first.etcd_key


def test_controlplane_n_requires_controlplane0(k3s_ready, storage, executor):
    with pytest.raises(StateInconsistency):
        k3s_ready.configure_control_plane(1, storage)
    assert executor.calls == []


def test_index_out_of_range(k3s_ready, storage):
    with pytest.raises(StateInconsistency):
        k3s_ready.configure_control_plane(3, storage)
    with pytest.raises(StateInconsistency):
        k3s_ready.configure_control_plane(-1, storage)


def test_workers_wait_for_all_controlplanes(k3s_ready, storage, executor):
    k3s_ready.configure_control_plane(0, storage)
    k3s_ready.configure_control_plane(1, storage)
    with pytest.raises(StateInconsistency):
        k3s_ready.join_workerplane(0, storage)
    assert k3s_ready.phase is BootstrapPhase.CONTROL_PLANES_PARTIAL
    k3s_ready.configure_control_plane(2, storage)
    assert k3s_ready.phase is BootstrapPhase.CONTROL_PLANES_COMPLETE
    k3s_ready.join_workerplane(0, storage)
    runs = len(executor.calls)
    k3s_ready.join_workerplane(0, storage)
    assert len(executor.calls) == runs


def test_script_failure_keeps_earlier_progress(k3s_ready, storage, executor):
    executor.fail("Start K3s Controlplane-[1..N] with CNI")
    k3s_ready.configure_control_plane(0, storage)
    with pytest.raises(ScriptExecFailure) as exc:
        k3s_ready.configure_control_plane(1, storage)
    assert exc.value.index == 1
    assert exc.value.role == "controlplane"
    assert exc.value.attempts == 10
    assert exc.value.host == "203.0.113.9"

    persisted = storage.read()
    assert persisted.control_planes_configured == [0]
    # the certificates already reached the node
    assert persisted.etcd_certs_placed == [0, 1]


def test_resume_after_failure(k3s_ready, storage, executor, make_orchestrator):
    executor.fail("Start K3s Controlplane-[1..N] with CNI", times=10)
    k3s_ready.configure_control_plane(0, storage)
    with pytest.raises(ScriptExecFailure):
        k3s_ready.configure_control_plane(1, storage)

    resumed = make_orchestrator()
    resumed.setup(storage, Operation.RESUME)
    executor.calls.clear()
    resumed.configure_control_plane(1, storage)
    assert executor.calls == [
        ("203.0.113.9", ["Start K3s Controlplane-[1..N] with CNI"]),
    ]
    assert resumed.state.control_planes_configured == [0, 1]


def test_progress_not_recorded(topology, executor, config):
    storage = FlakyStorage(config.storage.state_dir)
    orchestrator = BootstrapOrchestrator(topology, "k3s", executor, config=config)
    orchestrator.setup(storage, Operation.CREATE)
    orchestrator.version("1.27.4")
    orchestrator.cni("flannel")

    # only the etcd certificate marker gets through
    storage.writes_left = 1
    with pytest.raises(ProgressNotRecorded) as exc:
        orchestrator.configure_control_plane(0, storage)
    assert isinstance(exc.value, StorageFailure)
    assert (exc.value.role, exc.value.index) == ("controlplane", 0)
    assert storage.read().control_planes_configured == []

    storage.writes_left = None
    orchestrator.configure_control_plane(0, storage)
    assert storage.read().control_planes_configured == [0]


def test_kubeadm_full_bootstrap(make_orchestrator, storage, executor):
    orchestrator = make_orchestrator("kubeadm")
    result = bootstrap_cluster(orchestrator, storage, "1.28", "cilium")
    assert result['success'], result['errors']
    assert result['phase'] == BootstrapPhase.WORKERS_COMPLETE.value

    state = storage.read()
    assert re.fullmatch(r'[a-z0-9]{6}\.[a-z0-9]{16}', state.bootstrap_token)
    assert re.fullmatch(r'[0-9a-f]{64}', state.certificate_key)
    assert state.discovery_token_ca_cert_hash == "0" * 64
    assert state.kubeconfig

    cp0_calls = [names for host, names in executor.calls if host == "203.0.113.7"]
    assert cp0_calls[:4] == [
        ["save etcd certificate"],
        [
            "disable swap and some kernel module adjustments",
            "install containerd",
            "containerd config",
            "install kubeadm, kubectl, kubelet",
        ],
        ["store configuration for Controlplane0", "kubeadm init"],
        ["fetch discovery token ca cert hash"],
    ]
    join = executor.script_named("Join Controlplane-[1..N]").shell_script
    assert f'certificateKey: "{state.certificate_key}"' in join
    assert f"sha256:{'0' * 64}" in join
    worker = executor.script_named("Join kubeadm workerplane").shell_script
    assert f'apiServerEndpoint: "{LB}:6443"' in worker
    assert f'token: "{state.bootstrap_token}"' in worker


def test_kubeadm_secrets_reused_after_failed_init(make_orchestrator, storage, executor):
    orchestrator = make_orchestrator("kubeadm")
    orchestrator.setup(storage, Operation.CREATE)
    orchestrator.version("1.29")
    orchestrator.cni("none")
    executor.fail("kubeadm init", times=4)
    with pytest.raises(ScriptExecFailure):
        orchestrator.configure_control_plane(0, storage)
    token = orchestrator.state.bootstrap_token
    assert storage.read().bootstrap_token == token

    orchestrator.configure_control_plane(0, storage)
    assert orchestrator.state.bootstrap_token == token


def test_kubeadm_rerun_after_unrecorded_progress(topology, executor, config):
    storage = FlakyStorage(config.storage.state_dir)
    orchestrator = BootstrapOrchestrator(topology, "kubeadm", executor, config=config)
    orchestrator.setup(storage, Operation.CREATE)
    orchestrator.version("1.28")
    orchestrator.cni("none")

    # etcd marker and join secrets are saved, the progress marker is not
    storage.writes_left = 2
    with pytest.raises(ProgressNotRecorded):
        orchestrator.configure_control_plane(0, storage)
    token = storage.read().bootstrap_token

    storage.writes_left = None
    orchestrator.configure_control_plane(0, storage)
    assert storage.read().control_planes_configured == [0]
    assert orchestrator.state.bootstrap_token == token

    inits = [script.shell_script for _, script in executor.scripts if script.name == "kubeadm init"]
    assert len(inits) == 2
    for body in inits:
        assert "if [ ! -f /etc/kubernetes/admin.conf ]; then" in body


def test_bootstrap_cluster_collects_worker_failures(make_orchestrator, storage, executor, topology_factory):
    executor.fail("Join the workerplane-[0..M]", times=4)
    orchestrator = make_orchestrator(cloud=topology_factory(workers=2))
    result = bootstrap_cluster(orchestrator, storage, "1.27.4", "flannel")
    assert not result['success']
    assert result['workers'][0]['success'] is False
    assert result['workers'][1]['success'] is True
    assert len(result['errors']) == 1
    assert result['phase'] == BootstrapPhase.WORKERS_PARTIAL.value


def test_bootstrap_cluster_stops_at_controlplane_failure(make_orchestrator, storage, executor):
    executor.fail("Start K3s Controlplane-[0] with CNI")
    result = bootstrap_cluster(make_orchestrator(), storage, "1.27.4", "flannel")
    assert not result['success']
    assert list(result['controlplanes']) == [0]
    assert result['workers'] == {}


def test_single_controlplane_without_workers(make_orchestrator, storage, topology_factory):
    orchestrator = make_orchestrator(cloud=topology_factory(control_planes=1, workers=0))
    result = bootstrap_cluster(orchestrator, storage, "1.27.4", "flannel")
    assert result['success']
    assert result['phase'] == BootstrapPhase.WORKERS_COMPLETE.value


def test_state_is_a_copy(k3s_ready):
    snapshot = k3s_ready.state
    snapshot.control_planes_configured.append(0)
    snapshot.version = "1.25.1"
    assert k3s_ready.state.control_planes_configured == []
    assert k3s_ready.state.version == "1.27.4"


class SlowExecutor:
    """Wraps an executor and widens the window for overlapping calls."""

    def __init__(self, inner):
        self.inner = inner
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def execute(self, collection, host):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(0.01)
            return self.inner.execute(collection, host)
        finally:
            with self._guard:
                self.active -= 1


def test_concurrent_calls_are_serialised(topology, executor, config, storage):
    slow = SlowExecutor(executor)
    orchestrator = BootstrapOrchestrator(topology, "k3s", slow, config=config)
    orchestrator.setup(storage, Operation.CREATE)
    orchestrator.version("1.27.4")
    orchestrator.cni("flannel")

    errors = []

    def configure():
        try:
            orchestrator.configure_control_plane(0, storage)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=configure) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert slow.max_active == 1
    assert [names for _, names in executor.calls].count(["Start K3s Controlplane-[0] with CNI"]) == 1
    assert orchestrator.state.control_planes_configured == [0]
