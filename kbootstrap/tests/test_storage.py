import json
import os
import stat

import pytest

from kbootstrap.modules.errors import StateInconsistency, StorageFailure
from kbootstrap.modules.state import BootstrapPhase, ClusterBootstrapState, mark
from kbootstrap.modules.storage import LocalStorage


@pytest.fixture
def document(topology):
    doc = ClusterBootstrapState.from_cloud(topology, "k3s")
    doc.ca_cert, doc.etcd_cert, doc.etcd_key = "CA", "CERT", "KEY"
    return doc


@pytest.fixture
def connected(tmp_path):
    store = LocalStorage(tmp_path)
    store.setup("local", "demo", "lab", "ha")
    store.connect()
    return store


def test_layout(tmp_path, connected):
    assert connected.path == tmp_path / "local" / "ha" / "demo lab" / "bootstrap-state.json"


def test_read_missing_returns_none(connected):
    assert connected.read() is None


def test_round_trip(connected, document):
    document.version = "1.27.4"
    mark(document.control_planes_configured, 1)
    mark(document.control_planes_configured, 0)
    connected.write(document)
    loaded = connected.read()
    assert loaded.model_dump() == document.model_dump()
    assert loaded.control_planes_configured == [0, 1]


def test_file_is_private(connected, document):
    connected.write(document)
    mode = stat.S_IMODE(os.stat(connected.path).st_mode)
    assert mode == 0o600
    assert not [p for p in connected.path.parent.iterdir() if p.name.endswith(".tmp")]


def test_corrupt_json(connected):
    connected.path.write_text("{not json")
    with pytest.raises(StorageFailure):
        connected.read()


def test_undecodable_bytes(connected):
    connected.path.write_bytes(b'{"metadata": "\xff\xfe"}')
    with pytest.raises(StorageFailure):
        connected.read()


def test_schema_mismatch(connected, document):
    payload = document.model_dump(mode='json')
    payload["control_planes_configured"] = ["zero"]
    connected.path.write_text(json.dumps(payload))
    with pytest.raises(StateInconsistency):
        connected.read()


def test_unpaired_addresses(connected, document):
    payload = document.model_dump(mode='json')
    payload["private_ips"]["control_planes"] = payload["private_ips"]["control_planes"][:1]
    connected.path.write_text(json.dumps(payload))
    with pytest.raises(StateInconsistency):
        connected.read()


def test_read_before_connect(tmp_path):
    store = LocalStorage(tmp_path)
    store.setup("local", "demo", "lab", "ha")
    with pytest.raises(StorageFailure):
        store.read()


def test_setup_requires_cluster_name(tmp_path):
    with pytest.raises(StorageFailure):
        LocalStorage(tmp_path).setup("local", "", "lab", "ha")


def test_unreachable_root(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    store = LocalStorage(blocker)
    store.setup("local", "demo", "lab", "ha")
    with pytest.raises(StorageFailure):
        store.connect()


def test_phase_progression(document):
    assert document.phase is BootstrapPhase.UNINITIALIZED
    document.version, document.cni_plugin = "1.27.4", "flannel"
    assert document.phase is BootstrapPhase.CONFIGURED
    mark(document.control_planes_configured, 0)
    assert document.phase is BootstrapPhase.CONTROL_PLANES_PARTIAL
    for i in (1, 2):
        mark(document.control_planes_configured, i)
    assert document.phase is BootstrapPhase.CONTROL_PLANES_COMPLETE
    mark(document.workers_configured, 0)
    assert document.phase is BootstrapPhase.WORKERS_COMPLETE


def test_mark_is_idempotent():
    markers = []
    for i in (2, 0, 2):
        mark(markers, i)
    assert markers == [0, 2]
