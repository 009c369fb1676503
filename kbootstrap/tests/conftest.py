import pytest

from kbootstrap.config import BootstrapConfig, RetryConfig
from kbootstrap.modules.executor import DryRunExecutor
from kbootstrap.modules.state import CloudResourceState
from kbootstrap.modules.storage import LocalStorage

LB_PUBLIC_IP = "203.0.113.1"
LB_PRIVATE_IP = "192.168.0.1"


class RecordingExecutor(DryRunExecutor):
    """DryRunExecutor that also keeps every script it ran."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.scripts = []

    def run_script(self, script, host):
        self.scripts.append((host, script))
        return super().run_script(script, host)

    def script_named(self, name):
        for _, script in self.scripts:
            if script.name == name:
                return script
        raise KeyError(name)


def make_topology(cluster_name="demo", control_planes=3, workers=1):
    cp_suffixes = [7, 9, 10, 11, 12][:control_planes]
    return CloudResourceState(**{
        "metadata": {"cluster_name": cluster_name, "region": "lab"},
        "ssh": {"username": "ubuntu", "private_key": "unused"},
        "public_ips": {
            "control_planes": [f"203.0.113.{s}" for s in cp_suffixes],
            "data_stores": ["203.0.113.2"],
            "worker_planes": [f"203.0.113.{20 + i}" for i in range(workers)],
            "load_balancer": LB_PUBLIC_IP,
        },
        "private_ips": {
            "control_planes": [f"192.168.0.{s}" for s in cp_suffixes],
            "data_stores": ["192.168.5.2"],
            "worker_planes": [f"192.168.0.{20 + i}" for i in range(workers)],
            "load_balancer": LB_PRIVATE_IP,
        },
    })


@pytest.fixture
def config(tmp_path):
    return BootstrapConfig(
        retry=RetryConfig(delay=0, backoff=1, max_delay=0),
        storage={"state_dir": str(tmp_path / "state")},
    )


@pytest.fixture
def topology():
    return make_topology()


@pytest.fixture
def storage(config):
    return LocalStorage(config.storage.state_dir)


@pytest.fixture
def executor(config):
    return RecordingExecutor(config)


@pytest.fixture
def topology_factory():
    return make_topology
