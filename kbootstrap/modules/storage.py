"""Storage backends for the cluster bootstrap document.

The orchestrator only talks to :class:`StorageBackend`. :class:`LocalStorage`
keeps one JSON document per cluster on the local filesystem::

    <root>/<provider>/<cluster_type>/<cluster_name> <region>/bootstrap-state.json
"""
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from jsonschema import ValidationError as SchemaValidationError
from jsonschema import validate
from pydantic import ValidationError

from .errors import StateInconsistency, StorageFailure
from .state import ClusterBootstrapState

logger = logging.getLogger("kbootstrap.storage")

STATE_FILE_NAME = "bootstrap-state.json"

_IP_SET_SCHEMA = {
    "type": "object",
    "properties": {
        "control_planes": {"type": "array", "items": {"type": "string"}},
        "data_stores": {"type": "array", "items": {"type": "string"}},
        "worker_planes": {"type": "array", "items": {"type": "string"}},
        "load_balancer": {"type": "string"},
    },
}

_INDEX_LIST = {"type": "array", "items": {"type": "integer", "minimum": 0}}

STATE_SCHEMA = {
    "type": "object",
    "properties": {
        "metadata": {
            "type": "object",
            "properties": {
                "cluster_name": {"type": "string"},
                "provider": {"type": "string"},
                "region": {"type": "string"},
                "cluster_type": {"type": "string"},
            },
            "required": ["cluster_name"],
        },
        "distro": {"type": "string"},
        "ca_cert": {"type": "string"},
        "etcd_cert": {"type": "string"},
        "etcd_key": {"type": "string"},
        "public_ips": _IP_SET_SCHEMA,
        "private_ips": _IP_SET_SCHEMA,
        "version": {"type": ["string", "null"]},
        "cni_plugin": {"type": ["string", "null"]},
        "etcd_certs_placed": _INDEX_LIST,
        "control_planes_configured": _INDEX_LIST,
        "workers_configured": _INDEX_LIST,
    },
    "required": ["metadata", "distro"],
}


class StorageBackend(ABC):
    """Durability boundary for the bootstrap document."""

    @abstractmethod
    def setup(self, provider: str, cluster_name: str, region: str, cluster_type: str) -> None:
        """Select the cluster whose document will be read and written."""

    @abstractmethod
    def connect(self) -> None:
        """Make the backend ready for reads and writes.

        Raises:
            StorageFailure: If the backend is unreachable
        """

    @abstractmethod
    def read(self) -> Optional[ClusterBootstrapState]:
        """Return the persisted document, or None if nothing was written yet."""

    @abstractmethod
    def write(self, document: ClusterBootstrapState) -> None:
        """Persist the document, replacing any previous version."""


class LocalStorage(StorageBackend):
    """Stores the document as a JSON file below a root directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()
        self.cluster_dir: Optional[Path] = None
        self._connected = False

    def setup(self, provider: str, cluster_name: str, region: str, cluster_type: str) -> None:
        if not cluster_name:
            raise StorageFailure("cluster name is required to locate the state document")
        self.cluster_dir = self.root / provider / cluster_type / f"{cluster_name} {region}"
        self._connected = False
        logger.debug(f"Using state directory {self.cluster_dir}")

    @property
    def path(self) -> Path:
        if self.cluster_dir is None:
            raise StorageFailure("storage has not been set up for a cluster")
        return self.cluster_dir / STATE_FILE_NAME

    def connect(self) -> None:
        path = self.path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            os.chmod(path.parent, 0o700)
        except OSError as e:
            raise StorageFailure(f"Cannot prepare state directory {path.parent}: {e}") from e
        if not os.access(path.parent, os.W_OK):
            raise StorageFailure(f"State directory is not writable: {path.parent}")
        self._connected = True

    def _require_connection(self) -> Path:
        if not self._connected:
            raise StorageFailure("storage is not connected")
        return self.path

    def read(self) -> Optional[ClusterBootstrapState]:
        path = self._require_connection()
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except OSError as e:
            raise StorageFailure(f"Failed to read {path}: {e}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StorageFailure(f"State file {path} is not valid JSON: {e}") from e

        try:
            validate(instance=raw, schema=STATE_SCHEMA)
            return ClusterBootstrapState.model_validate(raw)
        except SchemaValidationError as e:
            raise StateInconsistency(f"State file {path} does not match the expected schema: {e.message}") from e
        except ValidationError as e:
            raise StateInconsistency(f"State file {path} is invalid: {e}") from e

    def write(self, document: ClusterBootstrapState) -> None:
        path = self._require_connection()
        payload = document.model_dump(mode='json')
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".state-", suffix=".tmp")
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageFailure(f"Failed to write {path}: {e}") from e
        logger.debug(f"Saved bootstrap state to {path}")
