"""
Cluster bootstrap modules.
"""
from .errors import (
    BootstrapError,
    CertGenFailure,
    InvalidVersion,
    ProgressNotRecorded,
    ScriptExecFailure,
    StateInconsistency,
    StorageFailure,
    TokenGenFailure,
    UnsupportedCNI,
)
from .executor import DryRunExecutor, ScriptExecutor, SSHScriptExecutor
from .orchestrator import BootstrapOrchestrator, bootstrap_cluster
from .state import CloudResourceState, ClusterBootstrapState, Operation
from .storage import LocalStorage, StorageBackend

__all__ = [
    'BootstrapError',
    'CertGenFailure',
    'InvalidVersion',
    'ProgressNotRecorded',
    'ScriptExecFailure',
    'StateInconsistency',
    'StorageFailure',
    'TokenGenFailure',
    'UnsupportedCNI',
    'BootstrapOrchestrator',
    'bootstrap_cluster',
    'ScriptExecutor',
    'SSHScriptExecutor',
    'DryRunExecutor',
    'CloudResourceState',
    'ClusterBootstrapState',
    'Operation',
    'LocalStorage',
    'StorageBackend',
]
