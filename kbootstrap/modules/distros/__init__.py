"""Distro bootstrap strategies.

- base: the DistroStrategy interface and the shared etcd endpoint helper
- k3s: lightweight distro backed by an external etcd datastore
- kubeadm: upstream reference tooling with external etcd
"""
from typing import Dict, Type

from .base import DistroStrategy, etcd_endpoints
from .k3s import K3sDistro, is_valid_k3s_version
from .kubeadm import KubeadmDistro, is_valid_kubeadm_version

DISTROS: Dict[str, Type[DistroStrategy]] = {
    K3sDistro.name: K3sDistro,
    KubeadmDistro.name: KubeadmDistro,
}


def get_distro(name: str) -> DistroStrategy:
    """Return a strategy instance for the named distro.

    Raises:
        ValueError: If the distro is unknown
    """
    try:
        return DISTROS[name]()
    except KeyError:
        raise ValueError(f"Unknown distro {name!r}, expected one of: {', '.join(sorted(DISTROS))}") from None


__all__ = [
    'DistroStrategy',
    'K3sDistro',
    'KubeadmDistro',
    'DISTROS',
    'get_distro',
    'etcd_endpoints',
    'is_valid_k3s_version',
    'is_valid_kubeadm_version',
]
