"""
kbootstrap - HA Kubernetes cluster bootstrap with k3s and kubeadm.
"""
__version__ = "0.1.0"
