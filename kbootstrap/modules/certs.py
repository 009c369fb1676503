"""Certificate, token and key generation for cluster bootstrap.

The CA and etcd peer certificate authenticate control planes to the external
etcd datastore. Bootstrap tokens and certificate keys let new nodes join.
"""
import ipaddress
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Sequence, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .errors import CertGenFailure, TokenGenFailure

logger = logging.getLogger("kbootstrap.certs")

KEY_SIZE = 2048
CA_VALIDITY = timedelta(days=3650)
PEER_VALIDITY = timedelta(days=365)

TOKEN_ALPHABET = string.ascii_lowercase + string.digits
TOKEN_ID_LENGTH = 6
TOKEN_SECRET_LENGTH = 16
CERTIFICATE_KEY_BYTES = 32


@dataclass(frozen=True)
class ClusterCerts:
    """PEM encoded CA certificate plus the etcd peer certificate and key."""
    ca_cert: str
    etcd_cert: str
    etcd_key: str


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _name(common_name: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "kbootstrap"),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "etcd"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def _san_addresses(datastore_ips: Sequence[str]) -> List[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    addresses = []
    for ip in list(datastore_ips) + ["127.0.0.1"]:
        addr = ipaddress.ip_address(ip)
        if addr not in addresses:
            addresses.append(addr)
    return addresses


def _pem_cert(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def generate_cluster_certs(datastore_ips: Sequence[str]) -> ClusterCerts:
    """Generate a self-signed CA and an etcd peer certificate signed by it.

    Args:
        datastore_ips: Private addresses of the etcd datastore nodes. Together
            with 127.0.0.1 they form the peer certificate's SAN set.

    Returns:
        ClusterCerts with all three PEM strings

    Raises:
        CertGenFailure: If an address is invalid or key generation/signing fails
    """
    try:
        sans = _san_addresses(datastore_ips)
    except ValueError as e:
        raise CertGenFailure(f"Invalid datastore address: {e}") from e

    now = datetime.now(timezone.utc)
    try:
        ca_key = _new_key()
        ca_name = _name("etcd-ca")
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(ca_name)
            .issuer_name(ca_name)
            .public_key(ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + CA_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True, content_commitment=False, key_encipherment=False,
                    data_encipherment=False, key_agreement=False, key_cert_sign=True,
                    crl_sign=True, encipher_only=False, decipher_only=False,
                ),
                critical=True,
            )
            .sign(ca_key, hashes.SHA256())
        )

        peer_key = _new_key()
        peer_cert = (
            x509.CertificateBuilder()
            .subject_name(_name("etcd"))
            .issuer_name(ca_name)
            .public_key(peer_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + PEER_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True, content_commitment=False, key_encipherment=True,
                    data_encipherment=False, key_agreement=False, key_cert_sign=False,
                    crl_sign=False, encipher_only=False, decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.SubjectAlternativeName([x509.IPAddress(a) for a in sans]),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )

        peer_key_pem = peer_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
    except (ValueError, TypeError) as e:
        raise CertGenFailure(f"Failed to generate etcd certificates: {e}") from e

    logger.debug(f"Generated etcd CA and peer certificate for {len(sans)} address(es)")
    return ClusterCerts(ca_cert=_pem_cert(ca_cert), etcd_cert=_pem_cert(peer_cert), etcd_key=peer_key_pem)


def _random_string(length: int) -> str:
    return ''.join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def generate_bootstrap_token() -> str:
    """Generate a kubeadm style bootstrap token.

    Returns:
        str: A token of the form ``[a-z0-9]{6}.[a-z0-9]{16}``

    Raises:
        TokenGenFailure: If the system random source is unavailable
    """
    try:
        return f"{_random_string(TOKEN_ID_LENGTH)}.{_random_string(TOKEN_SECRET_LENGTH)}"
    except (OSError, NotImplementedError) as e:
        raise TokenGenFailure(f"Failed to generate bootstrap token: {e}") from e


def generate_certificate_key() -> str:
    """Generate the key kubeadm uses to encrypt uploaded control plane certs.

    Returns:
        str: 64 hex characters (32 random bytes)
    """
    try:
        return secrets.token_hex(CERTIFICATE_KEY_BYTES)
    except (OSError, NotImplementedError) as e:
        raise TokenGenFailure(f"Failed to generate certificate key: {e}") from e
