"""Certificate generation for the API server and delivery to the VM."""

from __future__ import annotations

import datetime
import ipaddress
from pathlib import Path
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from minicluster import constants
from minicluster.constants import (
    API_SERVER_NAMES,
    CERT_NAMES,
    DEFAULT_CERT_PATH,
    DOCKER_CLIENT_CERT_NAMES,
    DOCKER_SERVER_CERT_NAMES,
    SERVICE_CLUSTER_IP,
)
from minicluster.drivers import Driver
from minicluster.exceptions import ManagerError
from minicluster.utils import ensure_directory, log

KEY_SIZE = 2048
CA_VALIDITY = datetime.timedelta(days=365 * 10)
CERT_VALIDITY = datetime.timedelta(days=365)


def permissions_for(filename: str) -> str:
    """Private keys are owner-only; everything else is world-readable."""
    return "0600" if filename.endswith(".key") else "0644"


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _write_key(key: rsa.RSAPrivateKey, path: Path) -> None:
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    path.chmod(0o600)


def _write_cert(cert: x509.Certificate, path: Path) -> None:
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))


def generate_ca(ca_cert_path: Path, ca_key_path: Path, common_name: str = "minicluster CA") -> None:
    key = _new_key()
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(hours=1))
        .not_valid_after(now + CA_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    _write_key(key, ca_key_path)
    _write_cert(cert, ca_cert_path)


def _load_ca(ca_cert_path: Path, ca_key_path: Path) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    cert = x509.load_pem_x509_certificate(ca_cert_path.read_bytes())
    key = serialization.load_pem_private_key(ca_key_path.read_bytes(), password=None)
    return cert, key  # type: ignore[return-value]


def generate_signed_cert(
    cert_path: Path,
    key_path: Path,
    ca_cert_path: Path,
    ca_key_path: Path,
    ips: List[str],
    alternate_names: List[str],
    common_name: str = "minicluster",
) -> None:
    ca_cert, ca_key = _load_ca(ca_cert_path, ca_key_path)
    key = _new_key()
    sans: List[x509.GeneralName] = [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ips]
    sans += [x509.DNSName(name) for name in alternate_names]
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(hours=1))
        .not_valid_after(now + CERT_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
    )
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    cert = builder.sign(ca_key, hashes.SHA256())
    _write_key(key, key_path)
    _write_cert(cert, cert_path)


def ensure_ca(ca_cert: Path, ca_key: Path) -> None:
    """Create the CA pair unless both halves already exist."""
    if ca_cert.exists() and ca_key.exists():
        return
    ensure_directory(ca_cert.parent)
    log("INFO", f"Generating certificate authority in {ca_cert.parent}")
    generate_ca(ca_cert, ca_key)


def generate_certs(ca_cert: Path, ca_key: Path, cert: Path, key: Path, ip: str) -> None:
    """Create (or reuse) the CA, then issue an API server certificate bound to ``ip``."""
    try:
        ipaddress.ip_address(ip)
    except ValueError as exc:
        raise ManagerError(f"Invalid IP address for certificate: {ip!r}") from exc
    try:
        ensure_ca(ca_cert, ca_key)
        generate_signed_cert(
            cert, key, ca_cert, ca_key,
            ips=list(dict.fromkeys([ip, SERVICE_CLUSTER_IP, "127.0.0.1"])),
            alternate_names=list(API_SERVER_NAMES),
        )
    except (OSError, ValueError) as exc:
        raise ManagerError(f"Error generating certificates: {exc}") from exc


def setup_certs(driver: Driver, local_path: Optional[Path] = None) -> None:
    """Generate the certificate bundle for the host IP and push it to the VM."""
    local_path = local_path if local_path is not None else constants.MINI_PATH
    try:
        ip = driver.get_ip()
    except ManagerError as exc:
        raise ManagerError(f"Error getting ip from driver: {exc}") from exc
    log("INFO", f"Setting up certificates for IP: {ip}")

    ca_cert, ca_key, api_cert, api_key = (local_path / name for name in CERT_NAMES)
    generate_certs(ca_cert, ca_key, api_cert, api_key, ip)

    try:
        client = driver.ssh_client()
    except ManagerError as exc:
        raise ManagerError(f"Error creating new ssh client: {exc}") from exc

    for name in CERT_NAMES:
        path = local_path / name
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ManagerError(f"Error reading file: {path}") from exc
        try:
            client.transfer(data, DEFAULT_CERT_PATH, name, permissions_for(name))
        except ManagerError as exc:
            raise ManagerError(f"Error transferring {name}: {exc}") from exc


def generate_docker_certs(ip: str, local_path: Optional[Path] = None, certs_dir: Optional[Path] = None) -> Path:
    """Issue docker engine TLS material from the cluster CA into ``certs_dir``.

    The client pair is created once and reused; the server pair is reissued on
    every call so it always names the current VM address. Returns ``certs_dir``,
    which is what ``DOCKER_CERT_PATH`` points at.
    """
    local_path = local_path if local_path is not None else constants.MINI_PATH
    certs_dir = certs_dir if certs_dir is not None else constants.DOCKER_CERTS_DIR
    try:
        ipaddress.ip_address(ip)
    except ValueError as exc:
        raise ManagerError(f"Invalid IP address for certificate: {ip!r}") from exc
    ca_cert, ca_key = local_path / CERT_NAMES[0], local_path / CERT_NAMES[1]
    ca_pem, client_cert, client_key = (certs_dir / name for name in DOCKER_CLIENT_CERT_NAMES)
    server_cert, server_key = (certs_dir / name for name in DOCKER_SERVER_CERT_NAMES)
    try:
        ensure_ca(ca_cert, ca_key)
        ensure_directory(certs_dir)
        ca_pem.write_bytes(ca_cert.read_bytes())
        if not (client_cert.exists() and client_key.exists()):
            log("INFO", f"Generating docker client certificate in {certs_dir}")
            generate_signed_cert(client_cert, client_key, ca_cert, ca_key, ips=[], alternate_names=[],
                                 common_name="minicluster-client")
        generate_signed_cert(
            server_cert, server_key, ca_cert, ca_key,
            ips=list(dict.fromkeys([ip, "127.0.0.1"])),
            alternate_names=["localhost"],
        )
    except (OSError, ValueError) as exc:
        raise ManagerError(f"Error generating docker certificates: {exc}") from exc
    return certs_dir
