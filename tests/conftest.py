"""
Shared fixtures for TLS Endpoint Monitor tests.
"""

import asyncio
import ssl
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple, Union

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from tls_endpoint_monitor.errors import ProbeConnectionError
from tls_endpoint_monitor.models import CertificateRecord, CertificateStatus
from tls_endpoint_monitor.probe import ProbeResult


def build_name(common_name: Optional[str], organization: Optional[str] = None) -> x509.Name:
    attributes = []
    if common_name:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    if organization:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    return x509.Name(attributes)


def make_certificate(
    common_name: Optional[str] = "test.example.com",
    organization: Optional[str] = "Test Org",
    days_valid: int = 365,
    not_before: Optional[datetime] = None,
    key=None,
    issuer: Optional[Tuple[x509.Certificate, object]] = None,
    key_usage: bool = True,
    hash_algorithm=None,
) -> Tuple[x509.Certificate, object]:
    """Build a certificate, self-signed unless an (issuer_cert, issuer_key) pair is given."""
    key = key or rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = build_name(common_name, organization)
    now = datetime.now(timezone.utc)
    not_before = not_before or now - timedelta(days=1)

    if issuer is not None:
        issuer_cert, issuer_key = issuer
        issuer_name = issuer_cert.subject
        signing_key = issuer_key
    else:
        issuer_name = subject
        signing_key = key

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(now + timedelta(days=days_valid))
    )
    if key_usage:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )

    cert = builder.sign(signing_key, hash_algorithm or hashes.SHA256())
    return cert, key


def to_der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


@pytest.fixture(scope="session")
def rsa_key():
    """One RSA key reused across tests, generation is slow."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def self_signed(rsa_key):
    """Self-signed certificate valid for a year."""
    return make_certificate(key=rsa_key)


@pytest.fixture(scope="session")
def ca_issued(rsa_key):
    """Leaf certificate issued by a separate CA."""
    ca = make_certificate(common_name="Test Root CA", organization="Test CA", key=rsa_key)
    leaf_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return make_certificate(common_name="leaf.example.com", key=leaf_key, issuer=ca)


@pytest.fixture
def cert_files(tmp_path, self_signed):
    """Self-signed certificate and key written as PEM files."""
    cert, key = self_signed
    cert_file = tmp_path / "server.crt"
    key_file = tmp_path / "server.key"
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )
    return cert_file, key_file


@pytest_asyncio.fixture
async def tls_server(cert_files, self_signed):
    """Local TLS server presenting the self-signed certificate."""
    cert_file, key_file = cert_files
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(str(cert_file), str(key_file))

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            await asyncio.wait_for(reader.read(1024), timeout=2)
        except (asyncio.TimeoutError, OSError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0, ssl=context)
    port = server.sockets[0].getsockname()[1]
    try:
        yield "127.0.0.1", port, self_signed[0]
    finally:
        server.close()
        await server.wait_closed()


@pytest_asyncio.fixture
async def silent_server():
    """Plain TCP server that accepts connections and never answers."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            await asyncio.wait_for(reader.read(), timeout=5)
        except (asyncio.TimeoutError, OSError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield "127.0.0.1", port
    finally:
        server.close()
        await server.wait_closed()


class FakeProbe:
    """Probe returning canned results per (host, port)."""

    def __init__(self, results: Optional[Dict[Tuple[str, int], Union[ProbeResult, Exception]]] = None):
        self.results = results or {}
        self.calls: List[Tuple[str, int]] = []

    async def probe(self, host: str, port: int) -> ProbeResult:
        self.calls.append((host, port))
        result = self.results.get((host, port))
        if result is None:
            raise ProbeConnectionError(host, port, "Connection error: Connection refused")
        if isinstance(result, Exception):
            raise result
        return result


class FakeScanner:
    """Stand-in for BatchScanner that returns a valid record per target."""

    def __init__(self) -> None:
        self.calls: List[Tuple[List[str], List[int]]] = []
        self.gate: Optional[asyncio.Event] = None
        self.started: Optional[asyncio.Event] = None
        self.closed = False

    async def scan(self, hosts: Sequence[str], ports: Sequence[int]) -> List[CertificateRecord]:
        self.calls.append((list(hosts), list(ports)))
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        now = datetime.now(timezone.utc)
        return [
            CertificateRecord(
                host=host,
                port=port,
                subject=f"CN={host}",
                issuer="CN=Test CA",
                common_name=host,
                valid_from=now - timedelta(days=1),
                valid_to=now + timedelta(days=90),
                days_remaining=89,
                status=CertificateStatus.VALID,
                last_scanned=now,
            )
            for host in hosts
            for port in ports
        ]

    def close(self) -> None:
        self.closed = True

    async def get_health_status(self) -> dict:
        return {"worker_pool_size": 1}


@pytest.fixture
def fake_scanner():
    return FakeScanner()
