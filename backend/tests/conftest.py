"""
Shared test fixtures.

Provides a fake credential service behind httpx.MockTransport, self-signed
key/certificate material, and an ASGI client for the FastAPI app.

Run: cd backend && python -m pytest tests/ -q
"""
import asyncio
import base64
import datetime
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from tls.credential_client import CredentialClient


USERNAME = "alley-oop"
PASSWORD = "secret"


def generate_credentials(
    hostname: str, days_valid: int = 30, key=None, extra_extensions=()
) -> tuple[bytes, bytes]:
    """Return (key_pem, cert_pem) for a self-signed certificate."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=60))
        .not_valid_after(now + datetime.timedelta(days=days_valid))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
    )
    for extension in extra_extensions:
        builder = builder.add_extension(extension, critical=False)
    cert = builder.sign(key, hashes.SHA256())
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return key_pem, cert.public_bytes(serialization.Encoding.PEM)


def generate_duplicate_extension_credentials(hostname: str) -> tuple[bytes, bytes]:
    """
    Credentials whose certificate carries two SubjectAlternativeName
    extensions. The PEM loads, but reading its extensions fails.
    """
    key_pem, cert_pem = generate_credentials(
        hostname, extra_extensions=[x509.IssuerAlternativeName([x509.DNSName(hostname)])]
    )
    der = x509.load_pem_x509_certificate(cert_pem).public_bytes(serialization.Encoding.DER)
    # Rewrite the IssuerAltName OID (2.5.29.18) to SubjectAltName (2.5.29.17)
    der = der.replace(b"\x06\x03\x55\x1d\x12", b"\x06\x03\x55\x1d\x11")
    body = base64.b64encode(der)
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    pem = b"-----BEGIN CERTIFICATE-----\n" + b"\n".join(lines) + b"\n-----END CERTIFICATE-----\n"
    return key_pem, pem


class FakeCredentialService:
    """
    In-memory stand-in for the credential/naming service.

    Hostnames in `credentials` are provisioned; anything else answers
    "notfqdn". Entries queued in `overrides[(path, hostname)]` are served
    first: an httpx.Response is returned, an exception is raised.
    """

    def __init__(self):
        self.credentials: dict[str, tuple[bytes, bytes]] = {}
        self.acks: dict[str, str] = {}
        self.delays: dict[str, float] = {}
        self.overrides: dict[tuple[str, str], list] = {}
        self.calls: list[tuple[str, str]] = []
        self.expected_auth = "Basic " + base64.b64encode(
            f"{USERNAME}:{PASSWORD}".encode()
        ).decode()

    def provision(self, hostname: str, **kwargs) -> tuple[bytes, bytes]:
        self.credentials[hostname] = generate_credentials(hostname, **kwargs)
        return self.credentials[hostname]

    def queue(self, path: str, hostname: str, *responses) -> None:
        self.overrides.setdefault((path, hostname), []).extend(responses)

    def count(self, path: str, hostname: Optional[str] = None) -> int:
        return sum(1 for p, h in self.calls if p == path and (hostname is None or h == hostname))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        hostname = request.url.params.get("hostname", "")
        self.calls.append((path, hostname))

        delay = self.delays.get(hostname)
        if delay:
            await asyncio.sleep(delay)

        queued = self.overrides.get((path, hostname))
        if queued:
            item = queued.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        if request.headers.get("authorization") != self.expected_auth:
            return httpx.Response(401, text="badauth")

        if path == "/v1/update":
            if hostname not in self.credentials:
                return httpx.Response(200, text="notfqdn")
            default = f"good {request.url.params.get('myip', '')}"
            return httpx.Response(200, text=self.acks.get(hostname, default))

        creds = self.credentials.get(hostname)
        if creds is None:
            return httpx.Response(200, text="notfqdn")
        key_pem, cert_pem = creds
        if path == "/v1/privatekey":
            return httpx.Response(200, content=key_pem)
        if path == "/v1/certificate":
            return httpx.Response(200, content=cert_pem)
        return httpx.Response(404)


def make_client(handler, username: str = USERNAME, password: str = PASSWORD) -> CredentialClient:
    """CredentialClient whose requests go to handler instead of the network."""
    return CredentialClient(
        "creds.test",
        username,
        password,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.fixture
def credential_service():
    return FakeCredentialService()


@pytest_asyncio.fixture
async def credential_client(credential_service):
    client = make_client(credential_service.handler)
    yield client
    await client.close()


@pytest.fixture
def credentials():
    """Valid (key_pem, cert_pem) for a.example.com."""
    return generate_credentials("a.example.com")


@pytest_asyncio.fixture
async def async_client():
    """Async HTTP client bound to the FastAPI app."""
    from main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    for attr in ("context_cache", "raw_cache", "announce_results", "listener"):
        if hasattr(app.state, attr):
            delattr(app.state, attr)


@pytest.fixture
def make_credentials():
    """Factory for self-signed (key_pem, cert_pem) pairs."""
    return generate_credentials


@pytest.fixture
def client_factory():
    """Factory for CredentialClients backed by a custom request handler."""
    return make_client


@pytest.fixture
def make_duplicate_extension_credentials():
    """Factory for credentials whose certificate has a duplicated extension."""
    return generate_duplicate_extension_credentials
