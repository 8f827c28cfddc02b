"""
Credential data types shared by the resolver, caches and client.
"""
import asyncio
import re
from dataclasses import dataclass
from enum import Enum

from .errors import ValidationError


# RFC 1123 host names: dot-separated labels of 1-63 chars, no leading/trailing hyphen
_HOSTNAME_RE = re.compile(
    r"^([a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?\.)*[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$"
)
_MAX_HOSTNAME_LENGTH = 253


class CredentialKind(str, Enum):
    """The two artifacts that make up a hostname's credentials."""

    PRIVATE_KEY = "privatekey"
    CERTIFICATE = "certificate"

    @property
    def file_suffix(self) -> str:
        """Suffix used for this artifact in the raw credential cache."""
        return ".key" if self is CredentialKind.PRIVATE_KEY else ".crt"


@dataclass(frozen=True)
class CredentialArtifact:
    """A raw key or certificate blob for one hostname."""

    hostname: str
    kind: CredentialKind
    data: bytes


@dataclass(frozen=True)
class CredentialPair:
    """Validated private key and certificate for one hostname."""

    hostname: str
    private_key: bytes
    certificate: bytes

    @classmethod
    def from_artifacts(
        cls, key: CredentialArtifact, cert: CredentialArtifact
    ) -> "CredentialPair":
        return cls(hostname=key.hostname, private_key=key.data, certificate=cert.data)


@dataclass
class PendingFetch:
    """An in-flight resolution that concurrent callers attach to."""

    hostname: str
    future: asyncio.Future
    waiters: int = 1
    started_at: float = 0.0


def normalize_hostname(hostname: str) -> str:
    """
    Normalize a hostname for use as a cache key.

    Strips whitespace and one trailing dot, then lowercases.

    Raises:
        ValidationError: If the result is not a valid host name
    """
    name = (hostname or "").strip()
    if name.endswith("."):
        name = name[:-1]
    name = name.lower()

    if not name or len(name) > _MAX_HOSTNAME_LENGTH or not _HOSTNAME_RE.match(name):
        raise ValidationError(f"Invalid hostname: {hostname!r}", hostname=hostname)
    return name
