"""
Per-hostname TLS credential management.

Provides on-demand TLS support for an open-ended set of hostnames:
- Key/certificate fetching from a remote credential service
- Optional on-disk raw credential cache
- Coalesced per-hostname resolution and SSLContext caching
- SNI-driven dual-protocol (HTTP + HTTPS) listener
- Startup address announcements
"""

from .announcer import AnnounceResult, announce_all, default_domain_map
from .context_cache import MemoryContextStore, SecureContextCache, build_server_context
from .credential_client import CredentialClient
from .errors import (
    AuthError,
    CredentialError,
    NetworkError,
    NotProvisionedError,
    RemoteError,
    ValidationError,
)
from .https_server import DualProtocolListener
from .models import CredentialArtifact, CredentialKind, CredentialPair, normalize_hostname
from .resolver import HostnameCredentialResolver
from .storage import RawCredentialCache

__all__ = [
    "AnnounceResult",
    "announce_all",
    "default_domain_map",
    "MemoryContextStore",
    "SecureContextCache",
    "build_server_context",
    "CredentialClient",
    "AuthError",
    "CredentialError",
    "NetworkError",
    "NotProvisionedError",
    "RemoteError",
    "ValidationError",
    "DualProtocolListener",
    "CredentialArtifact",
    "CredentialKind",
    "CredentialPair",
    "normalize_hostname",
    "HostnameCredentialResolver",
    "RawCredentialCache",
]
