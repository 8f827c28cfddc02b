"""
Hostname -> SSLContext cache consulted on every TLS handshake.

Entries are created lazily from the credential resolver and live for the
lifetime of the process. A failed resolution never leaves an entry behind.
"""
import asyncio
import logging
import os
import ssl
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from .errors import CredentialError, ValidationError
from .models import CredentialPair, normalize_hostname
from .resolver import HostnameCredentialResolver, consume_exception


logger = logging.getLogger(__name__)


class ContextStore(Protocol):
    """Storage capability behind the context cache."""

    def get(self, hostname: str) -> Optional[ssl.SSLContext]: ...

    def put(self, hostname: str, context: ssl.SSLContext) -> None: ...

    def hostnames(self) -> list[str]: ...


class MemoryContextStore:
    """Unbounded in-memory store."""

    def __init__(self):
        self._contexts: dict[str, ssl.SSLContext] = {}

    def get(self, hostname: str) -> Optional[ssl.SSLContext]:
        return self._contexts.get(hostname)

    def put(self, hostname: str, context: ssl.SSLContext) -> None:
        self._contexts[hostname] = context

    def hostnames(self) -> list[str]:
        return sorted(self._contexts)


def build_server_context(pair: CredentialPair) -> ssl.SSLContext:
    """
    Build a server-side SSLContext from a credential pair.

    The ssl module only loads key material from files, so the pair is
    written to a private temporary directory for the duration of the load.

    Raises:
        ValidationError: If OpenSSL rejects the key or certificate
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.set_alpn_protocols(["http/1.1"])

    with tempfile.TemporaryDirectory(prefix="tls-") as tmp:
        cert_path = Path(tmp) / "cert.pem"
        key_path = Path(tmp) / "key.pem"
        cert_path.write_bytes(pair.certificate)
        key_path.write_bytes(pair.private_key)
        os.chmod(key_path, 0o600)
        try:
            context.load_cert_chain(cert_path, key_path)
        except ssl.SSLError as e:
            raise ValidationError(
                f"TLS library rejected credentials: {e}", hostname=pair.hostname
            ) from e

    return context


class SecureContextCache:
    """
    Resolves the SSLContext to use for a handshake's SNI hostname.

    Concurrent misses for the same hostname share one build, so every
    handshake sees the same SSLContext object.
    """

    def __init__(
        self,
        resolver: HostnameCredentialResolver,
        store: Optional[ContextStore] = None,
    ):
        self._resolver = resolver
        self._store = store or MemoryContextStore()
        self._building: dict[str, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0
        self._failures = 0

    def get_cached(self, hostname: str) -> Optional[ssl.SSLContext]:
        """Synchronous lookup; None if the hostname has no context yet."""
        try:
            return self._store.get(normalize_hostname(hostname))
        except ValidationError:
            return None

    async def resolve_for_handshake(self, hostname: str) -> ssl.SSLContext:
        """
        Get the SSLContext for a hostname, resolving it on a miss.

        Raises:
            CredentialError: The handshake for this connection must be aborted
        """
        try:
            name = normalize_hostname(hostname)
        except ValidationError as e:
            self._failures += 1
            logger.error("[TLS-CONTEXT] Rejected handshake: %s", e.describe())
            raise

        context = self._store.get(name)
        if context is not None:
            self._hits += 1
            return context

        self._misses += 1
        task = self._building.get(name)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._build(name))
            task.add_done_callback(consume_exception)
            self._building[name] = task
        return await asyncio.shield(task)

    async def _build(self, name: str) -> ssl.SSLContext:
        try:
            pair = await self._resolver.resolve(name)
            context = await asyncio.to_thread(build_server_context, pair)
        except CredentialError as e:
            self._failures += 1
            logger.error("[TLS-CONTEXT] Credential resolution failed: %s", e.describe())
            raise
        finally:
            self._building.pop(name, None)

        self._store.put(name, context)
        logger.info("[TLS-CONTEXT] Cached TLS context for %s", name)
        return context

    def stats(self) -> dict:
        """Get cache statistics."""
        return {
            "hostnames": self._store.hostnames(),
            "in_flight": sorted(self._building),
            "hits": self._hits,
            "misses": self._misses,
            "failures": self._failures,
        }
