"""
Per-hostname credential resolution with request coalescing.

When several handshakes for the same hostname arrive while its credentials
are being fetched, only one fetch runs; every caller awaits the same task
and observes the same CredentialPair or the same exception.
"""
import asyncio
import logging
import time
from typing import Optional

from .credential_client import CredentialClient
from .errors import CredentialError
from .models import (
    CredentialArtifact,
    CredentialKind,
    CredentialPair,
    PendingFetch,
    normalize_hostname,
)
from .storage import RawCredentialCache
from .validation import validate_pair


logger = logging.getLogger(__name__)


class HostnameCredentialResolver:
    """
    Produces a validated CredentialPair for a hostname.

    Artifacts come from the raw credential cache when one is configured,
    and from the credential service otherwise. Failures are never cached:
    the in-flight entry is dropped as soon as the fetch finishes, so the
    next caller starts fresh.

    Example:
        resolver = HostnameCredentialResolver(client)

        # 50 concurrent handshakes for one name -> 1 key fetch + 1 cert fetch
        pairs = await asyncio.gather(*[resolver.resolve("a.example.com") for _ in range(50)])
    """

    def __init__(
        self,
        client: CredentialClient,
        raw_cache: Optional[RawCredentialCache] = None,
        retries: int = 0,
        base_delay_seconds: float = 0.5,
        max_delay_seconds: float = 5.0,
    ):
        """
        Args:
            client: Credential service client
            raw_cache: Optional on-disk byte cache consulted before the client
            retries: Extra attempts per artifact for retryable errors
            base_delay_seconds: First backoff delay, doubled per attempt
            max_delay_seconds: Backoff cap
        """
        self._client = client
        self._raw_cache = raw_cache
        self._retries = max(0, retries)
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._pending: dict[str, PendingFetch] = {}

    def is_in_flight(self, hostname: str) -> bool:
        """Check if a resolution is running for a hostname."""
        return normalize_hostname(hostname) in self._pending

    def in_flight(self) -> list[str]:
        """Hostnames currently being resolved."""
        return sorted(self._pending)

    def get_waiters(self, hostname: str) -> int:
        """Number of callers attached to a hostname's in-flight resolution."""
        pending = self._pending.get(normalize_hostname(hostname))
        return pending.waiters if pending else 0

    async def resolve(self, hostname: str) -> CredentialPair:
        """
        Resolve the credentials for a hostname.

        Raises:
            CredentialError: Network, auth, remote or validation failure
        """
        name = normalize_hostname(hostname)

        existing = self._pending.get(name)
        if existing:
            existing.waiters += 1
            logger.debug(
                "[TLS-RESOLVER] Joining in-flight fetch for %s (%s waiters)",
                name, existing.waiters,
            )
            return await asyncio.shield(existing.future)

        task = asyncio.get_running_loop().create_task(self._run(name))
        task.add_done_callback(consume_exception)
        self._pending[name] = PendingFetch(
            hostname=name, future=task, started_at=time.monotonic()
        )
        # Shielded so a cancelled handshake does not cancel the other waiters
        return await asyncio.shield(task)

    async def _run(self, name: str) -> CredentialPair:
        try:
            return await self._resolve_uncached(name)
        finally:
            pending = self._pending.pop(name, None)
            if pending:
                logger.debug(
                    "[TLS-RESOLVER] Fetch for %s finished in %.2fs (%s waiters)",
                    name, time.monotonic() - pending.started_at, pending.waiters,
                )

    async def _resolve_uncached(self, name: str) -> CredentialPair:
        logger.info("[TLS-RESOLVER] Resolving credentials for %s", name)

        (key, key_cached), (cert, cert_cached) = await self._load_both(name)
        pair = CredentialPair.from_artifacts(key, cert)
        info = validate_pair(pair)

        # Only material that validated is persisted
        if self._raw_cache is not None:
            for artifact, cached in ((key, key_cached), (cert, cert_cached)):
                if not cached:
                    await self._persist(artifact)

        logger.info(
            "[TLS-RESOLVER] Credentials ready for %s (subject=%s, expires=%s)",
            name, info.subject, info.not_after,
        )
        return pair

    async def _load_both(
        self, name: str
    ) -> tuple[tuple[CredentialArtifact, bool], tuple[CredentialArtifact, bool]]:
        """
        Load key and certificate concurrently.

        If either fails the other is cancelled and awaited before the error
        propagates, so no request for this hostname outlives the fetch.
        """
        loop = asyncio.get_running_loop()
        tasks = [
            loop.create_task(self._load_artifact(name, CredentialKind.PRIVATE_KEY)),
            loop.create_task(self._load_artifact(name, CredentialKind.CERTIFICATE)),
        ]
        try:
            key, cert = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return key, cert

    async def _load_artifact(
        self, name: str, kind: CredentialKind
    ) -> tuple[CredentialArtifact, bool]:
        """Returns the artifact and whether it came from the raw cache."""
        if self._raw_cache is not None:
            try:
                data = await self._raw_cache.get(name, kind)
            except OSError as e:
                logger.warning(
                    "[TLS-RESOLVER] Raw cache read failed for %s %s: %s", name, kind.value, e
                )
                data = None
            if data is not None:
                logger.debug("[TLS-RESOLVER] Raw cache hit for %s %s", name, kind.value)
                return CredentialArtifact(name, kind, data), True

        data = await self._fetch_remote(name, kind)
        return CredentialArtifact(name, kind, data), False

    async def _fetch_remote(self, name: str, kind: CredentialKind) -> bytes:
        attempt = 0
        while True:
            try:
                return await self._client.fetch(kind, name)
            except CredentialError as e:
                if not e.retryable or attempt >= self._retries:
                    raise
                delay = min(self._max_delay, self._base_delay * (2 ** attempt))
                attempt += 1
                logger.warning(
                    "[TLS-RESOLVER] %s; retrying %s in %.1fs (attempt %s/%s)",
                    e.describe(), kind.value, delay, attempt, self._retries,
                )
                await asyncio.sleep(delay)

    async def _persist(self, artifact: CredentialArtifact) -> None:
        try:
            await self._raw_cache.put(artifact.hostname, artifact.kind, artifact.data)
        except OSError as e:
            logger.warning(
                "[TLS-RESOLVER] Could not cache %s for %s: %s",
                artifact.kind.value, artifact.hostname, e,
            )


def consume_exception(task: asyncio.Task) -> None:
    # Waiters may all have gone away; keep asyncio from logging the error twice
    if not task.cancelled():
        task.exception()
