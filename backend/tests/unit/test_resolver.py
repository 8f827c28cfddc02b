"""
Unit tests for per-hostname credential resolution.

Tests: request coalescing, failure handling, raw cache use, retry/backoff.
Mocks: the credential service via httpx.MockTransport.
"""
import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from tls import context_cache
from tls.errors import AuthError, NetworkError, NotProvisionedError, RemoteError, ValidationError
from tls.models import CredentialKind
from tls.resolver import HostnameCredentialResolver, consume_exception
from tls.storage import RawCredentialCache


async def _until(predicate, timeout=1.0):
    """Yield to the loop until predicate() holds."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout)


class TestCoalescing:
    """Concurrent callers share one in-flight fetch."""

    @pytest.mark.asyncio
    async def test_concurrent_resolves_fetch_once(self, credential_service, credential_client):
        credential_service.provision("a.example.com")
        credential_service.delays["a.example.com"] = 0.05
        resolver = HostnameCredentialResolver(credential_client)

        pairs = await asyncio.gather(*[resolver.resolve("a.example.com") for _ in range(25)])

        assert credential_service.count("/v1/privatekey") == 1
        assert credential_service.count("/v1/certificate") == 1
        assert all(pair is pairs[0] for pair in pairs)

    @pytest.mark.asyncio
    async def test_concurrent_failure_shared_by_all_waiters(self, credential_service, credential_client):
        credential_service.delays["nobody.example.com"] = 0.05
        resolver = HostnameCredentialResolver(credential_client)

        results = await asyncio.gather(
            *[resolver.resolve("nobody.example.com") for _ in range(10)],
            return_exceptions=True,
        )

        assert all(isinstance(r, NotProvisionedError) for r in results)
        assert credential_service.count("/v1/certificate") == 1

    @pytest.mark.asyncio
    async def test_in_flight_tracking(self, credential_service, credential_client):
        credential_service.provision("a.example.com")
        credential_service.delays["a.example.com"] = 0.05
        resolver = HostnameCredentialResolver(credential_client)

        first = asyncio.create_task(resolver.resolve("a.example.com"))
        await _until(lambda: resolver.is_in_flight("a.example.com"))
        second = asyncio.create_task(resolver.resolve("A.EXAMPLE.COM."))
        await _until(lambda: resolver.get_waiters("a.example.com") == 2)

        assert resolver.in_flight() == ["a.example.com"]
        await asyncio.gather(first, second)
        assert resolver.in_flight() == []
        assert resolver.get_waiters("a.example.com") == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_fetch(self, credential_service, credential_client):
        credential_service.provision("a.example.com")
        credential_service.delays["a.example.com"] = 0.05
        resolver = HostnameCredentialResolver(credential_client)

        first = asyncio.create_task(resolver.resolve("a.example.com"))
        second = asyncio.create_task(resolver.resolve("a.example.com"))
        await _until(lambda: resolver.get_waiters("a.example.com") == 2)
        first.cancel()

        pair = await second
        assert pair.hostname == "a.example.com"
        assert first.cancelled()

    @pytest.mark.asyncio
    async def test_hostnames_resolve_independently(self, credential_service, credential_client):
        credential_service.provision("fast.example.com")
        credential_service.provision("slow.example.com")
        credential_service.delays["slow.example.com"] = 0.3
        resolver = HostnameCredentialResolver(credential_client)

        slow = asyncio.create_task(resolver.resolve("slow.example.com"))
        await _until(lambda: resolver.is_in_flight("slow.example.com"))

        pair = await asyncio.wait_for(resolver.resolve("fast.example.com"), timeout=1.0)
        assert pair.hostname == "fast.example.com"
        assert not slow.done()
        assert (await slow).hostname == "slow.example.com"


class TestFailures:
    """Failures propagate and are never cached."""

    @pytest.mark.asyncio
    async def test_malformed_certificate_then_recovery(self, credential_service, credential_client):
        credential_service.provision("b.example.com")
        credential_service.queue("/v1/certificate", "b.example.com", httpx.Response(200, content=b"garbage"))
        resolver = HostnameCredentialResolver(credential_client)

        with pytest.raises(ValidationError):
            await resolver.resolve("b.example.com")

        pair = await resolver.resolve("b.example.com")
        assert pair.certificate == credential_service.credentials["b.example.com"][1]
        assert credential_service.count("/v1/certificate", "b.example.com") == 2

    @pytest.mark.asyncio
    async def test_timeout_fails_with_network_error(self, credential_service, credential_client):
        credential_service.provision("d.example.com")
        credential_service.queue("/v1/privatekey", "d.example.com", httpx.ReadTimeout("timed out"))
        resolver = HostnameCredentialResolver(credential_client)

        with pytest.raises(NetworkError):
            await asyncio.wait_for(resolver.resolve("d.example.com"), timeout=1.0)
        assert resolver.in_flight() == []

    @pytest.mark.asyncio
    async def test_failed_key_cancels_certificate_request(self, client_factory):
        running = []
        cancelled = []

        async def handler(request):
            if request.url.path == "/v1/privatekey":
                return httpx.Response(503)
            running.append(request)
            try:
                await asyncio.sleep(0.3)
            except asyncio.CancelledError:
                cancelled.append(request)
                raise
            finally:
                running.remove(request)
            return httpx.Response(200, content=b"cert")

        client = client_factory(handler)
        resolver = HostnameCredentialResolver(client)

        with pytest.raises(RemoteError):
            await resolver.resolve("a.example.com")

        # Nothing for this hostname is left running once resolve() fails
        assert running == []
        assert len(cancelled) == 1
        assert resolver.in_flight() == []
        await client.close()

    @pytest.mark.asyncio
    async def test_failure_then_retry_never_overlaps_requests(self, client_factory):
        concurrent = 0
        peak = 0
        attempts = {"key": 0}

        async def handler(request):
            nonlocal concurrent, peak
            if request.url.path == "/v1/privatekey":
                attempts["key"] += 1
                if attempts["key"] == 1:
                    return httpx.Response(503)
                return httpx.Response(200, content=b"key")
            concurrent += 1
            peak = max(peak, concurrent)
            try:
                await asyncio.sleep(0.1)
            finally:
                concurrent -= 1
            return httpx.Response(200, content=b"cert")

        client = client_factory(handler)
        resolver = HostnameCredentialResolver(client)

        with pytest.raises(RemoteError):
            await resolver.resolve("a.example.com")
        with pytest.raises(ValidationError):
            await resolver.resolve("a.example.com")

        assert peak == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_invalid_hostname_makes_no_request(self, credential_service, credential_client):
        resolver = HostnameCredentialResolver(credential_client)
        with pytest.raises(ValidationError):
            await resolver.resolve("not a hostname")
        assert credential_service.calls == []


class TestRawCache:
    """Raw credential cache consulted before the remote."""

    @pytest.mark.asyncio
    async def test_cached_bytes_need_no_remote_calls(self, tmp_path, credential_service, credential_client, make_credentials):
        key_pem, cert_pem = make_credentials("c.example.com")
        raw_cache = RawCredentialCache(tmp_path)
        await raw_cache.put("c.example.com", CredentialKind.PRIVATE_KEY, key_pem)
        await raw_cache.put("c.example.com", CredentialKind.CERTIFICATE, cert_pem)
        resolver = HostnameCredentialResolver(credential_client, raw_cache=raw_cache)

        pair = await resolver.resolve("c.example.com")

        assert pair.private_key == key_pem
        assert credential_service.calls == []

    @pytest.mark.asyncio
    async def test_fetched_material_is_persisted(self, tmp_path, credential_service, credential_client):
        key_pem, cert_pem = credential_service.provision("a.example.com")
        raw_cache = RawCredentialCache(tmp_path)
        resolver = HostnameCredentialResolver(credential_client, raw_cache=raw_cache)

        await resolver.resolve("a.example.com")

        assert await raw_cache.get("a.example.com", CredentialKind.PRIVATE_KEY) == key_pem
        assert await raw_cache.get("a.example.com", CredentialKind.CERTIFICATE) == cert_pem

    @pytest.mark.asyncio
    async def test_partial_cache_fetches_missing_artifact(self, tmp_path, credential_service, credential_client):
        key_pem, _ = credential_service.provision("a.example.com")
        raw_cache = RawCredentialCache(tmp_path)
        await raw_cache.put("a.example.com", CredentialKind.PRIVATE_KEY, key_pem)
        resolver = HostnameCredentialResolver(credential_client, raw_cache=raw_cache)

        await resolver.resolve("a.example.com")

        assert credential_service.count("/v1/privatekey") == 0
        assert credential_service.count("/v1/certificate") == 1

    @pytest.mark.asyncio
    async def test_invalid_material_is_not_persisted(self, tmp_path, credential_service, credential_client):
        credential_service.provision("b.example.com")
        credential_service.queue("/v1/certificate", "b.example.com", httpx.Response(200, content=b"garbage"))
        raw_cache = RawCredentialCache(tmp_path)
        resolver = HostnameCredentialResolver(credential_client, raw_cache=raw_cache)

        with pytest.raises(ValidationError):
            await resolver.resolve("b.example.com")
        assert raw_cache.list_hostnames() == []

    @pytest.mark.asyncio
    async def test_cache_read_error_falls_back_to_remote(self, tmp_path, credential_service, credential_client):
        credential_service.provision("a.example.com")
        raw_cache = RawCredentialCache(tmp_path)
        raw_cache.get = AsyncMock(side_effect=PermissionError("denied"))
        resolver = HostnameCredentialResolver(credential_client, raw_cache=raw_cache)

        pair = await resolver.resolve("a.example.com")

        assert pair.hostname == "a.example.com"
        assert credential_service.count("/v1/privatekey") == 1

    @pytest.mark.asyncio
    async def test_cache_write_error_does_not_fail_resolution(self, tmp_path, credential_service, credential_client):
        credential_service.provision("a.example.com")
        raw_cache = RawCredentialCache(tmp_path)
        raw_cache.put = AsyncMock(side_effect=OSError("disk full"))
        resolver = HostnameCredentialResolver(credential_client, raw_cache=raw_cache)

        pair = await resolver.resolve("a.example.com")

        assert pair.hostname == "a.example.com"
        assert raw_cache.put.await_count == 2


class TestRetry:
    """Bounded retry inside the single in-flight fetch."""

    @pytest.mark.asyncio
    async def test_no_retry_by_default(self, credential_service, credential_client):
        credential_service.provision("a.example.com")
        credential_service.queue("/v1/privatekey", "a.example.com", httpx.Response(503))
        resolver = HostnameCredentialResolver(credential_client)

        with pytest.raises(RemoteError):
            await resolver.resolve("a.example.com")
        assert credential_service.count("/v1/privatekey") == 1

    @pytest.mark.asyncio
    async def test_retryable_error_is_retried(self, credential_service, credential_client):
        credential_service.provision("a.example.com")
        credential_service.queue(
            "/v1/privatekey", "a.example.com", httpx.Response(503), httpx.Response(502)
        )
        resolver = HostnameCredentialResolver(credential_client, retries=2, base_delay_seconds=0)

        pair = await resolver.resolve("a.example.com")

        assert pair.hostname == "a.example.com"
        assert credential_service.count("/v1/privatekey") == 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, credential_service, credential_client):
        credential_service.provision("a.example.com")
        credential_service.queue("/v1/privatekey", "a.example.com", *[httpx.Response(503)] * 5)
        resolver = HostnameCredentialResolver(credential_client, retries=2, base_delay_seconds=0)

        with pytest.raises(RemoteError):
            await resolver.resolve("a.example.com")
        assert credential_service.count("/v1/privatekey") == 3

    @pytest.mark.asyncio
    async def test_auth_error_is_not_retried(self, credential_service, client_factory):
        credential_service.provision("a.example.com")
        client = client_factory(credential_service.handler, password="wrong")
        resolver = HostnameCredentialResolver(client, retries=3, base_delay_seconds=0)

        with pytest.raises(AuthError):
            await resolver.resolve("a.example.com")
        await client.close()
        assert credential_service.count("/v1/privatekey") == 1


class TestConsumeException:
    """Tests for the done-callback shared with the context cache."""

    @pytest.mark.asyncio
    async def test_failed_and_cancelled_tasks(self):
        async def fail():
            raise NetworkError("down", hostname="a.example.com")

        failed = asyncio.create_task(fail())
        cancelled = asyncio.create_task(asyncio.sleep(10))
        cancelled.cancel()
        await asyncio.gather(failed, cancelled, return_exceptions=True)

        consume_exception(failed)
        consume_exception(cancelled)

    def test_context_cache_uses_same_callback(self):
        assert context_cache.consume_exception is consume_exception
