"""
HTTP client for the remote credential/naming service.

The service exposes three endpoints behind HTTP basic auth:

- GET /v1/privatekey?hostname=<name>
- GET /v1/certificate?hostname=<name>
- GET /v1/update?hostname=<name>&myip=<address>

Every call is single-shot. Retry policy belongs to the caller.
"""
import logging
from typing import Optional

import httpx

from .errors import AuthError, NetworkError, NotProvisionedError, RemoteError
from .models import CredentialKind


logger = logging.getLogger(__name__)

# Acknowledgement keywords returned by the update endpoint
_ANNOUNCE_OK = {"good", "nochg"}
_NOT_PROVISIONED = "notfqdn"


def build_base_url(server_name: str) -> str:
    """Turn a bare server name into an https base URL."""
    server_name = server_name.strip().rstrip("/")
    if server_name.startswith(("http://", "https://")):
        return server_name
    return f"https://{server_name}"


class CredentialClient:
    """
    Authenticated client for fetching key/certificate material and
    registering addresses.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the credential client.

        Args:
            base_url: Credential service URL (bare host names get https://)
            username: Basic auth username
            password: Basic auth password
            timeout: Per-request timeout in seconds, also applied to an
                injected client
            client: Optional preconfigured httpx client (tests inject one
                with a mock transport)
        """
        self._base_url = build_base_url(base_url)
        self._timeout = httpx.Timeout(timeout)
        self._client = client or httpx.AsyncClient(timeout=self._timeout)
        self._auth = httpx.BasicAuth(username, password)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "CredentialClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def fetch(self, kind: CredentialKind, hostname: str) -> bytes:
        """
        Fetch one credential artifact for a hostname.

        Returns:
            Raw PEM bytes as served by the remote

        Raises:
            NetworkError, AuthError, RemoteError, NotProvisionedError
        """
        return await self._get(f"/v1/{kind.value}", {"hostname": hostname}, hostname)

    async def announce(self, hostname: str, address: str) -> str:
        """
        Point a hostname at an address.

        Returns:
            The acknowledgement line, e.g. "good 10.0.0.1"
        """
        body = await self._get(
            "/v1/update", {"hostname": hostname, "myip": address}, hostname
        )
        ack = body.decode("utf-8", errors="replace").strip()
        status = ack.split(" ", 1)[0] if ack else ""
        if status in _ANNOUNCE_OK:
            return ack

        url = self._url("/v1/update", {"hostname": hostname, "myip": address})
        if status == _NOT_PROVISIONED:
            raise NotProvisionedError(
                "Hostname not provisioned on credential service", hostname=hostname, url=url
            )
        raise RemoteError(
            f"Address update rejected: {ack or 'empty response'}", hostname=hostname, url=url
        )

    def _url(self, path: str, params: dict) -> str:
        return str(httpx.URL(f"{self._base_url}{path}", params=params))

    async def _get(self, path: str, params: dict, hostname: str) -> bytes:
        url = self._url(path, params)
        logger.debug("[TLS-CLIENT] GET %s", url)

        try:
            response = await self._client.get(url, auth=self._auth, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out: {e}", hostname=hostname, url=url) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Connection error: {e}", hostname=hostname, url=url) from e

        if response.status_code in (401, 403):
            raise AuthError(
                f"Credentials rejected (HTTP {response.status_code})", hostname=hostname, url=url
            )
        if not response.is_success:
            raise RemoteError(
                f"Credential service returned HTTP {response.status_code}",
                hostname=hostname,
                url=url,
                status_code=response.status_code,
            )

        # The service answers unknown hostnames with 200 + "notfqdn"
        if response.content.strip() == _NOT_PROVISIONED.encode():
            raise NotProvisionedError(
                "Hostname not provisioned on credential service", hostname=hostname, url=url
            )
        return response.content
