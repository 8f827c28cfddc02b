"""
Error taxonomy for credential resolution.

Every failure on the resolution path is a CredentialError carrying the
hostname and, where one was involved, the URL of the remote call.
"""
from typing import Optional


class CredentialError(Exception):
    """Base exception for credential resolution errors."""

    kind = "credential"
    retryable = False

    def __init__(
        self,
        message: str,
        hostname: Optional[str] = None,
        url: Optional[str] = None,
    ):
        super().__init__(message)
        self.hostname = hostname
        self.url = url

    def describe(self) -> str:
        """One-line summary for operator logs."""
        parts = [f"{self.kind}: {self}"]
        if self.hostname:
            parts.append(f"hostname={self.hostname}")
        if self.url:
            parts.append(f"url={self.url}")
        return " ".join(parts)


class NetworkError(CredentialError):
    """Connection failure or timeout talking to the credential service."""

    kind = "network"
    retryable = True


class AuthError(CredentialError):
    """The credential service rejected our username/password."""

    kind = "auth"


class RemoteError(CredentialError):
    """The credential service answered with a non-success response."""

    kind = "remote"
    retryable = True

    def __init__(
        self,
        message: str,
        hostname: Optional[str] = None,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, hostname=hostname, url=url)
        self.status_code = status_code


class NotProvisionedError(RemoteError):
    """The credential service does not know this hostname."""

    kind = "not-provisioned"
    retryable = False


class ValidationError(CredentialError):
    """Fetched bytes are not a usable private key / certificate pair."""

    kind = "validation"
