"""
Raw credential storage.

On-disk byte cache for fetched key/certificate material, one file per
hostname and artifact kind:

    <cache_dir>/<hostname>.key
    <cache_dir>/<hostname>.crt

Entries are never invalidated by the process; deleting the files is the
only eviction path.
"""
import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from .models import CredentialKind


logger = logging.getLogger(__name__)


class RawCredentialCache:
    """Manages raw key and certificate bytes on disk."""

    def __init__(self, cache_dir: Path):
        """Initialize storage rooted at cache_dir."""
        self.cache_dir = Path(cache_dir)

    def path_for(self, hostname: str, kind: CredentialKind) -> Path:
        """Get the file path for a hostname's artifact."""
        return self.cache_dir / f"{hostname}{kind.file_suffix}"

    def ensure_directory(self) -> None:
        """Ensure cache directory exists with owner-only permissions."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.cache_dir, 0o700)

    async def get(self, hostname: str, kind: CredentialKind) -> Optional[bytes]:
        """
        Read a cached artifact.

        Returns:
            The raw bytes, or None if not cached
        """
        return await asyncio.to_thread(self._read, self.path_for(hostname, kind))

    async def put(self, hostname: str, kind: CredentialKind, data: bytes) -> None:
        """
        Store an artifact, replacing any existing file atomically.

        Raises:
            OSError: If the directory or file cannot be written
        """
        await asyncio.to_thread(self._write, self.path_for(hostname, kind), data)
        logger.info("[TLS-STORAGE] Cached %s for %s", kind.value, hostname)

    def _read(self, path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, path: Path, data: bytes) -> None:
        self.ensure_directory()
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def list_hostnames(self) -> list[str]:
        """Hostnames with at least one cached artifact."""
        if not self.cache_dir.is_dir():
            return []
        names = set()
        for kind in CredentialKind:
            for path in self.cache_dir.glob(f"*{kind.file_suffix}"):
                names.add(path.name[: -len(kind.file_suffix)])
        return sorted(names)
