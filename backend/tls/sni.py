"""
Server Name Indication extraction from a raw TLS ClientHello.

The TLS listener peeks at the first record of each connection to learn
which hostname the client wants before any handshake starts.
"""
import logging
import struct
from typing import Optional


logger = logging.getLogger(__name__)

TLS_HANDSHAKE = 0x16
CLIENT_HELLO = 0x01
EXT_SERVER_NAME = 0x0000
NAME_TYPE_HOST = 0x00
RECORD_HEADER_LEN = 5
MAX_RECORD_LEN = 16384


class ClientHelloError(ValueError):
    """The bytes are not a TLS ClientHello."""


def record_length(data: bytes) -> Optional[int]:
    """
    Total length (header included) of the first TLS record.

    Returns:
        Byte count, or None if fewer than 5 bytes are available

    Raises:
        ClientHelloError: If the record is not a TLS handshake record
    """
    if len(data) < RECORD_HEADER_LEN:
        return None
    content_type, major, _minor, length = struct.unpack(">BBBH", data[:RECORD_HEADER_LEN])
    if content_type != TLS_HANDSHAKE or major != 3:
        raise ClientHelloError("Not a TLS handshake record")
    if length > MAX_RECORD_LEN:
        raise ClientHelloError(f"Record too large: {length}")
    return RECORD_HEADER_LEN + length


def parse_sni(data: bytes) -> Optional[str]:
    """
    Extract the host name from a complete ClientHello record.

    Returns:
        The SNI host name, or None if the client did not send one

    Raises:
        ClientHelloError: If the record is truncated or malformed
    """
    total = record_length(data)
    if total is None or len(data) < total:
        raise ClientHelloError("Truncated record")

    try:
        pos = RECORD_HEADER_LEN
        if data[pos] != CLIENT_HELLO:
            raise ClientHelloError("Not a ClientHello")
        # Handshake type (1) + length (3) + client version (2) + random (32)
        pos += 4 + 2 + 32

        session_id_len = data[pos]
        pos += 1 + session_id_len

        (cipher_suites_len,) = struct.unpack(">H", data[pos:pos + 2])
        pos += 2 + cipher_suites_len

        compression_len = data[pos]
        pos += 1 + compression_len

        if pos == total:
            return None  # No extensions
        (extensions_len,) = struct.unpack(">H", data[pos:pos + 2])
        pos += 2
        end = min(pos + extensions_len, total)

        while pos + 4 <= end:
            ext_type, ext_len = struct.unpack(">HH", data[pos:pos + 4])
            pos += 4
            if ext_type == EXT_SERVER_NAME:
                return _parse_server_name_list(data[pos:pos + ext_len])
            pos += ext_len
    except (IndexError, struct.error) as e:
        raise ClientHelloError(f"Malformed ClientHello: {e}") from e

    return None


def _parse_server_name_list(ext: bytes) -> Optional[str]:
    (list_len,) = struct.unpack(">H", ext[:2])
    pos = 2
    end = min(2 + list_len, len(ext))
    while pos + 3 <= end:
        name_type, name_len = struct.unpack(">BH", ext[pos:pos + 3])
        pos += 3
        if name_type == NAME_TYPE_HOST:
            return ext[pos:pos + name_len].decode("ascii", errors="replace")
        pos += name_len
    return None
