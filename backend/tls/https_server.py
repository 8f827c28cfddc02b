"""
Dual-protocol listener.

Serves the ASGI app over plaintext HTTP/WS on one port and over HTTPS/WSS
on another. The TLS side peeks at each connection's ClientHello, resolves
the SNI hostname's SSLContext through the SecureContextCache, and only then
starts the handshake with that context. A connection that sends no SNI, or
whose hostname cannot be resolved, is closed without affecting any other.
"""
import asyncio
import logging
import socket
from typing import Optional

import uvicorn
from uvicorn.server import ServerState

from .context_cache import SecureContextCache
from .errors import CredentialError
from .sni import MAX_RECORD_LEN, RECORD_HEADER_LEN, ClientHelloError, parse_sni, record_length

logger = logging.getLogger(__name__)


class DualProtocolListener:
    """
    Owns the plaintext and TLS listening sockets.

    Both listeners hand accepted connections to uvicorn's HTTP protocol
    implementation, which also handles WebSocket upgrades.
    """

    def __init__(
        self,
        app,
        context_cache: SecureContextCache,
        host: str = "0.0.0.0",
        http_port: int = 1080,
        https_port: int = 10443,
        handshake_timeout: float = 10.0,
    ):
        self._context_cache = context_cache
        self._host = host
        self._http_port = http_port
        self._https_port = https_port
        self._handshake_timeout = handshake_timeout
        self._lock = asyncio.Lock()

        # log_config=None leaves logging setup to the application
        self._config = uvicorn.Config(
            app,
            host=host,
            port=http_port,
            lifespan="off",
            proxy_headers=False,
            log_config=None,
        )
        self._server_state = ServerState()
        self._app_state: dict = {}

        self._http_server: Optional[asyncio.AbstractServer] = None
        self._tls_socket: Optional[socket.socket] = None
        self._accept_task: Optional[asyncio.Task] = None
        self._pending_handshakes: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._http_server is not None and self._accept_task is not None

    @property
    def http_port(self) -> int:
        return self._http_port

    @property
    def https_port(self) -> int:
        return self._https_port

    def _create_protocol(self):
        return self._config.http_protocol_class(
            config=self._config,
            server_state=self._server_state,
            app_state=self._app_state,
        )

    async def start(self) -> None:
        """
        Bind both listeners.

        Raises:
            OSError: If either port cannot be bound
        """
        async with self._lock:
            if self.is_running:
                logger.debug("[TLS-SERVER] Listener already running")
                return

            if not self._config.loaded:
                self._config.load()

            loop = asyncio.get_running_loop()
            self._http_server = await loop.create_server(
                self._create_protocol, host=self._host, port=self._http_port
            )
            try:
                self._tls_socket = socket.create_server(
                    (self._host, self._https_port), backlog=self._config.backlog
                )
            except OSError:
                self._http_server.close()
                self._http_server = None
                raise
            self._tls_socket.setblocking(False)

            # Port 0 binds pick a free port; report the real ones
            self._http_port = self._http_server.sockets[0].getsockname()[1]
            self._https_port = self._tls_socket.getsockname()[1]

            self._accept_task = loop.create_task(self._accept_loop(self._tls_socket))
            logger.info(
                "[TLS-SERVER] Listening on %s (http %s, https %s)",
                self._host, self._http_port, self._https_port,
            )

    async def stop(self) -> bool:
        """
        Close both listeners and open connections.

        Returns:
            True if stopped, False if it wasn't running
        """
        async with self._lock:
            if not self.is_running:
                logger.debug("[TLS-SERVER] Listener not running")
                return False

            logger.info("[TLS-SERVER] Stopping listener")
            self._accept_task.cancel()
            for task in list(self._pending_handshakes):
                task.cancel()
            await asyncio.gather(
                self._accept_task, *self._pending_handshakes, return_exceptions=True
            )
            self._tls_socket.close()
            self._http_server.close()

            for connection in list(self._server_state.connections):
                connection.shutdown()
            await self._http_server.wait_closed()

            self._accept_task = None
            self._tls_socket = None
            self._http_server = None
            logger.info("[TLS-SERVER] Listener stopped")
            return True

    async def serve_forever(self) -> None:
        """Block until the listener is stopped."""
        if self._accept_task is not None:
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass

    def get_status(self) -> dict:
        """Get current listener status."""
        return {
            "running": self.is_running,
            "host": self._host,
            "http_port": self._http_port,
            "https_port": self._https_port,
            "connections": len(self._server_state.connections),
            "pending_handshakes": len(self._pending_handshakes),
        }

    async def _accept_loop(self, listen_sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                conn, address = await loop.sock_accept(listen_sock)
            except OSError as e:
                logger.error("[TLS-SERVER] Accept failed: %s", e)
                await asyncio.sleep(0.1)
                continue

            task = loop.create_task(self._handle_tls_connection(conn, address))
            self._pending_handshakes.add(task)
            task.add_done_callback(self._pending_handshakes.discard)

    async def _handle_tls_connection(self, conn: socket.socket, address) -> None:
        """Resolve the SNI hostname's context, then hand off to uvicorn over TLS."""
        loop = asyncio.get_running_loop()
        peer = address[0] if address else "unknown"
        try:
            hello = await asyncio.wait_for(
                self._peek_client_hello(conn), timeout=self._handshake_timeout
            )
            hostname = parse_sni(hello)
            if not hostname:
                logger.warning("[TLS-SERVER] No SNI hostname from %s, closing", peer)
                conn.close()
                return

            context = await self._context_cache.resolve_for_handshake(hostname)
            logger.debug("[TLS-SERVER] Handshake for %s from %s", hostname, peer)
            await loop.connect_accepted_socket(
                self._create_protocol,
                conn,
                ssl=context,
                ssl_handshake_timeout=self._handshake_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("[TLS-SERVER] No ClientHello from %s within %ss", peer, self._handshake_timeout)
            conn.close()
        except ClientHelloError as e:
            logger.warning("[TLS-SERVER] Bad ClientHello from %s: %s", peer, e)
            conn.close()
        except CredentialError:
            # Already logged by the context cache
            conn.close()
        except OSError as e:
            # ssl.SSLError and connection resets land here
            logger.debug("[TLS-SERVER] Handshake with %s failed: %s", peer, e)
            conn.close()
        except asyncio.CancelledError:
            conn.close()
            raise
        except Exception:
            logger.exception("[TLS-SERVER] Unexpected error handling connection from %s", peer)
            conn.close()

    async def _peek_client_hello(self, conn: socket.socket) -> bytes:
        """
        Wait until the first TLS record is buffered and return it without
        consuming it from the socket.
        """
        needed = RECORD_HEADER_LEN
        while True:
            # Readable only once `needed` bytes are queued, so peeking never spins
            conn.setsockopt(socket.SOL_SOCKET, socket.SO_RCVLOWAT, needed)
            await _wait_readable(conn)
            data = conn.recv(RECORD_HEADER_LEN + MAX_RECORD_LEN, socket.MSG_PEEK)
            if len(data) < needed:
                # Woken below the low-water mark: the peer closed its side
                raise ClientHelloError("Connection closed before ClientHello")

            total = record_length(data)
            if total is not None and len(data) >= total:
                conn.setsockopt(socket.SOL_SOCKET, socket.SO_RCVLOWAT, 1)
                return data[:total]
            needed = total or RECORD_HEADER_LEN


async def _wait_readable(sock: socket.socket) -> None:
    loop = asyncio.get_running_loop()
    ready = loop.create_future()
    fd = sock.fileno()
    loop.add_reader(fd, lambda: ready.done() or ready.set_result(None))
    try:
        await ready
    finally:
        loop.remove_reader(fd)
