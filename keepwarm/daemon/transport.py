"""Listener and connector for the rendezvous address.

POSIX uses Unix domain sockets, Windows uses named pipes through the
proactor event loop. Both sides hand out ordinary asyncio streams.
"""

import asyncio
import errno
import logging
import os
import socket
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from keepwarm.daemon.errors import (
    AddressInUseError,
    AddressNotFoundError,
    ListenerError,
    StaleAddressError,
)
from keepwarm.daemon.protocol import KILL_SIGNAL

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"
LISTEN_BACKLOG = 100

ConnectionHandler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


@dataclass
class Connection:
    """Client side of a rendezvous connection."""
    address: str
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    async def send_kill(self) -> None:
        """Ask the daemon to kill its child."""
        self.writer.write(KILL_SIGNAL)
        await self.writer.drain()

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, BrokenPipeError):
            pass


class Listener:
    """
    Bound rendezvous address accepting connections.

    Created by ``start_listener``. ``close()`` may be called more than once.
    """

    def __init__(self, address: str, servers: List, inode: Optional[int] = None):
        self.address = address
        self._servers = servers
        self._inode = inode
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start_serving(self) -> None:
        """Begin accepting connections queued since the bind."""
        for server in self._servers:
            if isinstance(server, asyncio.AbstractServer):
                await server.start_serving()

    async def close(self) -> None:
        """Stop accepting and release the address."""
        if self._closed:
            return
        self._closed = True

        for server in self._servers:
            server.close()
        for server in self._servers:
            # Windows PipeServer objects have no wait_closed()
            if isinstance(server, asyncio.AbstractServer):
                await server.wait_closed()

        if not IS_WINDOWS:
            self._unlink_own_socket()

        logger.info(f"Stopped listening on {self.address}")

    def _unlink_own_socket(self) -> None:
        # Leave the file alone if a newer daemon has already re-bound the path
        try:
            if os.stat(self.address).st_ino == self._inode:
                os.unlink(self.address)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove socket {self.address}: {e}")


async def start_listener(
    address: str,
    on_connection: ConnectionHandler,
    start_serving: bool = True,
) -> Listener:
    """
    Bind ``address`` and start accepting connections.

    Args:
        address: Rendezvous address from ``derive_address``
        on_connection: Coroutine called with (reader, writer) per connection
        start_serving: If False, connections queue in the backlog until
            ``Listener.start_serving()``; named pipes always serve at once

    Raises:
        AddressInUseError: The address is already bound (live or stale)
        ListenerError: Any other bind failure
    """
    if IS_WINDOWS:
        return await _start_pipe_listener(address, on_connection)
    return await _start_unix_listener(address, on_connection, start_serving)


async def _start_unix_listener(
    address: str,
    on_connection: ConnectionHandler,
    start_serving: bool,
) -> Listener:
    # Bind by hand: asyncio.start_unix_server() would unlink an existing
    # socket file and steal the address from a live daemon.
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(address)
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise AddressInUseError(address, e) from e
        raise ListenerError(address, e) from e

    try:
        inode = os.stat(address).st_ino
        os.chmod(address, 0o600)
        # Listen now so early clients queue instead of seeing a stale socket
        sock.listen(LISTEN_BACKLOG)
        server = await asyncio.start_unix_server(
            on_connection, sock=sock, start_serving=start_serving
        )
    except OSError as e:
        sock.close()
        try:
            os.unlink(address)
        except OSError:
            pass
        raise ListenerError(address, e) from e

    logger.info(f"Listening on {address}")
    return Listener(address, [server], inode=inode)


async def _start_pipe_listener(address: str, on_connection: ConnectionHandler) -> Listener:
    loop = asyncio.get_running_loop()

    def factory() -> asyncio.StreamReaderProtocol:
        reader = asyncio.StreamReader()
        return asyncio.StreamReaderProtocol(reader, on_connection)

    try:
        servers = await loop.start_serving_pipe(factory, address)
    except PermissionError as e:
        # First-instance flag refused: another daemon owns the pipe
        raise AddressInUseError(address, e) from e
    except OSError as e:
        raise ListenerError(address, e) from e

    logger.info(f"Listening on {address}")
    return Listener(address, servers)


async def connect(address: str) -> Connection:
    """
    Make a single connection attempt to ``address``.

    Raises:
        StaleAddressError: Socket file exists but nobody accepts
        AddressNotFoundError: Nothing exists at the address
        OSError: Any other failure, unmodified
    """
    try:
        if IS_WINDOWS:
            reader, writer = await _open_pipe_connection(address)
        else:
            reader, writer = await asyncio.open_unix_connection(address)
    except ConnectionRefusedError as e:
        raise StaleAddressError(address, e) from e
    except FileNotFoundError as e:
        raise AddressNotFoundError(address, e) from e

    logger.debug(f"Connected to {address}")
    return Connection(address=address, reader=reader, writer=writer)


async def _open_pipe_connection(address: str):
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    transport, _ = await loop.create_pipe_connection(lambda: protocol, address)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer


def remove_stale_address(address: str) -> None:
    """Delete a socket file nobody is listening on."""
    if IS_WINDOWS:
        return
    try:
        os.unlink(address)
        logger.info(f"Removed stale socket {address}")
    except FileNotFoundError:
        pass
