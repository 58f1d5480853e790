"""Daemon architecture for keepwarm.

A daemon process owns one expensive child command so that repeated CLI
invocations can attach to it instead of starting it again.

Architecture:
- address: Deterministic rendezvous address per command identity
- transport: Unix socket / named pipe listener and connector
- server: Daemon that supervises the child and fans its output out
- client: Connect-or-bootstrap logic used by the CLI
"""

from keepwarm.daemon.address import CommandIdentity, derive_address
from keepwarm.daemon.client import obtain_connection
from keepwarm.daemon.errors import (
    AddressInUseError,
    AddressNotFoundError,
    ChildSpawnError,
    DaemonError,
    ListenerError,
    NotListeningError,
    StaleAddressError,
)
from keepwarm.daemon.transport import Connection, connect, start_listener

__all__ = [
    "CommandIdentity",
    "derive_address",
    "obtain_connection",
    "Connection",
    "connect",
    "start_listener",
    "DaemonError",
    "ListenerError",
    "AddressInUseError",
    "NotListeningError",
    "StaleAddressError",
    "AddressNotFoundError",
    "ChildSpawnError",
]
