"""Exception taxonomy for the daemon and its clients.

Connector failures split into two "nobody is listening" cases the
orchestrator recovers from locally (stale socket file vs. no file at all).
Any other OSError from the transport is re-raised untouched.
"""

from typing import Optional


class DaemonError(Exception):
    """Base class for keepwarm daemon errors."""


class ListenerError(DaemonError):
    """The rendezvous address could not be bound."""

    def __init__(self, address: str, os_error: OSError):
        super().__init__(f"Cannot listen on {address}: {os_error}")
        self.address = address
        self.os_error = os_error


class AddressInUseError(ListenerError):
    """Another daemon (or a stale socket file) already owns the address."""


class NotListeningError(DaemonError):
    """Nothing is accepting connections at the rendezvous address."""

    def __init__(self, address: str, os_error: Optional[OSError] = None):
        super().__init__(f"No daemon listening on {address}")
        self.address = address
        self.os_error = os_error


class StaleAddressError(NotListeningError):
    """The socket file exists but no process answers on it."""


class AddressNotFoundError(NotListeningError):
    """The socket file (or named pipe) does not exist."""


class ChildSpawnError(DaemonError):
    """The supervised command could not be started."""

    def __init__(self, command: str, os_error: OSError):
        super().__init__(f"Failed to start {command!r}: {os_error}")
        self.command = command
        self.os_error = os_error
