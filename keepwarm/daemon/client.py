"""Client side: find the daemon for a command, or bootstrap one.

The OS bind on the rendezvous address is the only lock. A client connects;
if nothing answers it clears a stale socket file, launches a detached
daemon, waits a moment and connects once more.

Usage:
    identity = CommandIdentity.from_argv(["make", "watch"])
    address = derive_address(identity, runtime_dir=settings.runtime_dir)
    connection = await obtain_connection(identity, address, settings)
"""

import asyncio
import logging
import subprocess
import sys
from typing import List

from keepwarm.core.configs import Settings
from keepwarm.daemon.address import CommandIdentity, derive_log_path
from keepwarm.daemon.errors import AddressNotFoundError, StaleAddressError
from keepwarm.daemon.transport import Connection, connect, remove_stale_address

logger = logging.getLogger(__name__)

DAEMON_MODULE = "keepwarm.daemon.server"


def daemon_command(identity: CommandIdentity) -> List[str]:
    """Command line that runs a daemon for ``identity``."""
    return [sys.executable, "-m", DAEMON_MODULE, "--", *identity.argv]


def launch_daemon(identity: CommandIdentity, settings: Settings) -> subprocess.Popen:
    """
    Start a daemon for ``identity`` with no lifetime link to this process.

    The daemon runs in ``identity.cwd`` so it derives the same address, gets a
    new session (POSIX) or detached process group (Windows), and writes its
    output to the per-command log file instead of this terminal.
    """
    log_path = derive_log_path(identity, settings.log_dir)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    kwargs = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = (
            subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        )
    else:
        kwargs["start_new_session"] = True

    with open(log_path, "ab") as log_file:
        process = subprocess.Popen(
            daemon_command(identity),
            cwd=identity.cwd or None,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=log_file,
            **kwargs,
        )

    logger.debug(f"Launched daemon pid {process.pid}, logging to {log_path}")
    return process


async def obtain_connection(
    identity: CommandIdentity,
    address: str,
    settings: Settings,
) -> Connection:
    """
    Connect to the daemon for ``identity``, starting one if needed.

    Raises:
        NotListeningError: The freshly launched daemon is still not reachable
        OSError: Any transport failure other than "nobody listening"
    """
    try:
        return await connect(address)
    except StaleAddressError:
        logger.debug(f"Stale socket at {address}, removing")
        remove_stale_address(address)
    except AddressNotFoundError:
        logger.debug(f"No daemon at {address}")

    launch_daemon(identity, settings)
    await asyncio.sleep(settings.bootstrap_grace)
    return await connect(address)


async def connect_existing(address: str) -> Connection:
    """Connect without bootstrapping. Raises NotListeningError if none runs."""
    return await connect(address)
