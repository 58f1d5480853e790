"""Main CLI entry point.

    keepwarm [--daemon | --kill | --restart] [-v] COMMAND [ARGS...]

Options must come before COMMAND; everything from COMMAND on belongs to the
supervised command.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer

from keepwarm.core.configs import Settings, get_settings
from keepwarm.daemon.address import CommandIdentity, derive_address
from keepwarm.daemon.client import connect_existing, obtain_connection
from keepwarm.daemon.errors import DaemonError, NotListeningError
from keepwarm.ui.output import UIManager
from keepwarm.ui.session import AttachedSession, SessionEnd

USAGE = "Usage: keepwarm [--daemon | --kill | --restart] COMMAND [ARGS...]"

app = typer.Typer(
    add_completion=False,
    help="keepwarm - keep an expensive command running between invocations.",
)

ui = UIManager()


# ============================================================================
# Client modes
# ============================================================================

async def _attach(
    identity: CommandIdentity,
    address: str,
    settings: Settings,
    restart: bool,
) -> SessionEnd:
    """Attach to the daemon, killing and replacing it first when restarting."""
    connection = await obtain_connection(identity, address, settings)

    if restart:
        await connection.send_kill()
        await connection.close()
        await asyncio.sleep(settings.restart_grace)
        connection = await obtain_connection(identity, address, settings)

    return await AttachedSession(connection, ui=ui).run()


async def _kill(address: str) -> bool:
    """Send the kill signal to a running daemon. Returns False if none runs."""
    try:
        connection = await connect_existing(address)
    except NotListeningError:
        return False
    await connection.send_kill()
    await connection.close()
    return True


def _configure_client_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


# ============================================================================
# Command
# ============================================================================

@app.command(context_settings={"allow_interspersed_args": False})
def main(
    command: Optional[List[str]] = typer.Argument(None, help="Command to keep running, with its arguments"),
    daemon: bool = typer.Option(False, "--daemon", help="Run the daemon for COMMAND in the foreground"),
    kill: bool = typer.Option(False, "--kill", help="Kill the daemon running COMMAND"),
    restart: bool = typer.Option(False, "--restart", help="Kill the daemon, start a fresh one and attach"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """
    Attach to the daemon running COMMAND, starting it if needed.

    Example: keepwarm npm run watch
    """
    if not command:
        ui.error(USAGE)
        raise typer.Exit(1)

    if sum((daemon, kill, restart)) > 1:
        ui.error("Only one of --daemon, --kill and --restart may be given")
        raise typer.Exit(1)

    try:
        settings = get_settings()
    except ValueError as e:
        ui.error(f"Error loading configuration: {e}")
        raise typer.Exit(1)

    identity = CommandIdentity.from_argv(command, cwd=str(Path.cwd()))

    if daemon:
        # Lazy import: the daemon pulls in psutil and setproctitle
        from keepwarm.daemon.server import run_daemon
        raise typer.Exit(run_daemon(identity, settings))

    _configure_client_logging(verbose)
    address = derive_address(identity, runtime_dir=settings.runtime_dir)

    try:
        if kill:
            if asyncio.run(_kill(address)):
                ui.warning("Killed daemon.")
            else:
                ui.dim(f"No daemon running for: {identity.display()}")
            return

        asyncio.run(_attach(identity, address, settings, restart))
    except (DaemonError, OSError) as e:
        ui.error(f"Error: {e}")
        raise typer.Exit(1)


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
