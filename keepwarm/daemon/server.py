"""Daemon process for keepwarm.

The daemon owns one child command for its whole life:
1. Binds the rendezvous address derived from the command
2. Spawns the command and records everything it writes to stdout
3. Replays that history to every client that connects, then streams live
4. Kills the child's process tree when any client sends a byte
5. Closes every client and exits once the child is gone

A daemon never restarts its child. Restart means a new daemon.

Usage:
    python -m keepwarm.daemon.server [--log-level LEVEL] -- COMMAND [ARGS...]

    Or use the CLI:
    keepwarm --daemon COMMAND [ARGS...]
"""

import asyncio
import enum
import logging
import os
import signal
import sys
import time
from typing import Any, Dict, List, Optional

import psutil
import setproctitle

from keepwarm.core.configs import Settings, get_settings
from keepwarm.daemon.address import CommandIdentity, derive_address
from keepwarm.daemon.errors import ChildSpawnError, DaemonError
from keepwarm.daemon.process import ChildProcess, reap_leftovers, signal_process_tree, spawn_child
from keepwarm.daemon.protocol import CHUNK_SIZE, is_kill_signal
from keepwarm.daemon.state import DaemonState
from keepwarm.daemon.transport import Listener, start_listener

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# How long output may keep arriving after the child exits
OUTPUT_SETTLE_S = 0.2


class DaemonPhase(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


class Daemon:
    """
    One daemon instance: a listener, a child process and its output.

    Runs entirely on one asyncio event loop. ``run()`` returns the process
    exit code once the child has exited and every session is closed.
    """

    def __init__(
        self,
        identity: CommandIdentity,
        address: str,
        settings: Settings,
    ):
        """
        Initialize daemon.

        Args:
            identity: Command to supervise
            address: Rendezvous address to bind
            settings: Timeouts for kill escalation
        """
        self.identity = identity
        self.address = address
        self.settings = settings

        self.phase = DaemonPhase.STARTING
        self.state = DaemonState()
        self.listener: Optional[Listener] = None
        self.child: Optional[ChildProcess] = None
        self.running = asyncio.Event()

        self._kill_targets: List[psutil.Process] = []
        self._kill_requested = False
        self._escalation: Optional[asyncio.TimerHandle] = None
        self._client_tasks: set = set()

    async def run(self) -> int:
        """
        Drive the daemon through its phases.

        Raises:
            AddressInUseError: Another daemon owns the address
            ListenerError: The address could not be bound
            ChildSpawnError: The command could not be started
        """
        logger.info(f"Starting daemon for: {self.identity.display()} (cwd={self.identity.cwd})")
        self.listener = await start_listener(
            self.address, self._handle_client, start_serving=False
        )

        try:
            self.child = await spawn_child(self.identity)
        except OSError as e:
            await self.listener.close()
            self.phase = DaemonPhase.TERMINATED
            raise ChildSpawnError(self.identity.display(), e) from e

        logger.info(f"Child started with pid {self.child.pid}")
        self.phase = DaemonPhase.RUNNING
        await self.listener.start_serving()
        self.running.set()

        pump = asyncio.create_task(self._pump_output())
        returncode = await self.child.exited()
        logger.info(f"Child exited with code {returncode}")

        await self._settle_output(pump)
        await self._drain()
        return 0

    async def _settle_output(self, pump: asyncio.Task) -> None:
        """
        Collect the last of the child's output once it has exited.

        Processes the child left behind in its group can hold stdout open
        indefinitely; they are killed so the stream reaches EOF.
        """
        done, _ = await asyncio.wait({pump}, timeout=OUTPUT_SETTLE_S)
        if done:
            return

        logger.info("Child exited but its stdout is still open, stopping leftover processes")
        self.kill_child()
        done, _ = await asyncio.wait({pump}, timeout=self.settings.kill_timeout + OUTPUT_SETTLE_S)
        if not done:
            logger.warning("Child stdout never closed, abandoning it")
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _pump_output(self) -> None:
        """Copy child stdout into the buffer and out to sessions until EOF."""
        while True:
            chunk = await self.child.stdout.read(CHUNK_SIZE)
            if not chunk:
                break
            self.state.record(chunk)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve one attached session until it disconnects or is aborted."""
        if self.phase is not DaemonPhase.RUNNING:
            writer.transport.abort()
            return

        task = asyncio.current_task()
        self._client_tasks.add(task)
        try:
            if not self.state.attach(writer):
                return
            logger.info(
                f"Client attached ({len(self.state.sessions)} connected, "
                f"replayed {self.state.total_bytes} bytes)"
            )

            while True:
                data = await reader.read(CHUNK_SIZE)
                if not data:
                    break
                if is_kill_signal(data):
                    logger.info("Kill requested by client")
                    self.kill_child()

        except ConnectionError as e:
            logger.warning(f"Client connection error: {e}")
        finally:
            self.state.detach(writer)
            self._client_tasks.discard(task)
            if self.phase is DaemonPhase.RUNNING:
                writer.close()
                logger.info(f"Client detached ({len(self.state.sessions)} connected)")

    def kill_child(self) -> None:
        """
        Terminate the child and all of its descendants.

        Idempotent. SIGTERM goes out now; anything still alive after
        ``settings.kill_timeout`` gets SIGKILL. Still signals the child's
        process group when the child itself has already exited.
        """
        if self.child is None or self._kill_requested:
            return
        self._kill_requested = True

        self._kill_targets = signal_process_tree(self.child.pid)
        loop = asyncio.get_running_loop()
        self._escalation = loop.call_later(self.settings.kill_timeout, self._escalate_kill)

    def _escalate_kill(self) -> None:
        self._escalation = None
        logger.warning("Child tree still alive after kill timeout, sending SIGKILL")
        forced = signal_process_tree(self.child.pid, force=True)
        known = {p.pid for p in self._kill_targets}
        self._kill_targets.extend(p for p in forced if p.pid not in known)
        reap_leftovers(self._descendants())

    def _descendants(self) -> List[psutil.Process]:
        # The child itself is reaped by asyncio, never by psutil
        return [p for p in self._kill_targets if p.pid != self.child.pid]

    async def _drain(self) -> None:
        """Close every session and the listener after the child is gone."""
        self.phase = DaemonPhase.DRAINING
        self.running.clear()

        closed = self.state.abort_sessions()
        logger.info(f"Closed {closed} client session(s)")

        await self.listener.close()

        if self._client_tasks:
            await asyncio.gather(*self._client_tasks, return_exceptions=True)

        if self._kill_requested:
            await self._finish_kill()

        self.phase = DaemonPhase.TERMINATED
        logger.info("Daemon stopped")

    async def _finish_kill(self) -> None:
        # Descendants can outlive the child; give them the rest of the timeout
        deadline = time.monotonic() + self.settings.kill_timeout
        while self._escalation is not None and time.monotonic() < deadline:
            if not any(_is_alive(p) for p in self._descendants()):
                break
            await asyncio.sleep(0.05)

        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None
            leftovers = reap_leftovers(self._descendants())
            if leftovers:
                logger.warning(f"Force-killed {len(leftovers)} leftover process(es)")

    def _signal_handler(self) -> None:
        """Handle SIGTERM/SIGINT by killing the child, which drains the daemon."""
        logger.info("Received shutdown signal")
        self.kill_child()

    def install_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

    def stats(self) -> Dict[str, Any]:
        """Snapshot of the daemon for logging and tests."""
        stats = self.state.get_stats()
        stats.update(
            {
                "phase": self.phase.value,
                "pid": os.getpid(),
                "child_pid": self.child.pid if self.child else None,
                "address": self.address,
            }
        )
        return stats


def _is_alive(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


def _set_process_title(identity: CommandIdentity) -> None:
    """Show the supervised command in ps/htop."""
    title = f"keepwarm-daemon: {identity.display()}"
    setproctitle.setproctitle(title)
    logger.debug(f"Process title set to '{title}'")


async def _serve(daemon: Daemon) -> int:
    daemon.install_signal_handlers()
    return await daemon.run()


def run_daemon(identity: CommandIdentity, settings: Optional[Settings] = None) -> int:
    """
    Run a daemon for ``identity`` in the current process.

    Returns:
        0 after a normal teardown, 1 if the daemon could not start
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    _set_process_title(identity)

    if sys.platform != "win32":
        settings.runtime_dir.mkdir(parents=True, exist_ok=True)

    address = derive_address(identity, runtime_dir=settings.runtime_dir)
    daemon = Daemon(identity, address, settings)

    try:
        return asyncio.run(_serve(daemon))
    except DaemonError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="keepwarm daemon")
    parser.add_argument(
        "--log-level",
        help="Override the configured log level",
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Command to supervise, after '--'",
    )

    args = parser.parse_args()
    argv = args.command[1:] if args.command[:1] == ["--"] else args.command
    if not argv:
        parser.error("a command is required")

    settings = get_settings()
    if args.log_level:
        settings.log_level = args.log_level

    sys.exit(run_daemon(CommandIdentity.from_argv(argv), settings))
