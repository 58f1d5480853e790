"""Interactive attachment to a running daemon.

Relays the daemon's byte stream to stdout and turns local input into
control actions:

    Ctrl-C / SIGINT   detach, the daemon keeps running
    Ctrl-D / SIGTERM  send the kill signal, then exit
    daemon hangs up   normal exit
"""

import asyncio
import enum
import logging
import signal
import sys
from typing import BinaryIO, Optional

from prompt_toolkit.input import Input, create_input
from prompt_toolkit.keys import Keys

from keepwarm.daemon.protocol import CHUNK_SIZE
from keepwarm.daemon.transport import Connection
from keepwarm.ui.output import UIManager

logger = logging.getLogger(__name__)


class SessionEnd(enum.Enum):
    DAEMON_EXITED = "daemon_exited"
    DETACHED = "detached"
    KILLED = "killed"


class AttachedSession:
    """One client's view of a daemon."""

    def __init__(
        self,
        connection: Connection,
        ui: Optional[UIManager] = None,
        stdout: Optional[BinaryIO] = None,
    ):
        self.connection = connection
        self.ui = ui or UIManager()
        self.stdout = stdout or sys.stdout.buffer
        self._end: Optional[asyncio.Future] = None

    async def run(self, key_input: Optional[Input] = None) -> SessionEnd:
        """
        Relay output until the daemon hangs up or the user leaves.

        Args:
            key_input: prompt_toolkit input to read keys from; by default one
                is created for stdin when it is a terminal
        """
        loop = asyncio.get_running_loop()
        self._end = loop.create_future()

        if key_input is None and sys.stdin.isatty():
            key_input = create_input()

        relay = asyncio.create_task(self._relay())
        self._install_signal_handlers(loop)
        try:
            if key_input is not None:
                with key_input.raw_mode(), key_input.attach(lambda: self._keys_ready(key_input)):
                    end = await self._wait(relay)
            else:
                end = await self._wait(relay)
        finally:
            self._remove_signal_handlers(loop)
            relay.cancel()

        if end is SessionEnd.KILLED:
            await self._send_kill()
            self.ui.warning("Killed daemon.")
        elif end is SessionEnd.DETACHED:
            self.ui.info("Disconnected from daemon, it will stay running in the background.")
        else:
            self.ui.dim("Daemon exited.")

        await self.connection.close()
        return end

    async def _wait(self, relay: asyncio.Task) -> SessionEnd:
        await asyncio.wait({relay, self._end}, return_when=asyncio.FIRST_COMPLETED)
        if self._end.done():
            return self._end.result()
        relay.result()
        return SessionEnd.DAEMON_EXITED

    async def _relay(self) -> None:
        """Copy everything the daemon sends to stdout until it hangs up."""
        reader = self.connection.reader
        try:
            while True:
                data = await reader.read(CHUNK_SIZE)
                if not data:
                    break
                self.stdout.write(data)
                self.stdout.flush()
        except ConnectionError as e:
            logger.debug(f"Connection to daemon lost: {e}")

    def finish(self, end: SessionEnd) -> None:
        """End the session; the first call wins."""
        if self._end is not None and not self._end.done():
            self._end.set_result(end)

    def _keys_ready(self, key_input: Input) -> None:
        for key_press in key_input.read_keys():
            self.handle_key(key_press.key)

    def handle_key(self, key) -> None:
        if key == Keys.ControlC:
            self.finish(SessionEnd.DETACHED)
        elif key == Keys.ControlD:
            self.finish(SessionEnd.KILLED)

    async def _send_kill(self) -> None:
        try:
            await self.connection.send_kill()
        except ConnectionError as e:
            logger.debug(f"Daemon already gone: {e}")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        if sys.platform == "win32":
            return
        loop.add_signal_handler(signal.SIGINT, self.finish, SessionEnd.DETACHED)
        loop.add_signal_handler(signal.SIGTERM, self.finish, SessionEnd.KILLED)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        if sys.platform == "win32":
            return
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)
