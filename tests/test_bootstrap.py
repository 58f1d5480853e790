"""
End-to-end tests for bootstrapping real daemons.

Nothing is mocked on the daemon side: clients launch
``python -m keepwarm.daemon.server`` in the background, exactly as the CLI
does, with the runtime and log directories pointed at a temporary directory.
"""

import asyncio
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil

from keepwarm.core.configs import get_settings
from keepwarm.daemon.address import CommandIdentity, derive_address
from keepwarm.daemon.client import connect_existing, launch_daemon, obtain_connection
from keepwarm.daemon.errors import NotListeningError
from keepwarm.ui import cli
from keepwarm.ui.session import SessionEnd

TIMEOUT = 10

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Prints its pid and arguments, then idles
REPORTER = (
    "import os, sys, time\n"
    "print(os.getpid(), *sys.argv[1:], flush=True)\n"
    "time.sleep(60)\n"
)


@unittest.skipIf(sys.platform == "win32", "Unix domain sockets only")
class TestBootstrap(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        # The daemon re-derives the address from its own cwd, so no symlinks
        self.temp_dir = os.path.realpath(tempfile.mkdtemp(prefix="kw", dir="/tmp"))
        pythonpath = os.pathsep.join(
            p for p in (str(PROJECT_ROOT), os.environ.get("PYTHONPATH")) if p
        )
        self.env_patch = patch.dict(
            os.environ,
            {
                "KEEPWARM_RUNTIME_DIR": self.temp_dir,
                "KEEPWARM_LOG_DIR": self.temp_dir,
                "KEEPWARM_BOOTSTRAP_GRACE_S": "2.0",
                "KEEPWARM_RESTART_GRACE_S": "1.0",
                "KEEPWARM_KILL_TIMEOUT_S": "2.0",
                "KEEPWARM_LOG_LEVEL": "DEBUG",
                "PYTHONPATH": pythonpath,
            },
        )
        self.env_patch.start()
        self.settings = get_settings()

        self.launched = []
        self.launch_patch = patch(
            "keepwarm.daemon.client.launch_daemon", side_effect=self._launch
        )
        self.launch_patch.start()

    def tearDown(self):
        self.launch_patch.stop()
        for process in self.launched:
            if process.poll() is None:
                process.send_signal(signal.SIGTERM)
                try:
                    process.wait(timeout=TIMEOUT)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
        self.env_patch.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _launch(self, identity, settings):
        process = launch_daemon(identity, settings)
        self.launched.append(process)
        return process

    def _identity(self, *args: str) -> CommandIdentity:
        return CommandIdentity(
            path=sys.executable,
            args=("-u", "-c", REPORTER, *args),
            cwd=self.temp_dir,
        )

    def _address(self, identity: CommandIdentity) -> str:
        return derive_address(identity, runtime_dir=self.settings.runtime_dir)

    async def _read_line(self, connection) -> bytes:
        return await asyncio.wait_for(connection.reader.readline(), TIMEOUT)

    async def _wait_exit(self, process: subprocess.Popen) -> int:
        return await asyncio.wait_for(asyncio.to_thread(process.wait), TIMEOUT)

    async def test_kill_then_fresh_call_bootstraps_new_daemon(self):
        identity = self._identity()
        address = self._address(identity)

        connection = await obtain_connection(identity, address, self.settings)
        first_pid = int(await self._read_line(connection))
        self.assertEqual(len(self.launched), 1)

        await connection.send_kill()
        self.assertEqual(await asyncio.wait_for(connection.reader.read(), TIMEOUT), b"")
        await connection.close()
        self.assertEqual(await self._wait_exit(self.launched[0]), 0)

        with self.assertRaises(NotListeningError):
            await connect_existing(address)

        connection = await obtain_connection(identity, address, self.settings)
        second_pid = int(await self._read_line(connection))
        await connection.close()

        self.assertEqual(len(self.launched), 2)
        self.assertNotEqual(first_pid, second_pid)

    async def test_second_client_reuses_running_daemon(self):
        identity = self._identity()
        address = self._address(identity)

        first = await obtain_connection(identity, address, self.settings)
        line = await self._read_line(first)

        second = await obtain_connection(identity, address, self.settings)
        self.assertEqual(await self._read_line(second), line)
        self.assertEqual(len(self.launched), 1)

        await first.close()
        await second.close()

    async def test_concurrent_clients_share_one_daemon(self):
        identity = self._identity()
        address = self._address(identity)

        first, second = await asyncio.gather(
            obtain_connection(identity, address, self.settings),
            obtain_connection(identity, address, self.settings),
        )
        self.assertEqual(await self._read_line(first), await self._read_line(second))

        # A daemon that lost the bind race exits with an error
        running = [p for p in self.launched if p.poll() is None]
        self.assertEqual(len(running), 1)
        for process in self.launched:
            if process is not running[0]:
                self.assertEqual(await self._wait_exit(process), 1)

        await first.close()
        await second.close()

    async def test_flag_like_arguments_reach_the_child(self):
        identity = self._identity("--log-level", "bogus", "--")
        address = self._address(identity)

        connection = await obtain_connection(identity, address, self.settings)
        line = (await self._read_line(connection)).decode().split()
        await connection.close()

        self.assertEqual(line[1:], ["--log-level", "bogus", "--"])

    async def test_sigterm_stops_daemon_and_child(self):
        identity = self._identity()
        address = self._address(identity)

        connection = await obtain_connection(identity, address, self.settings)
        child_pid = int(await self._read_line(connection))
        daemon = self.launched[0]

        if sys.platform.startswith("linux"):
            title = " ".join(psutil.Process(daemon.pid).cmdline())
            self.assertIn("keepwarm-daemon", title)

        daemon.send_signal(signal.SIGTERM)
        self.assertEqual(await self._wait_exit(daemon), 0)
        self.assertEqual(await asyncio.wait_for(connection.reader.read(), TIMEOUT), b"")
        self.assertFalse(psutil.pid_exists(child_pid))
        self.assertFalse(os.path.exists(address))
        await connection.close()

    async def test_restart_replaces_daemon_with_fresh_output(self):
        identity = self._identity()
        address = self._address(identity)
        lines = []

        def _session(connection, ui=None):
            # Records the replayed line, then detaches
            session = MagicMock()

            async def run():
                lines.append(await self._read_line(connection))
                await connection.close()
                return SessionEnd.DETACHED

            session.run = run
            return session

        with patch("keepwarm.ui.cli.AttachedSession", side_effect=_session):
            await cli._attach(identity, address, self.settings, restart=False)
            await cli._attach(identity, address, self.settings, restart=True)

        self.assertEqual(len(self.launched), 2)
        self.assertEqual(await self._wait_exit(self.launched[0]), 0)
        self.assertIsNone(self.launched[1].poll())
        self.assertNotEqual(lines[0], lines[1])


if __name__ == "__main__":
    unittest.main()
