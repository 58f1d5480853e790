"""Child process spawning and process-tree termination."""

import asyncio
import logging
import os
import signal
import subprocess
import sys
from typing import Dict, List

import psutil

from keepwarm.daemon.address import CommandIdentity

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# StreamReader buffer limit for the child's stdout
STREAM_LIMIT = 2 ** 16


class ChildProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """
    Stream protocol that also reports when the process itself exits.

    ``Process.wait()`` only returns once every pipe is closed as well, which
    never happens while a background descendant keeps stdout open.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        super().__init__(limit=STREAM_LIMIT, loop=loop)
        self.exited = loop.create_future()

    def process_exited(self) -> None:
        returncode = self._transport.get_returncode()
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(returncode)


class ChildProcess(asyncio.subprocess.Process):
    """asyncio Process with an exit wait that ignores the pipes."""

    async def exited(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await asyncio.shield(self._protocol.exited)


async def spawn_child(identity: CommandIdentity) -> ChildProcess:
    """
    Start the supervised command with its stdout piped to the daemon.

    On POSIX the child leads a new session, so its process group id equals
    its pid and the whole group can be signalled at once, even after the
    leader itself has exited. stderr is inherited, which puts it in the
    daemon log.

    Raises:
        OSError: The executable could not be started
    """
    kwargs = {}
    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    loop = asyncio.get_running_loop()
    transport, protocol = await loop.subprocess_exec(
        lambda: ChildProtocol(loop),
        identity.path,
        *identity.args,
        cwd=identity.cwd or None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=None,
        **kwargs,
    )
    return ChildProcess(transport, protocol, loop)


def _group_members(pgid: int) -> List[psutil.Process]:
    """Every process still in process group ``pgid``."""
    if IS_WINDOWS:
        return []
    members = []
    for proc in psutil.process_iter():
        try:
            if os.getpgid(proc.pid) == pgid:
                members.append(proc)
        except (ProcessLookupError, PermissionError):
            continue
    return members


def _collect_tree(pid: int) -> List[psutil.Process]:
    procs: Dict[int, psutil.Process] = {p.pid: p for p in _group_members(pid)}
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        # Leader is gone; orphans left in its group are all that remain
        return list(procs.values())
    try:
        children = root.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    for proc in children + [root]:
        procs.setdefault(proc.pid, proc)
    return list(procs.values())


def signal_process_tree(pid: int, force: bool = False) -> List[psutil.Process]:
    """
    Signal ``pid``, its process group and every descendant.

    Sends SIGTERM (or SIGKILL when ``force``) to the child's process group and
    to each descendant found by walking the tree, since descendants may have
    moved to another group. Works after ``pid`` itself has exited, as long
    as members of its group remain. Best effort: failures are logged, never
    raised.

    Returns:
        Processes that were signalled
    """
    procs = _collect_tree(pid)

    if not IS_WINDOWS:
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Cannot signal process group {pid}: {e}")

    signalled = []
    for proc in procs:
        try:
            if force:
                proc.kill()
            else:
                proc.terminate()
            signalled.append(proc)
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot terminate process {proc.pid}: {e}")

    logger.debug(
        f"Sent {'SIGKILL' if force else 'SIGTERM'} to {len(signalled)} process(es) "
        f"in tree of {pid}"
    )
    return signalled


def reap_leftovers(procs: List[psutil.Process], timeout: float = 0.0) -> List[psutil.Process]:
    """Kill anything in ``procs`` still alive after ``timeout`` seconds."""
    try:
        _, alive = psutil.wait_procs(procs, timeout=timeout)
    except psutil.Error as e:
        logger.warning(f"Could not wait for process tree: {e}")
        return []
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot kill process {proc.pid}: {e}")
    return alive
