"""In-memory state for the daemon: output history and attached sessions.

Everything here is touched only from the event loop thread, so there is no
locking. The ordering guarantee for attaching clients comes from ``attach``
doing replay and registration without yielding to the loop.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Set

logger = logging.getLogger(__name__)


class DaemonState:
    """
    Output buffer and session set for one daemon.

    The buffer is append-only and unbounded; it lives as long as the child.
    """

    def __init__(self):
        self.start_time = time.time()
        self.chunks: List[bytes] = []
        self.total_bytes = 0
        self.sessions: Set[asyncio.StreamWriter] = set()

    def record(self, chunk: bytes) -> None:
        """
        Append a chunk of child output and forward it to every session.

        Sessions whose transport fails are dropped; the others still receive
        the chunk.
        """
        self.chunks.append(chunk)
        self.total_bytes += len(chunk)

        for writer in list(self.sessions):
            if not self._send(writer, chunk):
                self.sessions.discard(writer)

    def attach(self, writer: asyncio.StreamWriter) -> bool:
        """
        Replay the full history to ``writer``, then register it for live output.

        Must not await between replay and registration.

        Returns:
            False if the session failed during replay and was not registered
        """
        for chunk in self.chunks:
            if not self._send(writer, chunk):
                return False
        self.sessions.add(writer)
        return True

    def detach(self, writer: asyncio.StreamWriter) -> None:
        self.sessions.discard(writer)

    def abort_sessions(self) -> int:
        """Forcibly close every session. Returns how many were closed."""
        writers = list(self.sessions)
        self.sessions.clear()
        for writer in writers:
            writer.transport.abort()
        return len(writers)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": time.time() - self.start_time,
            "sessions": len(self.sessions),
            "buffered_chunks": len(self.chunks),
            "buffered_bytes": self.total_bytes,
        }

    @staticmethod
    def _send(writer: asyncio.StreamWriter, chunk: bytes) -> bool:
        if writer.is_closing():
            return False
        try:
            writer.write(chunk)
        except (ConnectionError, RuntimeError) as e:
            logger.warning(f"Dropping session after write failure: {e}")
            return False
        return True
