"""Byte-stream protocol between clients and the daemon.

There is no framing in either direction:

    daemon -> client:  raw bytes from the child's stdout, replayed from the
                       start of the child's life, then streamed live
    client -> daemon:  any byte at all means "kill the child"

Restart is not part of the protocol. A client restarts by sending a kill,
waiting for the old daemon to go away and bootstrapping a new one.
"""

# Sent by clients to request a kill. Any non-empty payload has the same effect.
KILL_SIGNAL = b"kill"

# Read size for child stdout and client sockets.
CHUNK_SIZE = 65536


def is_kill_signal(data: bytes) -> bool:
    """
    Interpret bytes received from a client.

    Args:
        data: Result of a socket read

    Returns:
        True for any non-empty read; an empty read is EOF, not a signal
    """
    return len(data) > 0
