"""Rendezvous address derivation.

A daemon is identified by the command it supervises: executable, arguments
and working directory. Hashing the three gives every client the same address
without any registry, so a second invocation of the same command finds the
daemon the first one started.
"""

import hashlib
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from keepwarm.core.configs import default_runtime_dir

ADDRESS_PREFIX = "keepwarm"
WINDOWS_PIPE_ROOT = "\\\\.\\pipe\\"


@dataclass(frozen=True)
class CommandIdentity:
    """The command a daemon owns."""
    path: str
    args: Tuple[str, ...] = ()
    cwd: str = ""

    @classmethod
    def from_argv(cls, argv: Sequence[str], cwd: Optional[str] = None) -> "CommandIdentity":
        """Build an identity from ``[path, *args]`` and a working directory."""
        if not argv:
            raise ValueError("A command is required")
        return cls(path=argv[0], args=tuple(argv[1:]), cwd=cwd or os.getcwd())

    @property
    def argv(self) -> List[str]:
        return [self.path, *self.args]

    def display(self) -> str:
        return " ".join(self.argv)


def identity_digest(identity: CommandIdentity) -> str:
    """
    Hex MD5 digest of the identity.

    Fields are fed in a fixed order with a NUL separator, and the argument
    list is JSON encoded, so ``["a b"]`` and ``["a", "b"]`` never collide.
    """
    digest = hashlib.md5(usedforsecurity=False)
    digest.update(identity.path.encode("utf-8"))
    digest.update(b"\0")
    digest.update(json.dumps(list(identity.args)).encode("utf-8"))
    digest.update(b"\0")
    digest.update(identity.cwd.encode("utf-8"))
    return digest.hexdigest()


def derive_address(
    identity: CommandIdentity,
    runtime_dir: Optional[Path] = None,
    platform: str = sys.platform,
) -> str:
    """
    Map a command identity to its rendezvous address.

    Args:
        identity: Command the daemon supervises
        runtime_dir: Directory for the socket file (POSIX only)
        platform: Value of ``sys.platform`` to derive for

    Returns:
        A named-pipe path on Windows, a Unix socket path elsewhere
    """
    name = f"{ADDRESS_PREFIX}-{identity_digest(identity)}"
    if platform == "win32":
        return f"{WINDOWS_PIPE_ROOT}{name}"
    base = runtime_dir if runtime_dir is not None else default_runtime_dir()
    return str(Path(base) / f"{name}.sock")


def derive_log_path(identity: CommandIdentity, log_dir: Path) -> Path:
    """Log file the daemon for ``identity`` writes its output to."""
    return Path(log_dir) / f"{ADDRESS_PREFIX}-{identity_digest(identity)}.log"
