"""
Tests for daemon/address.py - rendezvous address derivation.
"""

import os
import unittest
from pathlib import Path
from unittest.mock import patch

from keepwarm.daemon.address import (
    CommandIdentity,
    derive_address,
    derive_log_path,
    identity_digest,
)


class TestCommandIdentity(unittest.TestCase):

    def test_from_argv_splits_path_and_args(self):
        identity = CommandIdentity.from_argv(["echo", "hi", "there"], cwd="/tmp")
        self.assertEqual(identity.path, "echo")
        self.assertEqual(identity.args, ("hi", "there"))
        self.assertEqual(identity.cwd, "/tmp")
        self.assertEqual(identity.argv, ["echo", "hi", "there"])

    def test_argv_is_a_fresh_list(self):
        identity = CommandIdentity(path="echo", args=("hi",), cwd="/tmp")
        argv = identity.argv
        self.assertIsInstance(argv, list)
        argv.append("extra")
        self.assertEqual(identity.argv, ["echo", "hi"])

    def test_from_argv_defaults_to_current_directory(self):
        identity = CommandIdentity.from_argv(["echo"])
        self.assertEqual(identity.cwd, os.getcwd())

    def test_from_argv_requires_a_command(self):
        with self.assertRaises(ValueError):
            CommandIdentity.from_argv([])


class TestDeriveAddress(unittest.TestCase):

    def setUp(self):
        self.runtime_dir = Path("/run/user/1000")
        self.identity = CommandIdentity(path="echo", args=("hi",), cwd="/tmp")

    def test_same_identity_same_address(self):
        other = CommandIdentity(path="echo", args=("hi",), cwd="/tmp")
        self.assertEqual(
            derive_address(self.identity, self.runtime_dir),
            derive_address(other, self.runtime_dir),
        )

    def test_each_field_changes_the_address(self):
        base = derive_address(self.identity, self.runtime_dir)
        variants = [
            CommandIdentity(path="printf", args=("hi",), cwd="/tmp"),
            CommandIdentity(path="echo", args=("bye",), cwd="/tmp"),
            CommandIdentity(path="echo", args=("hi",), cwd="/var/tmp"),
            CommandIdentity(path="echo", args=(), cwd="/tmp"),
        ]
        for variant in variants:
            self.assertNotEqual(base, derive_address(variant, self.runtime_dir), variant)

    def test_argument_boundaries_matter(self):
        joined = CommandIdentity(path="echo", args=("a,b",), cwd="/tmp")
        split = CommandIdentity(path="echo", args=("a", "b"), cwd="/tmp")
        self.assertNotEqual(identity_digest(joined), identity_digest(split))

    def test_fields_do_not_bleed_into_each_other(self):
        first = CommandIdentity(path="ab", args=(), cwd="c")
        second = CommandIdentity(path="a", args=(), cwd="bc")
        self.assertNotEqual(identity_digest(first), identity_digest(second))

    def test_digest_is_128_bit_hex(self):
        digest = identity_digest(self.identity)
        self.assertEqual(len(digest), 32)
        int(digest, 16)

    def test_posix_address_is_socket_in_runtime_dir(self):
        address = derive_address(self.identity, self.runtime_dir, platform="linux")
        path = Path(address)
        self.assertEqual(path.parent, self.runtime_dir)
        self.assertEqual(path.name, f"keepwarm-{identity_digest(self.identity)}.sock")

    def test_windows_address_is_named_pipe(self):
        address = derive_address(self.identity, self.runtime_dir, platform="win32")
        self.assertTrue(address.startswith("\\\\.\\pipe\\keepwarm-"))
        self.assertTrue(address.endswith(identity_digest(self.identity)))

    def test_runtime_dir_defaults_to_xdg(self):
        with patch.dict(os.environ, {"XDG_RUNTIME_DIR": "/run/user/42"}):
            address = derive_address(self.identity, platform="linux")
        self.assertEqual(Path(address).parent, Path("/run/user/42"))

    def test_runtime_dir_falls_back_to_tempdir(self):
        env = {k: v for k, v in os.environ.items() if k != "XDG_RUNTIME_DIR"}
        with patch.dict(os.environ, env, clear=True), patch(
            "tempfile.gettempdir", return_value="/fallback"
        ):
            address = derive_address(self.identity, platform="linux")
        self.assertEqual(Path(address).parent, Path("/fallback"))

    def test_log_path_shares_the_digest(self):
        log_path = derive_log_path(self.identity, Path("/var/log"))
        self.assertEqual(log_path, Path("/var/log") / f"keepwarm-{identity_digest(self.identity)}.log")


if __name__ == "__main__":
    unittest.main()
