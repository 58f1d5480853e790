"""keepwarm: reuse a long-running command across short-lived invocations."""

__version__ = "0.1.0"
