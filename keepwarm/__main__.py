"""Allow ``python -m keepwarm``."""

from keepwarm.ui.cli import run

run()
