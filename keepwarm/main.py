"""Console script entry point: ``keepwarm = keepwarm.main:keepwarm``."""

from keepwarm.ui.cli import run as keepwarm


if __name__ == "__main__":
    keepwarm()
