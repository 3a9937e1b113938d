"""Entry point for ``python -m winlab``."""

from winlab.cli import app

if __name__ == "__main__":
    app()
