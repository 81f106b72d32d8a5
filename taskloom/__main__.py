"""Entry point for ``python -m taskloom``."""

from taskloom.cli import cli

if __name__ == "__main__":
    cli()
