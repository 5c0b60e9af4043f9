"""ktail command-line interface.

Exposes:
    cli -- Click command entry point (registered as ``ktail`` script).
"""

from ktail.cli.main import cli

__all__ = ["cli"]
