"""azconverge command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``azconverge`` script).
"""

from azconverge.cli.main import cli

__all__ = ["cli"]
