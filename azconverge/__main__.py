"""Entry point for `python -m azconverge`.

Usage:
    python -m azconverge up
    python -m azconverge preview
"""

from __future__ import annotations

from azconverge.cli import cli

cli()
