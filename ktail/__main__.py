"""Entry point for `python -m ktail`.

Usage:
    python -m ktail [PATTERN]... -n NAMESPACE -l SELECTOR
"""

from __future__ import annotations

from ktail.cli import cli

cli(prog_name="ktail")
