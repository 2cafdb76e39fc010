"""Entry point for ``python -m tinderbox``."""

from tinderbox.cli import app

app(prog_name="tinderbox")
