"""Click group for the ``s2s`` command."""

from __future__ import annotations

import click

from s2s import __version__


@click.group()
@click.version_option(version=__version__, prog_name="s2s")
def cli() -> None:
    """s2s: encoder/decoder sequence-to-sequence training with step-wise BPTT."""


# Import and register subcommands
from s2s.cli.train import train  # noqa: E402

cli.add_command(train)

from s2s.cli.gradcheck import gradcheck  # noqa: E402

cli.add_command(gradcheck)
