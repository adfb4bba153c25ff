"""Gradcheck subcommand: compare BPTT gradients with finite differences."""

from __future__ import annotations

import click

from s2s.cli.train import _OVERRIDE_HELP
from s2s.config import load_config
from s2s.utils.io import setup_logging


@click.command()
@click.argument("config", type=click.Path(exists=True))
@click.option("--override", "-o", "overrides", multiple=True, help=_OVERRIDE_HELP)
def gradcheck(config: str, overrides: tuple[str, ...]) -> None:
    """Check gradients on the first cycle of the training data.

    Exits with status 1 if any probed entry disagrees.
    """
    cfg = load_config(config, overrides=list(overrides))

    setup_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)

    from s2s.gradcheck import run_gradcheck

    result = run_gradcheck(cfg)
    click.echo(
        f"[s2s] gradcheck: {result.checked} probes, {len(result.failures)} mismatches, "
        f"max abs error {result.max_abs_error:.3g}"
    )
    if not result.ok:
        raise SystemExit(1)
