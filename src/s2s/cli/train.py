"""Train subcommand."""

from __future__ import annotations

from dataclasses import replace

import click

from s2s.config import load_config
from s2s.utils.io import setup_logging

_OVERRIDE_HELP = "Dotpath override, e.g. train.epochs=5 (repeatable)."


@click.command()
@click.argument("config", type=click.Path(exists=True))
@click.option("--override", "-o", "overrides", multiple=True, help=_OVERRIDE_HELP)
@click.option(
    "--run-dir",
    type=click.Path(),
    default=None,
    help="Override logging.run_dir (must not exist yet).",
)
def train(config: str, overrides: tuple[str, ...], run_dir: str | None) -> None:
    """Train a sequence-to-sequence model.

    CONFIG is the path to a YAML config file.
    """
    cfg = load_config(config, overrides=list(overrides))

    if run_dir is not None:
        cfg = replace(cfg, logging=replace(cfg.logging, run_dir=run_dir))

    # Logging first so subsequent errors are readable
    setup_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)

    from s2s.train import run

    run_dir_path = run(cfg, config_path=config)
    click.echo(f"[s2s] run_dir: {run_dir_path}")
