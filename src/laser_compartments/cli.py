"""
Module that contains the command line app.

Why does this file exist, and why not put this in __main__?

  You might be tempted to import things from __main__ later, but that will cause
  problems: the code will get executed twice:

  - When you run `python -mlaser_compartments` python will execute
    ``__main__.py`` as a script. That means there will not be any
    ``laser_compartments.__main__`` in ``sys.modules``.
  - When you import __main__ it will get executed again (as a module) because
    there"s no ``laser_compartments.__main__`` in ``sys.modules``.

  Also see (1) from https://click.palletsprojects.com/en/stable/setuptools/
"""

import logging
from pathlib import Path

import click

from laser_compartments.model import TIMES_FOLLOW_UP
from laser_compartments.model import CompartmentModel


@click.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-o", "--output", type=click.Path(file_okay=False, path_type=Path), default=None, help="Directory for result files.")
@click.option("-n", "--steps", type=click.IntRange(min=1), default=None, help=f"Override {TIMES_FOLLOW_UP} from the configuration.")
@click.option("--prefix", default=None, help="File name prefix for results (default: timestamp).")
@click.option("--strict", is_flag=True, help="Stop on the first numeric violation instead of clamping it.")
@click.option("-q", "--quiet", is_flag=True, help="No progress bar or summary.")
@click.option("-v", "--verbose", is_flag=True, help="Log at INFO level.")
def main(config, output, steps, prefix, strict, quiet, verbose):
    """Run the compartment model described by the JSON file CONFIG."""
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    try:
        model = CompartmentModel.load(config, strict=strict)
        if steps is not None:
            model.parameters[TIMES_FOLLOW_UP] = steps
        model.run(progress=not quiet)
    except (ValueError, RuntimeError) as e:
        raise click.ClickException(str(e)) from e

    if not quiet:
        for name, series in model.results.items():
            click.echo(f"{name:>16}: {series[0]:14,.2f} -> {series[-1]:14,.2f}")
        if model.violations:
            click.echo(f"WARNING: {len(model.violations)} numeric violation(s) were clamped, see log for details.")

    if output is not None:
        for filename in model.finalize(output, prefix=prefix):
            click.echo(f"Wrote '{filename}'.")

    return
