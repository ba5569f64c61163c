"""Main CLI entry point for Ralph Controller."""

import click

from ralph_controller import __version__
from ralph_controller.cli.commands.analyze import analyze
from ralph_controller.cli.commands.run import run
from ralph_controller.cli.commands.validate import validate


@click.group()
@click.version_option(__version__, prog_name="ralph")
def cli():
    """Ralph Controller - supervise an autonomous coding agent loop."""
    pass


cli.add_command(run)
cli.add_command(validate)
cli.add_command(analyze)


if __name__ == "__main__":
    cli()
