"""Validate command for the Ralph Controller CLI."""

import sys

import click

from ralph_controller.services.config_service import ConfigError, load_config
from ralph_controller.services.workspace_service import validate_project


@click.command()
@click.argument("target_dir", required=False, type=click.Path(file_okay=False))
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="JSON config file")
def validate(target_dir, config_path):
    """Check that TARGET_DIR has the files a Ralph project needs."""
    try:
        config = load_config(config_path, overrides={"target_directory": target_dir})
    except ConfigError as e:
        raise click.ClickException(str(e))

    structure = validate_project(config)
    checks = [
        (config.agents_file, structure.has_agents_md),
        (f"{config.specs_directory}/", structure.has_specs_directory),
        (config.prompt_file, structure.has_prompt_md),
        (config.plan_file, structure.has_implementation_plan),
    ]

    click.echo(f"Project: {config.target_directory}")
    for name, present in checks:
        click.echo(f"  [{'x' if present else ' '}] {name}")

    if structure.is_complete:
        click.echo("Project structure is complete")
        return
    click.echo(f"Missing: {', '.join(structure.missing_items)}", err=True)
    sys.exit(1)
