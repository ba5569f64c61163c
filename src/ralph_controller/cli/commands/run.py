"""Run command for the Ralph Controller CLI."""

import logging
import signal
import sys
import threading

import click

from ralph_controller.constants import PROVIDERS
from ralph_controller.models.loop import CircuitState
from ralph_controller.models.statistics import format_cost, format_duration
from ralph_controller.services.config_service import ConfigError, load_config
from ralph_controller.services.loop_controller import LoopController
from ralph_controller.services.workspace_service import validate_project
from ralph_controller.utils.logging_setup import setup_logging

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _wire_events(controller: LoopController) -> None:
    """Print controller events to the console."""

    @controller.on_iteration_start.subscribe
    def _on_iteration_start(iteration):
        click.echo(f"\n=== Iteration {iteration} ===")

    @controller.on_iteration_complete.subscribe
    def _on_iteration_complete(iteration, result):
        if result.success:
            click.echo(f"--- Iteration {iteration} succeeded ---")
        else:
            click.echo(f"--- Iteration {iteration} failed (exit code {result.exit_code}) ---", err=True)

    @controller.on_model_switch.subscribe
    def _on_model_switch(model, reason):
        click.echo(f"[Model switch] {model.display_name}: {reason}")

    @controller.on_verification_complete.subscribe
    def _on_verification_complete(passed, files_changed):
        verdict = "passed" if passed else f"failed ({files_changed} file(s) changed)"
        click.echo(f"[Verification] {verdict}")

    @controller.on_circuit_state_changed.subscribe
    def _on_circuit_state_changed(state, reason):
        suffix = f": {reason}" if reason else ""
        click.echo(f"[Circuit breaker] {state.value}{suffix}", err=state == CircuitState.OPEN)

    controller.on_output.subscribe(click.echo)
    controller.on_error.subscribe(lambda line: click.echo(line, err=True))


def _install_signal_handlers(controller: LoopController) -> dict:
    """First SIGINT/SIGTERM stops gracefully, the second force-stops."""
    caught = {"count": 0}

    def _signal_handler(signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        caught["count"] += 1
        if caught["count"] == 1:
            click.echo(
                f"\nCaught {sig_name}, stopping after the current iteration "
                f"(send again to force stop)...",
                err=True,
            )
            controller.stop()
        else:
            click.echo(f"\nCaught {sig_name} again, force stopping...", err=True)
            # force_stop blocks for the grace period; keep the handler short
            threading.Thread(target=controller.force_stop, daemon=True).start()

    previous = {
        signal.SIGINT: signal.signal(signal.SIGINT, _signal_handler),
        signal.SIGTERM: signal.signal(signal.SIGTERM, _signal_handler),
    }
    return previous


@click.command()
@click.argument("target_dir", required=False, type=click.Path(file_okay=False))
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="JSON config file")
@click.option("--provider", type=click.Choice(PROVIDERS), help="Provider for single-model runs")
@click.option("--model", help="Model id passed to the provider")
@click.option("--max-iterations", type=click.IntRange(min=1), help="Stop after N iterations")
@click.option("--delay", type=click.FloatRange(min=0), help="Seconds between iterations")
@click.option("--max-calls-per-hour", type=click.IntRange(min=1), help="Local call budget")
@click.option("--no-final-verification", is_flag=True, help="Stop on completion without an audit pass")
@click.option("--no-circuit-breaker", is_flag=True, help="Disable stagnation detection")
@click.option("--yolo", is_flag=True, help="Skip workspace trust confirmation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Console log level (default: INFO)",
)
def run(
    target_dir,
    config_path,
    provider,
    model,
    max_iterations,
    delay,
    max_calls_per_hour,
    no_final_verification,
    no_circuit_breaker,
    yolo,
    log_level,
):
    """Run the agent loop in TARGET_DIR (default: current directory)."""
    log_file = setup_logging(log_level)

    try:
        config = load_config(
            config_path,
            overrides={
                "target_directory": target_dir,
                "provider": provider,
                "model": model,
                "max_iterations": max_iterations,
                "iteration_delay": delay,
                "max_calls_per_hour": max_calls_per_hour,
                "enable_final_verification": False if no_final_verification else None,
                "enable_circuit_breaker": False if no_circuit_breaker else None,
            },
        )
    except ConfigError as e:
        raise click.ClickException(str(e))

    structure = validate_project(config)
    if not structure.has_prompt_md:
        raise click.ClickException(f"Prompt file not found: {config.prompt_file_path}")
    if structure.missing_items:
        click.echo(f"Warning: project is missing {', '.join(structure.missing_items)}", err=True)

    # The agent, not the controller, reads, writes and executes in the target directory
    if not yolo:
        click.echo(
            f"The agent ({config.provider.value}) will be trusted to perform all actions "
            f"(read, write, and execute) in:\n"
            f"  {config.target_directory}\n\n"
            f"To skip this confirmation, use: ralph run --yolo\n"
        )
        if not click.confirm("Do you trust all the actions in this folder?", default=True):
            raise click.ClickException("Run cancelled by user")

    controller = LoopController(config)
    _wire_events(controller)
    previous_handlers = _install_signal_handlers(controller)

    if log_file is not None:
        click.echo(f"Logging to {log_file}")

    try:
        finished = controller.start()
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    stats = controller.statistics
    click.echo(
        f"\nIterations: {stats.completed_iterations} completed, {stats.failed_iterations} failed | "
        f"Duration: {format_duration(stats.total_duration)} | "
        f"Est. cost: {format_cost(stats.estimated_cost)}"
    )

    circuit_open = config.enable_circuit_breaker and controller.circuit_breaker.state == CircuitState.OPEN
    if finished and not circuit_open:
        click.echo("Loop finished")
        sys.exit(0)
    click.echo("Loop did not finish", err=True)
    sys.exit(1)
