"""Analyze command: classify captured agent output offline."""

import json
from pathlib import Path

import click

from ralph_controller.models.loop import IterationResult
from ralph_controller.services.final_verification import parse_verification_result
from ralph_controller.services.response_analyzer import ResponseAnalyzer


@click.command()
@click.argument("output_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print the findings as JSON")
def analyze(output_file, as_json):
    """Run the response analyzer and verification parser over OUTPUT_FILE."""
    try:
        text = Path(output_file).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise click.ClickException(f"Could not read {output_file}: {e}")

    analysis = ResponseAnalyzer().analyze(IterationResult(success=True, exit_code=0, stdout=text))
    verification = parse_verification_result(text)

    if as_json:
        payload = {
            "analysis": analysis.model_dump(mode="json"),
            "verification": verification.model_dump(mode="json") if verification else None,
        }
        click.echo(json.dumps(payload, indent=2))
        return

    click.echo(f"Completion signal:  {analysis.has_completion_signal}")
    click.echo(f"Test-only loop:     {analysis.is_test_only_loop}")
    click.echo(f"Confidence score:   {analysis.confidence_score}")
    click.echo(f"Should exit:        {analysis.should_exit}")
    if analysis.exit_reason:
        click.echo(f"Exit reason:        {analysis.exit_reason}")

    status = analysis.ralph_status
    if status is not None:
        click.echo("RALPH_STATUS:")
        for field, value in status.model_dump(exclude_none=True).items():
            click.echo(f"  {field}: {value}")

    if analysis.rate_limit is not None:
        reset = analysis.rate_limit.reset_at.isoformat() if analysis.rate_limit.reset_at else "unknown"
        click.echo(f"Rate limit:         {analysis.rate_limit.message} (resets {reset})")

    if verification is not None:
        click.echo(f"Verification:       {'complete' if verification.all_tasks_complete else 'incomplete'}")
        for task in verification.incomplete_tasks:
            click.echo(f"  - {task}")
        if verification.summary:
            click.echo(f"  Summary: {verification.summary}")
