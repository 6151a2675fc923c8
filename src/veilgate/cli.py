"""Command-line interface for Veilgate."""

from __future__ import annotations

import json
import logging
import sys
import time

import click
from rich.console import Console
from rich.table import Table

from veilgate.classify import RequestClassifier
from veilgate.config import load_config, require_redirect_target
from veilgate.detector import ClientDetector
from veilgate.environment import BrowserEnvironment
from veilgate.errors import ConfigError
from veilgate.pow import ProofOfWork, pow_digest, solve
from veilgate.ratelimit import RateLimiter

console = Console()


def _setup_logging(level: str) -> None:
    """Configure logging with the specified level.

    Args:
        level: Logging level string (debug, info, warning, error).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


@click.group()
@click.option("--config", "-c", default=None, help="Path to veilgate.yaml config file")
@click.pass_context
def main(ctx: click.Context, config: str | None) -> None:
    """Veilgate: tell humans from bots before revealing a destination."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    cfg = load_config(config)
    ctx.obj["config"] = cfg
    _setup_logging(cfg.logging.level)


@main.command()
@click.option("--host", default=None, help="Override server host")
@click.option("--port", "-p", default=None, type=int, help="Override server port")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the Veilgate server."""
    import uvicorn

    from veilgate.server import create_app

    cfg = ctx.obj["config"]
    try:
        require_redirect_target(cfg)
        app = create_app(ctx.obj["config_path"])
    except ConfigError as exc:
        console.print(f"[bold red]ERROR: {exc}[/bold red]")
        sys.exit(1)

    server_host = host or cfg.server.host
    server_port = port or cfg.server.port

    console.print(f"[bold green]Starting Veilgate on {server_host}:{server_port}[/bold green]")

    uvicorn.run(app, host=server_host, port=server_port, log_level=cfg.logging.level)


@main.command(name="check-ua")
@click.argument("user_agent", required=False, default="")
@click.option("--ip", default="127.0.0.1", help="Client IP to score the request as")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def check_ua(user_agent: str, ip: str, json_output: bool) -> None:
    """Score a user-agent the way the server scores a page request."""
    classifier = RequestClassifier(RateLimiter())
    headers = {"User-Agent": user_agent} if user_agent else {}
    assessment = classifier.classify(headers, ip)

    if json_output:
        click.echo(
            json.dumps(
                {
                    "score": assessment.score,
                    "signals": assessment.record.signals,
                    "hardBlock": assessment.hard_block,
                },
                indent=2,
            )
        )
        return

    table = Table(title="Server-side classification")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("User-Agent", user_agent or "-")
    table.add_row("Score", str(assessment.score))
    table.add_row("Signals", ", ".join(assessment.record.signals) or "-")
    table.add_row("Hard block", "yes" if assessment.hard_block else "no")
    console.print(table)


@main.command()
@click.argument("environment", type=click.Path(exists=True, dir_okay=False))
@click.option("--json-output", is_flag=True, help="Output the verification payload as JSON")
@click.pass_context
def detect(ctx: click.Context, environment: str, json_output: bool) -> None:
    """Run the client detector against a captured browser environment."""
    with open(environment) as f:
        env = BrowserEnvironment.model_validate_json(f.read())

    result = ClientDetector(env, ctx.obj["config"].detector).detect()

    if json_output:
        click.echo(json.dumps(result.to_payload(), indent=2))
        return

    summary = result.summary()
    table = Table(title=f"Client detection: {summary.verdict}")
    table.add_column("Check", style="cyan")
    table.add_column("Result", style="yellow")
    for key, value in result.checks.items():
        table.add_row(key, json.dumps(value))
    table.add_row("score", str(result.score))
    table.add_row("confidence", f"{summary.confidence}%")
    console.print(table)


@main.command(name="pow")
@click.option("--difficulty", "-d", default=None, type=int, help="Leading zero hex digits")
@click.pass_context
def pow_command(ctx: click.Context, difficulty: int | None) -> None:
    """Issue, solve and verify a proof-of-work challenge locally."""
    cfg = ctx.obj["config"]
    service = ProofOfWork(
        difficulty=cfg.pow.difficulty if difficulty is None else difficulty,
        freshness_ms=cfg.pow.freshness_ms,
    )
    challenge = service.issue()

    start = time.monotonic()
    nonce = solve(challenge.token, challenge.difficulty)
    elapsed_ms = (time.monotonic() - start) * 1000
    result = service.verify(challenge.token, nonce, challenge.issued_at)

    table = Table(title="Proof of work")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Challenge", challenge.token)
    table.add_row("Difficulty", str(challenge.difficulty))
    table.add_row("Nonce", str(nonce))
    table.add_row("Digest", pow_digest(challenge.token, nonce))
    table.add_row("Solve time", f"{elapsed_ms:.1f}ms")
    table.add_row("Valid", "yes" if result.valid else f"no ({result.reason})")
    console.print(table)


if __name__ == "__main__":
    main()
