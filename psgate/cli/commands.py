"""CLI commands for psgate."""

import asyncio
import json
import platform
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from psgate import __logo__, __version__

# Windows needs SelectorEventLoop for aiohttp compatibility
if platform.system() == "Windows":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

app = typer.Typer(
    name="psgate",
    help=f"{__logo__} psgate - guarded PowerShell execution",
    no_args_is_help=True,
)

console = Console()

LEVEL_STYLES = {
    "SAFE": "green",
    "RISKY": "yellow",
    "UNKNOWN": "yellow",
    "DANGEROUS": "red",
    "BLOCKED": "red",
    "CRITICAL": "bold red",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} psgate v{__version__}")
        raise typer.Exit()


def _setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _gateway():
    from psgate.config.loader import load_config
    from psgate.exec.executor import CommandGateway

    return CommandGateway(load_config())


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """psgate - guarded PowerShell execution."""
    pass


# ============================================================================
# Classification
# ============================================================================


@app.command()
def classify(
    command: str = typer.Argument(help="Command to classify"),
    as_json: bool = typer.Option(False, "--json", help="Print the verdict as JSON"),
):
    """Classify a command without running it."""
    _setup_logging(False)
    from psgate.config.loader import load_config
    from psgate.exec.safety import SafetyClassifier
    from psgate.learning.store import LearnedPatternStore

    config = load_config()
    classifier = SafetyClassifier(
        learned_provider=LearnedPatternStore(config.learned_path) if config.learning.enabled else None,
        additional_safe=config.security.additional_safe,
        additional_blocked=config.security.additional_blocked,
    )
    verdict = classifier.classify(command)

    if as_json:
        console.print_json(json.dumps(verdict.to_dict()))
        return

    style = LEVEL_STYLES.get(verdict.level, "white")
    table = Table(title="Security Verdict")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Level", f"[{style}]{verdict.level}[/{style}]")
    table.add_row("Risk", verdict.risk)
    table.add_row("Category", escape(verdict.category))
    table.add_row("Reason", escape(verdict.reason))
    table.add_row("Blocked", "yes" if verdict.blocked else "no")
    table.add_row("Needs confirmation", "yes" if verdict.requires_prompt else "no")
    for rec in verdict.recommendations:
        table.add_row("Recommendation", escape(rec))
    console.print(table)


# ============================================================================
# Execution
# ============================================================================


@app.command()
def run(
    command: str = typer.Argument(help="PowerShell command to run"),
    confirmed: bool = typer.Option(False, "--confirmed", "-y", help="Acknowledge a RISKY/UNKNOWN command"),
    timeout: float = typer.Option(0, "--timeout", "-t", help="Timeout in seconds (0 = default)"),
    cwd: str = typer.Option("", "--cwd", help="Working directory"),
    adaptive: bool = typer.Option(False, "--adaptive", help="Extend the deadline while output flows"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose logging"),
):
    """Run a command through the gateway."""
    _setup_logging(verbose)
    from psgate.exec.errors import GatewayError
    from psgate.exec.types import CommandRequest

    gateway = _gateway()
    request = CommandRequest(
        command=command,
        timeout_seconds=timeout or None,
        working_directory=cwd or None,
        confirmed=confirmed,
        adaptive_timeout=adaptive,
    )

    async def go():
        try:
            return await gateway.execute(request, client_key="cli")
        finally:
            await gateway.aclose()

    try:
        outcome = asyncio.run(go())
    except GatewayError as e:
        console.print(f"[red]{e.code}:[/red] {escape(e.message)}")
        for hint in e.remediation:
            console.print(f"[dim]- {escape(hint)}[/dim]")
        raise typer.Exit(2)

    result = outcome.result
    if result.stdout:
        console.print(result.stdout, end="", markup=False, highlight=False)
    if result.stderr:
        console.print(f"[red]{escape(result.stderr)}[/red]", end="")
    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(warning)}")
    if result.timed_out:
        console.print(f"[yellow]Timed out after {result.effective_timeout_ms}ms[/yellow]")
    if result.overflow:
        console.print(f"[yellow]Output truncated ({result.overflow_strategy})[/yellow]")
    raise typer.Exit(0 if result.success else 1)


# ============================================================================
# Learning
# ============================================================================


@app.command()
def candidates(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows"),
):
    """List frequently seen unknown commands from the journal."""
    from psgate.config.loader import load_config
    from psgate.learning.journal import ThreatJournal

    config = load_config()
    journal = ThreatJournal(config.journal_path, config.learning.max_journal_kb * 1024)
    rows = journal.aggregate_candidates(limit)

    if not rows:
        console.print("No unknown commands journaled yet.")
        return

    table = Table(title="Learning Candidates")
    table.add_column("Count", justify="right", style="cyan")
    table.add_column("Command")
    table.add_column("Sessions", justify="right")
    table.add_column("Last Seen")
    for cand in rows:
        table.add_row(str(cand.count), escape(cand.redacted), str(len(cand.sessions)), cand.last_seen[:19])
    console.print(table)


@app.command()
def promote(
    command: str = typer.Argument(help="Command to approve as safe"),
):
    """Approve a command as learned-safe."""
    from psgate.config.loader import load_config
    from psgate.learning.store import LearnedPatternStore

    config = load_config()
    store = LearnedPatternStore(config.learned_path)
    try:
        pattern = store.promote(command, source="cli")
    except ValueError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Learned safe pattern: {escape(pattern)}")
    console.print("[dim]Running gateways pick it up on POST /api/learned/reload[/dim]")


# ============================================================================
# Server
# ============================================================================


@app.command()
def serve(
    host: str = typer.Option("", "--host", help="Bind address (default from config)"),
    port: int = typer.Option(0, "--port", "-p", help="Port (default from config)"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose logging"),
):
    """Serve health, metrics and threat statistics over HTTP."""
    _setup_logging(verbose)
    from psgate.gateway.server import MetricsServer

    gateway = _gateway()
    metrics_cfg = gateway.config.metrics
    server = MetricsServer(gateway, host or metrics_cfg.host, port or metrics_cfg.port)

    async def run_server():
        await server.start()
        console.print(f"{__logo__} Serving on http://{server.host}:{server.port}")
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()
            await gateway.aclose()

    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        console.print("[dim]Shutdown complete[/dim]")


if __name__ == "__main__":
    app()
