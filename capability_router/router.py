#!/usr/bin/env python3
# capability_router/router.py
"""Capability Router - CLI entry point."""

import os
import json
import asyncio
import logging
from typing import Optional

import numpy as np
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from dotenv import load_dotenv

from capability_router.lib.config import RouterConfig, ThompsonConfig, load_configuration
from capability_router.lib.engine import DecisionEngine
from capability_router.lib.errors import RouterError
from capability_router.lib.rl.thompson import ExplorationManager, ThresholdMode
from capability_router.lib.tools.base import CandidateRegistry
from capability_router.lib.tools.permissions import PermissionDescriptor
from capability_router.lib.traces.store import InMemoryTraceStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True)]
)
logger = logging.getLogger("capability_router")

# Load environment variables
load_dotenv()

app = typer.Typer(help="Capability Router decision core")
console = Console()


def _load_config(config_path: Optional[str]) -> RouterConfig:
    try:
        return load_configuration(config_path)
    except RouterError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output")):
    """Inspect thresholds, simulate exploration and train the scorer."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@app.command()
def threshold(
    candidate_id: str = typer.Argument(..., help="Tool or capability id"),
    permissions: Optional[str] = typer.Option(None, "--permissions", "-p", help="Permission descriptor (YAML or JSON)"),
    registry: Optional[str] = typer.Option(None, "--registry", "-r", help="Candidate registry JSON"),
    state: Optional[str] = typer.Option(None, "--state", "-s", help="Exploration state JSON"),
    mode: ThresholdMode = typer.Option(ThresholdMode.PASSIVE_SUGGESTION, "--mode", "-m", help="Decision mode"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Configuration file"),
):
    """Show the risk tier and acceptance threshold of a candidate."""
    router_config = _load_config(config)
    permissions_path = permissions or router_config.permissions_path
    try:
        descriptor = PermissionDescriptor.from_file(permissions_path) if permissions_path else PermissionDescriptor()
        candidates = CandidateRegistry.load(registry) if registry else None
    except (RouterError, OSError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)

    manager = ExplorationManager(router_config.thompson, descriptor, candidates)
    if state:
        with open(state, 'r', encoding='utf-8') as f:
            manager.restore(json.load(f))

    result = manager.get_threshold_for_candidate(candidate_id, mode)
    posterior = manager.get_state(candidate_id)

    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Risk tier", result.risk_tier.value)
    table.add_row("Threshold", f"{result.threshold:.3f}")
    table.add_row("Requires approval", "yes" if result.requires_approval else "no")
    table.add_row("Posterior", f"Beta({posterior.alpha:.1f}, {posterior.beta:.1f}), mean {posterior.mean:.3f}")
    table.add_row("Sampled rate", f"{result.sampled_rate:.3f}")
    table.add_row("UCB bonus", f"{result.ucb_bonus:.3f}")
    console.print(Panel(table, title=f"[bold]{candidate_id}[/bold] ({mode.value})", border_style="blue"))


@app.command()
def simulate(
    rate: float = typer.Option(0.8, "--rate", help="True success probability"),
    trials: int = typer.Option(100, "--trials", "-n", help="Number of simulated outcomes"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Random seed"),
):
    """Simulate Bernoulli outcomes and show the posterior converging."""
    if not 0.0 <= rate <= 1.0 or trials < 1:
        console.print("[bold red]Error:[/bold red] rate must be within [0, 1] and trials positive")
        raise typer.Exit(code=1)

    rng = np.random.default_rng(seed)
    manager = ExplorationManager(ThompsonConfig(seed=seed))
    step = max(trials // 10, 1)

    table = Table(title=f"Beta posterior for Bernoulli({rate})")
    table.add_column("Outcomes", justify="right")
    table.add_column("Mean", justify="right")
    table.add_column("95% interval", justify="right")
    table.add_column("Width", justify="right")
    table.add_column("Error", justify="right")

    for n in range(1, trials + 1):
        manager.record_outcome("simulated", bool(rng.random() < rate))
        if n % step == 0 or n == trials:
            mean = manager.mean("simulated")
            low, high = manager.credible_interval("simulated")
            table.add_row(str(n), f"{mean:.3f}", f"[{low:.3f}, {high:.3f}]", f"{high - low:.3f}", f"{abs(mean - rate):.3f}")

    console.print(table)


async def _train(traces: str, registry: Optional[str], weights: Optional[str],
                 candidate: Optional[str], router_config: RouterConfig):
    store = InMemoryTraceStore(traces)
    store.load()

    candidates = CandidateRegistry.load(registry) if registry else CandidateRegistry()
    engine = DecisionEngine(router_config, registry=candidates, trace_store=store)
    for tool in list(candidates.tools.values()):
        engine.register_tool(tool)
    for capability in list(candidates.capabilities.values()):
        engine.register_capability(capability)
    if weights and os.path.exists(weights):
        engine.scorer.load(weights)

    # Context and structure features come from the graph the traces describe
    await engine.learn_from_stored_traces()
    result = await engine.train_now(candidate)
    if result.trained:
        store.save()
        if weights:
            engine.scorer.save(weights)
    return result


@app.command()
def train(
    traces: str = typer.Argument(..., help="Trace store JSON file"),
    registry: Optional[str] = typer.Option(None, "--registry", "-r", help="Candidate registry JSON with embeddings"),
    weights: Optional[str] = typer.Option(None, "--weights", "-w", help="Scorer weights file to load and update"),
    candidate: Optional[str] = typer.Option(None, "--candidate", help="Only train on traces of this candidate"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Configuration file"),
):
    """Run prioritized replay training over stored traces."""
    router_config = _load_config(config)
    try:
        result = asyncio.run(_train(traces, registry, weights, candidate, router_config))
    except (RouterError, OSError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)

    if not result.trained:
        console.print(f"[yellow]Training skipped ({result.skip_reason.value}):[/yellow] {result.detail}")
        return

    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Traces", str(result.traces_used))
    table.add_row("Examples", str(result.examples_used))
    table.add_row("Loss", f"{result.loss:.4f}")
    table.add_row("Accuracy", f"{result.accuracy:.2%}")
    table.add_row("Priorities updated", str(result.priorities_updated))
    table.add_row("Weights version", str(result.weights_version))
    console.print(Panel(table, title="[bold]Replay training[/bold]", border_style="green"))


@app.command()
def stats(traces: str = typer.Argument(..., help="Trace store JSON file")):
    """Show trace store statistics."""
    store = InMemoryTraceStore(traces)
    try:
        store.load()
    except (RouterError, OSError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)

    summary = asyncio.run(store.get_stats())
    table = Table(show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Traces", str(summary["total"]))
    table.add_row("Success rate", f"{summary['success_rate']:.1%}")
    table.add_row("Average priority", f"{summary['avg_priority']:.3f}")
    table.add_row("Average duration", f"{summary['avg_duration_ms']:.1f} ms")
    console.print(Panel(table, title="[bold]Trace store[/bold]", border_style="blue"))


if __name__ == "__main__":
    app()
