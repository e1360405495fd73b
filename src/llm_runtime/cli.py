"""Command line interface for inspecting providers and usage ledgers."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from . import __version__, exit_codes
from .providers import (
    AdapterRegistry,
    ConfigurationError,
    CostTracker,
    CostTrackerConfig,
    InvalidRequestError,
    ProviderConfigManager,
)

console = Console()


def _build_registry() -> AdapterRegistry:
    return AdapterRegistry(config_manager=ProviderConfigManager())


def _instantiate(
    registry: AdapterRegistry, providers: tuple[str, ...] | list[str]
) -> tuple[list[str], dict[str, str]]:
    """Create adapters for ``providers``; return the ready ids and the errors."""
    ready = []
    errors = {}
    for provider in providers:
        try:
            registry.require(provider)
        except ConfigurationError as e:
            errors[provider] = e.message
        else:
            ready.append(provider)
    return ready, errors


@click.group()
@click.version_option(__version__, prog_name="llm-runtime")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Provider-agnostic LLM runtime tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
def providers() -> None:
    """List supported providers, their configuration status and features."""
    registry = _build_registry()
    config_manager = ProviderConfigManager()
    configured = set(config_manager.list_configured_providers())

    table = Table(title="Supported Providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Features", style="white")

    for provider in registry.get_supported_providers():
        flags = registry.get_provider_capabilities(provider)
        features = ", ".join(name for name, enabled in flags.items() if enabled)
        status = "✅ Configured" if provider in configured else "❌ Not configured"
        table.add_row(provider, status, features or "-")

    console.print(table)


@cli.command()
@click.argument("provider_ids", nargs=-1)
def models(provider_ids: tuple[str, ...]) -> None:
    """List models for PROVIDER_IDS (default: every configured provider)."""
    registry = _build_registry()
    unknown = [p for p in provider_ids if p not in registry.get_supported_providers()]
    if unknown:
        console.print(f"[red]Unknown provider(s): {', '.join(unknown)}[/red]")
        sys.exit(exit_codes.CONFIGURATION_ERROR)

    requested = provider_ids or tuple(registry.get_supported_providers())
    ready, errors = _instantiate(registry, requested)

    async def collect():
        try:
            return await registry.get_available_models(ready)
        finally:
            await registry.clear()

    available = asyncio.run(collect())

    table = Table(title="Available Models")
    table.add_column("Provider", style="cyan")
    table.add_column("Model", style="white")
    table.add_column("Context", justify="right")
    table.add_column("Cost/1M (in/out)", style="magenta")
    for provider, model_list in available.items():
        for info in model_list:
            table.add_row(
                provider,
                info.id,
                str(info.context_length),
                f"${info.input_cost:g}/${info.output_cost:g}",
            )
    console.print(table)

    if provider_ids:
        for provider, message in errors.items():
            console.print(f"[yellow]{provider}: {message}[/yellow]")
        if errors:
            sys.exit(exit_codes.CONFIGURATION_ERROR)


@cli.command()
@click.argument("provider_ids", nargs=-1)
def health(provider_ids: tuple[str, ...]) -> None:
    """Check configured providers and report latency."""
    registry = _build_registry()
    requested = provider_ids or tuple(registry.get_supported_providers())
    ready, errors = _instantiate(registry, requested)

    async def check_all():
        try:
            return await registry.health_check_all()
        finally:
            await registry.clear()

    results = asyncio.run(check_all()) if ready else {}

    table = Table(title="Provider Health")
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Latency", justify="right")
    table.add_column("Message", style="white")
    for provider, result in results.items():
        style = "green" if result.healthy else "red"
        latency = f"{result.latency_ms:.0f} ms" if result.latency_ms is not None else "-"
        table.add_row(
            provider, f"[{style}]{result.status}[/{style}]", latency, result.message or ""
        )
    if provider_ids:
        for provider, message in errors.items():
            table.add_row(provider, "[yellow]not configured[/yellow]", "-", message)
    console.print(table)

    if any(not result.healthy for result in results.values()):
        sys.exit(exit_codes.PROVIDER_ERROR)
    if provider_ids and errors:
        sys.exit(exit_codes.CONFIGURATION_ERROR)


@cli.command()
@click.argument("ledger", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format", "fmt", type=click.Choice(["json", "csv"]), default=None,
    help="Ledger format (default: from the file extension)",
)
@click.option("--provider", default="imported", help="Provider label for the report")
def usage(ledger: Path, fmt: str | None, provider: str) -> None:
    """Summarize an exported usage LEDGER."""
    fmt = fmt or ("csv" if ledger.suffix.lower() == ".csv" else "json")
    tracker = CostTracker(CostTrackerConfig(provider=provider))

    try:
        count = asyncio.run(tracker.import_data(ledger.read_text(), fmt))
    except (OSError, ValueError, KeyError, InvalidRequestError) as e:
        console.print(f"[red]Could not read {ledger}: {e}[/red]")
        sys.exit(exit_codes.INVALID_INPUT)

    stats = tracker.get_stats()
    table = Table(title=f"Usage for {provider} ({count} records)")
    table.add_column("Date", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right", style="magenta")
    for day in stats.daily_stats:
        table.add_row(day.date, str(day.requests), str(day.tokens), f"{day.cost:.6f}")
    table.add_row(
        "[bold]Total[/bold]",
        str(stats.total_requests),
        str(stats.total_tokens),
        f"[bold]{stats.total_cost:.6f} {stats.currency}[/bold]",
    )
    console.print(table)
