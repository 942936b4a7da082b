"""
Sequence Context Engine - Command Line Interface

Inspect engine rules, validate skill results and look into persisted
sequence checkpoints and offloaded payloads.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from context_engine.compactor import ContextCompactor
from context_engine.config.loader import load_engine_rules
from context_engine.config.schema import EngineRules, StorageConfig
from context_engine.contracts import estimate_tokens, parse_skill_result
from context_engine.exceptions import CheckpointError, ContextEngineError, SkillContractError
from context_engine.observability.logging_config import configure_logging
from context_engine.persistence import SupabaseCheckpointStore
from context_engine.state_manager import SequenceStateManager

load_dotenv(Path(__file__).parent / ".env", override=True)

app = typer.Typer(
    name="context-engine",
    help="Sequence Context Engine - state and compaction for agent sequences",
)
console = Console()

configure_logging(level=logging.WARNING)
logger = logging.getLogger("context_engine.cli")


def _get_rules(config: Optional[Path]) -> EngineRules:
    """Load rules with a friendly error on failure."""
    try:
        return load_engine_rules(config)
    except ContextEngineError as e:
        console.print(Panel(
            f"[red]Invalid engine rules:[/]\n\n{e}",
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)


def _check_env_key(var_name: str, label: str) -> str:
    """Check that an environment variable is set. Shows a friendly error if missing."""
    value = os.environ.get(var_name, "").strip()
    if not value:
        console.print(Panel(
            f"[red]Missing required setting:[/] [bold]{var_name}[/]\n\n"
            f"This is needed for: [cyan]{label}[/]\n\n"
            f"Set it in your .env file:\n"
            f"  [dim]{var_name}=your_value_here[/]",
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)
    return value


def _get_client():
    from context_engine.integrations.supabase_client import get_supabase_client

    _check_env_key("SUPABASE_URL", "Database connection")
    _check_env_key("SUPABASE_SERVICE_KEY", "Database authentication")
    return get_supabase_client()


# =========================================================================
# Commands
# =========================================================================


@app.command()
def rules(
    config: Optional[Path] = typer.Option(None, help="Path to an engine rules YAML"),
):
    """Show the effective engine limits."""
    engine_rules = _get_rules(config)

    table = Table(title="Context Engine Rules")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow", justify="right")

    limits = engine_rules.findings
    table.add_row("Max key facts", str(limits.max_key_facts))
    table.add_row("Max action items", str(limits.max_action_items))
    table.add_row("Max risks", str(limits.max_risks))
    table.add_row("Max opportunities", str(limits.max_opportunities))

    budgets = engine_rules.token_budgets
    table.add_row("System prompt tokens", str(budgets.system_prompt))
    table.add_row("Sequence state tokens", str(budgets.sequence_state))
    table.add_row("Skill context tokens", str(budgets.skill_context))
    table.add_row("Skill result tokens", str(budgets.skill_result))
    table.add_row("Per-step ceiling", str(budgets.per_step_ceiling))

    triggers = engine_rules.compact_when
    table.add_row("Compact above key facts", str(triggers.key_facts_exceed))
    table.add_row("Compact above references", str(triggers.references_exceed))
    table.add_row("Strict archive", "yes" if triggers.strict_archive else "no")
    table.add_row("Max summary words", str(engine_rules.max_summary_words))

    console.print(table)


@app.command()
def validate(
    file: Path = typer.Argument(..., help="JSON file holding one skill result"),
):
    """Validate a skill result against the result contract."""
    try:
        raw = json.loads(file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Could not read {file}:[/] {e}")
        raise typer.Exit(1)

    try:
        result = parse_skill_result(raw)
    except SkillContractError as e:
        errors = e.details.get("errors") or []
        lines = "\n".join(
            f"  [dim]{'.'.join(str(p) for p in err.get('loc', ()))}[/]: {err.get('msg')}"
            for err in errors
        )
        console.print(Panel(
            f"[red]{e}[/]" + (f"\n\n{lines}" if lines else ""),
            title=f"Invalid: {file.name}",
            border_style="red",
        ))
        raise typer.Exit(1)

    flags = ", ".join(f.value for f in result.hints.flags) if result.hints else ""
    console.print(Panel(
        f"[green]Result contract valid![/]\n\n"
        f"Skill: {result.meta.skill_id} v{result.meta.skill_version}\n"
        f"Status: {result.status.value}\n"
        f"Summary words: {len(result.summary.split())}\n"
        f"Data tokens (est.): {estimate_tokens(result.data)}\n"
        f"References: {len(result.references)}\n"
        f"Flags: {flags or 'none'}",
        title=f"Result: {file.name}",
    ))


@app.command()
def inspect(
    instance_id: str = typer.Argument(..., help="Sequence instance id"),
):
    """Load a sequence checkpoint and show its progress and findings."""

    async def _run():
        store = SupabaseCheckpointStore(_get_client())
        manager = SequenceStateManager(store, organization_id="", user_id="")
        try:
            state = await manager.load(instance_id)
        except CheckpointError as e:
            console.print(f"[red]Could not load checkpoint:[/] {e}")
            raise typer.Exit(1)

        if state is None:
            console.print(f"[yellow]No checkpoint found for {instance_id}[/]")
            raise typer.Exit(1)

        execution = state.execution
        findings = state.context.findings
        budget = state.token_budget
        console.print(Panel(
            f"Sequence: {state.sequence_id} ({state.sequence_type.value})\n"
            f"Status: [bold]{manager.status}[/]\n"
            f"Step: {execution.current_step}/{execution.total_steps}\n"
            f"Started: {execution.started_at}\n"
            f"Tokens used (est.): {budget.total_used} / {budget.per_step_ceiling}"
            + (" [red](over budget)[/]" if budget.over_budget else ""),
            title=instance_id,
        ))

        if execution.step_history:
            steps = Table(title="Steps")
            steps.add_column("#", justify="right")
            steps.add_column("Skill", style="cyan")
            steps.add_column("Status")
            steps.add_column("Error", style="red")
            for step in execution.step_history:
                steps.add_row(str(step.step_index), step.skill_key, step.status, step.error or "")
            console.print(steps)

        table = Table(title="Findings")
        table.add_column("Kind", style="cyan")
        table.add_column("Entry")
        for fact in findings.key_facts:
            table.add_row("fact", fact)
        for item in findings.action_items:
            table.add_row("action", f"{item.task} [dim]({item.priority.value}, {item.status})[/]")
        for risk in findings.risks:
            table.add_row("risk", f"{risk.description} [dim]({risk.severity.value})[/]")
        for opportunity in findings.opportunities:
            table.add_row("opportunity", opportunity.description)
        console.print(table)

        for warning in budget.warnings:
            console.print(f"[yellow]⚠ {warning}[/]")

    asyncio.run(_run())


@app.command()
def retrieve(
    location: str = typer.Argument(..., help="Reference location, e.g. supabase://skill-outputs/..."),
    organization: str = typer.Option("cli", help="Organization id for the storage config"),
):
    """Print the full payload behind a reference location."""

    async def _run():
        compactor = ContextCompactor(
            _get_client(), StorageConfig(organization_id=organization)
        )
        payload = await compactor.retrieve(location)
        if payload is None:
            console.print(f"[yellow]Nothing found at {location}[/]")
            raise typer.Exit(1)
        console.print_json(json.dumps(payload, default=str))

    asyncio.run(_run())


if __name__ == "__main__":
    app()
