"""
CLI interface for AI Request Router.

Provides command-line access to budgets, quotas, model selection and
the task store.
"""

import logging
import sys
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_request_router.config.loader import RoutingConfig, load_routing_config
from ai_request_router.core.budget import BudgetAllocator, BudgetState, select_model
from ai_request_router.core.orchestrator import RequestOrchestrator
from ai_request_router.core.pricing import Complexity
from ai_request_router.core.quota import QuotaEnforcer
from ai_request_router.core.simulation import SimulationVerdict, simulate_budget_run
from ai_request_router.core.tasks import TaskManager
from ai_request_router.core.tiers import Tier, normalize_tier
from ai_request_router.sdk.gateways import GenerationGateway
from ai_request_router.sdk.openai_client import (
    OpenAIChatGateway,
    OpenAIImageGateway,
    OpenAIInterpretationGateway,
)
from ai_request_router.storage.db import DEFAULT_DB_PATH
from ai_request_router.storage.models import TaskStatus, TaskType
from ai_request_router.storage.repository import (
    TaskRepository,
    UsageRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_WARN = 0  # Non-failing warning
EXIT_CODE_FAIL = 1  # Failing error


@dataclass
class CliState:
    db_path: str = DEFAULT_DB_PATH
    config: Optional[RoutingConfig] = None


def _verdict_to_exit_code(verdict: SimulationVerdict) -> int:
    """Convert simulation verdict to CLI exit code."""
    return {
        SimulationVerdict.PASS: EXIT_CODE_PASS,
        SimulationVerdict.WARN: EXIT_CODE_WARN,
        SimulationVerdict.FAIL: EXIT_CODE_FAIL,
    }[verdict]


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _parse_task_type(value: str) -> TaskType:
    task_type = TaskType.parse(value)
    if task_type is None:
        valid = ", ".join(t.value for t in TaskType)
        raise typer.BadParameter(f"unknown task type '{value}' (expected one of: {valid})")
    return task_type


def _build_gateways() -> Dict[TaskType, GenerationGateway]:
    chat = OpenAIChatGateway()
    return {
        TaskType.CHAT: chat,
        TaskType.PPT: chat,
        TaskType.IMAGE: OpenAIImageGateway(),
    }


def _build_orchestrator(state: CliState) -> RequestOrchestrator:
    config = state.config
    return RequestOrchestrator(
        db_path=state.db_path,
        gateways=_build_gateways(),
        interpretation_gateway=OpenAIInterpretationGateway(
            model=config.runtime.interpretation_model
        ),
        config=config,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(
        DEFAULT_DB_PATH, "--db", envvar="AI_ROUTER_DB", help="SQLite database path"
    ),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", envvar="AI_ROUTER_CONFIG", help="YAML config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Request Router CLI."""
    _setup_logging(verbose)
    try:
        routing_config = load_routing_config(config)
    except Exception as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = CliState(db_path=db, config=routing_config)
    if ctx.invoked_subcommand is None:
        console.print("AI Request Router - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the AI Request Router database."""
    try:
        initialize_schema(ctx.obj.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show tier budgets and the configured runtime settings."""
    config = ctx.obj.config
    table = Table(title="Tier Budgets")
    table.add_column("Tier")
    table.add_column("Monthly budget", justify="right")
    table.add_column("Free chat model")
    for tier in Tier:
        table.add_row(
            tier.value,
            _format_currency(config.pricing.get_tier_budget(tier)),
            config.pricing.get_free_model(tier, TaskType.CHAT),
        )
    console.print(table)
    runtime = config.runtime
    console.print(
        f"Database: {ctx.obj.db_path}  |  warning at {runtime.warning_fraction:.0%} "
        f"remaining  |  processing timeout {runtime.processing_timeout_seconds}s"
    )


@app.command("select-model")
def select_model_command(
    ctx: typer.Context,
    task_type: str = typer.Option("chat", "--task-type", "-t", help="Task type"),
    tier: str = typer.Option("free", "--tier", help="Subscription tier"),
    complexity: str = typer.Option("medium", "--complexity", help="simple, medium or complex"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Preferred model"),
    spent: float = typer.Option(0.0, "--spent", "-s", help="Month-to-date spend (USD)"),
):
    """Show which model a request would get for a given spend."""
    pricing = ctx.obj.config.pricing
    parsed_type = _parse_task_type(task_type)
    parsed_tier = normalize_tier(tier)
    preferred = model or pricing.preferred_model(
        parsed_type, Complexity.parse(complexity), parsed_tier
    )
    remaining = max(pricing.get_tier_budget(parsed_tier) - Decimal(str(spent)), Decimal("0"))
    selection = select_model(preferred, remaining, parsed_type, parsed_tier, pricing)

    console.print(f"\n[bold]Preferred:[/bold] {preferred} ({_format_currency(pricing.get_model_cost(preferred))})")
    console.print(f"[bold]Remaining budget:[/bold] {_format_currency(remaining)}")
    console.print(f"[bold]Selected:[/bold] {selection.model} ({_format_currency(selection.cost)})")
    if selection.downgraded:
        console.print(f"[yellow]Downgraded:[/] {selection.reason}")


@app.command("check-access")
def check_access(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner id"),
    feature: str = typer.Option("chat", "--feature", "-f", help="Task type"),
    tier: str = typer.Option("free", "--tier", help="Subscription tier"),
):
    """Check whether an owner may start one more generation."""
    try:
        enforcer = _build_enforcer(ctx.obj)
        decision = enforcer.check_access(owner, tier, _parse_task_type(feature))
    except typer.BadParameter:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if decision.allowed:
        console.print(
            f"[green]✓ Allowed[/] {decision.remaining} remaining "
            f"({decision.binding_window.value} window)"
        )
        if decision.warning:
            console.print(f"[yellow]Warning:[/] {decision.warning}")
        sys.exit(EXIT_CODE_PASS)

    label = "Upgrade required" if decision.upgrade_required else "Denied"
    console.print(f"[red]✗ {label}[/] {decision.reason}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner id"),
    tier: str = typer.Option("free", "--tier", help="Subscription tier"),
):
    """Show quota usage and month-to-date spend for an owner."""
    state = ctx.obj
    try:
        enforcer = _build_enforcer(state)
        decisions = enforcer.usage_summary(owner, tier)
        budget = _budget_state(state, owner, tier)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Usage for {owner} ({normalize_tier(tier).value})")
    table.add_column("Feature")
    table.add_column("Daily", justify="right")
    table.add_column("Weekly", justify="right")
    table.add_column("Monthly", justify="right")
    table.add_column("Status")
    for decision in decisions:
        by_kind = {w.kind.value: w for w in decision.windows}
        cells = [
            f"{by_kind[k].used}/{by_kind[k].cap}" if k in by_kind else "-"
            for k in ("daily", "weekly", "monthly")
        ]
        if decision.upgrade_required:
            status_text = "[dim]upgrade required[/]"
        elif decision.allowed:
            status_text = "[yellow]low[/]" if decision.warning else "[green]ok[/]"
        else:
            status_text = "[red]exhausted[/]"
        table.add_row(decision.feature.value, *cells, status_text)
    console.print(table)

    console.print(
        f"Spend: {_format_currency(budget.amount_used)} of "
        f"{_format_currency(budget.monthly_budget)}  |  "
        f"remaining {_format_currency(budget.amount_remaining)}  |  "
        f"projected {_format_currency(budget.projected_monthly_spend)}"
    )


@app.command()
def tasks(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner id"),
    active: bool = typer.Option(False, "--active", "-a", help="Only pending/processing tasks"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows"),
):
    """List an owner's generation tasks."""
    statuses = [TaskStatus.PENDING, TaskStatus.PROCESSING] if active else None
    try:
        rows = TaskRepository(ctx.obj.db_path).list_by_owner(owner, statuses, limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("\n[dim]No tasks found.[/]")
        return

    table = Table(title=f"Tasks for {owner}")
    table.add_column("Id")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Model")
    table.add_column("Cost", justify="right")
    table.add_column("Created")
    for task in rows:
        table.add_row(
            task.id,
            task.task_type.value,
            task.status.value,
            str(task.input_params.get("model", "-")),
            _format_currency(task.cost_deducted),
            task.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def resume(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner id"),
):
    """Re-dispatch an owner's pending tasks and wait for them to finish."""
    try:
        orchestrator = _build_orchestrator(ctx.obj)
        resumed = orchestrator.resume_pending_tasks(owner)
        orchestrator.shutdown(wait=True)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Resumed {len(resumed)} pending task(s)")


@app.command()
def reconcile(
    ctx: typer.Context,
    timeout: Optional[int] = typer.Option(
        None, "--timeout", help="Seconds after which a processing task counts as stuck"
    ),
):
    """Fail tasks stuck in processing past the timeout."""
    runtime = ctx.obj.config.runtime
    try:
        manager = TaskManager(
            TaskRepository(ctx.obj.db_path),
            max_workers=1,
            processing_timeout_seconds=runtime.processing_timeout_seconds,
        )
        failed = manager.reconcile_stale_tasks(timeout)
        manager.shutdown()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Failed {len(failed)} stale task(s)")


@app.command()
def simulate(
    ctx: typer.Context,
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Preferred model"),
    task_type: str = typer.Option("image", "--task-type", "-t", help="Task type"),
    tier: str = typer.Option("starter", "--tier", help="Subscription tier"),
    complexity: str = typer.Option("simple", "--complexity", help="simple, medium or complex"),
    requests: int = typer.Option(12, "--requests", "-r", help="Number of requests"),
    spent: float = typer.Option(0.0, "--spent", "-s", help="Month-to-date spend (USD)"),
    enforced: bool = typer.Option(
        False, "--enforced", "-e", help="Exit with error code if the free floor is reached"
    ),
):
    """
    Simulate repeated requests against a tier's monthly budget.

    This is a read-only operation that shows when the selector starts
    downgrading and when it falls back to the free model.
    """
    pricing = ctx.obj.config.pricing
    try:
        parsed_type = _parse_task_type(task_type)
        parsed_tier = normalize_tier(tier)
        preferred = model or pricing.preferred_model(
            parsed_type, Complexity.parse(complexity), parsed_tier
        )
        result = simulate_budget_run(
            preferred,
            parsed_type,
            parsed_tier,
            requests,
            starting_spend=Decimal(str(spent)),
            pricing=pricing,
        )
    except typer.BadParameter:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_simulation_result(result)

    if enforced:
        sys.exit(_verdict_to_exit_code(result.overall_verdict))
    sys.exit(EXIT_CODE_PASS)


def _build_enforcer(state: CliState) -> QuotaEnforcer:
    runtime = state.config.runtime
    return QuotaEnforcer(
        UsageRepository(state.db_path),
        quotas=state.config.quotas,
        warning_fraction=runtime.warning_fraction,
        daily_reset_hour=runtime.daily_reset_hour_utc,
        week_start_day=runtime.week_start_day,
    )


def _budget_state(state: CliState, owner: str, tier: str) -> BudgetState:
    allocator = BudgetAllocator(UsageRepository(state.db_path), pricing=state.config.pricing)
    return allocator.get_budget_state(owner, tier)


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(float(amount)):,.2f}"


def _display_simulation_result(result):
    """Display simulation results in a clean, financial format."""
    console.print("\n[bold]Budget Simulation Result[/bold]")
    console.print("-" * 40)
    console.print(
        f"Tier: {result.tier.value}  |  budget {_format_currency(result.monthly_budget)}"
        f"  |  preferred {result.preferred_model}"
    )

    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Model")
    table.add_column("Cost", justify="right")
    table.add_column("Downgraded")
    for step in result.steps:
        table.add_row(
            str(step.request_number),
            _format_currency(step.remaining_before),
            step.selection.model,
            _format_currency(step.selection.cost),
            "yes" if step.selection.downgraded else "",
        )
    console.print(table)

    console.print(f"Total spend: {_format_currency(result.total_spend)}")
    if result.first_downgrade is not None:
        console.print(f"First downgrade at request {result.first_downgrade}")
    if result.first_free is not None:
        console.print(f"Free model from request {result.first_free}")
    console.print(f"\n[bold]Verdict:[/bold] {result.overall_verdict.name}")


if __name__ == "__main__":
    app()
