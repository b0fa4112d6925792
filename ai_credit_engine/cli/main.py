"""
CLI interface for the AI credit engine.

Operator commands for granting, allocating, deducting and reporting on
credits. Every command works against the database named in the config file
(or ``--db``).
"""

import logging
import sys
from dataclasses import replace
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_credit_engine.config.loader import EngineConfig, load_config_or_default
from ai_credit_engine.core.actor import ActorContext, ActorRole
from ai_credit_engine.core.engine import CreditEngine
from ai_credit_engine.core.errors import OperationResult
from ai_credit_engine.core.reporting import CostReport, ReportWindow

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1  # Refused or failed operation
EXIT_CODE_DISCREPANCY = 2  # Ledger and balances disagree


class CliState:
    def __init__(self, config: EngineConfig):
        self.config = config
        self._engine: Optional[CreditEngine] = None

    @property
    def engine(self) -> CreditEngine:
        if self._engine is None:
            self._engine = CreditEngine.from_config(self.config)
        return self._engine


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _actor(org: str, user: str, role: str) -> ActorContext:
    try:
        return ActorContext(org_id=org, user_id=user, role=ActorRole(role))
    except ValueError as e:
        console.print(f"[red]Invalid actor:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _finish(result: OperationResult, success_message: str) -> None:
    if result.success:
        console.print(f"[green]✓[/] {success_message}")
        sys.exit(EXIT_CODE_PASS)
    error = result.error.to_dict()
    console.print(f"[red]✗ {error['error']}:[/] {error['message']}")
    if error['details']:
        console.print(", ".join(f"{key}={value}" for key, value in error['details'].items()), style="dim")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML engine config"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """AI Credit Engine CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    try:
        config = load_config_or_default(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db_path:
        config = replace(config, database=replace(config.database, path=db_path))
    ctx.obj = CliState(config)
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Engine - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the credit ledger database."""
    try:
        engine = _state(ctx).engine
        console.print(f"[green]✓[/] Database initialized at {engine.store.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-member")
def add_member(
    ctx: typer.Context,
    org: str = typer.Option(..., "--org", help="Organization id"),
    user: str = typer.Option(..., "--user", help="User id"),
    role: str = typer.Option("member", "--role", help="owner, admin or member"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
):
    """Register an organization member."""
    try:
        _state(ctx).engine.add_member(org, user, role, name)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Added {user} to {org} as {role}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def grant(
    ctx: typer.Context,
    org: str = typer.Option(..., "--org", help="Organization id"),
    amount: int = typer.Option(..., "--amount", "-a", help="Monthly credits"),
):
    """Start a billing cycle with monthly credits."""
    result = _state(ctx).engine.grant_monthly_credits(org, amount)
    _finish(result, f"Granted {amount} monthly credits to {org}")


@app.command()
def topup(
    ctx: typer.Context,
    org: str = typer.Option(..., "--org", help="Organization id"),
    amount: int = typer.Option(..., "--amount", "-a", help="Credits purchased"),
    invoice: str = typer.Option(..., "--invoice", help="Invoice id"),
    total_cents: Optional[int] = typer.Option(None, "--total-cents", help="Amount paid in cents"),
):
    """Add purchased top-up credits."""
    result = _state(ctx).engine.grant_topup(org, amount, invoice, total_cents)
    if result.success and result["duplicate"]:
        console.print(f"[yellow]Invoice {invoice} was already applied[/]")
        sys.exit(EXIT_CODE_PASS)
    _finish(result, f"Added {amount} top-up credits to {org}")


@app.command()
def allocate(
    ctx: typer.Context,
    org: str = typer.Option(..., "--org", help="Organization id"),
    actor_user: str = typer.Option(..., "--as", help="Acting user id"),
    role: str = typer.Option("owner", "--role", help="Acting role"),
    member: str = typer.Option(..., "--member", "-m", help="Member receiving credits"),
    feature: str = typer.Option(..., "--feature", "-f", help="Feature"),
    amount: int = typer.Option(..., "--amount", "-a", help="Credits to allocate"),
):
    """Allocate org credits to a member for one feature."""
    result = _state(ctx).engine.allocate(_actor(org, actor_user, role), member, feature, amount)
    _finish(result, f"Allocated {amount} credits to {member} for {feature}")


@app.command()
def reclaim(
    ctx: typer.Context,
    org: str = typer.Option(..., "--org", help="Organization id"),
    actor_user: str = typer.Option(..., "--as", help="Acting user id"),
    role: str = typer.Option("owner", "--role", help="Acting role"),
    member: str = typer.Option(..., "--member", "-m", help="Member to reclaim from"),
    feature: str = typer.Option(..., "--feature", "-f", help="Feature"),
    amount: int = typer.Option(..., "--amount", "-a", help="Credits to reclaim"),
):
    """Return unused member credits to the org pool."""
    result = _state(ctx).engine.reclaim(_actor(org, actor_user, role), member, feature, amount)
    _finish(result, f"Reclaimed {amount} credits from {member} for {feature}")


@app.command()
def deduct(
    ctx: typer.Context,
    org: str = typer.Option(..., "--org", help="Organization id"),
    actor_user: str = typer.Option(..., "--as", help="Acting user id"),
    role: str = typer.Option("member", "--role", help="Acting role"),
    feature: str = typer.Option(..., "--feature", "-f", help="Feature"),
    amount: int = typer.Option(..., "--amount", "-a", help="Credits to deduct"),
    description: str = typer.Option("Manual deduction", "--description", "-d", help="Ledger description"),
):
    """Deduct credits as the given actor."""
    result = _state(ctx).engine.deduct(_actor(org, actor_user, role), feature, amount, description)
    message = f"Deducted {amount} credits"
    if result.success and result["entry"] is not None:
        message += f" ({result['balance_before']} -> {result['balance_after']})"
    _finish(result, message)


@app.command()
def balance(
    ctx: typer.Context,
    org: str = typer.Option(..., "--org", help="Organization id"),
):
    """Show an organization's credit pool."""
    pool = _state(ctx).engine.get_balance(org)
    if pool is None:
        console.print(f"[yellow]No credit pool for {org}[/]")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Credits for {org}")
    table.add_column("Monthly", justify="right")
    table.add_column("Monthly total", justify="right")
    table.add_column("Top-up", justify="right")
    table.add_column("Effective", justify="right")
    table.add_column("Period ends")
    table.add_row(
        str(pool.monthly_credits_remaining),
        str(pool.monthly_credits_total),
        str(pool.topup_credits_remaining),
        str(pool.effective_total),
        pool.period_end.strftime("%Y-%m-%d") if pool.period_end else "-"
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def team(
    ctx: typer.Context,
    org: str = typer.Option(..., "--org", help="Organization id"),
):
    """Show member allocations."""
    allocations = _state(ctx).engine.team_summary(org)
    if not allocations:
        console.print(f"[dim]No member allocations for {org}[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Team credits for {org}")
    table.add_column("Member")
    table.add_column("Feature")
    table.add_column("Allocated", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Used", justify="right")
    for allocation in allocations:
        table.add_row(
            allocation.user_id,
            allocation.feature,
            str(allocation.credits_allocated),
            str(allocation.credits_remaining),
            f"{(1 - allocation.remaining_fraction) * 100:.0f}%"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: Decimal) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _display_report(report: CostReport) -> None:
    summary = report.summary
    console.print("\n[bold]AI Cost & Margin Report[/bold]")
    console.print("-" * 40)
    console.print(f"Provider cost (USD): {_format_currency(summary.total_cost_usd)}")
    console.print(f"Provider cost: {summary.total_cost:,.2f}")
    console.print(f"Credits charged: {summary.total_credits_charged}")
    console.print(f"Revenue: {summary.revenue:,.2f}")
    console.print(f"Profit: {summary.profit:,.2f}")
    console.print(f"Margin: {summary.margin_pct:.1f}%")
    console.print(f"Requests: {summary.total_requests} ({summary.free_model_requests} free)")
    console.print(
        f"Top-up revenue: {report.topup_revenue.total:,.2f} "
        f"from {report.topup_revenue.count} invoice(s)"
    )

    orgs = Table(title="By organization")
    orgs.add_column("Organization")
    orgs.add_column("Credits used", justify="right")
    orgs.add_column("Requests", justify="right")
    orgs.add_column("Cost (USD)", justify="right")
    orgs.add_column("Monthly allocation", justify="right")
    for org in report.by_organization:
        orgs.add_row(org.organization_id, str(org.credits_used), str(org.requests),
                     _format_currency(org.cost_usd), str(org.monthly_allocation))
    console.print(orgs)

    models = Table(title="By model")
    models.add_column("Model")
    models.add_column("Provider")
    models.add_column("Requests", justify="right")
    models.add_column("Tokens in/out", justify="right")
    models.add_column("Credits", justify="right")
    models.add_column("Cost (USD)", justify="right")
    for model in report.by_model:
        name = f"{model.display_name} (free)" if model.is_free else model.display_name
        models.add_row(name, model.provider, str(model.requests),
                       f"{model.input_tokens}/{model.output_tokens}",
                       str(model.credits_charged), _format_currency(model.cost_usd))
    console.print(models)

    features = Table(title="By feature")
    features.add_column("Feature")
    features.add_column("Requests", justify="right")
    features.add_column("Credits", justify="right")
    features.add_column("Cost (USD)", justify="right")
    for feature in report.by_feature:
        features.add_row(feature.feature, str(feature.requests), str(feature.credits_charged),
                         _format_currency(feature.cost_usd))
    console.print(features)

    users = Table(title="By user")
    users.add_column("User")
    users.add_column("Requests", justify="right")
    users.add_column("Tokens in/out", justify="right")
    users.add_column("Credits", justify="right")
    for user in report.by_user:
        users.add_row(f"{user.user_name} ({user.user_id})", str(user.requests),
                      f"{user.input_tokens}/{user.output_tokens}", str(user.credits_charged))
    console.print(users)

    if report.recent_requests:
        recent = Table(title="Recent requests")
        recent.add_column("When")
        recent.add_column("User")
        recent.add_column("Feature")
        recent.add_column("Tokens in/out", justify="right")
        recent.add_column("Credits", justify="right")
        for request in report.recent_requests:
            credits = "free" if request.is_free else str(request.credits_charged)
            recent.add_row(request.created_at.strftime("%Y-%m-%d %H:%M"), request.user_name, request.feature,
                           f"{request.input_tokens}/{request.output_tokens}", credits)
        console.print(recent)


@app.command()
def report(
    ctx: typer.Context,
    period: str = typer.Option("30d", "--period", "-p", help="7d, 30d, 90d or all"),
    org: Optional[str] = typer.Option(None, "--org", help="Restrict to one organization"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Restrict to one model (id or display name)"),
):
    """Show provider cost, revenue and margin."""
    try:
        window = ReportWindow.from_period(period)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    result = _state(ctx).engine.get_cost_report(window, org_id=org, model=model)
    if result.summary.total_requests == 0:
        console.print("\n[bold yellow]No AI usage recorded in this period[/]")
    _display_report(result)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def verify(
    ctx: typer.Context,
    org: str = typer.Option(..., "--org", help="Organization id"),
    repair: bool = typer.Option(False, "--repair", help="Rewrite balances from the ledger"),
):
    """Check balances against a replay of the ledger."""
    engine = _state(ctx).engine
    problems = engine.verify_ledger(org)
    if not problems:
        console.print(f"[green]✓[/] Ledger and balances agree for {org}")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Discrepancies for {org}")
    table.add_column("Balance")
    table.add_column("Field")
    table.add_column("Ledger", justify="right")
    table.add_column("Stored", justify="right")
    table.add_column("Detail")
    for problem in problems:
        table.add_row(problem.balance, problem.field, str(problem.expected), str(problem.actual), problem.message)
    console.print(table)

    if repair:
        result = engine.repair_balances(org)
        _finish(result, f"Repaired {result.payload.get('repaired', 0)} balance row(s)")
    sys.exit(EXIT_CODE_DISCREPANCY)


@app.command()
def notifications(
    ctx: typer.Context,
    org: Optional[str] = typer.Option(None, "--org", help="Filter by organization"),
    user: Optional[str] = typer.Option(None, "--user", help="Filter by recipient"),
):
    """List queued notification requests."""
    requests = _state(ctx).engine.store.list_notifications(organization_id=org, user_id=user)
    if not requests:
        console.print("[dim]No notifications queued[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Notification outbox")
    table.add_column("Recipient")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Body")
    for request in requests:
        table.add_row(request.user_id, request.type, request.title, request.body)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
