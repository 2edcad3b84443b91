"""
CLI interface for Dance Timer.

Provides command-line access to the timer, pricing rules, dance history and
user preferences.
"""

import asyncio
import os
import signal
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
import typer
import yaml
from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from dance_timer.config.loader import TimerSettings, load_settings_or_default
from dance_timer.config.preferences import PreferenceStore
from dance_timer.core.billing import quote as billing_quote
from dance_timer.core.billing import timeline_marks
from dance_timer.core.controls import KeyboardControls, TriggerBindings
from dance_timer.core.formatting import (
    describe_state,
    format_cost,
    format_duration,
    format_start_time,
)
from dance_timer.core.state_machine import TimerStateMachine
from dance_timer.core.timer_state import Idle, Running, TimerState
from dance_timer.logging_config import configure_logging
from dance_timer.storage.models import PriceTier, PricingRule, validate_tier
from dance_timer.storage.repository import (
    HistoryRepository,
    RuleRepository,
    initialize_schema,
)
from dance_timer.storage.stores import AsyncHistoryStore, AsyncRuleStore

logger = structlog.get_logger(__name__)

app = typer.Typer()
rules_app = typer.Typer(help="Manage pricing rules.")
history_app = typer.Typer(help="Browse and clean up dance history.")
prefs_app = typer.Typer(help="Show and change preferences.")
app.add_typer(rules_app, name="rules")
app.add_typer(history_app, name="history")
app.add_typer(prefs_app, name="prefs")

console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_TRUE_WORDS = {"true", "yes", "on", "1"}
_FALSE_WORDS = {"false", "no", "off", "0"}


@dataclass
class AppContext:
    """Objects shared by every command of one invocation."""
    settings: TimerSettings
    rules: RuleRepository
    history: HistoryRepository
    preferences: PreferenceStore


class ConsoleFeedback:
    """Terminal bell in place of a vibration motor."""

    def vibrate(self) -> None:
        console.bell()


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _context(ctx: typer.Context) -> AppContext:
    return ctx.obj


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """Dance Timer CLI."""
    configure_logging(log_level)

    try:
        settings = load_settings_or_default(config)
    except (FileNotFoundError, yaml.YAMLError, ValueError) as e:
        _fail(f"Invalid settings: {e}")

    db_path = db or settings.database_path
    try:
        initialize_schema(db_path)
    except Exception as e:
        _fail(f"Cannot open database {db_path}: {e}")

    ctx.obj = AppContext(
        settings=settings,
        rules=RuleRepository(db_path),
        history=HistoryRepository(db_path),
        preferences=PreferenceStore(settings.preferences_path),
    )

    if ctx.invoked_subcommand is None:
        console.print("Dance Timer - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the database and insert the preset pricing rules."""
    app_ctx = _context(ctx)
    if app_ctx.rules.seed_default_rules():
        console.print("[green]✓[/] Database initialized with preset pricing rules")
    else:
        console.print("[green]✓[/] Database already initialized")

    preferences = app_ctx.preferences
    if preferences.get().first_launch:
        console.print("\n[bold]Welcome to Dance Timer![/]")
        console.print("Start a session with `dance-timer run`. While it runs:")
        console.print(f"  {KeyboardControls.HELP}")
        console.print("Change the trigger gesture with `dance-timer prefs set trigger_mode rapid_repeat`.")
        preferences.mark_first_launch_done()
    sys.exit(EXIT_CODE_PASS)


def _resolve_rule(app_ctx: AppContext, rule_id: Optional[int]) -> Optional[PricingRule]:
    if rule_id is None:
        return app_ctx.rules.get_default_rule_with_tiers()
    rule = app_ctx.rules.get_rule_with_tiers(rule_id)
    if rule is None:
        _fail(f"Pricing rule {rule_id} not found")
    return rule


def _describe_tiers(tiers) -> str:
    if not tiers:
        return "-"
    return ", ".join(
        f"{tier.duration_minutes:g} min / {format_cost(tier.price)}" for tier in tiers
    )


@app.command()
def quote(
    ctx: typer.Context,
    seconds: int = typer.Argument(..., min=0, help="Elapsed dance time in seconds"),
    rule_id: Optional[int] = typer.Option(None, "--rule", "-r", help="Rule id (default rule if omitted)"),
):
    """Show what a dance of SECONDS would cost."""
    app_ctx = _context(ctx)
    rule = _resolve_rule(app_ctx, rule_id)
    tiers = rule.sorted_tiers if rule else ()
    if rule is None:
        console.print("[yellow]No pricing rule configured; nothing is billed[/]")

    result = billing_quote(seconds, tiers, app_ctx.settings.grace_seconds)

    table = Table(title=f"Quote for {format_duration(seconds)}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Rule", rule.name if rule else "-")
    table.add_row("Songs charged", str(result.song_count))
    table.add_row("Cost", format_cost(result.cost))
    table.add_row("Current song", str(result.current_song_index + 1))
    table.add_row("In grace window", "yes" if result.is_in_grace_period else "no")
    if result.is_in_grace_period:
        table.add_row("Grace remaining", f"{result.grace_remaining_seconds}s")
    console.print(table)


@app.command()
def marks(
    ctx: typer.Context,
    rule_id: Optional[int] = typer.Option(None, "--rule", "-r", help="Rule id (default rule if omitted)"),
    max_minutes: float = typer.Option(60.0, "--max-minutes", min=0, help="Last minute to show"),
):
    """List the points where the next song starts being charged."""
    app_ctx = _context(ctx)
    rule = _resolve_rule(app_ctx, rule_id)
    if rule is None or not rule.tiers:
        console.print("[yellow]No pricing rule configured[/]")
        return

    table = Table(title=f"Charge points for {rule.name}")
    table.add_column("At", justify="right")
    table.add_column("Total", justify="right")
    for minute, cost in timeline_marks(rule.sorted_tiers, max_minutes):
        table.add_row(format_duration(int(round(minute * 60))), format_cost(cost))
    console.print(table)


def _attach_keyboard(loop: asyncio.AbstractEventLoop, on_char: Callable[[str], bool]) -> Callable[[], None]:
    """Feed stdin key presses to ``on_char``; returns a function that detaches."""
    try:
        fd = sys.stdin.fileno()
    except (AttributeError, OSError, ValueError):
        # In-memory stdin (tests, embedding): replay whatever was written to it
        for char in sys.stdin.read():
            loop.call_soon(on_char, char)
        return lambda: None

    restore_terminal = None
    if os.isatty(fd):
        import termios
        import tty

        saved = termios.tcgetattr(fd)
        tty.setcbreak(fd)

        def restore_terminal():
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)

    def read_keys() -> None:
        data = os.read(fd, 64)
        if not data:
            loop.remove_reader(fd)
            return
        for char in data.decode(errors="ignore"):
            on_char(char)

    try:
        loop.add_reader(fd, read_keys)
    except NotImplementedError:
        logger.warning("keyboard_unavailable", reason="event loop cannot watch stdin")
        if restore_terminal is not None:
            restore_terminal()
        return lambda: None

    def detach() -> None:
        loop.remove_reader(fd)
        if restore_terminal is not None:
            restore_terminal()

    return detach


async def _run_session(app_ctx: AppContext, auto: bool, minutes: Optional[float]) -> TimerState:
    machine = TimerStateMachine(
        AsyncRuleStore(app_ctx.rules),
        AsyncHistoryStore(app_ctx.history),
        feedback=ConsoleFeedback(),
        preferences=app_ctx.preferences,
        settings=app_ctx.settings,
    )
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    bindings = TriggerBindings(machine, app_ctx.preferences, settings=app_ctx.settings)
    keyboard = KeyboardControls(bindings, on_quit=stop_requested.set)
    try:
        loop.add_signal_handler(signal.SIGINT, stop_requested.set)
        signal_handler_installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        signal_handler_installed = False

    detach_keyboard = None
    try:
        console.print(f"[dim]Keys: {KeyboardControls.HELP}[/]")
        with Live(Text("Starting..."), console=console, refresh_per_second=4) as live:
            def on_state(state: TimerState) -> None:
                live.update(Text(describe_state(state)))
                # Stopped with a key or auto-start cancelled
                if not isinstance(state, Running):
                    stop_requested.set()

            unsubscribe = machine.subscribe(on_state)
            await machine.start(is_auto=auto)
            detach_keyboard = _attach_keyboard(loop, keyboard.on_char)
            timeout = minutes * 60 if minutes is not None else None
            try:
                await asyncio.wait_for(stop_requested.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
            if machine.is_running:
                machine.stop()
            unsubscribe()
        await bindings.drain()
        await machine.drain()
    finally:
        if detach_keyboard is not None:
            detach_keyboard()
        machine.close()
        if signal_handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    return machine.state


@app.command()
def run(
    ctx: typer.Context,
    auto: bool = typer.Option(False, "--auto", help="Mark the session as auto-started"),
    minutes: Optional[float] = typer.Option(None, "--minutes", "-m", min=0, help="Stop automatically after this many minutes"),
):
    """Time a dance session in the terminal. Press q or Ctrl-C to stop."""
    app_ctx = _context(ctx)
    try:
        final_state = asyncio.run(_run_session(app_ctx, auto, minutes))
    except Exception as e:
        logger.exception("session_failed")
        _fail(str(e))
    if isinstance(final_state, Idle):
        console.print("[yellow]Auto-start cancelled; nothing was recorded[/]")
    else:
        console.print(describe_state(final_state))
    sys.exit(EXIT_CODE_PASS)


# -- rules --------------------------------------------------------------------

@rules_app.command("list")
def rules_list(ctx: typer.Context):
    """List every pricing rule."""
    rules = _context(ctx).rules.list_rules()
    if not rules:
        console.print("[yellow]No pricing rules. Run `dance-timer init` to add the presets.[/]")
        return

    table = Table(title="Pricing Rules")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Default", justify="center")
    table.add_column("Tiers")
    for rule in rules:
        table.add_row(
            str(rule.id),
            rule.name,
            "[green]✓[/]" if rule.is_default else "",
            _describe_tiers(rule.sorted_tiers),
        )
    console.print(table)


@rules_app.command("add")
def rules_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Rule name"),
    minutes: float = typer.Option(..., "--minutes", help="Minutes per song"),
    price: float = typer.Option(..., "--price", help="Price per song"),
    default: bool = typer.Option(False, "--default", help="Make this the default rule"),
):
    """Create a pricing rule with one tier."""
    try:
        tier = validate_tier(minutes, price)
        rule_id = _context(ctx).rules.create_rule(name, [tier], is_default=default)
    except ValueError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Created rule {rule_id}: {name.strip()}")


@rules_app.command("edit")
def rules_edit(
    ctx: typer.Context,
    rule_id: int = typer.Argument(..., help="Rule id"),
    name: Optional[str] = typer.Option(None, "--name", help="New name"),
    minutes: Optional[float] = typer.Option(None, "--minutes", help="New minutes per song"),
    price: Optional[float] = typer.Option(None, "--price", help="New price per song"),
):
    """Rename a rule or change its tier."""
    repository = _context(ctx).rules
    rule = repository.get_rule_with_tiers(rule_id)
    if rule is None:
        _fail(f"Pricing rule {rule_id} not found")

    tiers: List[PriceTier] = list(rule.sorted_tiers)
    if minutes is not None or price is not None:
        current = tiers[0] if tiers else None
        if current is None and (minutes is None or price is None):
            _fail("Both --minutes and --price are required for a rule without tiers")
        try:
            tier = validate_tier(
                minutes if minutes is not None else current.duration_minutes,
                price if price is not None else current.price,
            )
        except ValueError as e:
            _fail(str(e))
        tiers = [tier] + tiers[1:]

    try:
        repository.update_rule(rule_id, name if name is not None else rule.name, tiers)
    except ValueError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Updated rule {rule_id}")


@rules_app.command("default")
def rules_default(ctx: typer.Context, rule_id: int = typer.Argument(..., help="Rule id")):
    """Make a rule the default used for new sessions."""
    if not _context(ctx).rules.set_as_default(rule_id):
        _fail(f"Pricing rule {rule_id} not found")
    console.print(f"[green]✓[/] Rule {rule_id} is now the default")


@rules_app.command("delete")
def rules_delete(ctx: typer.Context, rule_id: int = typer.Argument(..., help="Rule id")):
    """Delete a rule. History keeps its own copy of the rule name."""
    if not _context(ctx).rules.delete_rule(rule_id):
        _fail(f"Pricing rule {rule_id} not found")
    console.print(f"[green]✓[/] Deleted rule {rule_id}")


# -- history ------------------------------------------------------------------

@history_app.command("list")
def history_list(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of records to show"),
    from_date: Optional[datetime] = typer.Option(None, "--from", formats=["%Y-%m-%d"], help="First day to include"),
    to_date: Optional[datetime] = typer.Option(None, "--to", formats=["%Y-%m-%d"], help="Last day to include"),
):
    """Show recent dance sessions, newest first."""
    history = _context(ctx).history
    if from_date is None and to_date is None:
        records = history.get_all(limit=limit)
    else:
        start = from_date or datetime.min
        # --to names a whole day
        end = to_date + timedelta(days=1) if to_date else datetime.max
        records = history.get_by_date_range(start, end)[:limit]
    if not records:
        console.print("[yellow]No dance history yet[/]")
        return

    table = Table(title="Dance History")
    table.add_column("ID", justify="right")
    table.add_column("Date")
    table.add_column("Start")
    table.add_column("Duration", justify="right")
    table.add_column("Cost", justify="right", style="green")
    table.add_column("Rule", style="cyan")
    for record in records:
        table.add_row(
            str(record.id),
            record.start_time.strftime("%Y-%m-%d"),
            format_start_time(record.start_time),
            format_duration(record.duration_seconds),
            format_cost(record.cost),
            record.pricing_rule_name,
        )
    console.print(table)


@history_app.command("show")
def history_show(ctx: typer.Context, record_id: int = typer.Argument(..., help="Record id")):
    """Show every detail of one dance record."""
    record = _context(ctx).history.get_by_id(record_id)
    if record is None:
        _fail(f"Record {record_id} not found")

    table = Table(title=f"Dance {record_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Start", record.start_time.strftime("%Y-%m-%d %H:%M:%S"))
    table.add_row("End", record.end_time.strftime("%Y-%m-%d %H:%M:%S"))
    table.add_row("Duration", format_duration(record.duration_seconds))
    table.add_row("Cost", format_cost(record.cost))
    table.add_row("Rule", record.pricing_rule_name)
    console.print(table)


@history_app.command("summary")
def history_summary(ctx: typer.Context):
    """Show spending for today, this week and this month."""
    history = _context(ctx).history
    table = Table(title="Spending")
    table.add_column("Period", style="cyan")
    table.add_column("Total", justify="right", style="green")
    table.add_row("Today", format_cost(history.today_cost()))
    table.add_row("This week", format_cost(history.week_cost()))
    table.add_row("This month", format_cost(history.month_cost()))
    table.add_row("Sessions", str(history.total_count()))
    console.print(table)


@history_app.command("delete")
def history_delete(ctx: typer.Context, record_id: int = typer.Argument(..., help="Record id")):
    """Delete one dance record."""
    if not _context(ctx).history.delete(record_id):
        _fail(f"Record {record_id} not found")
    console.print(f"[green]✓[/] Deleted record {record_id}")


@history_app.command("clear")
def history_clear(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete all dance history."""
    if not yes and not typer.confirm("Delete all dance history?"):
        console.print("Aborted")
        return
    removed = _context(ctx).history.delete_all()
    console.print(f"[green]✓[/] Deleted {removed} records")


# -- preferences --------------------------------------------------------------

@prefs_app.command("show")
def prefs_show(ctx: typer.Context):
    """Show every preference."""
    table = Table(title="Preferences")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in sorted(_context(ctx).preferences.get().to_dict().items()):
        table.add_row(key, str(value).lower() if isinstance(value, bool) else str(value))
    console.print(table)


def _parse_preference_value(value: str):
    lowered = value.strip().lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    return lowered


@prefs_app.command("set")
def prefs_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Preference key"),
    value: str = typer.Argument(..., help="New value"),
):
    """Change one preference, e.g. `prefs set trigger_mode rapid_repeat`."""
    try:
        _context(ctx).preferences.update(**{key: _parse_preference_value(value)})
    except ValueError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] {key} = {value}")


if __name__ == "__main__":
    app()
