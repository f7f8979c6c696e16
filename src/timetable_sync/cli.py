"""
Command-line interface for Timetable Sync.
"""

import logging
import uuid
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from timetable_sync.colors import available_colors
from timetable_sync.colors import map_color
from timetable_sync.db import EventStore
from timetable_sync.db import query_status_summary
from timetable_sync.models import DEFAULT_CONFIG
from timetable_sync.models import DEFAULT_STATE_DB
from timetable_sync.models import Conflict
from timetable_sync.models import DateRange
from timetable_sync.models import InvalidArgument
from timetable_sync.models import ReminderConfig
from timetable_sync.models import Resolution
from timetable_sync.models import SyncAction
from timetable_sync.models import SyncConfig
from timetable_sync.models import SyncRequest
from timetable_sync.models import SyncResult
from timetable_sync.models import TimetableSyncError
from timetable_sync.preflight import run_preflight_checks
from timetable_sync.remote import RemoteCalendarClient
from timetable_sync.sync import CalendarSynchronizer

CONFIG_SECTION = "timetable-sync"

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Push a class timetable to a calendar, batching weekly sessions into recurring events.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = DEFAULT_STATE_DB,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
        force=True,
    )


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _parse_bool(key: str, value: str) -> bool:
    try:
        return ConfigParser.BOOLEAN_STATES[value.strip().lower()]
    except KeyError:
        raise InvalidArgument(f"{key}: expected a boolean, got {value!r}") from None


def _parse_number(key: str, value: str, kind: type):
    try:
        return kind(value)
    except ValueError:
        raise InvalidArgument(f"{key}: expected {kind.__name__}, got {value!r}") from None


def _build_config(calendar: str | None = None, yes: bool = False) -> SyncConfig:
    """Merge command-line options over the config file into a SyncConfig."""
    config_file = _load_config_file(state.config_path)

    reminder = ReminderConfig(
        enabled=_parse_bool("reminder_enabled", config_file.get("reminder_enabled", "yes")),
        lead_minutes=_parse_number(
            "reminder_minutes", config_file.get("reminder_minutes", "15"), int
        ),
        channel=config_file.get("reminder_channel", "popup").strip(),
    )

    options: dict = {}
    if config_file.get("timezone"):
        options["timezone"] = config_file["timezone"].strip()
    if config_file.get("merge_fields"):
        options["merge_fields"] = frozenset(
            f.strip() for f in config_file["merge_fields"].split(",") if f.strip()
        )
    for key, kind in (
        ("group_threshold", int),
        ("idempotency_ttl", int),
        ("max_retries", int),
        ("retry_base_delay", float),
    ):
        if config_file.get(key):
            options[key] = _parse_number(key, config_file[key], kind)

    return SyncConfig(
        calendar_id=calendar or config_file.get("calendar_id"),
        state_db_path=state.state_db,
        reminder=reminder,
        verbose=state.verbose,
        yes=yes,
        **options,
    )


def _resolve_owner(owner: str | None) -> str:
    owner_id = owner or _load_config_file(state.config_path).get("owner_id")
    if not owner_id:
        console.print(
            "[bold red]Error:[/] An owner must be provided via [cyan]--owner[/] "
            "or [cyan]owner_id[/] in the config file."
        )
        raise typer.Exit(1)
    return owner_id


def _parse_date(label: str, value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        console.print(f"[bold red]Error:[/] Invalid {label} date: {value!r}")
        raise typer.Exit(1) from None


def _connect_remote(cfg: SyncConfig) -> RemoteCalendarClient:
    """Connect to the configured EDS calendar."""
    from timetable_sync.eds_client import connect_remote

    if not cfg.calendar_id:
        raise InvalidArgument("no calendar configured: set calendar_id or pass --calendar")
    return connect_remote(cfg.calendar_id, cfg.max_retries, cfg.retry_base_delay)


def _print_results(result: SyncResult, title: str) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created", str(result.created))
    results.add_row("Updated", str(result.updated))
    results.add_row("Skipped", str(result.skipped))
    failed_val = Text(str(result.failed))
    if result.failed == 0:
        failed_val.append(" ✓", style="green")
    else:
        failed_val.stylize("bold red")
    results.add_row("Failed", failed_val)
    results.add_row("Conflicts", str(len(result.conflicts)))
    results.add_row("Remote calls", str(result.quota_used))

    console.print(Panel(results, title=f"[bold]{title}[/bold]", expand=False))

    if result.groups and state.verbose:
        groups = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        groups.add_column("Subject / Section")
        groups.add_column("Events", justify="right")
        groups.add_column("Mode")
        for g in result.groups:
            mode = Text("recurring", style="green") if g.batched else Text(f"single ({g.reason})")
            groups.add_row(f"{g.subject_id} / {g.section_id}", str(g.size), mode)
        console.print(Panel(groups, title="[bold]Groups[/bold]", expand=False))

    failures = [d for d in result.details if d.action == SyncAction.FAILED]
    for detail in failures:
        console.print(f"[red]✗[/] {detail.local_event_id}: {detail.error}")

    if result.conflicts:
        _print_conflicts(result.conflicts, "Conflicts found")
        console.print(
            "[yellow]Run[/] [cyan]timetable-sync resolve[/] [yellow]to apply the suggestions.[/]"
        )
    if result.requires_reauth:
        console.print("[bold yellow]Calendar credentials were rejected; re-authenticate.[/]")


def _print_conflicts(conflicts: list[Conflict], title: str) -> None:
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("ID", style="dim")
    table.add_column("Event")
    table.add_column("Type")
    table.add_column("Suggested")
    table.add_column("State")
    for c in conflicts:
        members = c.local_event_id
        if len(c.member_event_ids) > 1:
            members += f" (+{len(c.member_event_ids) - 1})"
        table.add_row(
            c.id,
            members,
            c.conflict_type.value,
            c.suggested_resolution.action.value,
            c.state.value,
        )
    console.print(Panel(table, title=f"[bold]{title}[/bold]", expand=False))


def _run_guarded(operation):
    """Run ``operation``, turning library errors into an exit code."""
    try:
        return operation()
    except TimetableSyncError as e:
        console.print(f"[bold red]Failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------

_OWNER_OPT = Annotated[
    str | None, typer.Option("--owner", "-o", help="Owner id (overrides config owner_id)")
]
_CAL_OPT = Annotated[
    str | None,
    typer.Option("--calendar", help="Target EDS calendar UID (overrides config)"),
]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


@app.command()
def sync(
    from_date: Annotated[str, typer.Option("--from", help="First day, YYYY-MM-DD")],
    to_date: Annotated[str, typer.Option("--to", help="Last day (inclusive), YYYY-MM-DD")],
    owner: _OWNER_OPT = None,
    event: Annotated[
        list[str] | None,
        typer.Option("--event", "-e", help="Only sync this event id (repeatable)"),
    ] = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")
    ] = False,
    key: Annotated[
        str | None,
        typer.Option("--key", help="Idempotency key (16-64 chars); repeat it to replay a run"),
    ] = None,
    calendar: _CAL_OPT = None,
    yes: _YES = False,
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw result as JSON")] = False,
) -> None:
    """Push timetable events in a date range to the calendar."""
    owner_id = _resolve_owner(owner)
    start = _parse_date("--from", from_date)
    end = _parse_date("--to", to_date)

    def _prepare():
        cfg = _build_config(calendar, yes)
        request = SyncRequest(
            range=DateRange(start, end),
            idempotency_key=key or uuid.uuid4().hex,
            event_ids=list(event) if event else None,
            dry_run=dry_run,
        )
        return cfg, request

    cfg, request = _run_guarded(_prepare)

    if not run_preflight_checks(cfg, console):
        raise typer.Exit(1)

    # -- Info panel ----------------------------------------------------------
    info = Text()
    info.append("  Calendar:  ", style="bold")
    info.append(f"{cfg.calendar_id}\n")
    info.append("  Owner:     ", style="bold")
    info.append(f"{owner_id}\n")
    info.append("  Range:     ", style="bold")
    info.append(f"{start} → {end}")
    if request.event_ids:
        info.append("\n  Events:    ", style="bold")
        info.append(", ".join(request.event_ids))
    info.append("\n  Key:       ", style="bold")
    info.append(request.idempotency_key, style="dim")
    if dry_run:
        info.append("\n  Mode:      ")
        info.append("DRY RUN", style="bold magenta")

    console.print(Panel(info, title="[bold]Timetable Sync[/bold]"))

    # -- Confirmation --------------------------------------------------------
    if not cfg.yes and not dry_run:
        typer.confirm("Proceed?", abort=True)

    # -- Run -----------------------------------------------------------------
    def _run():
        remote = _connect_remote(cfg)
        with EventStore(cfg.state_db_path) as store:
            return CalendarSynchronizer(store, remote, cfg).sync_to_remote(owner_id, request)

    result = _run_guarded(_run)

    if as_json:
        console.print_json(data=result.to_dict())
    else:
        _print_results(result, "Results")

    if result.failed:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: conflicts / resolve
# ---------------------------------------------------------------------------


@app.command()
def conflicts(
    owner: _OWNER_OPT = None,
    show_all: Annotated[
        bool, typer.Option("--all", "-a", help="Include already resolved conflicts")
    ] = False,
) -> None:
    """List conflicts recorded by previous syncs."""
    owner_id = _resolve_owner(owner)

    def _list():
        with EventStore(state.state_db) as store:
            return store.list_conflicts(owner_id, include_resolved=show_all)

    found = _run_guarded(_list)
    if not found:
        console.print("[green]No open conflicts.[/]")
        return
    _print_conflicts(found, "Conflicts")


@app.command()
def resolve(
    conflict_ids: Annotated[
        list[str] | None,
        typer.Argument(help="Conflict ids to resolve (default: every open conflict)"),
    ] = None,
    owner: _OWNER_OPT = None,
    action: Annotated[
        str | None,
        typer.Option(
            "--action",
            help="use_local, use_google, merge, recreate or unlink (default: the suggestion)",
        ),
    ] = None,
    calendar: _CAL_OPT = None,
    yes: _YES = False,
) -> None:
    """Resolve recorded conflicts."""
    owner_id = _resolve_owner(owner)
    cfg = _run_guarded(lambda: _build_config(calendar, yes))

    def _load():
        with EventStore(cfg.state_db_path) as store:
            recorded = store.list_conflicts(owner_id, include_resolved=bool(conflict_ids))
        if not conflict_ids:
            return recorded
        by_id = {c.id: c for c in recorded}
        missing = [cid for cid in conflict_ids if cid not in by_id]
        if missing:
            raise InvalidArgument(f"unknown conflict id(s): {', '.join(missing)}")
        return [by_id[cid] for cid in conflict_ids]

    selected = _run_guarded(_load)
    if not selected:
        console.print("[green]No open conflicts.[/]")
        return

    resolutions = _run_guarded(
        lambda: [
            Resolution(action, "requested on the command line")
            if action
            else c.suggested_resolution
            for c in selected
        ]
    )

    plan = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    plan.add_column("ID", style="dim")
    plan.add_column("Type")
    plan.add_column("Action", style="bold")
    for c, r in zip(selected, resolutions):
        plan.add_row(c.id, c.conflict_type.value, r.action.value)
    console.print(Panel(plan, title="[bold]Resolution plan[/bold]", expand=False))

    if not cfg.yes:
        typer.confirm("Proceed?", abort=True)

    def _run():
        remote = _connect_remote(cfg)
        with EventStore(cfg.state_db_path) as store:
            return CalendarSynchronizer(store, remote, cfg).resolve_conflicts(
                owner_id, selected, resolutions
            )

    result = _run_guarded(_run)
    _print_results(result, "Resolution results")
    if result.failed:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show sync configuration and state database summary."""
    # -- Configuration section -----------------------------------------------
    config_exists = state.config_path.exists()
    db_exists = state.state_db.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(state.state_db) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")

    config_file = _load_config_file(state.config_path)
    for label, key in (
        ("Calendar", "calendar_id"),
        ("Owner", "owner_id"),
        ("Timezone", "timezone"),
    ):
        if config_file.get(key):
            cfg_info.append(f"\n  {label + ':':<10}", style="bold")
            cfg_info.append(config_file[key])

    console.print(Panel(cfg_info, title="[bold]Timetable Sync · Status[/bold]"))

    # -- State DB section ----------------------------------------------------
    rows = _run_guarded(lambda: query_status_summary(state.state_db))

    if not rows:
        if not db_exists:
            console.print(
                "[yellow]No state database yet. Run[/] "
                "[cyan]timetable-sync sync[/] "
                "[yellow]to create it.[/]"
            )
        else:
            console.print("[yellow]State database has no events yet.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Owner")
    table.add_column("Status")
    table.add_column("Events", justify="right")
    table.add_column("Open conflicts", justify="right")
    for row in rows:
        conflicts_val = Text(str(row["open_conflicts"]))
        if row["open_conflicts"]:
            conflicts_val.stylize("bold yellow")
        table.add_row(row["owner_id"], row["status"], str(row["count"]), conflicts_val)
    console.print(Panel(table, title="[bold]Events[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: colors
# ---------------------------------------------------------------------------


@app.command()
def colors(
    color: Annotated[
        str | None, typer.Argument(help="Hex color to match against the palette")
    ] = None,
) -> None:
    """Show the calendar color palette, or the closest entry for a color."""
    match = _run_guarded(lambda: map_color(color)) if color else None

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Hex")
    table.add_column("")
    for entry in available_colors():
        marker = Text("← closest", style="green") if entry["id"] == match else Text("")
        table.add_row(
            entry["id"],
            entry["name"],
            Text(entry["hex"], style=f"on {entry['hex']}"),
            marker,
        )
    console.print(table)

    if match:
        console.print(f"[bold]{color}[/] → palette id [cyan]{match}[/]")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
