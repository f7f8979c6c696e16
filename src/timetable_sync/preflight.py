"""
Preflight checks run before a live sync to catch common misconfigurations early.
"""

import logging
import sqlite3

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from timetable_sync.models import SyncConfig

logger = logging.getLogger(__name__)

_OFFLINE_KEYWORDS = frozenset(
    {
        "offline",
        "network",
        "transport",
        "unreachable",
        "not connected",
        "no route",
        "authentication failed",
        "connection refused",
        "temporary failure",
    }
)


def check_state_db(cfg: SyncConfig) -> list[tuple[str, str, str]]:
    """State DB parent dir writable and DB readable/writable if it exists."""
    issues: list[tuple[str, str, str]] = []
    db_path = cfg.state_db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create state DB directory %s: %s", db_path.parent, e)
        issues.append(
            (
                "State database",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent}",
            )
        )
        return issues

    if db_path.exists():
        try:
            conn = sqlite3.connect(db_path)
            try:
                conn.execute("SELECT 1")
                # BEGIN IMMEDIATE takes the write lock and needs a journal file
                # in the same directory.
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("State DB not readable/writable (%s): %s", db_path, e)
            issues.append(
                (
                    "State database",
                    f"{db_path}: {e}",
                    f"Check permissions on {db_path.parent} "
                    f"(journal files must be creatable alongside the DB)",
                )
            )
    return issues


def check_calendar(cfg: SyncConfig) -> list[tuple[str, str, str]]:
    """EDS registry reachable, calendar UID exists and is connectable."""
    import gi

    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
    from gi.repository import ECal
    from gi.repository import EDataServer
    from gi.repository import GLib

    if not cfg.calendar_id:
        return [("Calendar", "no calendar configured", "Set calendar_id or pass --calendar")]

    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
    except GLib.Error as e:
        logger.error("EDS registry unreachable: %s", e.message)
        return [("EDS registry", e.message, "Is evolution-data-server running?")]

    uid = cfg.calendar_id
    source = registry.ref_source(uid)
    if source is None:
        logger.error("Calendar UID not found in EDS: %s", uid)
        return [("Calendar", f"UID not found: {uid}", "Check calendar_id in the config file")]

    try:
        ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
    except GLib.Error as e:
        msg = e.message or str(e)
        logger.error("Cannot connect to calendar (%s): %s", uid, msg)
        if any(kw in msg.lower() for kw in _OFFLINE_KEYWORDS):
            account_name = _get_parent_display_name(registry, source)
            if account_name:
                hint = f"Account '{account_name}' appears offline, check GNOME Online Accounts"
            else:
                hint = "Calendar appears offline, check GNOME Online Accounts"
        else:
            hint = msg
        return [("Calendar", f"Connection failed: {msg}", hint)]
    return []


def run_preflight_checks(cfg: SyncConfig, console: Console, check_remote: bool = True) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues = check_state_db(cfg)
    if check_remote:
        issues.extend(check_calendar(cfg))

    if issues:
        _print_issues(issues, console)
        return False

    return True


def _get_parent_display_name(registry, source) -> str:
    """Return the display name of the source's parent account, or empty string."""
    parent_uid = source.get_parent()
    if not parent_uid:
        return ""
    parent_source = registry.ref_source(parent_uid)
    if not parent_source:
        return ""
    return parent_source.get_display_name() or ""


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
