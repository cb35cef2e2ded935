"""
CLI for lifelog sync and analysis.

Usage:
    lifelog sync
    lifelog analyze --limit 5
    lifelog show <entry-id>
"""

import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import typer
from typing_extensions import Annotated

from .api import Lifelog
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import LifelogEntry

# Configure quiet mode by default (suppress verbose library output)
# Set LIFELOG_VERBOSE=1 to enable debug mode via environment
if os.environ.get("LIFELOG_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"lifelog {version('lifelog-sync')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="lifelog",
    help="Sync lifelogs into SQLite and annotate them with LLM insights.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="LIFELOG_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Sync lifelogs into SQLite and annotate them with LLM insights."""


LimitOption = Annotated[
    Optional[int],
    typer.Option("--limit", "-n", help="Maximum number of entries")
]


def _get_lifelog() -> Lifelog:
    """Open the store, handling errors gracefully."""
    import atexit

    try:
        ll = Lifelog(_store_override)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(ll.close)
    return ll


def _emit(data: Any, text: str) -> None:
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))
    else:
        typer.echo(text)


def _entry_line(entry: LifelogEntry) -> str:
    start = entry.start_time or "-"
    return f"{entry.id}  {start}  {entry.title}"


def _entry_dict(entry: LifelogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "title": entry.title,
        "startTime": entry.start_time,
        "endTime": entry.end_time,
        "updatedAt": entry.updated_at,
        "isStarred": entry.is_starred,
        "timezone": entry.timezone,
        "lastAnalyzedAt": entry.last_analyzed_at,
    }


@app.command()
def init():
    """Create the store and its schema (safe to run again)."""
    ll = _get_lifelog()
    ll.initialize()
    status = ll.status()
    _emit(status, f"Store ready at {status['store']} ({status['entries']} entries)")


@app.command()
def sync(
    full: Annotated[bool, typer.Option(
        "--full",
        help="Ignore stored progress and fetch everything",
    )] = False,
):
    """Fetch lifelogs from Limitless into the store."""
    ll = _get_lifelog()
    stats = ll.sync(full_refresh=full or None)
    if stats.skipped_reason == "missing-credential":
        typer.echo("Error: LIMITLESS_API_KEY is not set", err=True)
        raise typer.Exit(1)
    text = f"Synced {stats.processed} entries ({stats.mode}, {stats.pages} pages)"
    if stats.skipped_reason:
        text = f"Sync skipped: {stats.skipped_reason}"
    elif stats.segment_failures or stats.failed:
        text += f"; {len(stats.segment_failures) + len(stats.failed)} entries had errors"
    _emit(stats.to_dict(), text)


@app.command()
def analyze(
    limit: LimitOption = None,
    entry: Annotated[Optional[list[str]], typer.Option(
        "--entry", "-e",
        help="Analyze this entry id (repeatable)",
    )] = None,
    force: Annotated[bool, typer.Option(
        "--force",
        help="Re-analyze the given entries even if current",
    )] = False,
):
    """Analyze entries that have no current insight record."""
    ll = _get_lifelog()
    result = ll.analyze_run(limit=limit, entry_ids=entry, force=force)
    text = f"Analyzed {len(result.analyzed)} entries"
    if result.failed:
        text += f", {len(result.failed)} failed"
    if result.rate_limited:
        text += f", rate limited ({len(result.skipped)} left for next run)"
    _emit(result.to_dict(), text)


@app.command()
def run():
    """One timer tick: sync, staleness check, analysis."""
    ll = _get_lifelog()
    summary = ll.run_scheduled()
    lines = []
    if "sync" in summary:
        lines.append(f"sync: {summary['sync']['processed']} entries")
    else:
        lines.append(f"sync: failed ({summary.get('sync_error')})")
    if summary.get("stale_alert"):
        lines.append("stale data alert posted")
    if "analysis" in summary:
        lines.append(f"analysis: {len(summary['analysis']['analyzed'])} entries")
    else:
        lines.append(f"analysis: failed ({summary.get('analysis_error')})")
    _emit(summary, "\n".join(lines))


@app.command()
def refresh():
    """Bring data up to date the way an interactive request would."""
    ll = _get_lifelog()
    decision = ll.refresh_on_request()
    # Background work finishes before the process exits (close() waits)
    data: dict[str, Any] = {"action": decision.action}
    if decision.sync is not None:
        data["sync"] = decision.sync.to_dict()
    _emit(data, f"Refresh: {decision.action}")


@app.command()
def status():
    """Show sync state and store counts."""
    ll = _get_lifelog()
    info = ll.status()
    info["state"] = ll.store.list_state()
    width = max(len(k) for k in info)
    lines = [f"{k.ljust(width)}  {v}" for k, v in info.items() if k != "state"]
    for key, row in info["state"].items():
        lines.append(f"{key.ljust(width)}  {row['value']}")
    _emit(info, "\n".join(lines))


@app.command()
def events(
    limit: LimitOption = 10,
):
    """Show recent analysis outcomes, newest first."""
    ll = _get_lifelog()
    items = ll.store.list_events(limit or 10)
    data = [vars(e) for e in items]
    text = "\n".join(
        f"{e.created_at}  {e.status:<7}  {e.entry_id or '-'}  {e.details or ''}" for e in items
    ) or "No events"
    _emit(data, text)


@app.command()
def show(
    entry_id: Annotated[str, typer.Argument(help="Entry id")],
    segments: Annotated[int, typer.Option(
        "--segments",
        help="Number of segments to show",
    )] = 20,
):
    """Show an entry with its segments and analysis."""
    ll = _get_lifelog()
    entry = ll.get(entry_id)
    if entry is None:
        typer.echo(f"Not found: {entry_id}", err=True)
        raise typer.Exit(1)
    segs = ll.store.get_segments(entry_id, limit=segments)
    analysis = ll.get_analysis(entry_id)

    data = _entry_dict(entry)
    data["segments"] = [vars(s) for s in segs]
    data["analysis"] = None if analysis is None else {
        "model": analysis.model,
        "version": analysis.version,
        "createdAt": analysis.created_at,
        "insights": analysis.payload,
    }

    lines = [_entry_line(entry)]
    for s in segs:
        speaker = f"{s.speaker_name}: " if s.speaker_name else ""
        lines.append(f"  [{s.path}] {s.node_type}  {speaker}{s.content or ''}")
    if analysis is not None:
        lines.append(f"analysis ({analysis.model}):")
        lines.append(f"  {analysis.payload.get('summary', '')}")
        if analysis.payload.get("mood"):
            lines.append(f"  mood: {analysis.payload['mood']}")
    _emit(data, "\n".join(lines))


def _day_window(days: int, offset: int, tz_name: str) -> tuple[datetime, datetime]:
    """[start, end) covering `days` local days, ending `offset` days ago."""
    try:
        tz = ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        tz = timezone.utc
    today = datetime.now(tz).replace(hour=0, minute=0, second=0, microsecond=0)
    end = today + timedelta(days=1 - offset)
    return end - timedelta(days=days), end


@app.command("list")
def list_entries(
    days: Annotated[int, typer.Option("--days", "-d", help="Number of days to show")] = 1,
    offset: Annotated[int, typer.Option("--offset", help="Days back from today")] = 0,
    limit: LimitOption = None,
):
    """List entries in a local-day window, newest first."""
    ll = _get_lifelog()
    start, end = _day_window(days, offset, ll.config.limitless.timezone)
    entries = ll.list_entries(start, end, limit)
    _emit(
        [_entry_dict(e) for e in entries],
        "\n".join(_entry_line(e) for e in entries) or "No entries",
    )


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="lifelog CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
