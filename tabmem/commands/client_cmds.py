from __future__ import annotations

import json
import sys
import threading
from pathlib import Path

import typer
from rich import print

from tabmem.agent import ClientAgent
from tabmem.errors import AuthRequiredError, SyncError
from tabmem.sync.engine import SYNC_IN_FLIGHT, SyncReport

from .common import format_ts


def _print_report(report: SyncReport) -> None:
    color = "green" if report.ok else "yellow"
    print(f"[{color}]sync {report.status}[/{color}]")
    print(f"- batches: {report.batches_sent}/{report.batches_attempted}")
    print(f"- synced: {report.synced}")
    if report.dropped:
        print(f"- dropped (rejected): {report.dropped}")
    print(f"- pending: {report.pending_remaining}")
    if report.evicted:
        print(f"- evicted (capacity): {report.evicted}")
    if report.error:
        print(f"- error: {report.error}")
    if report.auth_required:
        print("[yellow]Sign in again with `tabmem login`.[/yellow]")


def capture_cmd(*, agent: ClientAgent, source: str | None, sync: bool) -> None:
    """Read tab activity JSON lines into the local store."""

    try:
        if source and source != "-":
            with Path(source).expanduser().open(encoding="utf-8") as handle:
                result = agent.observer.ingest_lines(handle)
        else:
            result = agent.observer.ingest_lines(sys.stdin)
        print(f"[green]Captured {result.accepted} events[/green] (ignored {result.ignored})")
        for error in result.errors:
            print(f"[yellow]- {error}[/yellow]")
        if sync:
            _print_report(agent.sync_now())
    finally:
        agent.close()


def sync_cmd(*, agent: ClientAgent, as_json: bool) -> None:
    """Run one sync pass now."""

    try:
        report = agent.sync_now()
    finally:
        agent.close()
    if as_json:
        print(json.dumps(report.__dict__, indent=2))
    else:
        _print_report(report)
    if not report.ok and report.status != SYNC_IN_FLIGHT:
        raise typer.Exit(code=1)


def status_cmd(*, agent: ClientAgent) -> None:
    """Show local queue and sync state."""

    try:
        stats = agent.store.stats()
        daemon_state = agent.store.get_sync_daemon_state() or {}
    finally:
        agent.close()
    print(f"- API: {agent.cfg.api_base_url}")
    print(f"- Signed in: {'yes' if stats.authenticated else 'no'}")
    print(f"- Pending events: {stats.pending}")
    print(f"- Evicted events: {stats.evicted}")
    print(f"- Tracked tabs: {stats.tab_snapshots}")
    print(f"- Last sync: {format_ts(stats.last_sync.isoformat() if stats.last_sync else None)}")
    if daemon_state.get("last_error"):
        print(
            f"- Last agent error: {daemon_state['last_error']} "
            f"({format_ts(daemon_state.get('last_error_at'))})"
        )


def login_cmd(*, agent: ClientAgent, email: str, password: str, register: bool) -> None:
    """Sign in (or register) and store the tokens locally."""

    try:
        if register:
            data = agent.register(email, password)
        else:
            data = agent.login(email, password)
    except AuthRequiredError as exc:
        print(f"[red]Sign-in failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    except SyncError as exc:
        print(f"[red]Request failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        agent.close()
    user = data.get("user") or {}
    print(f"[green]Signed in as {user.get('email', email)}[/green]")


def logout_cmd(*, agent: ClientAgent) -> None:
    try:
        agent.logout()
    finally:
        agent.close()
    print("[green]Signed out[/green]")


def sessions_cmd(
    *,
    agent: ClientAgent,
    limit: int,
    offset: int,
    mode: str | None,
    show_tabs: str | None,
    restore: str | None,
    delete: str | None,
) -> None:
    """List, inspect, restore or delete sessions on the server."""

    try:
        if show_tabs:
            for tab in agent.client.get_session_tabs(show_tabs):
                print(f"{tab['order_index']:>3}  {tab['title']}  [dim]{tab['url']}[/dim]")
            return
        if restore:
            data = agent.client.restore_session(restore)
            session = data.get("session") or {}
            title = session.get("title")
            print(f"[green]Restoring {title} ({session.get('tab_count')} tabs)[/green]")
            for url in data.get("urls") or []:
                print(f"- {url}")
            return
        if delete:
            data = agent.client.delete_session(delete)
            deleted = data.get("deleted_session") or {}
            print(f"[green]Deleted session {deleted.get('title') or delete}[/green]")
            return
        sessions = agent.client.list_sessions(limit=limit, offset=offset, mode=mode)
    except AuthRequiredError as exc:
        print("[red]Not signed in. Run `tabmem login` first.[/red]")
        raise typer.Exit(code=1) from exc
    except SyncError as exc:
        print(f"[red]Request failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        agent.close()
    if not sessions:
        print("No sessions yet.")
        return
    for session in sessions:
        print(
            f"{session['id']}  {format_ts(session['last_active_at'])}  "
            f"{session['mode']}  tabs={session.get('tab_count', 0)}  {session['title']}"
        )


def agent_cmd(*, agent: ClientAgent) -> None:
    """Run the periodic sync loop in the foreground."""

    stop = threading.Event()
    print(
        f"[green]tabmem agent running[/green] (sync every {agent.cfg.sync_interval_s}s, "
        f"api {agent.cfg.api_base_url})"
    )
    try:
        agent.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()
    finally:
        agent.close()
