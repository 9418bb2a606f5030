from __future__ import annotations

import logging

import typer
from rich import print

from . import __version__
from .commands.client_cmds import (
    agent_cmd,
    capture_cmd,
    login_cmd,
    logout_cmd,
    sessions_cmd,
    status_cmd,
    sync_cmd,
)
from .commands.common import agent_from_options, load_config_or_exit
from .commands.server_cmds import serve_cmd, summarize_cmd

app = typer.Typer(help="tabmem: browser tab activity memory")
server_app = typer.Typer(help="Run and maintain the tabmem server")
app.add_typer(server_app, name="server")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("capture")
def capture(
    source: str = typer.Argument(None, help="JSON-lines file of tab events (default: stdin)"),
    db_path: str = typer.Option(None, help="Path to the local SQLite database"),
    config: str = typer.Option(None, help="Path to config.json"),
    sync: bool = typer.Option(False, help="Run a sync pass after capturing"),
) -> None:
    """Capture tab activity events from JSON lines."""

    capture_cmd(
        agent=agent_from_options(db_path, config_path=config), source=source, sync=sync
    )


@app.command("sync")
def sync(
    db_path: str = typer.Option(None, help="Path to the local SQLite database"),
    api_url: str = typer.Option(None, help="Override the API base URL"),
    config: str = typer.Option(None, help="Path to config.json"),
    json_out: bool = typer.Option(False, "--json", help="Print the sync report as JSON"),
) -> None:
    """Upload pending events now."""

    sync_cmd(agent=agent_from_options(db_path, api_url, config_path=config), as_json=json_out)


@app.command("status")
def status(
    db_path: str = typer.Option(None, help="Path to the local SQLite database"),
    config: str = typer.Option(None, help="Path to config.json"),
) -> None:
    """Show pending events, last sync and sign-in state."""

    status_cmd(agent=agent_from_options(db_path, config_path=config))


@app.command("login")
def login(
    email: str = typer.Option(..., prompt=True, help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Account password"),
    db_path: str = typer.Option(None, help="Path to the local SQLite database"),
    api_url: str = typer.Option(None, help="Override the API base URL"),
    config: str = typer.Option(None, help="Path to config.json"),
) -> None:
    """Sign in and store tokens locally."""

    login_cmd(
        agent=agent_from_options(db_path, api_url, config_path=config),
        email=email,
        password=password,
        register=False,
    )


@app.command("register")
def register(
    email: str = typer.Option(..., prompt=True, help="Account email"),
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, confirmation_prompt=True, help="Account password"
    ),
    db_path: str = typer.Option(None, help="Path to the local SQLite database"),
    api_url: str = typer.Option(None, help="Override the API base URL"),
    config: str = typer.Option(None, help="Path to config.json"),
) -> None:
    """Create an account and sign in."""

    login_cmd(
        agent=agent_from_options(db_path, api_url, config_path=config),
        email=email,
        password=password,
        register=True,
    )


@app.command("logout")
def logout(
    db_path: str = typer.Option(None, help="Path to the local SQLite database"),
    config: str = typer.Option(None, help="Path to config.json"),
) -> None:
    """Forget stored tokens."""

    logout_cmd(agent=agent_from_options(db_path, config_path=config))


@app.command("sessions")
def sessions(
    limit: int = typer.Option(20, help="Number of sessions to list"),
    offset: int = typer.Option(0, help="Skip this many sessions"),
    mode: str = typer.Option(None, help="Only sessions in this mode (loose or strict)"),
    tabs: str = typer.Option(None, help="Show the tabs of this session id"),
    restore: str = typer.Option(None, help="Restore this session id"),
    delete: str = typer.Option(None, help="Delete this session id"),
    db_path: str = typer.Option(None, help="Path to the local SQLite database"),
    api_url: str = typer.Option(None, help="Override the API base URL"),
    config: str = typer.Option(None, help="Path to config.json"),
) -> None:
    """List and manage server sessions."""

    sessions_cmd(
        agent=agent_from_options(db_path, api_url, config_path=config),
        limit=limit,
        offset=offset,
        mode=mode,
        show_tabs=tabs,
        restore=restore,
        delete=delete,
    )


@app.command("agent")
def agent(
    db_path: str = typer.Option(None, help="Path to the local SQLite database"),
    api_url: str = typer.Option(None, help="Override the API base URL"),
    config: str = typer.Option(None, help="Path to config.json"),
) -> None:
    """Run the background sync loop in the foreground."""

    agent_cmd(agent=agent_from_options(db_path, api_url, config_path=config))


@server_app.command("serve")
def serve(
    host: str = typer.Option(None, help="Bind host"),
    port: int = typer.Option(None, help="Bind port"),
    db_path: str = typer.Option(None, help="Path to the server SQLite database"),
    config: str = typer.Option(None, help="Path to config.json"),
) -> None:
    """Run the ingestion and sessions API."""

    serve_cmd(cfg=load_config_or_exit(config), host=host, port=port, db_path=db_path)


@server_app.command("summarize")
def summarize(
    session_id: str = typer.Argument(..., help="Session id"),
    email: str = typer.Option(..., help="Owner of the session"),
    embed: bool = typer.Option(False, help="Also store an embedding of the summary"),
    db_path: str = typer.Option(None, help="Path to the server SQLite database"),
    config: str = typer.Option(None, help="Path to config.json"),
) -> None:
    """Summarize a session with the configured summary provider."""

    summarize_cmd(
        cfg=load_config_or_exit(config),
        session_id=session_id,
        email=email,
        db_path=db_path,
        embed=embed,
    )


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)
