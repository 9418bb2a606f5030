from __future__ import annotations

from pathlib import Path

import typer
from rich import print

from tabmem import db
from tabmem.config import TabmemConfig
from tabmem.errors import ConfigError, ProviderError
from tabmem.providers import get_embedding_provider, get_summary_provider
from tabmem.server import auth
from tabmem.server.api import run_server
from tabmem.server.repository import UserRepository
from tabmem.server.summaries import summarize_session


def serve_cmd(
    *, cfg: TabmemConfig, host: str | None, port: int | None, db_path: str | None
) -> None:
    """Run the ingestion server until interrupted."""

    bind_host = host or cfg.server_host
    bind_port = cfg.server_port if port is None else port
    print(f"[green]tabmem server listening on {bind_host}:{bind_port}[/green]")
    try:
        run_server(
            cfg,
            host=bind_host,
            port=bind_port,
            db_path=Path(db_path) if db_path else None,
        )
    except ConfigError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:
        print("Stopped.")


def summarize_cmd(
    *,
    cfg: TabmemConfig,
    session_id: str,
    email: str,
    db_path: str | None,
    embed: bool,
) -> None:
    """Summarize one server session with the configured summary provider."""

    try:
        provider = get_summary_provider(cfg)
        embedder = get_embedding_provider(cfg) if embed else None
    except ProviderError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    conn = db.connect(Path(db_path or cfg.server_db_path))
    try:
        db.initialize_server_schema(conn)
        normalized = auth.normalize_email(email)
        user = UserRepository(conn).get_with_password(normalized) if normalized else None
        if user is None:
            print(f"[red]Unknown user: {email}[/red]")
            raise typer.Exit(code=1)
        try:
            result = summarize_session(conn, user["id"], session_id, provider, embedder=embedder)
        except ProviderError as exc:
            print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
    finally:
        conn.close()
    if result is None:
        print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(code=1)
    print(f"[green]{result['summary']}[/green]")
    print(f"- confidence: {result['confidence']:.2f}")
    if result["tags"]:
        print(f"- tags: {', '.join(result['tags'])}")
