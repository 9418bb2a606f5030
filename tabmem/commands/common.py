from __future__ import annotations

from pathlib import Path

import typer
from rich import print

from tabmem.agent import ClientAgent
from tabmem.config import TabmemConfig, load_config, read_config_file


def load_config_or_exit(config_path: str | None = None) -> TabmemConfig:
    path = Path(config_path) if config_path else None
    try:
        read_config_file(path)
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    return load_config(path)


def agent_from_options(
    db_path: str | None, api_url: str | None = None, *, config_path: str | None = None
) -> ClientAgent:
    cfg = load_config_or_exit(config_path)
    if api_url:
        cfg.api_base_url = api_url
    return ClientAgent(cfg, db_path=db_path)


def format_ts(value: object) -> str:
    if value is None:
        return "never"
    text = str(value)
    return text.replace("T", " ")[:19]
