import json
from pathlib import Path

from typer.testing import CliRunner

from tabmem import __version__
from tabmem.cli import app

runner = CliRunner()


def test_root_help_lists_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("capture", "sync", "status", "login", "sessions", "agent", "server"):
        assert name in result.stdout


def test_server_help_lists_serve_and_summarize() -> None:
    result = runner.invoke(app, ["server", "--help"])
    assert result.exit_code == 0
    assert "serve" in result.stdout
    assert "summarize" in result.stdout


def test_capture_then_status(tmp_path: Path) -> None:
    db_path = tmp_path / "agent.sqlite"
    source = tmp_path / "tabs.jsonl"
    source.write_text(
        "\n".join(
            json.dumps(line)
            for line in [
                {"type": "open", "window_id": 1, "tab_id": 1, "title": "A", "url": "https://a.dev"},
                {"type": "open", "window_id": 1, "tab_id": 2, "url": "chrome://newtab"},
                {"type": "close", "window_id": 1, "tab_id": 1},
            ]
        )
    )

    result = runner.invoke(app, ["capture", str(source), "--db-path", str(db_path)])
    assert result.exit_code == 0
    assert "Captured 2 events" in result.stdout

    result = runner.invoke(app, ["status", "--db-path", str(db_path)])
    assert result.exit_code == 0
    assert "Pending events: 2" in result.stdout
    assert "Signed in: no" in result.stdout


def test_sync_without_login_fails(tmp_path: Path) -> None:
    result = runner.invoke(app, ["sync", "--db-path", str(tmp_path / "agent.sqlite")])

    assert result.exit_code == 1
    assert "no_auth" in result.stdout


def test_serve_without_secrets_exits(tmp_path: Path) -> None:
    result = runner.invoke(
        app, ["server", "serve", "--port", "0", "--db-path", str(tmp_path / "server.sqlite")]
    )

    assert result.exit_code == 1
    assert "TABMEM_JWT_SECRET" in result.stdout


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invalid_config_file_exits(tmp_path: Path) -> None:
    config_path = tmp_path / "broken.json"
    config_path.write_text("{nope")

    result = runner.invoke(app, ["status", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "Invalid config file" in result.stdout
