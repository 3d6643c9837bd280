"""
CLI commands against a file-backed SQLite database (no exchange calls).
"""
import asyncio
from pathlib import Path

import pytest
from typer.testing import CliRunner

from tierkeeper.cli import app
from tierkeeper.config.config import Config
from tierkeeper.live.engine import PositionEngine
from tierkeeper.storage.db import Database
from tierkeeper.storage.repository import PositionStore

runner = CliRunner()


@pytest.fixture
def cli_config(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "environment: dev\n"
        "database:\n"
        f"  url: sqlite:///{tmp_path / 'cli.db'}\n"
        "accounts:\n"
        "  main:\n"
        "    api_key: k\n"
        "    api_secret: s\n"
        "logging:\n"
        "  log_level: WARNING\n"
        "  log_format: text\n"
    )
    return path


@pytest.fixture
def seeded(cli_config, gateways, long_request):
    """Open one position in the CLI database through a fake exchange."""
    config = Config.from_yaml(cli_config)
    db = Database(config.database.url)
    db.create_all()
    engine = PositionEngine(config, PositionStore(db), gateways)
    position_id = asyncio.run(engine.open_position(long_request()))
    db.dispose()
    return position_id


def test_init_db(cli_config, tmp_path):
    result = runner.invoke(app, ["init-db", "--config", str(cli_config)])

    assert result.exit_code == 0
    assert "Database initialized" in result.output
    assert (tmp_path / "cli.db").exists()


def test_status_empty(cli_config):
    result = runner.invoke(app, ["status", "--config", str(cli_config)])

    assert result.exit_code == 0
    assert "Active positions:   0" in result.output


def test_expiry_status_lists_tracked(cli_config, seeded):
    result = runner.invoke(app, ["expiry-status", "--config", str(cli_config)])

    assert result.exit_code == 0
    assert seeded in result.output
    assert "[active]" in result.output


def test_details(cli_config, seeded):
    result = runner.invoke(app, ["details", seeded, "--config", str(cli_config)])

    assert result.exit_code == 0
    assert "BTC/USDT:USDT" in result.output
    assert "position_created" in result.output


def test_details_unknown(cli_config):
    result = runner.invoke(app, ["details", "missing", "--config", str(cli_config)])
    assert result.exit_code == 1


def test_extend_expiry(cli_config, seeded):
    result = runner.invoke(app, ["extend-expiry", seeded, "--hours", "2", "--config", str(cli_config)])

    assert result.exit_code == 0
    assert "extended by 2.0h" in result.output


def test_open_rejects_invalid_request(cli_config, tmp_path):
    request = tmp_path / "request.yaml"
    request.write_text(
        "account: main\n"
        "settle: usdt\n"
        "symbol: BTC/USDT:USDT\n"
        "direction: long\n"
        "size: 10\n"
        "entry_price: 50000\n"
        "stop_price: 48500\n"
        "tp1_size: 5\n"
        "tp1_price: 50750\n"
    )

    result = runner.invoke(app, ["open", str(request), "--config", str(cli_config)])

    assert result.exit_code == 2
    assert "must sum to size" in result.output


@pytest.mark.parametrize("field, value", [
    ("direction", "sideways"),
    ("settle", "eur"),
    ("size", "ten"),
])
def test_open_rejects_malformed_field(cli_config, tmp_path, field, value):
    fields = {
        "account": "main",
        "settle": "usdt",
        "symbol": "BTC/USDT:USDT",
        "direction": "long",
        "size": "10",
        "entry_price": "50000",
        "stop_price": "48500",
        "tp1_size": "10",
        "tp1_price": "50750",
    }
    fields[field] = value
    request = tmp_path / "request.yaml"
    request.write_text("".join(f"{k}: {v}\n" for k, v in fields.items()))

    result = runner.invoke(app, ["open", str(request), "--config", str(cli_config)])

    assert result.exit_code == 2
    assert "Invalid request" in result.output
