"""Tests for the `session-engine` CLI."""

from __future__ import annotations

import json
import subprocess
import sys
from datetime import datetime, timedelta, timezone

import pytest

from session_engine.cli.main import main
from session_engine.storage import SQLiteStore
from session_engine.types import Conversation, Turn


@pytest.fixture()
def tmp_cwd(tmp_path, monkeypatch):
    """Run test in a clean temporary directory."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _run_cli(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "session_engine.cli.main", *args],
        capture_output=True,
        text=True,
    )


def _seed(db_path, cid: str, age: timedelta = timedelta(0)) -> None:
    when = datetime.now(timezone.utc) - age
    store = SQLiteStore(db_path)
    store.save(Conversation(
        conversation_id=cid,
        turns=[
            Turn(role="user", content="hello", timestamp=when),
            Turn(role="assistant", content="hi!", timestamp=when),
        ],
        exchange_count=1,
        created_at=when,
        last_activity=when,
    ))
    store.close()


def test_init_creates_config(tmp_cwd):
    result = _run_cli("init")
    assert result.returncode == 0
    config_path = tmp_cwd / "session-engine.yaml"
    assert config_path.exists()
    content = config_path.read_text()
    assert "backend:" in content
    assert "exchange_ceiling: 10" in content
    assert "rate_limit:" in content


def test_init_refuses_overwrite(tmp_cwd):
    (tmp_cwd / "session-engine.yaml").write_text("existing content")
    result = _run_cli("init")
    assert result.returncode != 0
    assert (tmp_cwd / "session-engine.yaml").read_text() == "existing content"


def test_init_force_overwrites(tmp_cwd):
    (tmp_cwd / "session-engine.yaml").write_text("existing content")
    result = _run_cli("init", "--force")
    assert result.returncode == 0
    assert "backend:" in (tmp_cwd / "session-engine.yaml").read_text()


def test_generated_config_validates(tmp_cwd):
    _run_cli("init")
    result = _run_cli("config", "validate")
    assert result.returncode == 0
    assert "Config is valid." in result.stdout
    assert "gemini" in result.stdout


def test_invalid_config_reported(tmp_cwd):
    (tmp_cwd / "session-engine.yaml").write_text("retry:\n  max_attempts: 0\n")
    result = _run_cli("config", "validate")
    assert result.returncode == 1
    assert "max_attempts" in result.stdout


def test_no_command_prints_help(tmp_cwd):
    result = _run_cli()
    assert result.returncode == 1
    assert "usage:" in result.stdout


def test_list_purge_and_wipe(tmp_cwd, capsys):
    (tmp_cwd / "session-engine.yaml").write_text("storage:\n  sqlite_path: data/conv.db\n")
    _seed(tmp_cwd / "data" / "conv.db", "recent-one")
    _seed(tmp_cwd / "data" / "conv.db", "stale-one", age=timedelta(days=30))

    main(["list"])
    out = capsys.readouterr().out
    assert "recent-one" in out
    assert "stale-one" in out

    main(["purge", "--days", "7"])
    assert "Removed 1 conversation(s)" in capsys.readouterr().out

    main(["wipe", "--yes"])
    assert "Deleted 1 conversation(s)" in capsys.readouterr().out

    main(["list"])
    assert "No stored conversations." in capsys.readouterr().out


def test_export_then_import(tmp_cwd, capsys):
    (tmp_cwd / "session-engine.yaml").write_text("storage:\n  sqlite_path: data/conv.db\n")
    _seed(tmp_cwd / "data" / "conv.db", "conv-1")

    main(["export", "conv-1", "-o", "out.json"])
    doc = json.loads((tmp_cwd / "out.json").read_text())
    assert doc["conversation"]["conversation_id"] == "conv-1"
    capsys.readouterr()

    main(["import", "out.json"])
    out = capsys.readouterr().out
    assert out.startswith("Imported as ")
    assert "conv-1" not in out


def test_import_missing_file(tmp_cwd):
    with pytest.raises(SystemExit) as exc_info:
        main(["import", "nope.json"])
    assert exc_info.value.code == 1


def test_export_unknown_conversation(tmp_cwd):
    (tmp_cwd / "session-engine.yaml").write_text("storage:\n  sqlite_path: data/conv.db\n")
    with pytest.raises(SystemExit) as exc_info:
        main(["export", "missing"])
    assert exc_info.value.code == 1
