"""Integration tests for the CLI."""

import json
import os
import sqlite3
import subprocess
import sys

import pytest
from typer.testing import CliRunner

import code_session_memory.embeddings as embeddings_module
from code_session_memory.cli import app


def run_cli(*args, db_path=None):
    env = dict(os.environ)
    if db_path is not None:
        env["CODE_SESSION_MEMORY_DB_PATH"] = str(db_path)
    return subprocess.run(
        [sys.executable, "-m", "code_session_memory.cli", *args],
        capture_output=True,
        text=True,
        env=env,
    )


def test_cli_help():
    """Test that --help works."""
    result = run_cli("--help")
    assert result.returncode == 0
    assert "index" in result.stdout
    assert "query" in result.stdout
    assert "status" in result.stdout
    assert "sessions" in result.stdout


def test_cli_version():
    """Test that --version works."""
    result = run_cli("--version")
    assert result.returncode == 0
    assert "code-session-memory" in result.stdout


def test_cli_status(db_path):
    """Test that status works without creating the database."""
    result = run_cli("status", db_path=db_path)
    assert result.returncode == 0
    assert "Sessions indexed: 0" in result.stdout
    assert "Index path:" in result.stdout
    assert not db_path.exists()


def test_query_rejects_unknown_source(db_path):
    """Test that an unknown --source is rejected."""
    result = run_cli("query", "auth", "--source", "emacs", db_path=db_path)
    assert result.returncode == 1
    assert "Invalid source" in result.stdout


def test_query_rejects_bad_date(db_path):
    """Test that an unparseable --from date is rejected."""
    result = run_cli("query", "auth", "--from", "last tuesday", db_path=db_path)
    assert result.returncode == 1
    assert "Invalid --from date" in result.stdout


def test_chunks_without_database(db_path):
    """Test chunk retrieval before anything is indexed."""
    result = run_cli("chunks", "session://s1#m1", db_path=db_path)
    assert result.returncode == 1
    assert "Database not found" in result.stdout


def test_index_missing_messages_file(db_path, temp_dir):
    """Test indexing from a file that does not exist."""
    result = run_cli("index", "ses_1", str(temp_dir / "missing.json"), db_path=db_path)
    assert result.returncode == 1
    assert "Could not read messages" in result.stdout


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def patched_model(monkeypatch, fake_model):
    monkeypatch.setattr(embeddings_module, "get_model", lambda model_name=None: fake_model)
    return fake_model


def test_index_query_and_delete_flow(runner, patched_model, sample_messages_json, db_path):
    """Test indexing, searching, printing and deleting a session."""
    db = ["--db", str(db_path)]

    result = runner.invoke(app, ["index", "ses_1", str(sample_messages_json), "-p", "/work/app", *db])
    assert result.exit_code == 0, result.output
    assert "Indexed 2 messages" in result.output

    result = runner.invoke(app, ["index", "ses_1", str(sample_messages_json), *db])
    assert result.exit_code == 0, result.output
    assert "Indexed 0 messages" in result.output

    result = runner.invoke(app, ["sessions", "list", "--json", *db])
    assert result.exit_code == 0, result.output
    sessions = json.loads(result.stdout)["sessions"]
    assert len(sessions) == 1
    assert sessions[0]["session_title"] == "How do I add JWT authentication?"
    assert sessions[0]["project"] == "/work/app"
    assert sessions[0]["chunk_count"] == 2

    result = runner.invoke(app, ["query", "JWT middleware", "--json", *db])
    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["query"] == "JWT middleware"
    assert data["total_results"] == 2
    assert {r["session_id"] for r in data["results"]} == {"ses_1"}

    result = runner.invoke(app, ["chunks", "session://ses_1#msg_001", *db])
    assert result.exit_code == 0, result.output
    assert "Retrieved 1 chunk(s)" in result.output

    result = runner.invoke(app, ["sessions", "print", "ses_1", *db])
    assert result.exit_code == 0, result.output
    assert "JWT" in result.output

    result = runner.invoke(app, ["sessions", "delete", "ses_1", "--yes", *db])
    assert result.exit_code == 0, result.output
    assert "Deleted 2 chunks" in result.output

    result = runner.invoke(app, ["status", *db])
    assert "Sessions indexed: 0" in result.output


def test_reindex_keeps_chunk_count(runner, patched_model, sample_messages_json, db_path):
    """Test that reindex keeps the stored source and chunk count."""
    db = ["--db", str(db_path)]
    runner.invoke(app, ["index", "ses_1", str(sample_messages_json), "-s", "claude-code", *db])

    result = runner.invoke(app, ["reindex", "ses_1", str(sample_messages_json), *db])
    assert result.exit_code == 0, result.output
    assert "Re-indexed 2 messages" in result.output

    result = runner.invoke(app, ["sessions", "list", "--json", *db])
    sessions = json.loads(result.stdout)["sessions"]
    assert sessions[0]["source"] == "claude-code"
    assert sessions[0]["chunk_count"] == 2


def test_delete_unknown_session(runner, db_path):
    """Test deleting a session that is not indexed."""
    result = runner.invoke(app, ["sessions", "delete", "nope", "--yes", "--db", str(db_path)])
    assert result.exit_code == 1
    assert "No session found" in result.output


def test_purge_with_nothing_old(runner, db_path):
    """Test purging when no session is old enough."""
    result = runner.invoke(app, ["sessions", "purge", "--days", "30", "--yes", "--db", str(db_path)])
    assert result.exit_code == 0
    assert "No sessions older than 30 day(s) found." in result.output


def test_query_limit_above_knn_cap(runner, db_path):
    """Test that --limit beyond the vector search cap is a usage error."""
    result = runner.invoke(app, ["query", "auth", "--limit", "5000", "--db", str(db_path)])
    assert result.exit_code == 2
    assert not isinstance(result.exception, sqlite3.Error)


def test_query_with_mismatched_model(runner, patched_model, model_factory, monkeypatch, sample_messages_json, db_path):
    """Test that querying with a model of another vector size fails cleanly."""
    db = ["--db", str(db_path)]
    result = runner.invoke(app, ["index", "ses_1", str(sample_messages_json), *db])
    assert result.exit_code == 0, result.output

    wide = model_factory(dim=768)
    monkeypatch.setattr(embeddings_module, "get_model", lambda model_name=None: wide)

    result = runner.invoke(app, ["query", "JWT", *db])
    assert result.exit_code == 1
    assert "Index was built with 384-dim" in result.output

    result = runner.invoke(app, ["index", "ses_2", str(sample_messages_json), *db])
    assert result.exit_code == 1
