"""CLI tests for Threadloom -- every command via Click's CliRunner.

Each test uses runner.isolated_filesystem() with a file-backed database,
since the CLI opens its own store.
"""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from threadloom import CharTokenCounter, Conversation
from threadloom.cli import cli
from threadloom.storage import SessionStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def runner():
    """Create a Click test runner with a wide terminal."""
    return CliRunner(env={"COLUMNS": "200"})


def _setup_session(db_path: str) -> tuple[str, dict[str, str]]:
    """Store a session with two reply branches; returns (session id, node ids).

    Tree: root -> q ("Hello there") -> a1 ("First answer"), a2 ("Second answer")
    with a2 active and the first answer disabled.
    """
    store = SessionStore.open(db_path)
    convo = Conversation.create(
        "demo chat", persister=store, token_counter=CharTokenCounter()
    )
    q = convo.create_node(convo.session.root_node_id, "Hello there")
    a1 = convo.create_node(q.id, "First answer", role="assistant")
    a2 = convo.create_node(q.id, "Second answer", role="assistant")
    convo.switch_branch(a2.id)
    convo.toggle_enabled(a1.id)
    store.close()
    return convo.session.id, {"q": q.id, "a1": a1.id, "a2": a2.id}


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------

class TestSessionsCommand:
    def test_lists_sessions(self, runner: CliRunner):
        with runner.isolated_filesystem():
            session_id, _ = _setup_session("test.db")
            result = runner.invoke(cli, ["--db", "test.db", "sessions"])
            assert result.exit_code == 0
            assert session_id in result.output
            assert "demo chat" in result.output

    def test_empty_store(self, runner: CliRunner):
        with runner.isolated_filesystem():
            SessionStore.open("empty.db").close()
            result = runner.invoke(cli, ["--db", "empty.db", "sessions"])
            assert result.exit_code == 0
            assert "no sessions" in result.output.lower()

    def test_missing_database(self, runner: CliRunner):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["--db", "nope.db", "sessions"])
            assert result.exit_code == 1
            assert "Database not found" in result.output

    def test_db_from_environment(self, runner: CliRunner):
        with runner.isolated_filesystem():
            session_id, _ = _setup_session("env.db")
            result = runner.invoke(cli, ["sessions"], env={"THREADLOOM_DB": "env.db"})
            assert result.exit_code == 0
            assert session_id in result.output


# ---------------------------------------------------------------------------
# tree / path
# ---------------------------------------------------------------------------

class TestTreeCommand:
    def test_shows_all_branches(self, runner: CliRunner):
        with runner.isolated_filesystem():
            session_id, _ = _setup_session("test.db")
            result = runner.invoke(cli, ["--db", "test.db", "tree", session_id])
            assert result.exit_code == 0
            assert "demo chat" in result.output
            assert "First answer" in result.output
            assert "Second answer" in result.output
            assert "*" in result.output

    def test_unknown_session(self, runner: CliRunner):
        with runner.isolated_filesystem():
            _setup_session("test.db")
            result = runner.invoke(cli, ["--db", "test.db", "tree", "missing"])
            assert result.exit_code == 1
            assert "Session not found" in result.output


class TestPathCommand:
    def test_shows_active_path_only(self, runner: CliRunner):
        with runner.isolated_filesystem():
            session_id, ids = _setup_session("test.db")
            result = runner.invoke(cli, ["--db", "test.db", "path", session_id])
            assert result.exit_code == 0
            assert ids["q"] in result.output
            assert ids["a2"] in result.output
            assert ids["a1"] not in result.output


# ---------------------------------------------------------------------------
# history
# ---------------------------------------------------------------------------

class TestHistoryCommand:
    def test_shows_entries(self, runner: CliRunner):
        with runner.isolated_filesystem():
            session_id, ids = _setup_session("test.db")
            result = runner.invoke(cli, ["--db", "test.db", "history", session_id])
            assert result.exit_code == 0
            assert "initial_state" in result.output
            assert "node_toggle_enabled" in result.output
            assert ids["a1"] in result.output


# ---------------------------------------------------------------------------
# context
# ---------------------------------------------------------------------------

class TestContextCommand:
    def test_shows_request_messages(self, runner: CliRunner):
        with runner.isolated_filesystem():
            session_id, _ = _setup_session("test.db")
            result = runner.invoke(
                cli, ["--db", "test.db", "context", session_id, "--system", "Be brief."]
            )
            assert result.exit_code == 0
            assert "Be brief." in result.output
            assert "Hello there" in result.output
            assert "Second answer" in result.output
            assert "system_prompt" in result.output

    def test_token_budget(self, runner: CliRunner):
        with runner.isolated_filesystem():
            session_id, _ = _setup_session("test.db")
            result = runner.invoke(
                cli, ["--db", "test.db", "context", session_id, "--max-tokens", "4"]
            )
            assert result.exit_code == 0
            assert "Second answer" in result.output
            assert "Hello there" not in result.output
