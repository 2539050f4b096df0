"""Tests for CLI slash commands and startup checks."""

import asyncio
import signal
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from gigachatui.chat import ChatService
from gigachatui.cli import ReplState, handle_command, main, run_turn
from gigachatui.errors import GigaChatError
from gigachatui.storage.store import MessageRecord, SessionStore
from gigachatui.types import Role


@pytest.fixture
def state():
    store = SessionStore(":memory:")
    chat = ChatService(MagicMock(), store)
    st = ReplState(chat=chat, session=chat.new_session("first"))
    yield st
    store.close()


class TestHandleCommand:
    def test_quit(self, state):
        assert handle_command("/quit", state) == "quit"
        assert handle_command("/exit", state) == "quit"

    def test_unknown_command_not_handled(self, state):
        assert handle_command("/frobnicate", state) is False

    def test_new_session_switches(self, state):
        old_id = state.session.id
        assert handle_command("/new second chat", state) is True
        assert state.session.name == "second chat"
        assert state.session.id != old_id
        assert len(state.chat.store.read_sessions()) == 2

    def test_new_without_name(self, state):
        old_id = state.session.id
        assert handle_command("/new", state) is True
        assert state.session.id == old_id

    def test_sessions_and_history(self, state):
        state.chat.store.write_message(
            MessageRecord(session_id=state.session.id, role=Role.USER, content="[hi]"),
        )
        assert handle_command("/sessions", state) is True
        assert handle_command("/history", state) is True
        assert handle_command("/help", state) is True


class TestMain:
    def test_missing_credentials(self, tmp_path, monkeypatch):
        for name in ("GIGACHAT_CLIENT_ID", "GIGACHAT_CLIENT_SECRET", "CLIENT_ID", "CLIENT_SECRET"):
            monkeypatch.delenv(name, raising=False)
        cfg = tmp_path / "c.yaml"
        cfg.write_text("storage:\n  db_path: " + str(tmp_path / "db.sqlite") + "\n")

        result = CliRunner().invoke(main, ["--config", str(cfg)])

        assert result.exit_code != 0
        assert "GIGACHAT_CLIENT_ID" in result.output

    def test_wrongly_typed_option(self, tmp_path):
        cfg = tmp_path / "c.yaml"
        cfg.write_text("api:\n  options:\n    temperature: hot\n")

        result = CliRunner().invoke(main, ["--config", str(cfg)])

        assert result.exit_code == 1
        assert "Config error" in result.output
        assert not isinstance(result.exception, TypeError)

    def test_missing_config_file(self, tmp_path):
        result = CliRunner().invoke(main, ["--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code != 0
        assert "Config error" in result.output


class TestRunTurn:
    @pytest.fixture
    async def sigint(self, monkeypatch):
        loop = asyncio.get_running_loop()
        handlers = {}
        monkeypatch.setattr(loop, "add_signal_handler", lambda sig, cb: handlers.__setitem__(sig, cb))
        monkeypatch.setattr(loop, "remove_signal_handler", lambda sig: handlers.pop(sig, None))
        return handlers

    async def test_completed_turn(self, sigint):
        async def turn():
            return "reply"

        assert await run_turn(turn()) is True
        assert sigint == {}

    async def test_interrupt_cancels_only_the_turn(self, sigint):
        started = asyncio.Event()
        cancelled = []

        async def turn():
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        pending = asyncio.create_task(run_turn(turn()))
        await started.wait()
        sigint[signal.SIGINT]()

        assert await pending is False
        assert cancelled == [True]
        assert sigint == {}

    async def test_errors_propagate(self, sigint):
        async def turn():
            raise GigaChatError("boom")

        with pytest.raises(GigaChatError):
            await run_turn(turn())

    async def test_interrupted_turn_saves_nothing(self, sigint):
        store = SessionStore(":memory:")
        started = asyncio.Event()

        class HangingEngine:
            async def request_completion(self, history, on_fragment=None, timeout=None):
                started.set()
                await asyncio.Event().wait()

        chat = ChatService(HangingEngine(), store)
        session = chat.new_session("s")
        pending = asyncio.create_task(run_turn(chat.ask(session.id, "hi")))
        await started.wait()
        sigint[signal.SIGINT]()

        assert await pending is False
        assert chat.history(session.id) == []
        store.close()
