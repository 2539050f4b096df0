"""Tests for CompletionEngine with httpx.MockTransport."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

import httpx
import pytest

from gigachatui.config import ApiSpec
from gigachatui.errors import (
    APIError,
    AuthenticationError,
    CompletionTimeoutError,
    DecodeError,
    ProtocolError,
    StreamError,
    TransportError,
)
from gigachatui.llm.engine import CompletionEngine
from gigachatui.types import CompletionOptions, Credential, Message, Role


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class StaticSupply:
    """Stands in for CredentialSupply: a fixed, swappable credential."""

    def __init__(self, token: str = "tok-1") -> None:
        self.credential = Credential(token=token, expires_at=4_102_444_800_000)
        self.reads = 0

    def current(self) -> Credential:
        self.reads += 1
        return self.credential


class ChunkedStream(httpx.AsyncByteStream):
    """Response body yielding *parts*, then optionally failing or hanging."""

    def __init__(self, parts: list[bytes], fail: bool = False, hang: bool = False):
        self.parts = parts
        self.fail = fail
        self.hang = hang
        self.closed = 0

    async def __aiter__(self):
        for part in self.parts:
            yield part
        if self.fail:
            raise httpx.ReadError("connection reset by peer")
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed += 1


def _chunk(content: str, index: int = 0, finish_reason: str | None = None) -> dict:
    choice: dict[str, Any] = {"delta": {"content": content}, "index": index}
    if finish_reason:
        choice["finish_reason"] = finish_reason
    return {"choices": [choice], "model": "GigaChat:1.0", "object": "chat.completion"}


def _sse(*chunks: dict, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _make_engine(
    handler: Callable[[httpx.Request], httpx.Response],
    supply: StaticSupply | None = None,
) -> CompletionEngine:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CompletionEngine(
        supply or StaticSupply(),
        ApiSpec(base_url="https://api.test/api/v1"),
        http_client=client,
    )


def _ok(body: bytes | httpx.AsyncByteStream) -> httpx.Response:
    headers = {"content-type": "text/event-stream"}
    if isinstance(body, bytes):
        return httpx.Response(200, content=body, headers=headers)
    return httpx.Response(200, stream=body, headers=headers)


HISTORY = [Message(role=Role.USER, content="hi")]


# ---------------------------------------------------------------------------
# Tests: successful completion
# ---------------------------------------------------------------------------

class TestSuccessfulCompletion:
    async def test_hello(self):
        engine = _make_engine(lambda req: _ok(_sse(_chunk("Hel"), _chunk("lo"))))
        seen: list[str] = []

        result = await engine.request_completion(HISTORY, on_fragment=seen.append)

        assert result.content == "Hello"
        assert seen == ["Hel", "lo"]
        assert result.finish_reason == "stop"
        assert result.model == "GigaChat:1.0"
        assert result.latency_ms > 0

    async def test_concatenates_in_wire_order(self):
        words = [f"w{i} " for i in range(50)]
        engine = _make_engine(lambda req: _ok(_sse(*[_chunk(w) for w in words])))

        result = await engine.request_completion(HISTORY)

        assert result.content == "".join(words)

    async def test_async_sink_is_awaited(self):
        engine = _make_engine(lambda req: _ok(_sse(_chunk("a"), _chunk("b"))))
        seen: list[str] = []

        async def sink(delta: str) -> None:
            await asyncio.sleep(0)
            seen.append(delta)

        await engine.request_completion(HISTORY, on_fragment=sink)
        assert seen == ["a", "b"]

    async def test_only_first_choice_is_assembled(self):
        engine = _make_engine(
            lambda req: _ok(_sse(_chunk("a", 0), _chunk("X", 1), _chunk("b", 0))),
        )
        result = await engine.request_completion(HISTORY)
        assert result.content == "ab"

    async def test_finish_reason_from_stream(self):
        engine = _make_engine(
            lambda req: _ok(_sse(_chunk("a"), _chunk("", finish_reason="length"))),
        )
        result = await engine.request_completion(HISTORY)
        assert result.finish_reason == "length"

    async def test_request_carries_full_history(self):
        captured: dict[str, Any] = {}

        def handler(req: httpx.Request) -> httpx.Response:
            captured["url"] = str(req.url)
            captured["headers"] = req.headers
            captured["body"] = json.loads(req.content)
            return _ok(_sse(_chunk("ok")))

        engine = _make_engine(handler)
        history = [
            Message(role=Role.SYSTEM, content="be brief"),
            Message(role=Role.USER, content="hi"),
            Message(role=Role.ASSISTANT, content="hello"),
            Message(role=Role.USER, content="how are you?"),
        ]
        await engine.request_completion(history)

        assert captured["url"] == "https://api.test/api/v1/chat/completions"
        assert captured["headers"]["authorization"] == "Bearer tok-1"
        assert captured["headers"]["accept"] == "application/json"
        body = captured["body"]
        assert body["messages"] == [m.to_dict() for m in history]
        assert body["model"] == "GigaChat"
        assert body["stream"] is True
        assert body["temperature"] == 0.87
        assert body["top_p"] == 0.47
        assert body["n"] == 1
        assert body["max_tokens"] == 1024
        assert body["repetition_penalty"] == 1.07

    async def test_credential_read_once_per_call(self):
        supply = StaticSupply("tok-old")
        captured: list[str] = []

        def handler(req: httpx.Request) -> httpx.Response:
            captured.append(req.headers["authorization"])
            return _ok(_sse(_chunk("a"), _chunk("b")))

        def rotate_mid_stream(delta: str) -> None:
            supply.credential = Credential(token="tok-new", expires_at=1)

        engine = _make_engine(handler, supply)
        await engine.request_completion(HISTORY, on_fragment=rotate_mid_stream)

        assert supply.reads == 1
        assert captured == ["Bearer tok-old"]

    async def test_expired_token_is_sent_with_warning(self, caplog):
        supply = StaticSupply()
        supply.credential = Credential(token="tok-stale", expires_at=1)
        engine = _make_engine(lambda req: _ok(_sse(_chunk("ok"))), supply)

        with caplog.at_level(logging.WARNING, logger="gigachatui.llm.engine"):
            result = await engine.request_completion(HISTORY)

        assert result.content == "ok"
        assert any("expired" in r.getMessage() for r in caplog.records)

    async def test_no_warning_for_valid_token(self, caplog):
        engine = _make_engine(lambda req: _ok(_sse(_chunk("ok"))))
        with caplog.at_level(logging.WARNING, logger="gigachatui.llm.engine"):
            await engine.request_completion(HISTORY)
        assert not caplog.records

    async def test_body_closed_on_success(self):
        stream = ChunkedStream([_sse(_chunk("a"))])
        engine = _make_engine(lambda req: _ok(stream))
        await engine.request_completion(HISTORY)
        assert stream.closed == 1

    async def test_build_request_uses_spec_options(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: _ok(b"")))
        spec = ApiSpec(model="GigaChat-Pro", options=CompletionOptions(temperature=0.1))
        engine = CompletionEngine(StaticSupply(), spec, http_client=client)
        request = engine.build_request(HISTORY)
        assert request.model == "GigaChat-Pro"
        assert request.options.temperature == 0.1
        assert request.messages == tuple(HISTORY)


# ---------------------------------------------------------------------------
# Tests: failures
# ---------------------------------------------------------------------------

class TestFailures:
    async def test_api_error(self):
        engine = _make_engine(
            lambda req: httpx.Response(403, json={"code": 1, "message": "bad scope"}),
        )
        seen: list[str] = []
        with pytest.raises(APIError) as exc_info:
            await engine.request_completion(HISTORY, on_fragment=seen.append)
        assert exc_info.value.status_code == 403
        assert exc_info.value.code == 1
        assert exc_info.value.message == "bad scope"
        assert seen == []

    async def test_stale_token_rejected(self):
        engine = _make_engine(
            lambda req: httpx.Response(401, json={"code": 6, "message": "Token has expired"}),
        )
        with pytest.raises(AuthenticationError):
            await engine.request_completion(HISTORY)

    async def test_connection_error(self):
        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("network unreachable", request=req)

        engine = _make_engine(handler)
        with pytest.raises(TransportError):
            await engine.request_completion(HISTORY)

    async def test_decode_error_discards_partial_text(self):
        body = _sse(_chunk("Hel"), _chunk("lo"), done=False) + b"data: {broken\n\n"
        stream = ChunkedStream([body])
        engine = _make_engine(lambda req: _ok(stream))
        seen: list[str] = []

        result = None
        with pytest.raises(DecodeError):
            result = await engine.request_completion(HISTORY, on_fragment=seen.append)

        assert result is None
        assert stream.closed == 1

    async def test_truncated_stream(self):
        engine = _make_engine(lambda req: _ok(_sse(_chunk("Hel"), done=False)))
        with pytest.raises(ProtocolError):
            await engine.request_completion(HISTORY)

    async def test_read_failure_mid_stream(self):
        stream = ChunkedStream([_sse(_chunk("Hel"), done=False)], fail=True)
        engine = _make_engine(lambda req: _ok(stream))
        with pytest.raises(StreamError) as exc_info:
            await engine.request_completion(HISTORY)
        assert not isinstance(exc_info.value, (DecodeError, ProtocolError))
        assert stream.closed == 1

    async def test_sink_error_propagates_and_closes_body(self):
        stream = ChunkedStream([_sse(_chunk("a"), _chunk("b"))])
        engine = _make_engine(lambda req: _ok(stream))

        def sink(delta: str) -> None:
            raise RuntimeError("terminal gone")

        with pytest.raises(RuntimeError):
            await engine.request_completion(HISTORY, on_fragment=sink)
        assert stream.closed == 1


# ---------------------------------------------------------------------------
# Tests: cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    async def test_timeout_closes_body(self):
        stream = ChunkedStream([_sse(_chunk("Hel"), done=False)], hang=True)
        engine = _make_engine(lambda req: _ok(stream))
        seen: list[str] = []

        with pytest.raises(CompletionTimeoutError):
            await engine.request_completion(HISTORY, on_fragment=seen.append, timeout=0.2)

        assert seen == ["Hel"]
        assert stream.closed == 1

    async def test_caller_cancel_closes_body(self):
        stream = ChunkedStream([_sse(_chunk("Hel"), done=False)], hang=True)
        engine = _make_engine(lambda req: _ok(stream))
        first = asyncio.Event()

        task = asyncio.create_task(
            engine.request_completion(HISTORY, on_fragment=lambda d: first.set()),
        )
        await asyncio.wait_for(first.wait(), timeout=2)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert stream.closed == 1

    async def test_no_reader_tasks_leak(self):
        stream = ChunkedStream([_sse(_chunk("a"), done=False)], hang=True)
        engine = _make_engine(lambda req: _ok(stream))

        with pytest.raises(CompletionTimeoutError):
            await engine.request_completion(HISTORY, timeout=0.1)

        leftover = [
            t for t in asyncio.all_tasks()
            if t.get_name() == "completion-stream" and not t.done()
        ]
        assert leftover == []
