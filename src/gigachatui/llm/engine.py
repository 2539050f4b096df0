"""Streaming completion engine.

``CompletionEngine.request_completion()`` posts the whole conversation to
``/chat/completions`` and reads the streamed reply with two cooperating
tasks:

- a reader task runs :func:`decode_stream` over the response body and
  pushes fragments onto a bounded queue (failures go to an error queue)
- the calling task waits on both queues, forwards each delta to the live
  sink, and returns the assembled text on the final fragment

A failure after the stream started discards the partial text.  The
response body is closed and the reader task cancelled on every exit path.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Sequence

import httpx

from gigachatui.config import ApiSpec
from gigachatui.errors import (
    CompletionTimeoutError,
    GigaChatError,
    RequestBuildError,
    StreamError,
    TransportError,
)
from gigachatui.types import (
    AssembledResponse,
    CompletionOptions,
    CompletionRequest,
    Message,
    StreamFragment,
)

from .stream import decode_stream, raise_for_api_error

if TYPE_CHECKING:
    from gigachatui.auth.credentials import CredentialSupply

_logger = logging.getLogger(__name__)

# Receives each streamed delta as soon as it is decoded (sync or async)
FragmentSink = Callable[[str], Any]

_FRAGMENT_QUEUE_SIZE = 64


class CompletionEngine:
    """Client for the streaming ``/chat/completions`` endpoint."""

    def __init__(
        self,
        credentials: CredentialSupply,
        spec: ApiSpec | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self.spec = spec or ApiSpec()
        self._url = f"{self.spec.base_url.rstrip('/')}/chat/completions"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            verify=self.spec.verify_ssl,
            timeout=httpx.Timeout(self.spec.timeout, connect=30, read=60),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_request(
        self,
        history: Sequence[Message],
        options: CompletionOptions | None = None,
    ) -> CompletionRequest:
        """Build a request carrying every turn of *history*."""
        return CompletionRequest(
            model=self.spec.model,
            messages=tuple(history),
            options=options or self.spec.options,
        )

    async def request_completion(
        self,
        history: Sequence[Message],
        on_fragment: FragmentSink | None = None,
        timeout: float | None = None,
    ) -> AssembledResponse:
        """Stream a completion for *history* and return the assembled reply.

        Each delta of the first choice is passed to *on_fragment* as it
        arrives.  Raises ``TransportError``, ``APIError``, ``StreamError``
        (``DecodeError`` / ``ProtocolError``) or ``RequestBuildError``; a
        partially streamed answer is never returned.
        """
        request = self.build_request(history)
        try:
            body = json.dumps(request.to_payload(), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise RequestBuildError(f"failed to serialize completion request: {e}") from e

        if timeout is None:
            return await self._complete(body, on_fragment)
        try:
            return await asyncio.wait_for(self._complete(body, on_fragment), timeout)
        except asyncio.TimeoutError as e:
            raise CompletionTimeoutError(
                f"completion did not finish within {timeout}s",
            ) from e

    async def aclose(self) -> None:
        """Close the underlying HTTP client (if owned)."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _complete(
        self, body: str, on_fragment: FragmentSink | None,
    ) -> AssembledResponse:
        # One snapshot for the whole call; later rotations don't touch it
        credential = self._credentials.current()
        if credential.is_expired():
            _logger.warning(
                "Sending completion with a token that expired at %d; rotation may be failing",
                credential.expires_at,
            )
        http_request = self._client.build_request(
            "POST",
            self._url,
            content=body.encode(),
            headers={
                "Authorization": f"Bearer {credential.token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

        start = time.monotonic()
        try:
            response = await self._client.send(http_request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"failed to send completion request: {e}") from e

        try:
            try:
                await raise_for_api_error(response)
            except httpx.HTTPError as e:
                raise TransportError(f"failed to read error response: {e}") from e
            result = await self._aggregate(response, on_fragment)
        finally:
            await response.aclose()

        result.latency_ms = (time.monotonic() - start) * 1000
        _logger.debug(
            "Completion finished: %d chars, finish_reason=%s, %.0fms",
            len(result.content), result.finish_reason, result.latency_ms,
        )
        return result

    async def _aggregate(
        self, response: httpx.Response, on_fragment: FragmentSink | None,
    ) -> AssembledResponse:
        fragments: asyncio.Queue[StreamFragment] = asyncio.Queue(
            maxsize=_FRAGMENT_QUEUE_SIZE,
        )
        # The reader reports at most one error and then stops
        errors: asyncio.Queue[GigaChatError] = asyncio.Queue(maxsize=1)
        reader = asyncio.create_task(
            _read_stream(response, fragments, errors), name="completion-stream",
        )
        next_fragment = asyncio.ensure_future(fragments.get())
        next_error = asyncio.ensure_future(errors.get())

        parts: list[str] = []
        result = AssembledResponse(model=self.spec.model)
        try:
            while True:
                done, _ = await asyncio.wait(
                    {next_fragment, next_error},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_error in done:
                    error = next_error.result()
                    _logger.debug(
                        "Stream failed after %d fragments, discarding partial text",
                        len(parts),
                    )
                    raise error

                fragment = next_fragment.result()
                if fragment.is_final:
                    result.content = "".join(parts)
                    result.finish_reason = result.finish_reason or "stop"
                    return result
                next_fragment = asyncio.ensure_future(fragments.get())

                if fragment.index != 0:
                    continue
                if fragment.finish_reason:
                    result.finish_reason = fragment.finish_reason
                if fragment.model:
                    result.model = fragment.model
                if fragment.usage:
                    result.usage = fragment.usage
                if not fragment.delta:
                    continue
                parts.append(fragment.delta)
                if on_fragment is not None:
                    emitted = on_fragment(fragment.delta)
                    if inspect.isawaitable(emitted):
                        await emitted
        finally:
            next_fragment.cancel()
            next_error.cancel()
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader


async def _read_stream(
    response: httpx.Response,
    fragments: asyncio.Queue[StreamFragment],
    errors: asyncio.Queue[GigaChatError],
) -> None:
    """Decode *response* onto *fragments*; report a failure on *errors*."""
    try:
        async with contextlib.aclosing(decode_stream(response.aiter_lines())) as stream:
            async for fragment in stream:
                await fragments.put(fragment)
    except GigaChatError as e:
        errors.put_nowait(e)
    except Exception as e:
        _logger.exception("Unexpected failure in completion stream reader")
        errors.put_nowait(StreamError(f"stream reader failed: {e}"))
