"""Decoder for ``data: {...}`` streamed completion bodies.

The body is a sequence of newline-delimited event records::

    data: {"choices":[{"delta":{"content":"Hel"},"index":0}], ...}

    data: {"choices":[{"delta":{"content":"lo"},"index":0}], ...}

    data: [DONE]

Blank lines separate events and unknown line shapes are ignored.  The
stream must end with ``data: [DONE]``; EOF before it is a protocol error.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx
from pydantic import ValidationError

from gigachatui.errors import (
    APIError,
    AuthenticationError,
    DecodeError,
    ProtocolError,
    StreamError,
)
from gigachatui.types import StreamFragment

from .schemas import ErrorResponse, StreamChunk

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_LINE = "data: [DONE]"


async def decode_stream(lines: AsyncIterator[str]) -> AsyncIterator[StreamFragment]:
    """Yield fragments decoded from *lines* until the terminal sentinel.

    One fragment is yielded per choice of each chunk.  The last item is
    always a fragment with ``is_final=True``; anything else ends in an
    exception (``DecodeError``, ``ProtocolError`` or ``StreamError``).
    """
    try:
        async for raw_line in lines:
            line = raw_line.rstrip("\r\n")
            if line == DONE_LINE:
                yield StreamFragment(is_final=True)
                return
            if not line.strip():
                continue
            if not line.startswith(DATA_PREFIX):
                _logger.debug("Ignoring unknown stream line: %.80s", line)
                continue

            chunk = _parse_chunk(line[len(DATA_PREFIX):], line)
            usage = chunk.usage.model_dump() if chunk.usage else None
            for choice in chunk.choices:
                yield StreamFragment(
                    delta=choice.delta.content or "",
                    index=choice.index,
                    finish_reason=choice.finish_reason,
                    model=chunk.model,
                    usage=usage,
                )
    except httpx.HTTPError as e:
        raise StreamError(f"stream read failed: {e}") from e

    raise ProtocolError("stream ended without the [DONE] marker")


def _parse_chunk(data: str, line: str) -> StreamChunk:
    try:
        return StreamChunk.model_validate_json(data)
    except ValidationError as e:
        raise DecodeError(f"malformed stream chunk: {e}", line=line) from e


async def raise_for_api_error(response: httpx.Response) -> None:
    """Raise ``APIError`` if *response* is not ``200 OK``.

    Reads the whole body as a ``{code, message}`` payload.  Bodies of any
    other shape are reported with their raw text as the message.
    """
    if response.status_code == httpx.codes.OK:
        return

    body = await response.aread()
    text = body.decode(errors="replace")
    code: int | None = None
    message = text
    try:
        payload = ErrorResponse.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError):
        pass  # not a {code, message} body, report the raw text
    else:
        code = payload.code
        message = payload.message or text

    _logger.debug("API error response %d: %s", response.status_code, text)
    error_cls = (
        AuthenticationError
        if response.status_code == httpx.codes.UNAUTHORIZED
        else APIError
    )
    raise error_cls(response.status_code, code, message)
