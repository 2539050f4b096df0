"""Pydantic models for the wire bodies the client has to parse."""

from __future__ import annotations

from pydantic import BaseModel, Field


class TokenResponse(BaseModel):
    access_token: str
    expires_at: int


class ErrorResponse(BaseModel):
    code: int | None = None
    message: str = ""


class ChunkDelta(BaseModel):
    content: str | None = ""
    role: str | None = None


class ChunkChoice(BaseModel):
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    index: int = 0
    finish_reason: str | None = None


class ChunkUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class StreamChunk(BaseModel):
    """One ``data: {...}`` record of a streamed completion."""

    choices: list[ChunkChoice]
    created: int | None = None
    model: str | None = None
    object: str | None = None
    usage: ChunkUsage | None = None
