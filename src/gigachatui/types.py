"""Shared data types for gigachatui."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Credential:
    """Bearer token issued by the OAuth endpoint.

    ``expires_at`` is the issuer's absolute expiry in milliseconds since
    the epoch.  Instances are immutable and replaced wholesale on rotation.
    """

    token: str
    expires_at: int

    def is_expired(self, now: float | None = None) -> bool:
        now_ms = (time.time() if now is None else now) * 1000
        return now_ms >= self.expires_at


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Author of a message in the conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Model(str, enum.Enum):
    LITE = "GigaChat"
    PRO = "GigaChat-Pro"


@dataclass
class Message:
    """A single role-tagged message."""

    role: Role
    content: str = ""

    def __post_init__(self) -> None:
        # Raises ValueError for anything outside the closed role set
        self.role = Role(self.role)
        if self.content is None:
            self.content = ""

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


# ---------------------------------------------------------------------------
# Completion request
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompletionOptions:
    """Sampling options sent with every completion request."""

    temperature: float = 0.87
    top_p: float = 0.47
    n: int = 1
    max_tokens: int = 1024
    repetition_penalty: float = 1.07
    stream: bool = True
    update_interval: float = 0.1  # seconds between server-side flushes

    def __post_init__(self) -> None:
        if not 0 <= self.temperature <= 2:
            raise ValueError(f"temperature must be in [0, 2], got {self.temperature}")
        if not 0 <= self.top_p <= 1:
            raise ValueError(f"top_p must be in [0, 1], got {self.top_p}")
        if not 1 <= self.n <= 4:
            raise ValueError(f"n must be in [1, 4], got {self.n}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.stream is not True:
            raise ValueError("only streamed completions are supported, stream must be true")
        if self.update_interval < 0:
            raise ValueError(
                f"update_interval must not be negative, got {self.update_interval}"
            )


@dataclass(frozen=True)
class CompletionRequest:
    """Immutable request body for ``/chat/completions``."""

    model: str
    messages: tuple[Message, ...]
    options: CompletionOptions = field(default_factory=CompletionOptions)

    def to_payload(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "temperature": self.options.temperature,
            "top_p": self.options.top_p,
            "n": self.options.n,
            "stream": self.options.stream,
            "max_tokens": self.options.max_tokens,
            "repetition_penalty": self.options.repetition_penalty,
            "update_interval": self.options.update_interval,
        }


# ---------------------------------------------------------------------------
# Streaming results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamFragment:
    """One decoded slice of streamed output."""

    delta: str = ""
    index: int = 0
    is_final: bool = False
    finish_reason: str | None = None
    model: str | None = None
    usage: dict[str, int] | None = None


@dataclass
class AssembledResponse:
    """Final assistant reply built from streamed fragments."""

    content: str = ""
    finish_reason: str = ""
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: float = 0

    def to_message(self) -> Message:
        return Message(role=Role.ASSISTANT, content=self.content)
