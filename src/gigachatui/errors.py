"""Exception hierarchy for gigachatui.

All failures surfaced by the credential supply and the completion engine
derive from :class:`GigaChatError`:

- ``CredentialError``: token issuance failed (network or non-200)
- ``RequestBuildError``: the completion request could not be serialized
- ``TransportError``: connection failure before the stream started
- ``APIError``: non-OK status with a ``{code, message}`` body
- ``StreamError``: failure after the stream started; ``DecodeError`` for a
  malformed chunk line, ``ProtocolError`` for EOF before ``data: [DONE]``
"""

from __future__ import annotations


class GigaChatError(Exception):
    """Base class for all gigachatui errors."""


class CredentialError(GigaChatError):
    """Access token could not be obtained from the OAuth endpoint.

    Attributes:
        status_code: HTTP status of the issuer response (None on network failure)
        code: Issuer error code from the ``{code, message}`` body, if any
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: int | None = None,
    ):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class RequestBuildError(GigaChatError):
    """The completion request body could not be built."""


class TransportError(GigaChatError):
    """Connection-level failure while issuing the completion request."""


class CompletionTimeoutError(TransportError):
    """The completion call did not finish within its deadline."""


class APIError(GigaChatError):
    """The completion endpoint answered with a non-OK status.

    Attributes:
        status_code: HTTP status code
        code: API error code from the body (None if the body had none)
        message: API error message, or the raw body text
    """

    def __init__(self, status_code: int, code: int | None, message: str):
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(
            f"API request failed: status {status_code}, code {code}, message {message}"
        )


class AuthenticationError(APIError):
    """The bearer token was rejected (HTTP 401)."""


class StreamError(GigaChatError):
    """The response stream failed after it started."""


class DecodeError(StreamError):
    """A ``data:`` line did not parse as a completion chunk."""

    def __init__(self, message: str, line: str = ""):
        self.line = line
        super().__init__(message)


class ProtocolError(StreamError):
    """The stream ended without the ``data: [DONE]`` sentinel."""
