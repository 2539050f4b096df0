"""OAuth access token supply with background rotation.

The supply owns exactly one current :class:`Credential`.  Rotation builds
a complete new credential off to the side and publishes it with a single
reference assignment, so readers of :meth:`CredentialSupply.current`
always see either the old or the new token, never a mix.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid

import httpx
from pydantic import ValidationError

from gigachatui.config import AuthSpec
from gigachatui.errors import CredentialError
from gigachatui.llm.schemas import ErrorResponse, TokenResponse
from gigachatui.types import Credential

_logger = logging.getLogger(__name__)

_ERROR_QUEUE_SIZE = 16


def basic_auth_secret(client_id: str, client_secret: str) -> str:
    """Return base64 of ``client_id:client_secret``."""
    return base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()


class CredentialSupply:
    """Holds the current bearer credential and rotates it periodically.

    Create with :meth:`create`, which performs the initial token fetch and
    fails if it cannot.  After :meth:`start`, a background task refreshes
    the token every ``refresh_interval`` seconds.  Refresh failures never
    invalidate the current token; they are logged and put on
    :attr:`errors`.
    """

    def __init__(
        self,
        spec: AuthSpec,
        credential: Credential,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._spec = spec
        self._credential = credential
        self._owns_client = http_client is None
        self._client = http_client or _make_client(spec)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._shutdown: asyncio.Task[None] | None = None
        self.errors: asyncio.Queue[CredentialError] = asyncio.Queue(
            maxsize=_ERROR_QUEUE_SIZE,
        )

    @classmethod
    async def create(
        cls,
        spec: AuthSpec,
        http_client: httpx.AsyncClient | None = None,
    ) -> CredentialSupply:
        """Fetch the initial token and return a ready supply.

        Raises ``CredentialError`` if the initial fetch fails.
        """
        client = http_client or _make_client(spec)
        try:
            credential = await fetch_credential(client, spec)
        except CredentialError as e:
            if http_client is None:
                await client.aclose()
            raise CredentialError(
                f"failed to get initial access token: {e}",
                status_code=e.status_code,
                code=e.code,
            ) from e

        supply = cls(spec, credential, http_client=client)
        supply._owns_client = http_client is None
        return supply

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def current(self) -> Credential:
        """Return the latest credential snapshot."""
        return self._credential

    def start(self, refresh_interval: float | None = None) -> asyncio.Task[None]:
        """Launch the rotation loop and return its task."""
        if self._shutdown is not None:
            raise RuntimeError("credential supply has been stopped")
        if self._task is not None and not self._task.done():
            return self._task
        interval = refresh_interval or self._spec.refresh_interval
        self._stop_event.clear()
        self._task = asyncio.create_task(
            self._run(interval), name="credential-rotation",
        )
        return self._task

    async def stop(self, reason: str = "shutdown") -> None:
        """Stop the rotation loop after one final rotation attempt.

        Later calls wait for the same shutdown and do not rotate again.
        """
        if self._shutdown is None:
            _logger.info("Stopping credential rotation: %s", reason)
            self._stop_event.set()
            self._shutdown = asyncio.create_task(
                self._finish(), name="credential-shutdown",
            )
        # Final rotation and client close run in their own task, outside the
        # caller's cancellation
        await asyncio.shield(self._shutdown)

    async def rotate(self) -> bool:
        """Fetch a new token and publish it.  Returns True on success."""
        try:
            credential = await fetch_credential(self._client, self._spec)
        except CredentialError as e:
            _logger.warning("Token rotation failed, keeping current token: %s", e)
            self._report(e)
            return False

        self._credential = credential
        _logger.info("Token rotated, valid until %d", credential.expires_at)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, interval: float) -> None:
        while True:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.rotate()
                continue
            await self.rotate()
            return

    async def _finish(self) -> None:
        try:
            if self._task is not None:
                await self._task
            else:
                await self.rotate()
        finally:
            self._task = None
            if self._owns_client:
                await self._client.aclose()

    def _report(self, error: CredentialError) -> None:
        if self.errors.full():
            self.errors.get_nowait()  # drop the oldest
        self.errors.put_nowait(error)


def _make_client(spec: AuthSpec) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        verify=spec.verify_ssl,
        timeout=httpx.Timeout(spec.timeout, connect=10),
    )


async def fetch_credential(client: httpx.AsyncClient, spec: AuthSpec) -> Credential:
    """Exchange client id/secret for an access token."""
    headers = {
        "Authorization": f"Basic {basic_auth_secret(spec.client_id, spec.client_secret)}",
        "Content-Type": "application/x-www-form-urlencoded",
        "Accept": "application/json",
        "RqUID": str(uuid.uuid4()),
    }
    try:
        resp = await client.post(
            spec.auth_url, content=f"scope={spec.scope}", headers=headers,
        )
    except httpx.HTTPError as e:
        raise CredentialError(f"failed to send authentication request: {e}") from e

    if resp.status_code != httpx.codes.OK:
        try:
            err = ErrorResponse.model_validate_json(resp.content)
        except ValidationError:
            err = ErrorResponse(message=resp.text)
        raise CredentialError(
            f"authentication failed: status {resp.status_code}, "
            f"code {err.code}, message {err.message}",
            status_code=resp.status_code,
            code=err.code,
        )

    try:
        token = TokenResponse.model_validate_json(resp.content)
    except ValidationError as e:
        raise CredentialError(
            f"malformed authentication response: {e}",
            status_code=resp.status_code,
        ) from e
    return Credential(token=token.access_token, expires_at=token.expires_at)
