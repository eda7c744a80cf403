"""
Remote Authentication Client.

Thin ``httpx`` client for the remote authentication API::

    POST {base}/auth/login     {email, password}           -> {token, user}
    POST {base}/auth/register  {username, email, password} -> {token, user}

The client never raises into the decision procedure.  Every call yields
a :class:`~fitguard.models.auth_models.RemoteOutcome`:

- ``ACCEPTED``: 2xx with a well-formed ``{token, user}`` body.
- ``REJECTED``: 4xx (the server looked at the credentials and said no).
- ``UNAVAILABLE``: 5xx, network errors, timeouts, malformed bodies, or
  a client that is disabled / unconfigured (no I/O at all).

``AuthService`` falls back to the local store on both ``REJECTED`` and
``UNAVAILABLE``; the distinction only feeds the audit trail.
"""

from __future__ import annotations

import threading
from typing import Optional

import httpx
from pydantic import ValidationError

from fitguard.errors import RemoteUnavailable
from fitguard.logger import StructuredLogger
from fitguard.models.auth_models import RemoteAuthPayload, RemoteOutcome


class RemoteAuthClient:
    """Client for the remote authentication API.

    Parameters
    ----------
    base_url:
        API root, e.g. ``https://api.example.com/api``.  Empty disables
        the client.
    timeout:
        Total per-request budget in seconds.  Bounded so that an
        unresponsive server deterministically falls through to the local
        path.
    enabled:
        Explicit kill-switch; ``False`` disables the client even when a
        URL is configured.
    logger:
        Structured logger.
    transport:
        Optional ``httpx`` transport, e.g. ``httpx.MockTransport`` in
        tests.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float,
        enabled: bool,
        logger: StructuredLogger,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._base_url: str = base_url.rstrip("/")
        self._timeout: float = timeout
        self._enabled: bool = enabled and bool(self._base_url)
        self._logger: StructuredLogger = logger
        self._transport: Optional[httpx.BaseTransport] = transport
        self._client: Optional[httpx.Client] = None
        self._client_lock: threading.Lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> RemoteOutcome:
        return self._post("/auth/login", {"email": email, "password": password})

    def register(self, username: str, email: str, password: str) -> RemoteOutcome:
        return self._post(
            "/auth/register",
            {"username": username, "email": email, "password": password},
        )

    def close(self) -> None:
        """Release the underlying connection pool.  Safe to call twice."""
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _http(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    base_url=self._base_url,
                    timeout=httpx.Timeout(self._timeout),
                    headers={"Content-Type": "application/json"},
                    transport=self._transport,
                )
            return self._client

    def _post(self, path: str, body: dict[str, str]) -> RemoteOutcome:
        if not self._enabled:
            return RemoteOutcome.unavailable("disabled")

        try:
            response: httpx.Response = self._send(path, body)
            status: int = response.status_code
            if 200 <= status < 300:
                payload: RemoteAuthPayload = self._parse_payload(path, response)
                self._logger.info(
                    "Remote auth %s accepted.", path,
                    extra={"event": "REMOTE_ACCEPTED", "status_code": status},
                )
                return RemoteOutcome.from_payload(payload, status_code=status)
            if 400 <= status < 500:
                self._logger.info(
                    "Remote auth %s rejected with HTTP %d.", path, status,
                    extra={"event": "REMOTE_REJECTED", "status_code": status},
                )
                return RemoteOutcome.rejected(status, reason=self._error_message(response))

            self._logger.warning(
                "Remote auth %s failed with HTTP %d.", path, status,
                extra={"event": "REMOTE_SERVER_ERROR", "status_code": status},
            )
            raise RemoteUnavailable("server_error", status_code=status)
        except RemoteUnavailable as exc:
            return RemoteOutcome.unavailable(exc.message, status_code=exc.status_code)

    def _send(self, path: str, body: dict[str, str]) -> httpx.Response:
        """POST *body*; transport failures become ``RemoteUnavailable``."""
        try:
            return self._http().post(path, json=body)
        except httpx.TimeoutException as exc:
            self._logger.warning(
                "Remote auth %s timed out after %.1fs: %s", path, self._timeout, exc,
                extra={"event": "REMOTE_TIMEOUT"},
            )
            raise RemoteUnavailable("timeout") from exc
        except httpx.HTTPError as exc:
            self._logger.warning(
                "Remote auth %s unreachable: %s", path, exc,
                extra={"event": "REMOTE_UNREACHABLE"},
            )
            raise RemoteUnavailable("network_error") from exc

    def _parse_payload(self, path: str, response: httpx.Response) -> RemoteAuthPayload:
        try:
            return RemoteAuthPayload.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            self._logger.warning(
                "Remote auth %s returned a malformed body: %s", path, exc,
                extra={"event": "REMOTE_MALFORMED", "status_code": response.status_code},
            )
            raise RemoteUnavailable(
                "malformed_body", status_code=response.status_code,
            ) from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> Optional[str]:
        """Best-effort extraction of ``{"message": ...}`` from an error body."""
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error")
            return str(message)[:200] if message else None
        return None
