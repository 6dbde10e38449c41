"""Sync transport: HTTP exchange with the server's ``/sync`` endpoints.

Transient failures (connection errors, timeouts, HTTP 429 and 5xx) are retried
with exponential back-off and jitter, resending the same batch or cursor. When
the attempts run out a ``TransportError`` is raised; the caller has changed
nothing locally at that point and simply tries again on the next cycle.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from domain.errors import CursorDivergence, TransportError

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def is_retryable(exc: Exception) -> bool:
    """Return True if *exc* indicates a transient failure worth another attempt."""
    if isinstance(exc, TransportError):
        return exc.status_code is None or exc.status_code in RETRYABLE_STATUS
    return False


@dataclass
class PullPage:
    """One page of the server change feed."""

    mutations: list[dict[str, Any]] = field(default_factory=list)
    cursor: str = ""
    has_more: bool = False


@dataclass
class DigestSnapshot:
    """Server per-kind digests and the cursor they were taken at."""

    digests: dict[str, str]
    cursor: str


class SyncTransport:
    """Push/pull client for one server, one user and one device."""

    def __init__(
        self,
        base_url: str,
        token: str,
        device_id: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        jitter: float = 0.25,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}", "X-Device-Id": device_id}
        if client is None:
            client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        client.headers.update(headers)
        self.client = client
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> SyncTransport:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    # ── Exchanges ────────────────────────────────────

    async def push(self, mutations: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        """Send an ordered batch; return one result per mutation, in order."""
        body = await self._send("POST", "/sync/push", json={"mutations": list(mutations)})
        results = body.get("results")
        if not isinstance(results, list) or len(results) != len(mutations):
            raise TransportError("Malformed push response: results do not match the batch")
        return results

    async def pull(self, since: str | None) -> PullPage:
        """Fetch the feed page after *since*.

        Raises CursorDivergence when the server does not know the cursor.
        """
        params = {"since": since} if since else {}
        body = await self._send("GET", "/sync/pull", params=params)
        mutations = body.get("mutations")
        cursor = body.get("cursor")
        if not isinstance(mutations, list) or not isinstance(cursor, str):
            raise TransportError("Malformed pull response")
        return PullPage(
            mutations=mutations,
            cursor=cursor,
            has_more=bool(body.get("hasMore", False)),
        )

    async def digest(self) -> DigestSnapshot:
        """Fetch the server's per-kind state digests."""
        body = await self._send("GET", "/sync/digest")
        return DigestSnapshot(digests=dict(body.get("digests", {})), cursor=str(body["cursor"]))

    # ── Plumbing ─────────────────────────────────────

    async def _send_once(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code == 409:
            raise CursorDivergence(f"Server does not recognise the cursor ({path})")
        if resp.status_code >= 400:
            raise TransportError(
                f"{method} {path} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            body: dict[str, Any] = resp.json()
        except ValueError as exc:
            raise TransportError(f"{method} {path} returned invalid JSON") from exc
        return body

    async def _send(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        attempt = 1
        delay = self.base_delay
        while True:
            try:
                return await self._send_once(method, path, **kwargs)
            except TransportError as exc:
                if attempt >= self.max_attempts or not is_retryable(exc):
                    logger.warning(
                        "%s %s gave up after %d attempt(s): %s", method, path, attempt, exc
                    )
                    raise
                sleep_for = delay * (1 + random.uniform(-self.jitter, self.jitter))
                logger.debug(
                    "%s %s attempt %d/%d failed (%s); retrying in %.2fs",
                    method,
                    path,
                    attempt,
                    self.max_attempts,
                    exc,
                    sleep_for,
                )
                await asyncio.sleep(sleep_for)
                attempt += 1
                delay = min(delay * 2, self.max_delay)
