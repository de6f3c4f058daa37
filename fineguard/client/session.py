"""Portal-side HTTP client with single-flight access-token refresh.

When several in-flight requests are rejected with 401 at once, exactly one
refresh call is made; the other callers wait for its outcome and retry with
the new access token. A failed or timed-out refresh fails every waiter and
drops the cached tokens, so the user has to sign in again.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import httpx
from pydantic import ValidationError as SchemaValidationError

from fineguard.api.schemas import TokenPairResponse, TokenRefreshRequest
from fineguard.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ReauthenticationRequired(Exception):
    """The session cannot be refreshed; the user must log in again."""


class SingleFlightRefresher(Generic[T]):
    """Collapse concurrent refresh requests into one in-flight call."""

    def __init__(
        self,
        refresh: Callable[[], Awaitable[T]],
        *,
        timeout: float = 10.0,
        on_failure: Optional[Callable[[], None]] = None,
    ) -> None:
        self._refresh = refresh
        self.timeout = timeout
        self._on_failure = on_failure
        self._inflight: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def _run_once(self) -> T:
        try:
            return await asyncio.wait_for(self._refresh(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("session_refresh_timed_out", timeout=self.timeout)
            if self._on_failure:
                self._on_failure()
            raise ReauthenticationRequired("session refresh timed out") from exc
        except Exception:
            if self._on_failure:
                self._on_failure()
            raise
        finally:
            self._inflight = None

    async def run(self) -> T:
        """Join the in-flight refresh or start one."""
        task = self._inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._run_once())
            self._inflight = task
        # A cancelled waiter must not cancel the refresh for the others
        return await asyncio.shield(task)


class SessionClient:
    """Bearer-token HTTP client for portal front ends and service consumers."""

    def __init__(
        self,
        base_url: str,
        *,
        tokens: Optional[TokenPairResponse] = None,
        refresh_path: str = "/auth/refresh",
        refresh_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.refresh_path = refresh_path
        self._tokens = tokens
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._refresher: SingleFlightRefresher[TokenPairResponse] = SingleFlightRefresher(
            self._rotate, timeout=refresh_timeout, on_failure=self.clear_tokens
        )

    async def __aenter__(self) -> "SessionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def tokens(self) -> Optional[TokenPairResponse]:
        return self._tokens

    def set_tokens(self, tokens: TokenPairResponse) -> None:
        self._tokens = tokens

    def clear_tokens(self) -> None:
        self._tokens = None

    async def _rotate(self) -> TokenPairResponse:
        current = self._tokens
        if current is None:
            raise ReauthenticationRequired("not signed in")
        body = TokenRefreshRequest(refresh_token=current.refresh_token).model_dump()
        try:
            response = await self._http.post(self.refresh_path, json=body)
        except httpx.HTTPError as exc:
            logger.warning("session_refresh_transport_error", error=str(exc))
            raise ReauthenticationRequired("session refresh failed") from exc
        if response.status_code != 200:
            logger.info("session_refresh_rejected", status_code=response.status_code)
            raise ReauthenticationRequired("session refresh rejected")
        try:
            payload = response.json()
            data = payload.get("data", payload) if isinstance(payload, dict) else payload
            fresh = TokenPairResponse.model_validate(data)
        except (ValueError, SchemaValidationError) as exc:
            logger.warning("session_refresh_malformed_response")
            raise ReauthenticationRequired("malformed refresh response") from exc
        self._tokens = fresh
        logger.info("session_refreshed")
        return fresh

    async def _send(
        self, method: str, url: str, access_token: str, **kwargs: Any
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {access_token}"
        return await self._http.request(method, url, headers=headers, **kwargs)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request, refreshing once on 401."""
        used = self._tokens
        if used is None:
            raise ReauthenticationRequired("not signed in")
        response = await self._send(method, url, used.access_token, **kwargs)
        if response.status_code != 401:
            return response

        current = self._tokens
        if current is not None and current.access_token != used.access_token:
            # Someone else already rotated while this request was in flight
            fresh = current
        else:
            fresh = await self._refresher.run()
        return await self._send(method, url, fresh.access_token, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)
