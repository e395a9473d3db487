"""
Storefront API client with the request interception pipeline.

Every call goes through two stages:
  pre-request:    attach the stored credential as a bearer token
  post-response:  pass 2xx through; on 401 renew the credential once per
                  failure wave and replay the call exactly once

Renewal itself belongs to the session manager (bound with bind_session());
this module only decides when to ask for it.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from ..errors import ApiError, AuthExpiredError, TransientNetworkError
from .routes import skips_renewal

if TYPE_CHECKING:
    from ..session.manager import SessionManager
    from ..storage.credentials import CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = os.environ.get("STOREFRONT_API_URL", "http://localhost:5000/api")

# Timeout for every API call (seconds)
DEFAULT_TIMEOUT = float(os.environ.get("STOREFRONT_API_TIMEOUT", "30"))


@dataclass
class ApiCall:
    """One logical request as it travels through the pipeline."""
    method: str
    path: str
    json: Any = None
    params: dict | None = None
    timeout: float | None = None
    skip_renewal: bool = False
    retried: bool = False
    credential: str | None = field(default=None, repr=False)


class ApiClient:
    """Async client for the storefront API. Holds one httpx.AsyncClient."""

    def __init__(
        self,
        credentials: CredentialStore,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._credentials = credentials
        self._timeout = timeout
        self._session: SessionManager | None = None
        self._http = httpx.AsyncClient(
            base_url=base_url or DEFAULT_BASE_URL,
            timeout=timeout,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            transport=transport,
        )

    def bind_session(self, session: SessionManager) -> None:
        """Give the pipeline the session that owns credential renewal."""
        self._session = session

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict | None = None,
        timeout: float | None = None,
        skip_renewal: bool = False,
    ) -> Any:
        """
        Send a request and return the decoded JSON body ({} for an empty body).

        Raises:
            AuthExpiredError: 401 that could not be recovered by renewal
            ApiError: any other non-2xx response
            TransientNetworkError: timeout or transport failure
        """
        call = ApiCall(
            method=method.upper(),
            path=path,
            json=json,
            params=params,
            timeout=timeout,
            skip_renewal=skip_renewal,
        )
        return await self._dispatch(call)

    async def _dispatch(self, call: ApiCall) -> Any:
        response = await self._send(call)
        if response.status_code == 401:
            return await self._recover_unauthorized(call, response)
        return self._unwrap(call, response)

    def _prepare_headers(self, call: ApiCall) -> dict[str, str]:
        """Pre-request stage."""
        call.credential = self._credentials.get()
        if call.credential:
            return {"Authorization": f"Bearer {call.credential}"}
        return {}

    async def _send(self, call: ApiCall) -> httpx.Response:
        headers = self._prepare_headers(call)
        logger.info("API %s %s%s", call.method, call.path, " (retry)" if call.retried else "")
        try:
            return await self._http.request(
                call.method,
                call.path,
                json=call.json,
                params=call.params,
                headers=headers,
                timeout=call.timeout if call.timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as exc:
            logger.warning("API timeout: %s %s", call.method, call.path)
            raise TransientNetworkError(f"Request timed out: {call.method} {call.path}") from exc
        except httpx.TransportError as exc:
            logger.warning("API unreachable: %s %s (%s)", call.method, call.path, exc)
            raise TransientNetworkError(f"Network error: {exc}") from exc

    async def _recover_unauthorized(self, call: ApiCall, response: httpx.Response) -> Any:
        """Post-response stage for a 401."""
        body = _decode(response)
        if not isinstance(body, dict):
            body = {}
        error = AuthExpiredError(
            body.get("message") or "Authentication required",
            status_code=401,
            response=body,
        )

        if call.retried or call.skip_renewal or skips_renewal(call.path):
            raise error

        session = self._session
        if session is None or session.logout_in_flight:
            raise error

        call.retried = True
        current = self._credentials.get()
        if current != call.credential:
            # Someone already handled this wave while the call was in flight.
            if current is None:
                raise error
            logger.info("Credential changed since %s %s was sent; replaying", call.method, call.path)
            return await self._dispatch(call)

        generation = session.generation
        renewed = await session.renew_token()
        if not renewed:
            # A deliberate logout or a new sign-in is not an expiry.
            if session.generation == generation:
                session.force_logout()
            raise error

        logger.info("Credential renewed; replaying %s %s", call.method, call.path)
        return await self._dispatch(call)

    def _unwrap(self, call: ApiCall, response: httpx.Response) -> Any:
        body = _decode(response)
        if response.is_success:
            return body
        logger.error("API error: %s %s -> %d", call.method, call.path, response.status_code)
        message = body.get("message") if isinstance(body, dict) else None
        raise ApiError(
            message or f"Storefront API error: {response.status_code}",
            status_code=response.status_code,
            response=body if isinstance(body, dict) else {},
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


def _decode(response: httpx.Response) -> Any:
    """JSON body, {} when empty or not JSON."""
    raw = response.text.strip()
    if not raw:
        return {}
    try:
        return response.json()
    except ValueError:
        logger.warning("Non-JSON body (status=%d, body=%.200s)", response.status_code, raw)
        return {}
