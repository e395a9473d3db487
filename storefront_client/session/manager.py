"""
Session state machine.

    unauthenticated -> checking -> authenticated
    authenticated   -> unauthenticated   (logout, failed renewal, forced logout)

Renewal and logout are single-flight: the first caller starts the operation,
later callers await the same future and get the same result. No second
network request is ever issued while one is outstanding.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError as SchemaError

from ..api import routes
from ..errors import ApiError, SessionError, TransientNetworkError, ValidationError
from ..events import SESSION_EXPIRED
from .schema import LoginForm, Principal, SessionStatus, SignUpForm

if TYPE_CHECKING:
    from ..api.client import ApiClient
    from ..events import SignalBus
    from ..storage.credentials import CredentialStore

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Session expired. Please login again."


class SessionManager:
    """Owns session status, the principal, and every write to the credential store."""

    def __init__(self, api: ApiClient, credentials: CredentialStore, events: SignalBus):
        self._api = api
        self._credentials = credentials
        self._events = events
        self._status = SessionStatus.UNAUTHENTICATED
        self._principal: Principal | None = None
        self._renewal: asyncio.Future | None = None
        self._logout: asyncio.Future | None = None
        self._expiry_announced = False
        # Bumped whenever the session is replaced or ended on purpose; a renewal
        # started under an older generation must not write its token.
        self._generation = 0
        api.bind_session(self)
        credentials.subscribe(self._on_credential_change)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def principal(self) -> Principal | None:
        return self._principal

    @property
    def is_authenticated(self) -> bool:
        return self._status is SessionStatus.AUTHENTICATED

    @property
    def renewal_in_flight(self) -> bool:
        return self._renewal is not None

    @property
    def logout_in_flight(self) -> bool:
        return self._logout is not None

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> dict:
        return {
            "status": self._status.value,
            "user": self._principal.model_dump() if self._principal else None,
        }

    # ------------------------------------------------------------------
    # Sign-up / login
    # ------------------------------------------------------------------

    async def sign_up(self, fields: SignUpForm | dict) -> Principal:
        """Register and sign in. Password confirmation is checked before any request."""
        form = fields if isinstance(fields, SignUpForm) else SignUpForm.model_validate(fields)
        missing = [name for name in ("name", "email", "password") if not getattr(form, name).strip()]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
        if form.password != form.confirm_password:
            raise ValidationError("Passwords do not match")
        return await self._authenticate(routes.SIGNUP, form.to_payload(), "Signup failed")

    async def login(self, credentials: LoginForm | dict) -> Principal:
        form = credentials if isinstance(credentials, LoginForm) else LoginForm.model_validate(credentials)
        if not form.email.strip() or not form.password:
            raise ValidationError("Email and password are required")
        return await self._authenticate(routes.LOGIN, form.to_payload(), "Login failed")

    async def _authenticate(self, path: str, payload: dict, fallback: str) -> Principal:
        try:
            data = await self._api.post(path, json=payload)
        except ApiError as e:
            logger.warning("%s (status=%d)", fallback, e.status_code)
            raise SessionError(e.response.get("message") or fallback) from e
        except TransientNetworkError as e:
            logger.warning("%s: %s", fallback, e.message)
            raise SessionError(f"{fallback}: could not reach the server") from e

        if not isinstance(data, dict):
            data = {}
        try:
            principal = Principal.model_validate(data.get("user") or {})
        except SchemaError as e:
            raise SessionError(fallback) from e

        token = data.get("accessToken")
        if token:
            self._credentials.set(token)
        self._establish(principal)
        logger.info("Signed in (user id %s)", principal.id or "unknown")
        return principal

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def logout(self) -> None:
        """Sign out. Local state is cleared even when the server call fails."""
        if self._logout is not None:
            logger.debug("Logout already in progress")
            await asyncio.shield(self._logout)
            return
        self._supersede()
        self._logout = asyncio.ensure_future(self._sign_out())
        await asyncio.shield(self._logout)

    async def _sign_out(self) -> None:
        try:
            await self._api.post(routes.LOGOUT, json={})
        except (ApiError, TransientNetworkError) as e:
            logger.warning("Remote logout failed, clearing local session anyway: %s", e.message)
        finally:
            self._reset()
            self._logout = None
        logger.info("Logged out")

    # ------------------------------------------------------------------
    # Startup check
    # ------------------------------------------------------------------

    async def check_auth(self) -> bool:
        """Decide whether the persisted credential still denotes a valid session."""
        self._status = SessionStatus.CHECKING
        self._principal = None

        if not self._credentials.get():
            self._status = SessionStatus.UNAUTHENTICATED
            return False

        try:
            data = await self._api.get(routes.PROFILE, skip_renewal=True)
            if isinstance(data, dict) and isinstance(data.get("user"), dict):
                data = data["user"]
            principal = Principal.model_validate(data if isinstance(data, dict) else {})
        except (ApiError, TransientNetworkError, SchemaError) as e:
            logger.info("Stored session is not valid, discarding credential: %s", e)
            self._reset()
            return False

        if not (principal.id or principal.email):
            logger.info("Profile response carried no identity, discarding credential")
            self._reset()
            return False

        self._establish(principal)
        return True

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    async def renew_token(self) -> bool:
        """
        Exchange the credential for a fresh one.

        Concurrent callers share the outstanding attempt. Returns True on
        success. Returns False when renewal failed, which ends the session, or
        when a logout or a new sign-in overtook it; its token is then dropped.
        """
        if self._renewal is None:
            self._renewal = asyncio.ensure_future(self._renew(self._generation))
        else:
            logger.debug("Joining in-flight renewal")
        return await asyncio.shield(self._renewal)

    async def _renew(self, generation: int) -> bool:
        try:
            data = await self._api.get(routes.REFRESH)
        except ApiError as e:
            logger.warning("Renewal rejected (status=%d): %s", e.status_code, e.message)
            if generation == self._generation:
                self._reset()
            return False
        except TransientNetworkError as e:
            logger.warning("Renewal failed on network, ending session: %s", e.message)
            if generation == self._generation:
                self._reset()
            return False
        finally:
            if self._renewal is asyncio.current_task():
                self._renewal = None

        if generation != self._generation:
            logger.info("Discarding renewed credential: session changed while renewing")
            return False
        token = data.get("accessToken") if isinstance(data, dict) else None
        if token:
            self._credentials.set(token)
        logger.info("Credential renewed")
        return True

    def force_logout(self, message: str = SESSION_EXPIRED_MESSAGE) -> None:
        """Local-only teardown after renewal failed. Announces expiry once per session."""
        self._reset()
        if not self._expiry_announced:
            self._expiry_announced = True
            self._events.emit(SESSION_EXPIRED, message=message)
        logger.warning("Session ended locally: %s", message)

    # ------------------------------------------------------------------

    def _establish(self, principal: Principal) -> None:
        self._principal = principal
        self._status = SessionStatus.AUTHENTICATED
        self._expiry_announced = False
        self._supersede()

    def _supersede(self) -> None:
        self._generation += 1
        self._renewal = None

    def _reset(self) -> None:
        self._credentials.clear()
        self._principal = None
        self._status = SessionStatus.UNAUTHENTICATED

    def _on_credential_change(self, token: str | None, external: bool) -> None:
        if external and token is None and self._status is SessionStatus.AUTHENTICATED:
            logger.info("Signed out by another instance")
            self._supersede()
            self._principal = None
            self._status = SessionStatus.UNAUTHENTICATED
