"""Tests for the session state machine."""
import asyncio

import httpx
import pytest

from storefront_client.errors import AuthExpiredError, SessionError, ValidationError
from storefront_client.events import SESSION_EXPIRED
from storefront_client.session import SessionStatus, SignUpForm
from storefront_client.storage import CredentialStore, DurableStore

SIGNUP = {
    "name": "Asha",
    "email": "asha@example.com",
    "phone": "9876543210",
    "password": "s3cret",
    "confirm_password": "s3cret",
}


class TestSignUpAndLogin:
    @pytest.mark.asyncio
    async def test_signup_stores_credential(self, ctx, backend):
        backend.on("POST", "/auth/signup", (201, {
            "user": {"_id": "u1", "name": "Asha", "email": "asha@example.com"},
            "accessToken": "token-1",
        }))

        principal = await ctx.session.sign_up(SIGNUP)

        assert principal.id == "u1"
        assert ctx.session.status is SessionStatus.AUTHENTICATED
        assert ctx.credentials.get() == "token-1"
        sent = backend.calls("POST", "/auth/signup")[0]
        assert b"confirm" not in sent.content

    @pytest.mark.asyncio
    async def test_signup_password_mismatch_makes_no_request(self, ctx, backend):
        with pytest.raises(ValidationError, match="Passwords do not match"):
            await ctx.session.sign_up({**SIGNUP, "confirm_password": "other"})
        assert backend.requests == []
        assert ctx.session.status is SessionStatus.UNAUTHENTICATED

    def test_signup_form_accepts_wire_field_names(self):
        form = SignUpForm.model_validate({"name": "A", "email": "a@b.c", "password": "x", "confirmPassword": "x"})
        assert form.confirm_password == "x"
        assert form.to_payload() == {"name": "A", "email": "a@b.c", "password": "x"}

    @pytest.mark.asyncio
    async def test_signup_missing_fields(self, ctx, backend):
        with pytest.raises(ValidationError, match="email"):
            await ctx.session.sign_up({**SIGNUP, "email": ""})
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_signup_server_error_surfaces_message(self, ctx, backend):
        backend.on("POST", "/auth/signup", (400, {"message": "User already exists"}))
        with pytest.raises(SessionError, match="User already exists"):
            await ctx.session.sign_up(SIGNUP)
        assert ctx.session.status is SessionStatus.UNAUTHENTICATED
        assert ctx.credentials.get() is None

    @pytest.mark.asyncio
    async def test_login_failure_default_message(self, ctx, backend):
        backend.on("POST", "/auth/login", (500, {}))
        with pytest.raises(SessionError, match="Login failed"):
            await ctx.session.login({"email": "asha@example.com", "password": "pw"})
        assert ctx.session.principal is None

    @pytest.mark.asyncio
    async def test_login_requires_fields(self, ctx, backend):
        with pytest.raises(ValidationError):
            await ctx.session.login({"email": "asha@example.com"})
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_login_network_failure(self, ctx, backend):
        backend.on("POST", "/auth/login", httpx.ConnectError("refused"))
        with pytest.raises(SessionError, match="could not reach"):
            await ctx.session.login({"email": "asha@example.com", "password": "pw"})


class TestLogout:
    @pytest.mark.asyncio
    async def test_concurrent_logout_makes_one_request(self, ctx, backend, login_ok):
        async def slow_logout(request):
            await asyncio.sleep(0.01)
            return httpx.Response(200, json={"message": "Logged out"})

        backend.on("POST", "/auth/logout", slow_logout)
        await ctx.session.login({"email": "asha@example.com", "password": "pw"})

        await asyncio.gather(ctx.session.logout(), ctx.session.logout())

        assert backend.count("POST", "/auth/logout") == 1
        assert ctx.session.status is SessionStatus.UNAUTHENTICATED
        assert ctx.credentials.get() is None
        assert not ctx.session.logout_in_flight

    @pytest.mark.asyncio
    async def test_logout_clears_local_state_when_server_fails(self, ctx, backend, login_ok):
        backend.on("POST", "/auth/logout", (500, {"message": "boom"}))
        await ctx.session.login({"email": "asha@example.com", "password": "pw"})

        await asyncio.gather(ctx.session.logout(), ctx.session.logout())

        assert backend.count("POST", "/auth/logout") == 1
        assert ctx.session.status is SessionStatus.UNAUTHENTICATED
        assert ctx.credentials.get() is None

    @pytest.mark.asyncio
    async def test_logout_during_renewal_discards_renewed_credential(self, ctx, make_context, backend, login_ok):
        notices = []
        ctx.events.subscribe(SESSION_EXPIRED, lambda message: notices.append(message))
        release = asyncio.Event()

        async def held_refresh(request):
            await release.wait()
            return httpx.Response(200, json={"accessToken": "token-2"})

        backend.on("GET", "/orders", (401, {"message": "jwt expired"}))
        backend.on("GET", "/auth/refresh", held_refresh)
        backend.on("POST", "/auth/logout", (200, {"message": "Logged out"}))
        await ctx.session.login({"email": "asha@example.com", "password": "pw"})

        call = asyncio.ensure_future(ctx.api.get("/orders"))
        for _ in range(100):
            if ctx.session.renewal_in_flight:
                break
            await asyncio.sleep(0)
        assert ctx.session.renewal_in_flight

        await ctx.session.logout()
        release.set()

        with pytest.raises(AuthExpiredError):
            await call
        assert ctx.session.status is SessionStatus.UNAUTHENTICATED
        assert ctx.credentials.get() is None
        assert make_context().credentials.get() is None
        assert backend.count("GET", "/orders") == 1
        assert notices == []

    @pytest.mark.asyncio
    async def test_login_during_renewal_keeps_new_credential(self, ctx, backend, login_ok):
        release = asyncio.Event()

        async def held_refresh(request):
            await release.wait()
            return httpx.Response(200, json={"accessToken": "stale-renewal"})

        backend.on("GET", "/auth/refresh", held_refresh)
        await ctx.session.login({"email": "asha@example.com", "password": "pw"})

        renewal = asyncio.ensure_future(ctx.session.renew_token())
        for _ in range(100):
            if ctx.session.renewal_in_flight:
                break
            await asyncio.sleep(0)
        assert ctx.session.renewal_in_flight
        backend.on("POST", "/auth/login", (200, {
            "user": {"_id": "u1", "name": "Asha", "email": "asha@example.com"},
            "accessToken": "token-fresh",
        }))
        await ctx.session.login({"email": "asha@example.com", "password": "pw"})
        release.set()

        assert await renewal is False
        assert ctx.credentials.get() == "token-fresh"
        assert ctx.session.status is SessionStatus.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_logout_survives_network_failure(self, ctx, backend, login_ok):
        backend.on("POST", "/auth/logout", httpx.ConnectError("offline"))
        await ctx.session.login({"email": "asha@example.com", "password": "pw"})

        await ctx.session.logout()

        assert ctx.session.principal is None
        assert ctx.credentials.get() is None


class TestCheckAuth:
    @pytest.mark.asyncio
    async def test_no_credential_means_no_request(self, ctx, backend):
        assert await ctx.session.check_auth() is False
        assert backend.requests == []
        assert ctx.session.status is SessionStatus.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_valid_credential_restores_session(self, make_context, backend):
        backend.on("GET", "/auth/profile", (200, {"_id": "u1", "name": "Asha", "email": "asha@example.com"}))
        make_context().credentials.set("token-1")

        ctx = make_context()
        assert await ctx.session.check_auth() is True
        assert ctx.session.status is SessionStatus.AUTHENTICATED
        assert ctx.session.principal.name == "Asha"

    @pytest.mark.asyncio
    async def test_expired_credential_is_discarded_without_renewal(self, ctx, backend):
        ctx.credentials.set("stale")
        backend.on("GET", "/auth/profile", (401, {"message": "jwt expired"}))

        assert await ctx.session.check_auth() is False

        assert ctx.credentials.get() is None
        assert backend.count("GET", "/auth/refresh") == 0

    @pytest.mark.asyncio
    async def test_network_failure_discards_credential(self, ctx, backend):
        ctx.credentials.set("token-1")
        backend.on("GET", "/auth/profile", httpx.ConnectTimeout("slow"))
        assert await ctx.session.check_auth() is False
        assert ctx.credentials.get() is None

    @pytest.mark.asyncio
    async def test_empty_profile_is_treated_as_invalid(self, ctx, backend):
        ctx.credentials.set("token-1")
        backend.on("GET", "/auth/profile", (200, {}))
        assert await ctx.session.check_auth() is False


class TestRenewal:
    @pytest.mark.asyncio
    async def test_concurrent_renewals_share_one_request(self, ctx, backend, login_ok):
        async def slow_refresh(request):
            await asyncio.sleep(0.01)
            return httpx.Response(200, json={"accessToken": "token-2"})

        backend.on("GET", "/auth/refresh", slow_refresh)
        await ctx.session.login({"email": "asha@example.com", "password": "pw"})

        results = await asyncio.gather(*(ctx.session.renew_token() for _ in range(3)))

        assert results == [True, True, True]
        assert backend.count("GET", "/auth/refresh") == 1
        assert ctx.credentials.get() == "token-2"
        assert not ctx.session.renewal_in_flight

    @pytest.mark.asyncio
    async def test_transient_failure_ends_session(self, ctx, backend, login_ok):
        backend.on("GET", "/auth/refresh", httpx.ReadTimeout("slow"))
        await ctx.session.login({"email": "asha@example.com", "password": "pw"})

        assert await ctx.session.renew_token() is False
        assert ctx.session.status is SessionStatus.UNAUTHENTICATED
        assert ctx.credentials.get() is None


class TestForceLogout:
    @pytest.mark.asyncio
    async def test_notice_once_per_session(self, ctx, backend, login_ok):
        notices = []
        ctx.events.subscribe(SESSION_EXPIRED, lambda message: notices.append(message))
        await ctx.session.login({"email": "asha@example.com", "password": "pw"})

        ctx.session.force_logout()
        ctx.session.force_logout()
        assert len(notices) == 1
        assert ctx.session.status is SessionStatus.UNAUTHENTICATED
        assert backend.count("POST", "/auth/logout") == 0

        await ctx.session.login({"email": "asha@example.com", "password": "pw"})
        ctx.session.force_logout()
        assert len(notices) == 2


@pytest.mark.asyncio
async def test_logout_in_another_instance_ends_session(ctx, backend, login_ok, state_dir):
    await ctx.session.login({"email": "asha@example.com", "password": "pw"})

    CredentialStore(DurableStore(root=state_dir)).clear()
    ctx.store.poll()

    assert ctx.session.status is SessionStatus.UNAUTHENTICATED
    assert ctx.credentials.get() is None
