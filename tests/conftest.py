"""Shared test fixtures."""
import httpx
import pytest

from storefront_client.checkout.schema import CartItem, PaymentConfirmation, ShippingAddress
from storefront_client.context import StorefrontContext
from storefront_client.storage import DurableStore

BASE_URL = "http://storefront.test/api"


class FakeStorefront:
    """
    Scriptable storefront API served through httpx.MockTransport.

    Each route holds a queue of replies; the last one repeats. A reply is an
    httpx.Response, a (status, body) tuple, an exception to raise, or a
    callable taking the request and returning any of those (sync or async).
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *replies) -> None:
        self.routes[(method.upper(), path)] = list(replies)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and _api_path(r) == path]

    def count(self, method: str, path: str) -> int:
        return len(self.calls(method, path))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, _api_path(request)))
        if not queue:
            return httpx.Response(404, json={"message": "Not found"})
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(reply) and not isinstance(reply, httpx.Response):
            reply = reply(request)
            if hasattr(reply, "__await__"):
                reply = await reply
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, tuple):
            status, body = reply
            return httpx.Response(status, json=body)
        return reply


def _api_path(request: httpx.Request) -> str:
    path = request.url.path
    return path[len("/api"):] if path.startswith("/api/") else path


class SleepRecorder:
    """Stands in for asyncio.sleep so backoff delays are observable and instant."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def backend():
    return FakeStorefront()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def state_dir(tmp_path):
    """Temporary directory for durable client state during tests."""
    return tmp_path / "state"


@pytest.fixture
def store(state_dir):
    return DurableStore(root=state_dir)


@pytest.fixture
def make_context(state_dir, backend, sleeper):
    """Build a fresh instance over the same state dir, like a page reload."""
    def make() -> StorefrontContext:
        return StorefrontContext.create(
            base_url=BASE_URL,
            state_dir=state_dir,
            transport=backend.transport(),
            sleep=sleeper,
        )
    return make


@pytest.fixture
def ctx(make_context):
    return make_context()


@pytest.fixture
def login_ok(backend):
    """Backend accepts login and hands out 'token-1'."""
    backend.on("POST", "/auth/login", (200, {
        "user": {"_id": "u1", "name": "Asha", "email": "asha@example.com", "role": "customer"},
        "accessToken": "token-1",
    }))


@pytest.fixture
def cart():
    return [
        CartItem(product_id="p1", name="Paracetamol 500mg", price="199.00", quantity=1),
        CartItem(product_id="p2", name="Vitamin C", price="150.00", quantity=2),
    ]


@pytest.fixture
def confirmation():
    return PaymentConfirmation(payment_id="pay_001", order_id="order_prov_1", signature="sig_abc")


@pytest.fixture
def address():
    return ShippingAddress(
        street="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        zip_code="560001",
        phone="98765 43210",
    )
