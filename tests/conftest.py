import json
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Settings are cached on first use; everything below must be set before app imports.
os.environ.setdefault("MONGODB_DB_NAME", "styleledger_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ["MONGODB_TRANSACTIONS"] = "false"
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_dummy")
os.environ.setdefault("STRIPE_PRICE_SINGLE", "price_single")
os.environ.setdefault("STRIPE_PRICE_PACK5", "price_pack5")
os.environ.setdefault("STRIPE_PRICE_PACK10", "price_pack10")
os.environ.setdefault("STRIPE_PRICE_PER_CREDIT", "price_credit")
os.environ.setdefault("PUBLIC_BASE_URL", "https://style.test")

from app.core.exceptions import GatewayVerificationFailedError, NotFoundError  # noqa: E402
from app.models.analysis_session import AnalysisResults  # noqa: E402
from app.services.analysis_pipeline import AnalysisPipeline  # noqa: E402
from app.services.gateway import CheckoutSession, GatewayEvent, LineItem, PaymentGateway  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-memory MongoDB per test."""
    from mongomock_motor import AsyncMongoMockClient

    from app.db.init import init_db

    await init_db(client=AsyncMongoMockClient())
    yield


class FakeQueue:
    def __init__(self) -> None:
        self.enqueued: list[str] = []
        self.fail = False

    async def enqueue_analysis(self, session_id: str) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.enqueued.append(session_id)


@pytest.fixture(autouse=True)
def queue(monkeypatch) -> FakeQueue:
    q = FakeQueue()
    monkeypatch.setattr("app.worker.queue.enqueue_analysis", q.enqueue_analysis)
    return q


class FakeGateway(PaymentGateway):
    """In-memory checkout sessions; a webhook is authentic iff signed with SIGNATURE."""

    SIGNATURE = "t=1,v1=valid"

    def __init__(self) -> None:
        self.sessions: dict[str, CheckoutSession] = {}
        self.created: list[dict] = []

    def add_session(
        self,
        session_id: str,
        line_items: list[tuple[str, int]],
        metadata: dict[str, str] | None = None,
        payment_status: str = "paid",
        amount_total: int = 45000,
        currency: str = "huf",
    ) -> CheckoutSession:
        cs = CheckoutSession(
            id=session_id,
            payment_status=payment_status,
            amount_total=amount_total,
            currency=currency,
            metadata=metadata or {},
            line_items=[LineItem(price_id=p, quantity=q) for p, q in line_items],
        )
        self.sessions[session_id] = cs
        return cs

    async def create_checkout_session(self, *, price_id, quantity, metadata, success_url, cancel_url):
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append(
            {
                "id": session_id,
                "price_id": price_id,
                "quantity": quantity,
                "metadata": metadata,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        cs = self.add_session(session_id, [(price_id, quantity)], metadata, payment_status="unpaid")
        cs.url = f"https://checkout.test/{session_id}"
        return cs

    async def get_session(self, checkout_session_id: str) -> CheckoutSession:
        if checkout_session_id not in self.sessions:
            raise NotFoundError("No such checkout session")
        return self.sessions[checkout_session_id]

    def verify_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if signature != self.SIGNATURE:
            raise GatewayVerificationFailedError()
        data = json.loads(payload)
        return GatewayEvent(id=data["id"], type=data["type"], object_id=data["data"]["object"]["id"])

    @staticmethod
    def event(checkout_session_id: str, event_type: str = "checkout.session.completed", event_id: str = "evt_1") -> bytes:
        return json.dumps(
            {"id": event_id, "type": event_type, "data": {"object": {"id": checkout_session_id}}}
        ).encode()


@pytest.fixture
def gateway(monkeypatch) -> FakeGateway:
    gw = FakeGateway()
    monkeypatch.setattr("app.services.gateway.get_gateway", lambda: gw)
    return gw


class FakePipeline(AnalysisPipeline):
    def __init__(self) -> None:
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def run(self, analysis) -> AnalysisResults:
        self.calls.append(str(analysis.id))
        if self.error:
            raise self.error
        return AnalysisResults(
            observations={"face_shape": "oval", "undertone": "warm"},
            looks=[{"name": "Soft everyday", "steps": ["primer", "tinted balm"]}],
            after_images=["local://after/1.png"],
        )


@pytest.fixture
def pipeline(monkeypatch) -> FakePipeline:
    p = FakePipeline()
    monkeypatch.setattr("app.worker.tasks.get_pipeline", lambda: p)
    return p


@pytest.fixture
def storage(tmp_path, monkeypatch):
    from app.storage.local import LocalStorage

    backend = LocalStorage(tmp_path)
    monkeypatch.setattr("app.services.analysis_sessions.get_storage", lambda: backend)
    monkeypatch.setattr("app.routers.analyses.get_storage", lambda: backend)
    return backend


@pytest_asyncio.fixture
async def make_user():
    from app.models.user import User

    counter = {"n": 0}

    async def _make(role: str = "user", balance: int = 0):
        from app.services import credits

        counter["n"] += 1
        user = User(email=f"user{counter['n']}@example.com", name=f"User {counter['n']}", role=role)
        await user.insert()
        if balance:
            await credits.append_entry(user.id, balance, credits.reason_for_quantity(balance), idempotency_key=f"seed:{user.id}")
        return user

    return _make


@pytest_asyncio.fixture
async def make_session():
    """Pending analysis, owned by ``owner`` or guest-owned when owner is None."""
    from app.services import analysis_sessions

    async def _make(owner=None, occasion: str = "everyday"):
        return await analysis_sessions.create_session(
            owner_user_id=owner.id if owner else None,
            occasion=occasion,
            before_image_ref="local://before-images/test.jpg",
        )

    return _make


@pytest.fixture
def login():
    """Sign ``client`` in as ``user`` the way the identity provider would."""
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME

    def _login(client: AsyncClient, user) -> None:
        client.cookies.set(
            SESSION_COOKIE_NAME,
            create_session_cookie({"user_id": str(user.id), "session_version": user.session_version}),
        )

    return _login


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
