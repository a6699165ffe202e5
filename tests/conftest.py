import os

from factories import JWT_SECRET, NOW, WEBHOOK_SECRET

# Settings are cached on first import; configure before anything loads them
os.environ["DEBUG"] = "true"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["JWT_SECRET"] = JWT_SECRET

from datetime import timedelta  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import func, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from guestify.app import create_app  # noqa: E402
from guestify.db.session import get_db  # noqa: E402
from guestify.models import Base, CheckoutSession, Profile, Subscription  # noqa: E402
from guestify.services import subscription_store as store  # noqa: E402
from guestify.services.reconciliation import WebhookContext  # noqa: E402
from guestify.services.stripe_gateway import StripeGateway, get_stripe  # noqa: E402
from guestify.utils import now_utc  # noqa: E402


class FakeStripe(StripeGateway):
    """Real webhook verification, canned API responses."""

    def __init__(self):
        super().__init__(secret_key="", webhook_secret=WEBHOOK_SECRET)
        self.customers: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.portal_sessions: list[tuple[str, str]] = []
        self.cancelled: list[str] = []

    async def retrieve_subscription(self, subscription_id):
        return self.subscriptions[subscription_id]

    async def retrieve_customer(self, customer_id):
        return self.customers[customer_id]

    async def create_billing_portal_session(self, customer_id, return_url):
        self.portal_sessions.append((customer_id, return_url))
        return f"https://billing.stripe.test/session/{customer_id}"

    async def cancel_subscription(self, subscription_id):
        self.cancelled.append(subscription_id)
        return {"id": subscription_id, "status": "canceled"}


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def stripe_fake():
    return FakeStripe()


@pytest.fixture
def ctx(db, stripe_fake):
    return WebhookContext(db=db, stripe=stripe_fake, now=NOW)


@pytest.fixture
async def profile(db):
    user = Profile(id="user_42", email="a@example.com", stripe_customer_id="cus_1")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def checkout_session(db, profile):
    session = CheckoutSession(
        user_id=profile.id,
        session_id="cs_1",
        plan="monthly",
        checkout_url="https://checkout.stripe.test/cs_1",
    )
    db.add(session)
    await db.commit()
    return session


@pytest.fixture
def load_subscription(session_factory):
    """Read a subscription through a fresh session so no identity-map state leaks in."""

    async def _load(stripe_subscription_id: str) -> Subscription | None:
        async with session_factory() as session:
            return await store.get_subscription(session, stripe_subscription_id)

    return _load


@pytest.fixture
def count_subscriptions(session_factory):
    async def _count() -> int:
        async with session_factory() as session:
            return await session.scalar(select(func.count()).select_from(Subscription))

    return _count


@pytest.fixture
async def client(session_factory, stripe_fake):
    app = create_app()

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_stripe] = lambda: stripe_fake

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def auth_headers():
    def _headers(user_id: str = "user_42") -> dict[str, str]:
        token = jwt.encode(
            {"sub": user_id, "aud": "authenticated", "exp": now_utc() + timedelta(hours=1)},
            JWT_SECRET,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers
