import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ACCESS_CODE_MIN_DELAY_MS"] = "0"
os.environ["ACCESS_CODE_MAX_DELAY_MS"] = "0"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_dummy"
os.environ.setdefault("UPLOADS_DIR", "/tmp/hotelpro-test-uploads")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

from hotelpro import events, models, security  # noqa: E402
from hotelpro.db import engine, get_session  # noqa: E402
from hotelpro.main import app  # noqa: E402
from hotelpro.seeds.plans import seed_plans  # noqa: E402

PASSWORD = "secret123"
PASSWORD_HASH = security.get_password_hash(PASSWORD)


class FakeRedis:
    """In-memory stand-in for the few Redis calls the app makes."""

    def __init__(self):
        self.counters: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []

    def ping(self):
        return True

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def expire(self, key, seconds):
        return True

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    monkeypatch.setattr(events, "get_redis", lambda: None)


@pytest.fixture
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(events, "get_redis", lambda: fake)
    return fake


@pytest.fixture(name="session")
def session_fixture():
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        seed_plans(session)
        yield session
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="client")
def client_fixture(session):
    app.dependency_overrides[get_session] = lambda: session
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


def make_client(
    session: Session,
    slug: str = "taj-palace",
    plan: models.ClientPlan = models.ClientPlan.basic,
    status: models.ClientStatus = models.ClientStatus.active,
    access_code: str | None = "TAJ123",
) -> models.Client:
    client = models.Client(name=slug.replace("-", " ").title(), slug=slug, plan=plan, status=status,
                           access_code=access_code)
    session.add(client)
    session.commit()
    session.refresh(client)
    session.add(models.RestaurantSettings(client_id=client.id, business_name=client.name))
    session.commit()
    return client


def make_user(session: Session, client: models.Client, username: str, role: models.UserRole) -> models.User:
    user = models.User(
        client_id=client.id,
        username=username,
        name=username.title(),
        password_hash=PASSWORD_HASH,
        role=role,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def auth(user: models.User) -> dict:
    token = security.create_access_token({"sub": user.username, "client_id": user.client_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def tenant(session):
    return make_client(session)


@pytest.fixture
def admin(session, tenant):
    return make_user(session, tenant, "admin", models.UserRole.admin)


@pytest.fixture
def waiter(session, tenant):
    return make_user(session, tenant, "ravi", models.UserRole.waiter)


@pytest.fixture
def kitchen(session, tenant):
    return make_user(session, tenant, "chef", models.UserRole.kitchen)


@pytest.fixture
def cashier(session, tenant):
    return make_user(session, tenant, "cashier", models.UserRole.cashier)


@pytest.fixture
def table(session, tenant):
    table = models.Table(client_id=tenant.id, table_code="T5")
    session.add(table)
    session.commit()
    session.refresh(table)
    return table


@pytest.fixture
def menu(session, tenant):
    """Butter chicken (with a Large variant and extra-cheese modifier) and naan-style lassi."""
    curry = models.MenuItem(
        client_id=tenant.id,
        name="Butter Chicken",
        price_cents=25000,
        category="Mains",
        variants=[{"name": "Large", "price_cents": 32000}],
        modifiers=[{"name": "Extra Butter", "price_cents": 3000}],
    )
    lassi = models.MenuItem(client_id=tenant.id, name="Mango Lassi", price_cents=15000, category="Drinks")
    session.add(curry)
    session.add(lassi)
    session.commit()
    session.refresh(curry)
    session.refresh(lassi)
    return {"curry": curry, "lassi": lassi}


@pytest.fixture
def super_admin(session):
    admin = models.SuperAdmin(email="hq@hotelpro.in", name="HQ", password_hash=PASSWORD_HASH)
    session.add(admin)
    session.commit()
    session.refresh(admin)
    return admin


@pytest.fixture
def hq_client(client, super_admin):
    response = client.post("/hq/login", json={"email": "hq@hotelpro.in", "password": PASSWORD})
    assert response.status_code == 200
    return client
