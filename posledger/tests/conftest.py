import os
import pathlib
import sys
import tempfile
from datetime import datetime, timedelta, timezone

import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.append(str(REPO_ROOT))


def pytest_configure():
    if not (os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL")):
        temp_dir = tempfile.mkdtemp(prefix="posledger-tests-")
        db_path = pathlib.Path(temp_dir) / "pytest.db"
        os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    if not os.getenv("ENCRYPTION_KEY"):
        from cryptography.fernet import Fernet

        os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()


@pytest.fixture(scope="session")
def sqlite_engine():
    from posledger.app import models  # noqa: F401
    from posledger.app.db import Base, engine

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def sqlite_session(sqlite_engine):
    from posledger.app.db import Base, SessionLocal

    # bulk selection spans every restaurant, so each test starts empty
    with sqlite_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def encryption():
    from posledger.app.services.encryption_service import FernetEncryptionService

    return FernetEncryptionService(os.environ["ENCRYPTION_KEY"])


@pytest.fixture()
def restaurant(sqlite_session):
    from posledger.app.models import Restaurant

    row = Restaurant(name="Test Bistro", timezone="America/Chicago")
    sqlite_session.add(row)
    sqlite_session.commit()
    return row


@pytest.fixture()
def make_connection(sqlite_session, encryption):
    from posledger.app.services.connection_service import upsert_connection

    def _make(restaurant_id: str, provider: str, **overrides):
        values = {
            "access_token": "stored-access",
            "refresh_token": "stored-refresh",
            "token_expires_at": datetime.now(timezone.utc) + timedelta(days=60),
            "credentials": None,
            "external_account_id": "M1",
            "region": "na",
            "environment": None,
            "config": None,
        }
        values.update(overrides)
        conn = upsert_connection(
            sqlite_session,
            encryption,
            restaurant_id=restaurant_id,
            provider=provider,
            **values,
        )
        sqlite_session.commit()
        return conn

    return _make


class RecordingDownstream:
    def __init__(self, fail_pnl_for=None):
        self.unified_sales = []
        self.pnl = []
        self.fail_pnl_for = set(fail_pnl_for or ())

    def sync_to_unified_sales(self, provider, restaurant_id, start_date=None, end_date=None):
        self.unified_sales.append((provider, restaurant_id, start_date, end_date))

    def calculate_daily_pnl(self, provider, restaurant_id, service_date):
        if service_date in self.fail_pnl_for:
            raise RuntimeError("pnl procedure failed")
        self.pnl.append((provider, restaurant_id, service_date))


@pytest.fixture()
def downstream():
    return RecordingDownstream()


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def make_engine(encryption, downstream, sleeps):
    import httpx

    from posledger.app.config import SyncSettings
    from posledger.app.services.sync_service import SyncEngine

    engines = []

    def _make(handler, settings=None, clock=None):
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        engine = SyncEngine(
            settings or SyncSettings(page_interval=0.0),
            http=httpx.Client(transport=httpx.MockTransport(handler)),
            encryption=encryption,
            downstream=downstream,
            sleep=sleeps.append,
            rng=lambda: 0.0,
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.http.close()


class FakeClover:
    """Just enough of the Clover merchant API for the sync pipeline."""

    def __init__(self, merchant_id="M1"):
        self.merchant_id = merchant_id
        self.orders = []
        self.payments = {}
        self.requests = []
        self.orders_status = None
        self.refresh_status = 200

    def handler(self, request):
        import httpx

        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/v2/refresh":
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"message": "refresh rejected"})
            expires = datetime.now(timezone.utc) + timedelta(days=30)
            return httpx.Response(
                200,
                json={
                    "access_token": "refreshed-access",
                    "refresh_token": "refreshed-refresh",
                    "access_token_expiration": int(expires.timestamp()),
                },
            )
        prefix = f"/v3/merchants/{self.merchant_id}/orders"
        if path == prefix:
            if self.orders_status:
                return httpx.Response(self.orders_status, json={"message": "orders unavailable"})
            offset = int(request.url.params.get("offset", 0))
            limit = int(request.url.params.get("limit", 100))
            return httpx.Response(200, json={"elements": self.orders[offset:offset + limit]})
        if path.startswith(prefix + "/") and path.endswith("/payments"):
            order_id = path[len(prefix) + 1:-len("/payments")]
            return httpx.Response(200, json={"elements": self.payments.get(order_id, [])})
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture()
def fake_clover():
    return FakeClover()


@pytest.fixture()
def clover_order():
    # 2024-03-15 18:00 UTC, lunch in Chicago
    default_created = int(datetime(2024, 3, 15, 18, 0, tzinfo=timezone.utc).timestamp() * 1000)

    def _order(order_id, *, total, lines=None, created_ms=default_created, **extra):
        payload = {
            "id": order_id,
            "state": "locked",
            "total": total,
            "createdTime": created_ms,
            "modifiedTime": created_ms,
            "lineItems": {"elements": lines or []},
        }
        payload.update(extra)
        return payload

    return _order


@pytest.fixture()
def api_client(sqlite_engine, sqlite_session):
    from posledger.app.db import get_db
    from posledger.app.main import app
    from fastapi.testclient import TestClient

    def _get_test_db():
        yield sqlite_session

    app.dependency_overrides[get_db] = _get_test_db
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)
