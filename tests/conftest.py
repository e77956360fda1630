# tests/conftest.py
import os
import tempfile

import pytest
from sqlalchemy import delete

_DB_DIR = tempfile.mkdtemp(prefix="payments-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.sqlite3')}"
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "1")
# never talk to real providers from the test suite
for _k in ("NOWPAYMENTS_API_KEY", "NOWPAYMENTS_IPN_SECRET", "PAYPAL_CLIENT_ID",
           "PAYPAL_CLIENT_SECRET", "PAYPAL_WEBHOOK_ID", "CRON_SECRET"):
    os.environ[_k] = ""

from app import create_app  # noqa: E402
from models.base import Base, init_engine_and_session  # noqa: E402
from models.payments_store import PaymentStore  # noqa: E402
from models.schema import PaymentTransaction, PaymentWebhookLog  # noqa: E402
from services.payments.service import PaymentService  # noqa: E402
from services.payments.types import PaymentProviderType, ProviderConfig  # noqa: E402
from tests.fakes import FakeProvider  # noqa: E402


@pytest.fixture(scope="session")
def db():
    engine, Session = init_engine_and_session()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return engine, Session


@pytest.fixture(autouse=True)
def _db_clean(db):
    engine, _ = db
    with engine.begin() as conn:
        conn.execute(delete(PaymentWebhookLog))
        conn.execute(delete(PaymentTransaction))
    yield


@pytest.fixture()
def store(db):
    _, Session = db
    return PaymentStore(Session)


@pytest.fixture()
def fake():
    return FakeProvider()


@pytest.fixture()
def service(store, fake):
    svc = PaymentService(store)
    svc.register_provider(PaymentProviderType.NOWPAYMENTS, fake,
                          ProviderConfig(api_key="test-key"))
    return svc


@pytest.fixture()
def app(fake):
    app = create_app({"TESTING": True})
    app.extensions["payments"].register_provider(
        PaymentProviderType.NOWPAYMENTS, fake, ProviderConfig(api_key="test-key"))
    return app


@pytest.fixture()
def client(app):
    return app.test_client()
