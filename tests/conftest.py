import pytest
from decimal import Decimal
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from coursepay.auth import Principal, verify_token
from coursepay.config import BankTransferConfig, CheckoutGatewayConfig, RedirectGatewayConfig, Settings
from coursepay.database import Base
from coursepay.main import app as fastapi_app
from coursepay.models import Course
from coursepay.orchestrator import build_orchestrator
from coursepay.signatures import redirect_digest

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

MERCHANT_ID = "1211149"
MERCHANT_SECRET = "merchant-secret"

TEST_SETTINGS = Settings(
    database_url=SQLALCHEMY_DATABASE_URL,
    jwt_secret="test-jwt-secret",
    log_level="DEBUG",
    redirect=RedirectGatewayConfig(
        merchant_id=MERCHANT_ID,
        merchant_secret=MERCHANT_SECRET,
        checkout_url="https://sandbox.payhere.lk/pay/checkout",
        return_url="http://localhost:3000/payment/success",
        cancel_url="http://localhost:3000/payment/cancel",
        notify_url="http://localhost:8000/notifications/redirect",
        currency="LKR",
    ),
    checkout=CheckoutGatewayConfig(
        secret_key="sk_test_123",
        webhook_secret="whsec_test",
        success_url="http://localhost:3000/payment/success",
        cancel_url="http://localhost:3000/payment/cancel",
        currency="USD",
    ),
    bank=BankTransferConfig(
        account_name="Course Academy",
        account_number="0011223344",
        bank_name="Test Bank",
        branch="Colombo",
        currency="LKR",
    ),
    currency_rates={("USD", "LKR"): Decimal("300"), ("EUR", "LKR"): Decimal("330")},
)

BUYER = Principal(user_id="u1", role="student", email="u1@example.com")
ADMIN = Principal(user_id="admin-1", role="admin", email="admin@example.com")


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def courses():
    db = TestingSessionLocal()
    db.add_all([
        Course(id="c1", title="Python Basics", price=500000, currency="LKR", published=True),
        Course(id="c2", title="Advanced SQL", price=300000, currency="LKR", published=True),
        Course(id="draft", title="Unreleased", price=100000, currency="LKR", published=False),
        Course(id="free", title="Free Intro", price=0, currency="LKR", published=True),
    ])
    db.commit()
    db.close()


@pytest.fixture
def orchestrator(courses):
    return build_orchestrator(TestingSessionLocal, TEST_SETTINGS)


@pytest.fixture
def login():
    def _login(principal):
        fastapi_app.dependency_overrides[verify_token] = lambda: principal
    return _login


@pytest.fixture
def client(monkeypatch, courses, login):
    # Route everything at the test database and settings
    monkeypatch.setattr("coursepay.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("coursepay.routes.get_settings", lambda: TEST_SETTINGS)
    monkeypatch.setattr("coursepay.webhooks.get_settings", lambda: TEST_SETTINGS)
    login(BUYER)
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def sign_notification(order_id, amount, currency, status_code):
    return redirect_digest(MERCHANT_ID, MERCHANT_SECRET, order_id, amount, currency, status_code)


@pytest.fixture
def redirect_form():
    def _form(order_id, amount="5000.00", currency="LKR", status_code="2", payment_id="320025071278", md5sig=None):
        return {
            "merchant_id": MERCHANT_ID,
            "order_id": order_id,
            "payment_id": payment_id,
            "payhere_amount": amount,
            "payhere_currency": currency,
            "status_code": status_code,
            "md5sig": md5sig or sign_notification(order_id, amount, currency, status_code),
        }
    return _form


@pytest.fixture
def checkout_event():
    def _event(intent_id, amount, currency="usd", event_type="checkout.session.completed", payment_status="paid"):
        return {
            "id": "evt_test",
            "type": event_type,
            "data": {
                "object": {
                    "id": "cs_test_123",
                    "payment_intent": "pi_test_123",
                    "payment_status": payment_status,
                    "amount_total": amount,
                    "currency": currency,
                    "client_reference_id": intent_id,
                    "metadata": {"intent_id": intent_id},
                }
            }
        }
    return _event
