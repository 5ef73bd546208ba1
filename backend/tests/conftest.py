"""
Pytest fixtures for sale engine tests.

Provides test database setup, tenant fixtures, a stub mobile-money gateway
and the Flask test client.
"""

from datetime import date, datetime, timedelta

import pytest
from salecore import create_app
from salecore.extensions import db
from salecore.models import Organization, Location, Product, ProductVariant, Customer, LoyaltyAccount
from salecore.services import inventory_service
from salecore.services.payment_gateways import (
    METHOD_MOBILE_MONEY,
    DeferredGateway,
    GatewayAcceptance,
    GatewayResult,
)

CALLBACK_TOKEN = "test-callback-token"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'MOBILE_MONEY_CALLBACK_TOKEN': CALLBACK_TOKEN,
        'MOBILE_MONEY_PENDING_TIMEOUT_SECONDS': 180,
        'LOYALTY_POINTS_PER_CURRENCY_UNIT': 100,
        'LOYALTY_EARN_CENTS_PER_POINT': 1000,
        'LOYALTY_REDEMPTION_POLICY': 'REJECT',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def org(db_session):
    org = Organization(name="Duka Ltd", code="DUKA", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def other_org(db_session):
    org = Organization(name="Other Co", code="OTHER", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def location(db_session, org):
    """Main shop, 8% flat tax."""
    location = Location(org_id=org.id, name="Main Shop", code="MAIN", tax_rate_bps=800)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def untaxed_location(db_session, org):
    location = Location(org_id=org.id, name="Kiosk", code="KIOSK", tax_rate_bps=0)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def product(db_session, org):
    """Product priced at 10.00."""
    product = Product(org_id=org.id, sku="MILK-500", name="Milk 500ml", base_price_cents=1000, base_cost_cents=600)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def second_product(db_session, org):
    product = Product(org_id=org.id, sku="BREAD-400", name="Bread 400g", base_price_cents=500)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def variant(db_session, org, product):
    """Variant adding 2.50 to the product price."""
    variant = ProductVariant(org_id=org.id, product_id=product.id, sku="MILK-1L", name="Milk 1L", price_modifier_cents=250)
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def customer(db_session, org):
    """Customer holding 500 loyalty points."""
    customer = Customer(org_id=org.id, name="Wanjiku", phone="0712345678")
    db_session.add(customer)
    db_session.flush()
    db_session.add(LoyaltyAccount(customer_id=customer.id, org_id=org.id, points_balance=500))
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def receive(db_session, org, location):
    """Helper to receive a batch at the main location."""
    def _receive(product, quantity, unit_cost_cents, *, variant=None, expiry_date=None, received_at=None, location_id=None):
        return inventory_service.receive_batch(
            org_id=org.id,
            location_id=location_id or location.id,
            product_id=product.id,
            variant_id=variant.id if variant else None,
            quantity=quantity,
            unit_cost_cents=unit_cost_cents,
            expiry_date=expiry_date,
            received_at=received_at,
        )
    return _receive


class StubMobileMoneyGateway(DeferredGateway):
    """In-memory deferred gateway; records pushes and answers queries from a dict."""

    def __init__(self):
        super().__init__(METHOD_MOBILE_MONEY)
        self.pushes = []
        self.fail_with = None
        self.query_results = {}
        self.query_fail_with = None
        self._counter = 0

    def initiate(self, *, amount_cents, phone_number, account_reference, description):
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        self.pushes.append({
            "amount_cents": amount_cents,
            "phone_number": phone_number,
            "account_reference": account_reference,
        })
        return GatewayAcceptance(
            checkout_request_id=f"ws_CO_{self._counter:04d}",
            merchant_request_id=f"MR-{self._counter:04d}",
        )

    def query_status(self, checkout_request_id):
        if self.query_fail_with is not None:
            raise self.query_fail_with
        return self.query_results.get(checkout_request_id)


@pytest.fixture(scope='function')
def mobile_gateway(app, monkeypatch):
    """Replace the MOBILE_MONEY gateway with a stub for the duration of a test."""
    stub = StubMobileMoneyGateway()
    monkeypatch.setitem(app.extensions["payment_gateways"], METHOD_MOBILE_MONEY, stub)
    return stub


def stk_callback(checkout_request_id, *, result_code=0, merchant_request_id=None, amount=None, receipt="QKT1ABC2DE"):
    """Build a Daraja STK callback body."""
    callback = {
        "MerchantRequestID": merchant_request_id,
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20260101120000},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def context_headers(org_id, actor_id=7) -> dict:
    """Helper to create tenant context headers."""
    return {"X-Org-Id": str(org_id), "X-Actor-Id": str(actor_id)}
