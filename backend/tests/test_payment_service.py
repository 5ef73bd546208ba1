# Overview: Pytest coverage for mobile-money reconciliation: callbacks, expiry and operator actions.

from datetime import timedelta

import httpx
import pytest
from conftest import StubMobileMoneyGateway, stk_callback

from salecore.errors import (
    DuplicateCallbackError,
    PaymentError,
    PaymentInitiationError,
    ValidationError,
)
from salecore.models import PaymentTransaction, Sale, SaleEvent, StockBatch
from salecore.models.inventory import ALLOCATION_CONSUMED, ALLOCATION_RELEASED
from salecore.models.sales import (
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PENDING,
    TX_CONFIRMED,
    TX_EXPIRED,
    TX_FAILED,
    TX_INITIATED,
    TX_PENDING,
)
from salecore.services import loyalty_service, payment_service, sales_service
from salecore.services.payment_gateways import METHOD_MOBILE_MONEY, GatewayResult, MpesaGateway
from salecore.services.sales_service import CartLine, CommitRequest
from salecore.time_utils import utcnow


@pytest.fixture
def pending_sale(db_session, org, location, product, customer, receive, mobile_gateway):
    """Mobile-money sale of 2 units with 100 points redeemed, awaiting the customer."""
    receive(product, 10, 600)
    result = sales_service.commit_sale(
        CommitRequest(
            org_id=org.id,
            location_id=location.id,
            payment_method="MOBILE_MONEY",
            cart_items=[CartLine(product.id, 2)],
            customer_id=customer.id,
            points_to_redeem=100,
            phone_number="0712 345 678",
            actor_user_id=7,
        )
    )
    return db_session.get(Sale, result.id)


def _batch(db_session):
    db_session.expire_all()
    return db_session.query(StockBatch).one()


def _transactions(db_session, sale):
    db_session.expire_all()
    return (
        db_session.query(PaymentTransaction)
        .filter_by(sale_id=sale.id)
        .order_by(PaymentTransaction.id)
        .all()
    )


class _CallbackBeforeAcceptance(StubMobileMoneyGateway):
    """Delivers the success callback before the push response is returned."""

    def __init__(self):
        super().__init__()
        self.early_callback_errors = []

    def initiate(self, **kwargs):
        acceptance = super().initiate(**kwargs)
        try:
            payment_service.handle_callback(
                stk_callback(acceptance.checkout_request_id, merchant_request_id=acceptance.merchant_request_id, amount=21.6)
            )
        except PaymentError as exc:
            self.early_callback_errors.append(exc.message)
        self.query_results[acceptance.checkout_request_id] = GatewayResult(
            checkout_request_id=acceptance.checkout_request_id,
            merchant_request_id=acceptance.merchant_request_id,
            result_code=0,
            result_desc="The service request is processed successfully.",
        )
        return acceptance


class TestTransition:
    def test_terminal_state_is_duplicate(self, app):
        tx = PaymentTransaction(transaction_ref="MM-1", state=TX_CONFIRMED)
        with app.app_context():
            with pytest.raises(DuplicateCallbackError):
                payment_service.transition(tx, TX_FAILED)

    def test_initiated_cannot_jump_to_confirmed(self, app):
        tx = PaymentTransaction(transaction_ref="MM-2", state=TX_INITIATED)
        with app.app_context():
            with pytest.raises(PaymentError):
                payment_service.transition(tx, TX_CONFIRMED)

    def test_pending_records_accepted_at(self, app):
        tx = PaymentTransaction(transaction_ref="MM-3", state=TX_INITIATED)
        with app.app_context():
            payment_service.transition(tx, TX_PENDING)
        assert tx.state == TX_PENDING
        assert tx.accepted_at is not None
        assert tx.resolved_at is None


class TestCommitPending:
    def test_mobile_money_commit_returns_pending(self, db_session, pending_sale, customer, mobile_gateway):
        assert pending_sale.payment_status == PAYMENT_STATUS_PENDING
        assert pending_sale.paid_at is None
        assert pending_sale.final_amount_cents == 2000 + 160 - 100

        batch = _batch(db_session)
        assert batch.quantity == 10
        assert batch.reserved_quantity == 2

        (tx,) = _transactions(db_session, pending_sale)
        assert tx.state == TX_PENDING
        assert tx.checkout_request_id == "ws_CO_0001"
        assert tx.phone_number == "254712345678"
        assert tx.amount_cents == pending_sale.final_amount_cents

        assert mobile_gateway.pushes == [{
            "amount_cents": 2060,
            "phone_number": "254712345678",
            "account_reference": pending_sale.sale_number,
        }]
        assert loyalty_service.get_balance(customer.id) == 400

    def test_mobile_money_needs_amount_due(self, db_session, org, untaxed_location, second_product, customer, receive, mobile_gateway):
        receive(second_product, 5, 300, location_id=untaxed_location.id)
        with pytest.raises(ValidationError):
            sales_service.commit_sale(
                CommitRequest(
                    org_id=org.id,
                    location_id=untaxed_location.id,
                    payment_method="MOBILE_MONEY",
                    cart_items=[CartLine(second_product.id, 1)],
                    customer_id=customer.id,
                    points_to_redeem=500,
                    phone_number="0712345678",
                )
            )
        assert mobile_gateway.pushes == []
        assert db_session.query(Sale).count() == 0

    def test_initiation_failure_fails_sale(self, db_session, org, location, product, customer, receive, mobile_gateway):
        receive(product, 10, 600)
        mobile_gateway.fail_with = PaymentInitiationError("Mobile money gateway unreachable")

        with pytest.raises(PaymentInitiationError) as excinfo:
            sales_service.commit_sale(
                CommitRequest(
                    org_id=org.id,
                    location_id=location.id,
                    payment_method="MOBILE_MONEY",
                    cart_items=[CartLine(product.id, 3)],
                    customer_id=customer.id,
                    points_to_redeem=50,
                    phone_number="254712345678",
                )
            )

        sale = db_session.get(Sale, excinfo.value.details["sale_id"])
        db_session.refresh(sale)
        assert sale.payment_status == PAYMENT_STATUS_FAILED
        assert _transactions(db_session, sale)[0].state == TX_FAILED

        batch = _batch(db_session)
        assert batch.quantity == 10
        assert batch.reserved_quantity == 0
        assert loyalty_service.get_balance(customer.id) == 500

    def test_unreadable_token_response_fails_sale(self, app, db_session, org, location, product, receive, monkeypatch):
        """OAuth endpoint answering 200 with an HTML page."""
        def _maintenance(request):
            return httpx.Response(200, text="<html>Down for maintenance</html>", headers={"content-type": "text/html"})

        gateway = MpesaGateway(
            base_url="https://sandbox.safaricom.co.ke",
            consumer_key="key",
            consumer_secret="secret",
            shortcode="174379",
            passkey="passkey",
            callback_url="https://pos.example.com/api/payments/mobile-money/callback",
            transport=httpx.MockTransport(_maintenance),
        )
        monkeypatch.setitem(app.extensions["payment_gateways"], METHOD_MOBILE_MONEY, gateway)
        receive(product, 10, 600)

        with pytest.raises(PaymentInitiationError) as excinfo:
            sales_service.commit_sale(
                CommitRequest(
                    org_id=org.id,
                    location_id=location.id,
                    payment_method="MOBILE_MONEY",
                    cart_items=[CartLine(product.id, 2)],
                    phone_number="0712345678",
                )
            )

        sale = db_session.get(Sale, excinfo.value.details["sale_id"])
        db_session.refresh(sale)
        assert sale.payment_status == PAYMENT_STATUS_FAILED
        assert _transactions(db_session, sale)[0].state == TX_FAILED
        assert _batch(db_session).reserved_quantity == 0


class TestCallbacks:
    def test_confirmed_callback_settles_sale(self, db_session, pending_sale, customer):
        tx = payment_service.handle_callback(stk_callback("ws_CO_0001", amount=20.6))

        assert tx.state == TX_CONFIRMED
        assert tx.receipt_number == "QKT1ABC2DE"
        assert tx.paid_amount_cents == 2060

        db_session.expire_all()
        sale = db_session.get(Sale, pending_sale.id)
        assert sale.payment_status == PAYMENT_STATUS_PAID
        assert sale.paid_at is not None
        assert sale.points_earned == 2
        assert all(a.status == ALLOCATION_CONSUMED for item in sale.items for a in item.allocations)

        batch = _batch(db_session)
        assert batch.quantity == 8
        assert batch.reserved_quantity == 0
        assert loyalty_service.get_balance(customer.id) == 402

    def test_duplicate_callback_changes_nothing(self, db_session, pending_sale, customer):
        payment_service.handle_callback(stk_callback("ws_CO_0001", amount=20.6))
        events_before = db_session.query(SaleEvent).filter_by(sale_id=pending_sale.id).count()

        tx = payment_service.handle_callback(stk_callback("ws_CO_0001", amount=20.6))

        assert tx.state == TX_CONFIRMED
        assert db_session.query(SaleEvent).filter_by(sale_id=pending_sale.id).count() == events_before
        assert _batch(db_session).quantity == 8
        assert loyalty_service.get_balance(customer.id) == 402

    def test_failed_callback_releases_and_restores(self, db_session, pending_sale, customer):
        tx = payment_service.handle_callback(stk_callback("ws_CO_0001", result_code=1032))

        assert tx.state == TX_FAILED
        assert tx.result_code == "1032"

        db_session.expire_all()
        sale = db_session.get(Sale, pending_sale.id)
        assert sale.payment_status == PAYMENT_STATUS_FAILED
        assert all(a.status == ALLOCATION_RELEASED for item in sale.items for a in item.allocations)

        batch = _batch(db_session)
        assert batch.quantity == 10
        assert batch.reserved_quantity == 0
        assert loyalty_service.get_balance(customer.id) == 500

    def test_success_after_failure_is_ignored(self, db_session, pending_sale):
        payment_service.handle_callback(stk_callback("ws_CO_0001", result_code=1032))
        tx = payment_service.handle_callback(stk_callback("ws_CO_0001", amount=20.6))

        assert tx.state == TX_FAILED
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_FAILED

    def test_unknown_checkout_id(self, db_session, pending_sale):
        with pytest.raises(PaymentError):
            payment_service.handle_callback(stk_callback("ws_CO_9999", amount=20.6))

    def test_merchant_id_mismatch(self, db_session, pending_sale):
        with pytest.raises(PaymentError):
            payment_service.handle_callback(
                stk_callback("ws_CO_0001", amount=20.6, merchant_request_id="MR-OTHER")
            )
        assert _transactions(db_session, pending_sale)[0].state == TX_PENDING

    def test_malformed_callback(self, db_session, pending_sale):
        with pytest.raises(PaymentError):
            payment_service.handle_callback({"Body": {}})


class TestStatusRefresh:
    def test_refresh_resolves_from_query(self, db_session, pending_sale, mobile_gateway):
        mobile_gateway.query_results["ws_CO_0001"] = GatewayResult(
            checkout_request_id="ws_CO_0001",
            merchant_request_id="MR-0001",
            result_code=0,
            result_desc="The service request is processed successfully.",
        )

        tx = payment_service.refresh_payment_status("ws_CO_0001")

        assert tx.state == TX_CONFIRMED
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_PAID

    def test_refresh_while_customer_undecided(self, db_session, pending_sale, mobile_gateway):
        tx = payment_service.refresh_payment_status("ws_CO_0001")
        assert tx.state == TX_PENDING

    def test_refresh_unknown(self, db_session, mobile_gateway):
        with pytest.raises(PaymentError):
            payment_service.refresh_payment_status("ws_CO_missing")


class TestExpirySweep:
    def test_nothing_expires_before_timeout(self, db_session, pending_sale):
        assert payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=60)) == []
        assert _transactions(db_session, pending_sale)[0].state == TX_PENDING

    def test_stale_payment_expires(self, db_session, pending_sale, customer):
        timeouts = payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=181))

        assert len(timeouts) == 1
        assert timeouts[0].details["sale_id"] == pending_sale.id
        assert timeouts[0].details["timeout_seconds"] == 180
        assert timeouts[0].status_code == 408

        assert _transactions(db_session, pending_sale)[0].state == TX_EXPIRED
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_FAILED
        assert _batch(db_session).reserved_quantity == 0
        assert loyalty_service.get_balance(customer.id) == 500

    def test_callback_after_expiry_is_duplicate(self, db_session, pending_sale):
        payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=181))
        tx = payment_service.handle_callback(stk_callback("ws_CO_0001", amount=20.6))
        assert tx.state == TX_EXPIRED

    def test_second_sweep_expires_nothing(self, db_session, pending_sale):
        later = utcnow() + timedelta(seconds=181)
        payment_service.expire_stale_payments(now=later)
        assert payment_service.expire_stale_payments(now=later) == []

    def test_sweep_resolves_from_gateway_answer(self, db_session, pending_sale, mobile_gateway, customer):
        mobile_gateway.query_results["ws_CO_0001"] = GatewayResult(
            checkout_request_id="ws_CO_0001",
            merchant_request_id="MR-0001",
            result_code=0,
            result_desc="The service request is processed successfully.",
        )

        assert payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=600)) == []

        assert _transactions(db_session, pending_sale)[0].state == TX_CONFIRMED
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_PAID
        assert _batch(db_session).quantity == 8
        assert loyalty_service.get_balance(customer.id) == 402

    def test_sweep_records_declined_push_as_failed(self, db_session, pending_sale, mobile_gateway):
        mobile_gateway.query_results["ws_CO_0001"] = GatewayResult(
            checkout_request_id="ws_CO_0001",
            merchant_request_id="MR-0001",
            result_code=1032,
            result_desc="Request cancelled by user",
        )

        assert payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=600)) == []
        assert _transactions(db_session, pending_sale)[0].state == TX_FAILED
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_FAILED

    def test_unreachable_gateway_defers_expiry(self, db_session, pending_sale, mobile_gateway):
        mobile_gateway.query_fail_with = PaymentError("Mobile money status query failed")

        assert payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=600)) == []
        assert _transactions(db_session, pending_sale)[0].state == TX_PENDING
        assert _batch(db_session).reserved_quantity == 2

        mobile_gateway.query_fail_with = None
        assert len(payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=600))) == 1

    def test_callback_before_acceptance_is_settled_by_sweep(self, app, db_session, org, location, product, customer, receive, monkeypatch):
        """The success callback lands while the push request is still in flight."""
        gateway = _CallbackBeforeAcceptance()
        monkeypatch.setitem(app.extensions["payment_gateways"], METHOD_MOBILE_MONEY, gateway)
        receive(product, 10, 600)

        result = sales_service.commit_sale(
            CommitRequest(
                org_id=org.id,
                location_id=location.id,
                payment_method="MOBILE_MONEY",
                cart_items=[CartLine(product.id, 2)],
                customer_id=customer.id,
                phone_number="0712345678",
            )
        )
        sale = db_session.get(Sale, result.id)
        assert gateway.early_callback_errors == ["Unknown mobile money transaction"]
        assert _transactions(db_session, sale)[0].state == TX_PENDING

        assert payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=600)) == []

        assert _transactions(db_session, sale)[0].state == TX_CONFIRMED
        assert db_session.get(Sale, sale.id).payment_status == PAYMENT_STATUS_PAID
        batch = _batch(db_session)
        assert batch.quantity == 8
        assert batch.reserved_quantity == 0

    def test_sweep_limited_to_org(self, db_session, org, other_org, pending_sale):
        later = utcnow() + timedelta(seconds=181)

        assert payment_service.expire_stale_payments(now=later, org_id=other_org.id) == []
        assert _transactions(db_session, pending_sale)[0].state == TX_PENDING

        timeouts = payment_service.expire_stale_payments(now=later, org_id=org.id)
        assert [t.details["sale_id"] for t in timeouts] == [pending_sale.id]

    def test_sale_left_without_payment_fails_after_timeout(self, db_session, org, pending_sale, mobile_gateway, customer):
        mobile_gateway.fail_with = PaymentInitiationError("Mobile money gateway unreachable")
        with pytest.raises(PaymentInitiationError):
            payment_service.retry_mobile_payment(pending_sale.id, org_id=org.id)

        assert payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=60)) == []
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_PENDING

        timeouts = payment_service.expire_stale_payments(now=utcnow() + timedelta(seconds=181))

        assert [t.details["sale_id"] for t in timeouts] == [pending_sale.id]
        db_session.expire_all()
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_FAILED
        assert _batch(db_session).reserved_quantity == 0
        assert loyalty_service.get_balance(customer.id) == 500
        events = [e.event_type for e in db_session.query(SaleEvent).filter_by(sale_id=pending_sale.id).order_by(SaleEvent.id)]
        assert events[-1] == "payment.abandoned"


class TestOperatorActions:
    def test_cancel_pending_sale(self, db_session, org, pending_sale, customer):
        sale = payment_service.cancel_pending_sale(
            pending_sale.id, reason="Customer walked away", actor_user_id=7, org_id=org.id
        )

        assert sale.payment_status == PAYMENT_STATUS_FAILED
        assert sale.cancel_reason == "Customer walked away"
        assert sale.cancelled_at is not None
        assert _transactions(db_session, pending_sale)[0].state == TX_FAILED
        assert _batch(db_session).reserved_quantity == 0
        assert loyalty_service.get_balance(customer.id) == 500

    def test_cancel_requires_reason(self, db_session, pending_sale):
        with pytest.raises(ValidationError):
            payment_service.cancel_pending_sale(pending_sale.id, reason="  ")

    def test_cancel_paid_sale_refused(self, db_session, pending_sale):
        payment_service.handle_callback(stk_callback("ws_CO_0001", amount=20.6))
        with pytest.raises(PaymentError):
            payment_service.cancel_pending_sale(pending_sale.id, reason="Too late")

    def test_cancel_is_org_scoped(self, db_session, other_org, pending_sale):
        with pytest.raises(PaymentError):
            payment_service.cancel_pending_sale(pending_sale.id, reason="Wrong org", org_id=other_org.id)

    def test_mark_paid_manually(self, db_session, org, pending_sale, customer):
        sale = payment_service.mark_paid_manually(
            pending_sale.id, actor_user_id=7, receipt_number="QKT9ZZZ", note="Paid to till", org_id=org.id
        )

        assert sale.payment_status == PAYMENT_STATUS_PAID
        (tx,) = _transactions(db_session, pending_sale)
        assert tx.state == TX_CONFIRMED
        assert tx.receipt_number == "QKT9ZZZ"
        assert _batch(db_session).quantity == 8
        assert loyalty_service.get_balance(customer.id) == 402

    def test_retry_supersedes_active_transaction(self, db_session, org, pending_sale, mobile_gateway):
        tx = payment_service.retry_mobile_payment(pending_sale.id, actor_user_id=7, org_id=org.id)

        assert tx.state == TX_PENDING
        assert tx.checkout_request_id == "ws_CO_0002"
        assert len(mobile_gateway.pushes) == 2

        first, second = _transactions(db_session, pending_sale)
        assert first.state == TX_FAILED
        assert first.result_desc == "Superseded by retry"
        assert second.phone_number == first.phone_number

        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_PENDING
        assert _batch(db_session).reserved_quantity == 2

    def test_late_callback_for_superseded_push_is_ignored(self, db_session, org, pending_sale, mobile_gateway):
        payment_service.retry_mobile_payment(pending_sale.id, org_id=org.id)

        payment_service.handle_callback(stk_callback("ws_CO_0001", amount=20.6))
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_PENDING

        payment_service.handle_callback(stk_callback("ws_CO_0002", amount=20.6))
        db_session.expire_all()
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_PAID

    def test_failed_retry_keeps_sale_pending(self, db_session, org, pending_sale, mobile_gateway):
        mobile_gateway.fail_with = PaymentInitiationError("Mobile money gateway unreachable")

        with pytest.raises(PaymentInitiationError):
            payment_service.retry_mobile_payment(pending_sale.id, org_id=org.id)

        assert [tx.state for tx in _transactions(db_session, pending_sale)] == [TX_FAILED, TX_FAILED]
        assert db_session.get(Sale, pending_sale.id).payment_status == PAYMENT_STATUS_PENDING
        assert _batch(db_session).reserved_quantity == 2
