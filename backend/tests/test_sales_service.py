# Overview: Pytest coverage for the sale committer: pricing, allocation, loyalty and persistence.

from datetime import datetime

import pytest

from salecore.errors import InsufficientStockError, NotFoundError, ValidationError
from salecore.models import BatchAllocation, LoyaltyTransaction, Sale, SaleEvent, StockBatch
from salecore.models.sales import PAYMENT_STATUS_PAID
from salecore.services import loyalty_service, sales_service
from salecore.services.pricing_service import recompute_sale_totals
from salecore.services.sales_service import CartLine, CommitRequest, CommitStage


def _request(org, location, *lines, **kwargs):
    kwargs.setdefault("payment_method", "CASH")
    return CommitRequest(
        org_id=org.id,
        location_id=location.id,
        cart_items=list(lines),
        actor_user_id=7,
        **kwargs,
    )


class TestImmediateCommit:
    def test_cash_sale_paid_at_commit(self, db_session, org, location, product, receive):
        """Three units at 10.00 with 8% tax: 30.00 + 2.40."""
        receive(product, 10, 600)

        result = sales_service.commit_sale(_request(org, location, CartLine(product.id, 3)))

        assert result.payment_status == PAYMENT_STATUS_PAID
        assert result.subtotal_cents == 3000
        assert result.tax_cents == 240
        assert result.final_amount_cents == 3240
        assert result.sale_number == f"S-{location.id:03d}-0001"

        sale = db_session.get(Sale, result.id)
        assert sale.paid_at is not None
        assert sale.created_by_user_id == 7
        assert len(sale.items) == 1
        assert sale.items[0].total_amount_cents == 3000

    def test_redemption_debits_points(self, db_session, org, location, product, customer, receive):
        """Redeem 200 of 500 points at 100 points per unit: 2.00 off."""
        receive(product, 10, 600)

        result = sales_service.commit_sale(
            _request(org, location, CartLine(product.id, 1), customer_id=customer.id, points_to_redeem=200)
        )

        assert result.redemption_cents == 200
        assert result.points_redeemed == 200
        assert result.final_amount_cents == 1000 + 80 - 200
        assert result.points_earned == 1
        assert result.customer == {"id": customer.id, "name": customer.name}
        assert loyalty_service.get_balance(customer.id) == 500 - 200 + 1

    def test_fifo_cost_across_batches(self, db_session, org, location, product, receive):
        """Batches 5 @ 10.00 and 10 @ 12.00; selling 8 costs (50 + 36) / 8 = 10.75 each."""
        receive(product, 5, 1000, received_at=datetime(2026, 1, 1, 8, 0))
        receive(product, 10, 1200, received_at=datetime(2026, 1, 5, 8, 0))

        result = sales_service.commit_sale(_request(org, location, CartLine(product.id, 8)))

        item = result.items[0]
        assert item["cogs_cents"] == 8600
        assert item["unit_cost_cents"] == 1075
        assert [(a["quantity"], a["unit_cost_cents"]) for a in item["allocations"]] == [(5, 1000), (3, 1200)]
        assert sorted(b.quantity for b in db_session.query(StockBatch).all()) == [0, 7]

    def test_shortfall_aborts_everything(self, db_session, org, location, product, customer, receive):
        receive(product, 5, 1000, received_at=datetime(2026, 1, 1))
        receive(product, 10, 1200, received_at=datetime(2026, 1, 2))

        with pytest.raises(InsufficientStockError) as excinfo:
            sales_service.commit_sale(
                _request(org, location, CartLine(product.id, 20), customer_id=customer.id, points_to_redeem=100)
            )

        err = excinfo.value
        assert err.shortfall == 5
        assert err.details["line_index"] == 0

        db_session.expire_all()
        assert sorted(b.quantity for b in db_session.query(StockBatch).all()) == [5, 10]
        assert db_session.query(Sale).count() == 0
        assert db_session.query(BatchAllocation).count() == 0
        assert db_session.query(LoyaltyTransaction).count() == 0
        assert loyalty_service.get_balance(customer.id) == 500

    def test_second_line_shortfall_undoes_first_line(self, db_session, org, location, product, second_product, receive):
        receive(product, 5, 600)
        receive(second_product, 1, 300)

        with pytest.raises(InsufficientStockError) as excinfo:
            sales_service.commit_sale(
                _request(org, location, CartLine(product.id, 2), CartLine(second_product.id, 3))
            )
        assert excinfo.value.details["line_index"] == 1

        db_session.expire_all()
        assert sorted(b.quantity for b in db_session.query(StockBatch).all()) == [1, 5]

    def test_variant_price_and_stock(self, db_session, org, location, product, variant, receive):
        receive(product, 10, 600)
        receive(product, 4, 800, variant=variant)

        result = sales_service.commit_sale(
            _request(org, location, CartLine(product.id, 2, variant_id=variant.id), discount_cents=500)
        )

        item = result.items[0]
        assert item["unit_price_cents"] == 1250
        assert item["variant_id"] == variant.id
        assert result.subtotal_cents == 2500
        # (2500 - 500) * 8%
        assert result.tax_cents == 160
        assert result.final_amount_cents == 2160

    def test_stock_tracking_disabled_uses_reference_cost(self, db_session, org, location, product):
        result = sales_service.commit_sale(
            _request(org, location, CartLine(product.id, 2), enable_stock_tracking=False)
        )

        item = result.items[0]
        assert item["unit_cost_cents"] == 600
        assert item["cogs_cents"] == 1200
        assert item["allocations"] == []
        assert db_session.get(Sale, result.id).stock_tracked is False

    def test_sale_numbers_are_sequential_per_location(self, db_session, org, location, untaxed_location, product, receive):
        receive(product, 10, 600)
        receive(product, 10, 600, location_id=untaxed_location.id)

        first = sales_service.commit_sale(_request(org, location, CartLine(product.id, 1)))
        second = sales_service.commit_sale(_request(org, location, CartLine(product.id, 1)))
        other = sales_service.commit_sale(_request(org, untaxed_location, CartLine(product.id, 1)))

        assert first.sale_number.endswith("-0001")
        assert second.sale_number.endswith("-0002")
        assert other.sale_number == f"S-{untaxed_location.id:03d}-0001"

    def test_persisted_totals_recompute_exactly(self, db_session, org, location, product, second_product, customer, receive):
        receive(product, 10, 600)
        receive(second_product, 10, 300)

        result = sales_service.commit_sale(
            _request(
                org, location,
                CartLine(product.id, 3), CartLine(second_product.id, 7),
                customer_id=customer.id, discount_cents=333, points_to_redeem=150,
            )
        )

        sale = db_session.get(Sale, result.id)
        breakdown = recompute_sale_totals(sale)
        assert breakdown.subtotal_cents == sale.subtotal_cents
        assert breakdown.tax_cents == sale.tax_cents
        assert breakdown.final_amount_cents == sale.final_amount_cents
        assert sale.final_amount_cents == (
            sale.subtotal_cents - sale.discount_cents + sale.tax_cents - sale.redemption_cents
        )

    def test_commit_records_event(self, db_session, org, location, product, receive):
        receive(product, 10, 600)
        result = sales_service.commit_sale(_request(org, location, CartLine(product.id, 1)))

        event = db_session.query(SaleEvent).filter_by(sale_id=result.id).one()
        assert event.event_type == "sale.committed"
        assert event.actor_user_id == 7


class TestValidation:
    def test_empty_cart(self, db_session, org, location):
        with pytest.raises(ValidationError):
            sales_service.commit_sale(_request(org, location))

    def test_unknown_payment_method(self, db_session, org, location, product, receive):
        receive(product, 10, 600)
        with pytest.raises(ValidationError):
            sales_service.commit_sale(_request(org, location, CartLine(product.id, 1), payment_method="CHEQUE"))

    def test_product_from_other_org(self, db_session, org, other_org, location):
        from salecore.models import Product
        foreign = Product(org_id=other_org.id, sku="FOREIGN", name="Foreign", base_price_cents=100)
        db_session.add(foreign)
        db_session.commit()

        with pytest.raises(ValidationError) as excinfo:
            sales_service.commit_sale(_request(org, location, CartLine(foreign.id, 1)))
        assert excinfo.value.details["product_id"] == foreign.id

    def test_variant_of_other_product(self, db_session, org, location, second_product, variant):
        with pytest.raises(ValidationError):
            sales_service.commit_sale(_request(org, location, CartLine(second_product.id, 1, variant_id=variant.id)))

    def test_zero_quantity(self, db_session, org, location, product):
        with pytest.raises(ValidationError) as excinfo:
            sales_service.commit_sale(_request(org, location, CartLine(product.id, 0)))
        assert excinfo.value.details["line_index"] == 0

    def test_discount_above_subtotal(self, db_session, org, location, product, receive):
        receive(product, 10, 600)
        with pytest.raises(ValidationError):
            sales_service.commit_sale(_request(org, location, CartLine(product.id, 1), discount_cents=1001))
        db_session.expire_all()
        assert db_session.query(StockBatch).one().quantity == 10

    def test_mobile_money_requires_phone(self, db_session, org, location, product, receive, mobile_gateway):
        receive(product, 10, 600)
        with pytest.raises(ValidationError):
            sales_service.commit_sale(_request(org, location, CartLine(product.id, 1), payment_method="MOBILE_MONEY"))
        assert mobile_gateway.pushes == []

    def test_redeeming_more_points_than_held(self, db_session, org, location, product, customer, receive):
        from salecore.errors import LoyaltyPointsExceededError
        receive(product, 10, 600)
        with pytest.raises(LoyaltyPointsExceededError):
            sales_service.commit_sale(
                _request(org, location, CartLine(product.id, 1), customer_id=customer.id, points_to_redeem=501)
            )
        db_session.expire_all()
        assert db_session.query(StockBatch).one().quantity == 10

    def test_payload_requires_boolean_tracking_flag(self, org):
        with pytest.raises(ValidationError):
            CommitRequest.from_payload(
                {"location_id": 1, "payment_method": "cash", "cart_items": [], "enable_stock_tracking": "yes"},
                org_id=org.id,
            )

    def test_payload_normalizes_method(self, org):
        request = CommitRequest.from_payload(
            {"location_id": 1, "payment_method": "cash", "cart_items": [{"product_id": 3, "quantity": 2}]},
            org_id=org.id,
            actor_user_id=9,
        )
        assert request.payment_method == "CASH"
        assert request.cart_items == [CartLine(product_id=3, quantity=2)]
        assert request.actor_user_id == 9


class TestAttemptCommit:
    def test_success_outcome(self, db_session, org, location, product, receive):
        receive(product, 10, 600)
        outcome = sales_service.attempt_commit(_request(org, location, CartLine(product.id, 1)))
        assert outcome.ok
        assert outcome.stage == CommitStage.DONE
        assert outcome.to_dict()["sale"]["final_amount_cents"] == 1080

    def test_insufficient_stock_is_a_value(self, db_session, org, location, product, receive):
        receive(product, 1, 600)
        outcome = sales_service.attempt_commit(_request(org, location, CartLine(product.id, 2)))
        assert not outcome.ok
        assert outcome.stage == CommitStage.ABORTED
        assert outcome.failed_stage == CommitStage.ALLOCATING
        assert isinstance(outcome.error, InsufficientStockError)
        assert outcome.to_dict()["details"]["shortfall"] == 1

    def test_validation_failure_stage(self, db_session, org, location):
        outcome = sales_service.attempt_commit(_request(org, location))
        assert outcome.failed_stage == CommitStage.VALIDATING


class TestQuoteAndLookup:
    def test_quote_prices_without_writing(self, db_session, org, location, product, customer, receive):
        receive(product, 2, 600)

        quote = sales_service.quote_sale(
            _request(org, location, CartLine(product.id, 3), customer_id=customer.id, points_to_redeem=100)
        )

        assert quote["totals"]["final_amount_cents"] == 3000 + 240 - 100
        assert quote["lines"][0]["available_quantity"] == 2
        assert quote["lines"][0]["sufficient"] is False

        db_session.expire_all()
        assert db_session.query(Sale).count() == 0
        assert db_session.query(StockBatch).one().quantity == 2
        assert loyalty_service.get_balance(customer.id) == 500

    def test_get_sale_is_org_scoped(self, db_session, org, other_org, location, product, receive):
        receive(product, 10, 600)
        result = sales_service.commit_sale(_request(org, location, CartLine(product.id, 1)))

        assert sales_service.get_sale(result.id, org_id=org.id).id == result.id
        with pytest.raises(NotFoundError):
            sales_service.get_sale(result.id, org_id=other_org.id)
