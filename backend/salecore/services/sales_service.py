"""
Sale committer - turns a cart into a durable, priced, stock-consistent sale.

STAGES: VALIDATING -> ALLOCATING -> PRICING -> SETTLING -> PERSISTING -> DONE
Any failure before the commit point is ABORTED: the session is rolled back and
nothing (sale, items, stock, points) survives.

SETTLEMENT:
- Immediate (CASH, CARD): sale PAID in the same DB transaction, stock
  consumed, points redeemed and accrued.
- Deferred (MOBILE_MONEY): sale PENDING with stock reserved and points
  redeemed, PaymentTransaction INITIATED; committed before the gateway push.
  The push outcome arrives later through payment_service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..errors import (
    InsufficientStockError,
    LoyaltyPointsExceededError,
    NotFoundError,
    SaleEngineError,
    ValidationError,
)
from ..extensions import db
from ..models import BatchAllocation, Customer, Location, Product, ProductVariant, Sale, SaleItem
from ..models.inventory import ALLOCATION_CONSUMED, ALLOCATION_RESERVED
from ..models.sales import PAYMENT_STATUS_PAID, PAYMENT_STATUS_PENDING
from ..time_utils import to_utc_z, utcnow
from . import inventory_service, loyalty_service, payment_service
from .concurrency import run_atomic
from .document_service import next_document_number
from .ledger_service import append_sale_event
from .payment_gateways import METHOD_MOBILE_MONEY, get_gateway, normalize_msisdn
from .pricing_service import PriceBreakdown, PriceLine, RedemptionRequest, calculate_totals


class CommitStage:
    VALIDATING = "VALIDATING"
    ALLOCATING = "ALLOCATING"
    PRICING = "PRICING"
    SETTLING = "SETTLING"
    PERSISTING = "PERSISTING"
    DONE = "DONE"
    ABORTED = "ABORTED"


# Failures attempt_commit reports as values instead of raising
EXPECTED_FAILURES = (ValidationError, InsufficientStockError, LoyaltyPointsExceededError)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class CartLine:
    product_id: int
    quantity: int
    variant_id: int | None = None


@dataclass
class CommitRequest:
    org_id: int
    location_id: int
    payment_method: str
    cart_items: list[CartLine]
    customer_id: int | None = None
    enable_stock_tracking: bool = True
    discount_cents: int = 0
    points_to_redeem: int = 0
    phone_number: str | None = None
    notes: str | None = None
    actor_user_id: int | None = None
    as_of: datetime | None = None

    @classmethod
    def from_payload(cls, data: dict, *, org_id: int, actor_user_id: int | None = None) -> "CommitRequest":
        """Build a request from the JSON body of POST /api/sales/commit."""
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        raw_items = data.get("cart_items")
        if not isinstance(raw_items, list):
            raise ValidationError("cart_items must be a list")

        items = []
        for index, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                raise ValidationError("cart item must be an object", details={"line_index": index})
            items.append(
                CartLine(
                    product_id=raw.get("product_id"),
                    variant_id=raw.get("variant_id"),
                    quantity=raw.get("quantity"),
                )
            )

        tracking = data.get("enable_stock_tracking", True)
        if not isinstance(tracking, bool):
            raise ValidationError("enable_stock_tracking must be a boolean")

        return cls(
            org_id=org_id,
            location_id=data.get("location_id"),
            payment_method=(data.get("payment_method") or "").upper(),
            cart_items=items,
            customer_id=data.get("customer_id"),
            enable_stock_tracking=tracking,
            discount_cents=data.get("discount_cents") or 0,
            points_to_redeem=data.get("points_to_redeem") or 0,
            phone_number=data.get("phone_number"),
            notes=data.get("notes"),
            actor_user_id=actor_user_id,
        )


@dataclass
class SaleResult:
    id: int
    sale_number: str
    location_id: int
    payment_method: str
    payment_status: str
    subtotal_cents: int
    discount_cents: int
    tax_cents: int
    redemption_cents: int
    final_amount_cents: int
    points_redeemed: int
    points_earned: int
    items: list[dict]
    created_at: str | None
    customer: dict | None = None
    payment: dict | None = None

    @classmethod
    def from_sale(cls, sale: Sale) -> "SaleResult":
        customer = None
        if sale.customer is not None:
            customer = {"id": sale.customer.id, "name": sale.customer.name}

        payment = None
        if sale.payment_method == METHOD_MOBILE_MONEY and sale.payment_transactions:
            tx = max(sale.payment_transactions, key=lambda t: t.id)
            payment = {
                "transaction_ref": tx.transaction_ref,
                "checkout_request_id": tx.checkout_request_id,
                "state": tx.state,
            }

        return cls(
            id=sale.id,
            sale_number=sale.sale_number,
            location_id=sale.location_id,
            payment_method=sale.payment_method,
            payment_status=sale.payment_status,
            subtotal_cents=sale.subtotal_cents,
            discount_cents=sale.discount_cents,
            tax_cents=sale.tax_cents,
            redemption_cents=sale.redemption_cents,
            final_amount_cents=sale.final_amount_cents,
            points_redeemed=sale.points_redeemed,
            points_earned=sale.points_earned,
            items=[item.to_dict(include_allocations=True) for item in sale.items],
            created_at=to_utc_z(sale.created_at),
            customer=customer,
            payment=payment,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "sale_number": self.sale_number,
            "location_id": self.location_id,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "redemption_cents": self.redemption_cents,
            "final_amount_cents": self.final_amount_cents,
            "points_redeemed": self.points_redeemed,
            "points_earned": self.points_earned,
            "items": self.items,
            "customer": self.customer,
            "created_at": self.created_at,
        }
        if self.payment is not None:
            data["payment"] = self.payment
        return data


@dataclass
class CommitOutcome:
    ok: bool
    stage: str
    result: SaleResult | None = None
    error: SaleEngineError | None = None
    failed_stage: str | None = None

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, "stage": self.stage, "sale": self.result.to_dict()}
        return {
            "ok": False,
            "stage": self.stage,
            "failed_stage": self.failed_stage,
            **self.error.to_dict(),
        }


@dataclass
class _Progress:
    stage: str = CommitStage.VALIDATING

    def enter(self, stage: str) -> None:
        self.stage = stage


@dataclass
class _ResolvedLine:
    index: int
    product: Product
    variant: ProductVariant | None
    quantity: int
    draws: list = field(default_factory=list)

    @property
    def price_line(self) -> PriceLine:
        return PriceLine(
            unit_base_price_cents=self.product.base_price_cents,
            variant_modifier_cents=self.variant.price_modifier_cents if self.variant else 0,
            quantity=self.quantity,
        )


# =============================================================================
# VALIDATION
# =============================================================================

def _resolve_location(request: CommitRequest) -> Location:
    if not _is_int(request.location_id):
        raise ValidationError("location_id is required", details={"location_id": request.location_id})
    location = db.session.get(Location, request.location_id)
    if location is None or location.org_id != request.org_id or not location.is_active:
        raise ValidationError("Location not found", details={"location_id": request.location_id})
    return location


def _resolve_lines(request: CommitRequest) -> list[_ResolvedLine]:
    if not request.cart_items:
        raise ValidationError("Cart cannot be empty")

    lines = []
    for index, item in enumerate(request.cart_items):
        if not _is_int(item.product_id):
            raise ValidationError("product_id is required", details={"line_index": index})
        if not _is_int(item.quantity) or item.quantity <= 0:
            raise ValidationError(
                "Quantity must be a positive integer",
                details={"line_index": index, "quantity": item.quantity},
            )

        product = db.session.get(Product, item.product_id)
        if product is None or product.org_id != request.org_id or not product.is_active:
            raise ValidationError(
                "Product not found",
                details={"line_index": index, "product_id": item.product_id},
            )

        variant = None
        if item.variant_id is not None:
            if not _is_int(item.variant_id):
                raise ValidationError("variant_id must be an integer", details={"line_index": index})
            variant = db.session.get(ProductVariant, item.variant_id)
            if variant is None or variant.product_id != product.id or not variant.is_active:
                raise ValidationError(
                    "Variant not found",
                    details={"line_index": index, "product_id": product.id, "variant_id": item.variant_id},
                )

        lines.append(_ResolvedLine(index=index, product=product, variant=variant, quantity=item.quantity))
    return lines


def _resolve_customer(request: CommitRequest) -> Customer | None:
    if request.customer_id is None:
        return None
    if not _is_int(request.customer_id):
        raise ValidationError("customer_id must be an integer")
    customer = db.session.get(Customer, request.customer_id)
    if customer is None or customer.org_id != request.org_id or not customer.is_active:
        raise ValidationError("Customer not found", details={"customer_id": request.customer_id})
    return customer


def _validate(request: CommitRequest, *, require_phone: bool = True):
    gateway = get_gateway(request.payment_method)
    location = _resolve_location(request)
    lines = _resolve_lines(request)
    customer = _resolve_customer(request)

    if not _is_int(request.discount_cents) or request.discount_cents < 0:
        raise ValidationError("discount_cents must be a non-negative integer")

    phone = None
    if gateway.is_deferred and (require_phone or request.phone_number):
        if not request.phone_number:
            raise ValidationError("phone_number is required for mobile money")
        phone = normalize_msisdn(request.phone_number)

    return gateway, location, lines, customer, phone


def _price(request: CommitRequest, location: Location, lines: list[_ResolvedLine], customer: Customer | None) -> PriceBreakdown:
    redemption = None
    if request.points_to_redeem:
        points = loyalty_service.resolve_redemption_points(
            customer_id=customer.id if customer else None,
            points_requested=request.points_to_redeem,
        )
        redemption = RedemptionRequest(
            points_to_redeem=points,
            points_per_currency_unit=loyalty_service.points_per_currency_unit(),
            available_points=loyalty_service.get_balance(customer.id),
        )
    return calculate_totals(
        [line.price_line for line in lines],
        location.tax_rate_bps,
        discount_cents=request.discount_cents,
        redemption=redemption,
    )


# =============================================================================
# COMMIT
# =============================================================================

def _allocate(request: CommitRequest, lines: list[_ResolvedLine], mode: str) -> None:
    for line in lines:
        try:
            line.draws = inventory_service.allocate_stock(
                org_id=request.org_id,
                location_id=request.location_id,
                product_id=line.product.id,
                variant_id=line.variant.id if line.variant else None,
                quantity=line.quantity,
                mode=mode,
                as_of=request.as_of,
            )
        except InsufficientStockError as exc:
            raise exc.for_line(line.index) from None


def _build_items(request: CommitRequest, sale: Sale, lines: list[_ResolvedLine], breakdown: PriceBreakdown, allocation_status: str) -> None:
    for line, line_total in zip(lines, breakdown.line_totals_cents):
        variant_id = line.variant.id if line.variant else None
        if request.enable_stock_tracking:
            cogs_cents, unit_cost_cents = inventory_service.summarize_draws(line.draws)
        else:
            unit_cost_cents = inventory_service.get_reference_unit_cost_cents(
                request.org_id, request.location_id, line.product.id, variant_id
            )
            cogs_cents = unit_cost_cents * line.quantity

        item = SaleItem(
            line_number=line.index + 1,
            product_id=line.product.id,
            variant_id=variant_id,
            quantity=line.quantity,
            unit_price_cents=line.price_line.unit_price_cents,
            unit_cost_cents=unit_cost_cents,
            cogs_cents=cogs_cents,
            total_amount_cents=line_total,
        )
        for draw in line.draws:
            item.allocations.append(
                BatchAllocation(
                    batch_id=draw.batch_id,
                    quantity=draw.quantity,
                    unit_cost_cents=draw.unit_cost_cents,
                    status=allocation_status,
                )
            )
        sale.items.append(item)


def commit_sale(request: CommitRequest, *, progress: _Progress | None = None) -> SaleResult:
    """
    Commit a cart as a sale.

    Raises ValidationError, InsufficientStockError or LoyaltyPointsExceededError
    with nothing persisted. For mobile money, raises PaymentInitiationError
    after recording the sale as FAILED (stock released, points restored) when
    the gateway refuses the push.
    """
    progress = progress or _Progress()

    def _op():
        progress.enter(CommitStage.VALIDATING)
        gateway, location, lines, customer, phone = _validate(request)
        deferred = gateway.is_deferred

        progress.enter(CommitStage.ALLOCATING)
        if request.enable_stock_tracking:
            _allocate(
                request,
                lines,
                inventory_service.ALLOCATE_RESERVE if deferred else inventory_service.ALLOCATE_CONSUME,
            )

        progress.enter(CommitStage.PRICING)
        breakdown = _price(request, location, lines, customer)
        if deferred and breakdown.final_amount_cents <= 0:
            raise ValidationError(
                "Mobile money requires an amount due; use CASH for fully redeemed sales",
                details={"final_amount_cents": breakdown.final_amount_cents},
            )

        progress.enter(CommitStage.SETTLING)
        now = utcnow()
        sale = Sale(
            org_id=request.org_id,
            location_id=location.id,
            customer_id=customer.id if customer else None,
            sale_number=next_document_number(location_id=location.id, document_type="SALE", prefix="S"),
            subtotal_cents=breakdown.subtotal_cents,
            discount_cents=breakdown.discount_cents,
            tax_rate_bps=breakdown.tax_rate_bps,
            tax_cents=breakdown.tax_cents,
            redemption_cents=breakdown.redemption_cents,
            final_amount_cents=breakdown.final_amount_cents,
            points_redeemed=breakdown.points_used,
            points_earned=0,
            payment_method=request.payment_method,
            payment_status=PAYMENT_STATUS_PENDING if deferred else PAYMENT_STATUS_PAID,
            stock_tracked=request.enable_stock_tracking,
            notes=request.notes,
            created_by_user_id=request.actor_user_id,
            created_at=now,
            paid_at=None if deferred else now,
        )
        _build_items(
            request,
            sale,
            lines,
            breakdown,
            ALLOCATION_RESERVED if deferred else ALLOCATION_CONSUMED,
        )

        progress.enter(CommitStage.PERSISTING)
        db.session.add(sale)
        db.session.flush()

        if breakdown.points_used:
            loyalty_service.redeem_points(
                customer_id=customer.id,
                points=breakdown.points_used,
                sale_id=sale.id,
                reason=f"Redeemed on sale {sale.sale_number}",
            )
        if customer is not None and not deferred:
            sale.points_earned = loyalty_service.accrue_points(
                customer_id=customer.id,
                sale_id=sale.id,
                subtotal_cents=sale.subtotal_cents,
            )

        append_sale_event(
            sale_id=sale.id,
            event_type="sale.committed",
            actor_user_id=request.actor_user_id,
            occurred_at=now,
            payload={
                "sale_number": sale.sale_number,
                "payment_method": sale.payment_method,
                "payment_status": sale.payment_status,
                "final_amount_cents": sale.final_amount_cents,
            },
        )

        transaction_id = None
        if deferred:
            tx = payment_service.create_initiated_transaction(sale, phone, actor_user_id=request.actor_user_id)
            transaction_id = tx.id
        else:
            gateway.settle(sale=sale)

        db.session.commit()
        current_app.logger.info(
            "Sale %s committed: %s %s, %s cents",
            sale.sale_number, sale.payment_method, sale.payment_status, sale.final_amount_cents,
        )
        return sale.id, transaction_id, gateway

    sale_id, transaction_id, gateway = run_atomic(_op)

    if transaction_id is not None:
        payment_service.initiate_payment(transaction_id, gateway=gateway)

    progress.enter(CommitStage.DONE)
    return SaleResult.from_sale(db.session.get(Sale, sale_id))


def attempt_commit(request: CommitRequest) -> CommitOutcome:
    """
    commit_sale with expected business failures returned as values.

    Gateway and infrastructure failures still raise.
    """
    progress = _Progress()
    try:
        result = commit_sale(request, progress=progress)
    except EXPECTED_FAILURES as exc:
        current_app.logger.info("Sale commit aborted at %s: %s", progress.stage, exc.message)
        return CommitOutcome(ok=False, stage=CommitStage.ABORTED, error=exc, failed_stage=progress.stage)
    return CommitOutcome(ok=True, stage=CommitStage.DONE, result=result)


def quote_sale(request: CommitRequest) -> dict:
    """
    Price a cart and report stock availability without writing anything.
    """
    try:
        gateway, location, lines, customer, _phone = _validate(request, require_phone=False)
        breakdown = _price(request, location, lines, customer)

        availability = []
        for line in lines:
            variant_id = line.variant.id if line.variant else None
            available = None
            if request.enable_stock_tracking:
                available = inventory_service.get_available_quantity(
                    request.org_id, request.location_id, line.product.id, variant_id, request.as_of
                )
            availability.append({
                "line_index": line.index,
                "product_id": line.product.id,
                "variant_id": variant_id,
                "quantity": line.quantity,
                "available_quantity": available,
                "sufficient": available is None or available >= line.quantity,
            })

        return {
            "payment_method": gateway.method,
            "location_id": location.id,
            "customer_id": customer.id if customer else None,
            "totals": breakdown.to_dict(),
            "lines": availability,
        }
    finally:
        db.session.rollback()


def get_sale(sale_id: int, *, org_id: int | None = None) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None or (org_id is not None and sale.org_id != org_id):
        raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale
