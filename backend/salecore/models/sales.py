from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_PAID = "PAID"
PAYMENT_STATUS_FAILED = "FAILED"

TX_INITIATED = "INITIATED"
TX_PENDING = "PENDING"
TX_CONFIRMED = "CONFIRMED"
TX_FAILED = "FAILED"
TX_EXPIRED = "EXPIRED"

TX_TERMINAL_STATES = frozenset({TX_CONFIRMED, TX_FAILED, TX_EXPIRED})
TX_ACTIVE_STATES = frozenset({TX_INITIATED, TX_PENDING})


class Sale(db.Model):
    """
    Committed sale.

    Created once per commit attempt. Immutable once PAID; while PENDING only
    the payment-status dimension may change (PENDING -> PAID | FAILED).

    Totals are stored for reporting but are always reproducible from the items
    plus discount_cents, tax_rate_bps and redemption_cents.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("location_id", "sale_number", name="uq_sales_location_number"),
        db.Index("ix_sales_location_status_created", "location_id", "payment_status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    # Human-readable number (e.g., "S-001-0042")
    sale_number = db.Column(db.String(64), nullable=False)

    # Money (all cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    redemption_cents = db.Column(db.Integer, nullable=False, default=0)
    final_amount_cents = db.Column(db.Integer, nullable=False)

    # Loyalty
    points_redeemed = db.Column(db.Integer, nullable=False, default=0)
    points_earned = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=False, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)

    stock_tracked = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    location = db.relationship("Location")
    customer = db.relationship("Customer")
    items = db.relationship(
        "SaleItem",
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="SaleItem.line_number",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "location_id": self.location_id,
            "customer_id": self.customer_id,
            "sale_number": self.sale_number,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "redemption_cents": self.redemption_cents,
            "final_amount_cents": self.final_amount_cents,
            "points_redeemed": self.points_redeemed,
            "points_earned": self.points_earned,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "stock_tracked": self.stock_tracked,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "paid_at": to_utc_z(self.paid_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "version_id": self.version_id,
        }


class SaleItem(db.Model):
    """
    One cart line of a sale.

    unit_cost_cents is the weighted cost of the batches actually drawn
    (nearest cent, half-up); cogs_cents is the exact sum of the draws.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "line_number", name="uq_sale_items_sale_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    cogs_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", back_populates="items")
    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")
    allocations = db.relationship(
        "BatchAllocation",
        backref="sale_item",
        cascade="all, delete-orphan",
        order_by="BatchAllocation.id",
        lazy=True,
    )

    def to_dict(self, include_allocations: bool = False) -> dict:
        data = {
            "id": self.id,
            "sale_id": self.sale_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "cogs_cents": self.cogs_cents,
            "total_amount_cents": self.total_amount_cents,
        }
        if include_allocations:
            data["allocations"] = [a.to_dict() for a in self.allocations]
        return data


class PaymentTransaction(db.Model):
    """
    Mobile-money settlement attempt for a sale (STK push).

    STATE MACHINE:
        INITIATED -> PENDING -> CONFIRMED | FAILED | EXPIRED
        INITIATED -> FAILED | EXPIRED

    checkout_request_id / merchant_request_id are the gateway correlation keys
    used to match out-of-band callbacks. Terminal states never change.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index("ix_payment_tx_state_initiated", "state", "initiated_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_ref = db.Column(db.String(64), nullable=False, unique=True, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    checkout_request_id = db.Column(db.String(128), nullable=True, unique=True, index=True)
    merchant_request_id = db.Column(db.String(128), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    phone_number = db.Column(db.String(32), nullable=False)

    state = db.Column(db.String(16), nullable=False, default=TX_INITIATED, index=True)

    # Gateway outcome
    result_code = db.Column(db.String(32), nullable=True)
    result_desc = db.Column(db.String(255), nullable=True)
    receipt_number = db.Column(db.String(64), nullable=True)
    paid_amount_cents = db.Column(db.Integer, nullable=True)

    initiated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale", backref=db.backref("payment_transactions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.state in TX_TERMINAL_STATES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_ref": self.transaction_ref,
            "sale_id": self.sale_id,
            "checkout_request_id": self.checkout_request_id,
            "merchant_request_id": self.merchant_request_id,
            "amount_cents": self.amount_cents,
            "phone_number": self.phone_number,
            "state": self.state,
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "receipt_number": self.receipt_number,
            "paid_amount_cents": self.paid_amount_cents,
            "initiated_at": to_utc_z(self.initiated_at),
            "accepted_at": to_utc_z(self.accepted_at),
            "resolved_at": to_utc_z(self.resolved_at),
        }


class SaleEvent(db.Model):
    """
    Append-only audit trail of sale and payment events.

    Written inside the same DB transaction as the change it records.
    No updates, no deletes.
    """
    __tablename__ = "sale_events"
    __table_args__ = (
        db.Index("ix_sale_events_sale_occurred", "sale_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    payment_transaction_id = db.Column(
        db.Integer, db.ForeignKey("payment_transactions.id"), nullable=True, index=True
    )

    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g., sale.committed, payment.confirmed
    actor_user_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    note = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "payment_transaction_id": self.payment_transaction_id,
            "event_type": self.event_type,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
            "payload": self.payload,
        }
