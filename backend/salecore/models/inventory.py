from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

ALLOCATION_RESERVED = "RESERVED"
ALLOCATION_CONSUMED = "CONSUMED"
ALLOCATION_RELEASED = "RELEASED"


class StockBatch(db.Model):
    """
    A discrete inbound lot of stock at one location.

    INVARIANTS:
    - 0 <= reserved_quantity <= quantity
    - quantity only decreases through allocation and never goes negative
    - Rows are never deleted while quantity > 0

    Writes go through inventory_service only, as conditional updates guarded
    by the quantities that were read.
    """
    __tablename__ = "stock_batches"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_stock_batches_quantity_nonneg"),
        db.CheckConstraint(
            "reserved_quantity >= 0 AND reserved_quantity <= quantity",
            name="ck_stock_batches_reserved_bounds",
        ),
        db.Index("ix_stock_batches_lookup", "org_id", "location_id", "product_id", "variant_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    batch_number = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    initial_quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    expiry_date = db.Column(db.Date, nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity

    def __repr__(self) -> str:
        return (
            f"<StockBatch id={self.id} product_id={self.product_id} variant_id={self.variant_id} "
            f"qty={self.quantity} reserved={self.reserved_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "location_id": self.location_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "batch_number": self.batch_number,
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
            "initial_quantity": self.initial_quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "received_at": to_utc_z(self.received_at),
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "created_at": to_utc_z(self.created_at),
        }


class BatchAllocation(db.Model):
    """
    Quantity drawn from one batch for one sale item.

    RESERVED: held against the batch pending settlement (reserved_quantity)
    CONSUMED: permanently decremented from the batch (quantity)
    RELEASED: reservation returned to the batch
    """
    __tablename__ = "batch_allocations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("stock_batches.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=ALLOCATION_CONSUMED, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    batch = db.relationship("StockBatch")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_item_id": self.sale_item_id,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "status": self.status,
        }
