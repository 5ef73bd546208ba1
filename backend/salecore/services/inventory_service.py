# Overview: Batch stock ledger: availability, FEFO/FIFO allocation, reservations and restock.

"""
Stock ledger invariants (authoritative)

Batches:
- Stock lives in StockBatch rows; each row is one inbound lot at one location.
- 0 <= reserved_quantity <= quantity; quantity never goes negative.
- available = quantity - reserved_quantity.
- A batch is expired when expiry_date < as_of date. Expired batches are never
  drawn and do not count as available.

Allocation order:
- Batches with an expiry date first, earliest expiry first (FEFO).
- Then batches without expiry, oldest received_at first (FIFO).
- Ties broken by id.

Allocation is all-or-nothing per request: the full plan is computed before any
row is written. Each touched batch is written by one conditional UPDATE that
carries the quantities read; a lost race raises StaleDataError and the caller's
retry loop starts the unit of work over.

Modes:
- CONSUME: quantity -= n (immediate settlement)
- RESERVE: reserved_quantity += n (deferred settlement), later either
  consumed (quantity -= n, reserved_quantity -= n) or released
  (reserved_quantity -= n).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import func, or_, update

from ..errors import InsufficientStockError, ValidationError
from ..extensions import db
from ..models import (
    BatchAllocation,
    Location,
    Product,
    ProductVariant,
    StockBatch,
)
from ..models.inventory import ALLOCATION_CONSUMED, ALLOCATION_RELEASED, ALLOCATION_RESERVED
from ..time_utils import parse_iso_datetime, utcnow
from .concurrency import guarded_update, lock_for_update

ALLOCATE_CONSUME = "CONSUME"
ALLOCATE_RESERVE = "RESERVE"
ALLOCATION_MODES = (ALLOCATE_CONSUME, ALLOCATE_RESERVE)


@dataclass(frozen=True)
class BatchDraw:
    batch_id: int
    quantity: int
    unit_cost_cents: int

    @property
    def cost_cents(self) -> int:
        return self.quantity * self.unit_cost_cents


def _as_of_date(as_of) -> date:
    if as_of is None:
        return utcnow().date()
    if isinstance(as_of, datetime):
        return as_of.date()
    if isinstance(as_of, date):
        return as_of
    if isinstance(as_of, str):
        dt = parse_iso_datetime(as_of, "as_of")
        if dt is None:
            raise ValidationError("invalid as_of")
        return dt.date()
    raise ValidationError("invalid as_of")


def _batch_filters(org_id: int, location_id: int, product_id: int, variant_id: int | None):
    filters = [
        StockBatch.org_id == org_id,
        StockBatch.location_id == location_id,
        StockBatch.product_id == product_id,
    ]
    if variant_id is None:
        filters.append(StockBatch.variant_id.is_(None))
    else:
        filters.append(StockBatch.variant_id == variant_id)
    return filters


def _not_expired(as_of_date: date):
    return or_(StockBatch.expiry_date.is_(None), StockBatch.expiry_date >= as_of_date)


def allocation_sort_key(batch: StockBatch):
    return (
        batch.expiry_date is None,
        batch.expiry_date or date.max,
        batch.received_at,
        batch.id,
    )


def get_available_quantity(
    org_id: int,
    location_id: int,
    product_id: int,
    variant_id: int | None = None,
    as_of=None,
) -> int:
    """Sum of (quantity - reserved_quantity) over non-expired batches."""
    q = db.session.query(
        func.coalesce(func.sum(StockBatch.quantity - StockBatch.reserved_quantity), 0)
    ).filter(
        *_batch_filters(org_id, location_id, product_id, variant_id),
        _not_expired(_as_of_date(as_of)),
    )
    return int(q.scalar() or 0)


def list_allocatable_batches(
    org_id: int,
    location_id: int,
    product_id: int,
    variant_id: int | None = None,
    as_of=None,
    *,
    lock: bool = False,
) -> list[StockBatch]:
    query = db.session.query(StockBatch).filter(
        *_batch_filters(org_id, location_id, product_id, variant_id),
        _not_expired(_as_of_date(as_of)),
        StockBatch.quantity > StockBatch.reserved_quantity,
    )
    if lock:
        query = lock_for_update(query)
    return sorted(query.all(), key=allocation_sort_key)


def allocate_stock(
    *,
    org_id: int,
    location_id: int,
    product_id: int,
    variant_id: int | None,
    quantity: int,
    mode: str = ALLOCATE_CONSUME,
    as_of=None,
) -> list[BatchDraw]:
    """
    Draw quantity from the location's batches in FEFO/FIFO order.

    Runs inside the caller's transaction and does not commit. Either every
    draw is written or InsufficientStockError is raised with no batch touched.
    """
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer", details={"quantity": quantity})
    if mode not in ALLOCATION_MODES:
        raise ValidationError(f"Unknown allocation mode: {mode}", details={"mode": mode})

    batches = list_allocatable_batches(
        org_id, location_id, product_id, variant_id, as_of, lock=True
    )

    plan: list[tuple[StockBatch, int]] = []
    remaining = quantity
    for batch in batches:
        if remaining == 0:
            break
        take = min(batch.available_quantity, remaining)
        if take > 0:
            plan.append((batch, take))
            remaining -= take

    if remaining > 0:
        raise InsufficientStockError(
            product_id=product_id,
            variant_id=variant_id,
            requested=quantity,
            available=sum(b.available_quantity for b in batches),
        )

    draws = []
    for batch, take in plan:
        stmt = update(StockBatch).where(
            StockBatch.id == batch.id,
            StockBatch.quantity == batch.quantity,
            StockBatch.reserved_quantity == batch.reserved_quantity,
        )
        if mode == ALLOCATE_CONSUME:
            stmt = stmt.values(quantity=StockBatch.quantity - take)
        else:
            stmt = stmt.values(reserved_quantity=StockBatch.reserved_quantity + take)
        guarded_update(stmt, entity=f"StockBatch {batch.id}")
        draws.append(BatchDraw(batch_id=batch.id, quantity=take, unit_cost_cents=batch.unit_cost_cents))
        db.session.expire(batch)

    return draws


def summarize_draws(draws: list[BatchDraw]) -> tuple[int, int]:
    """
    Return (cogs_cents, unit_cost_cents) for a list of draws.

    cogs is exact; unit cost is the quantity-weighted mean, nearest cent
    (half-up).
    """
    total_units = sum(d.quantity for d in draws)
    if total_units <= 0:
        return 0, 0
    total_cost = sum(d.cost_cents for d in draws)
    return total_cost, (total_cost + (total_units // 2)) // total_units


def _allocations_in_state(sale, status: str) -> list[BatchAllocation]:
    return [
        allocation
        for item in sale.items
        for allocation in item.allocations
        if allocation.status == status
    ]


def consume_reservations(sale) -> int:
    """
    Turn a deferred sale's reservations into consumption.

    Each RESERVED allocation decrements both quantity and reserved_quantity on
    its batch and becomes CONSUMED. Returns the number of units consumed.
    """
    consumed = 0
    now = utcnow()
    for allocation in _allocations_in_state(sale, ALLOCATION_RESERVED):
        n = allocation.quantity
        stmt = (
            update(StockBatch)
            .where(StockBatch.id == allocation.batch_id, StockBatch.reserved_quantity >= n)
            .values(
                quantity=StockBatch.quantity - n,
                reserved_quantity=StockBatch.reserved_quantity - n,
            )
        )
        guarded_update(stmt, entity=f"StockBatch {allocation.batch_id}")
        allocation.status = ALLOCATION_CONSUMED
        allocation.updated_at = now
        consumed += n
    _expire_touched_batches(sale)
    return consumed


def release_reservations(sale) -> int:
    """
    Return a deferred sale's reserved units to their batches.

    Only RESERVED allocations are touched, so calling this twice releases
    nothing the second time. Returns the number of units released.
    """
    released = 0
    now = utcnow()
    for allocation in _allocations_in_state(sale, ALLOCATION_RESERVED):
        n = allocation.quantity
        stmt = (
            update(StockBatch)
            .where(StockBatch.id == allocation.batch_id, StockBatch.reserved_quantity >= n)
            .values(reserved_quantity=StockBatch.reserved_quantity - n)
        )
        guarded_update(stmt, entity=f"StockBatch {allocation.batch_id}")
        allocation.status = ALLOCATION_RELEASED
        allocation.updated_at = now
        released += n
    _expire_touched_batches(sale)
    return released


def _expire_touched_batches(sale) -> None:
    for item in sale.items:
        for allocation in item.allocations:
            batch = db.session.get(StockBatch, allocation.batch_id)
            if batch is not None:
                db.session.expire(batch)


def get_reference_unit_cost_cents(
    org_id: int,
    location_id: int,
    product_id: int,
    variant_id: int | None = None,
) -> int:
    """
    Cost recorded on a sale line when stock tracking is disabled.

    Most recently received batch cost at the location, else the product's
    base cost, else 0.
    """
    batch = (
        db.session.query(StockBatch)
        .filter(*_batch_filters(org_id, location_id, product_id, variant_id))
        .order_by(StockBatch.received_at.desc(), StockBatch.id.desc())
        .first()
    )
    if batch is not None:
        return batch.unit_cost_cents

    product = db.session.get(Product, product_id)
    if product is not None and product.base_cost_cents is not None:
        return product.base_cost_cents
    return 0


def receive_batch(
    *,
    org_id: int,
    location_id: int,
    product_id: int,
    quantity: int,
    unit_cost_cents: int,
    variant_id: int | None = None,
    expiry_date: date | None = None,
    received_at: datetime | None = None,
    batch_number: str | None = None,
    commit: bool = True,
) -> StockBatch:
    """Restock: create a new batch at a location."""
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer", details={"quantity": quantity})
    if unit_cost_cents is None or unit_cost_cents < 0:
        raise ValidationError("unit_cost_cents must be >= 0", details={"unit_cost_cents": unit_cost_cents})

    location = db.session.get(Location, location_id)
    if location is None or location.org_id != org_id:
        raise ValidationError("Location not found", details={"location_id": location_id})

    product = db.session.get(Product, product_id)
    if product is None or product.org_id != org_id:
        raise ValidationError("Product not found", details={"product_id": product_id})

    if variant_id is not None:
        variant = db.session.get(ProductVariant, variant_id)
        if variant is None or variant.product_id != product_id:
            raise ValidationError("Variant not found", details={"variant_id": variant_id})

    batch = StockBatch(
        org_id=org_id,
        location_id=location_id,
        product_id=product_id,
        variant_id=variant_id,
        batch_number=batch_number,
        quantity=quantity,
        reserved_quantity=0,
        initial_quantity=quantity,
        unit_cost_cents=unit_cost_cents,
        received_at=received_at or utcnow(),
        expiry_date=expiry_date,
    )
    db.session.add(batch)
    db.session.flush()
    if commit:
        db.session.commit()
    return batch


def get_stock_summary(
    org_id: int,
    location_id: int,
    product_id: int,
    variant_id: int | None = None,
    as_of=None,
) -> dict:
    as_of_date = _as_of_date(as_of)
    batches = (
        db.session.query(StockBatch)
        .filter(*_batch_filters(org_id, location_id, product_id, variant_id), StockBatch.quantity > 0)
        .all()
    )
    batches.sort(key=allocation_sort_key)

    live = [b for b in batches if b.expiry_date is None or b.expiry_date >= as_of_date]
    expired = [b for b in batches if b.expiry_date is not None and b.expiry_date < as_of_date]

    return {
        "org_id": org_id,
        "location_id": location_id,
        "product_id": product_id,
        "variant_id": variant_id,
        "as_of": as_of_date.isoformat(),
        "quantity_on_hand": sum(b.quantity for b in live),
        "reserved_quantity": sum(b.reserved_quantity for b in live),
        "available_quantity": sum(b.available_quantity for b in live),
        "expired_quantity": sum(b.quantity for b in expired),
        "batches": [b.to_dict() for b in live],
    }
