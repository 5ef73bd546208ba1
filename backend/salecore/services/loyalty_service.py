# Overview: Loyalty points: balance reads, redemption policy, guarded redeem/accrue/restore.

"""
Loyalty invariants (authoritative)

- points_balance never goes negative. Every decrement is a conditional
  UPDATE ... WHERE points_balance >= n, so two concurrent redemptions cannot
  both spend the same points.
- Every balance change appends a LoyaltyTransaction row in the same DB
  transaction. At most one row per (sale_id, transaction_type), which makes
  accrual and restore idempotent per sale.
- Accrual basis is the pre-redemption subtotal:
    points_earned = floor(subtotal_cents / LOYALTY_EARN_CENTS_PER_POINT)
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import update

from ..errors import LoyaltyPointsExceededError, ValidationError
from ..extensions import db
from ..models import Customer, LoyaltyAccount, LoyaltyTransaction
from ..models.customers import LOYALTY_ADJUST, LOYALTY_EARN, LOYALTY_REDEEM, LOYALTY_RESTORE
from ..time_utils import utcnow
from .concurrency import guarded_update

POLICY_REJECT = "REJECT"
POLICY_CLAMP = "CLAMP"
REDEMPTION_POLICIES = (POLICY_REJECT, POLICY_CLAMP)


def points_per_currency_unit() -> int:
    return int(current_app.config.get("LOYALTY_POINTS_PER_CURRENCY_UNIT", 100))


def redemption_policy() -> str:
    policy = (current_app.config.get("LOYALTY_REDEMPTION_POLICY") or POLICY_REJECT).upper()
    if policy not in REDEMPTION_POLICIES:
        raise ValueError(f"Unknown LOYALTY_REDEMPTION_POLICY: {policy}")
    return policy


def calculate_points_earned(subtotal_cents: int, cents_per_point: int | None = None) -> int:
    if cents_per_point is None:
        cents_per_point = int(current_app.config.get("LOYALTY_EARN_CENTS_PER_POINT", 1000))
    if cents_per_point <= 0 or subtotal_cents <= 0:
        return 0
    return subtotal_cents // cents_per_point


def get_account(customer_id: int) -> LoyaltyAccount | None:
    return db.session.query(LoyaltyAccount).filter_by(customer_id=customer_id).first()


def get_or_create_account(customer: Customer) -> LoyaltyAccount:
    account = get_account(customer.id)
    if account is not None:
        return account
    account = LoyaltyAccount(customer_id=customer.id, org_id=customer.org_id, points_balance=0)
    db.session.add(account)
    db.session.flush()
    return account


def get_balance(customer_id: int) -> int:
    account = get_account(customer_id)
    return account.points_balance if account else 0


def resolve_redemption_points(*, customer_id: int | None, points_requested: int, policy: str | None = None) -> int:
    """
    Apply the redemption policy to a request against the current balance.

    REJECT raises LoyaltyPointsExceededError when the request exceeds the
    balance; CLAMP returns the balance instead.
    """
    if not points_requested:
        return 0
    if not isinstance(points_requested, int) or isinstance(points_requested, bool) or points_requested < 0:
        raise ValidationError(
            "points_to_redeem must be a non-negative integer",
            details={"points_to_redeem": points_requested},
        )
    if customer_id is None:
        raise ValidationError("points_to_redeem requires a customer")

    available = get_balance(customer_id)
    if points_requested <= available:
        return points_requested

    if (policy or redemption_policy()) == POLICY_CLAMP:
        return available

    raise LoyaltyPointsExceededError(
        "Insufficient loyalty points",
        details={
            "customer_id": customer_id,
            "requested_points": points_requested,
            "available_points": available,
        },
    )


def _append(account: LoyaltyAccount, transaction_type: str, points: int, sale_id: int | None, reason: str | None):
    txn = LoyaltyTransaction(
        account_id=account.id,
        transaction_type=transaction_type,
        points=points,
        sale_id=sale_id,
        reason=reason,
        occurred_at=utcnow(),
    )
    db.session.add(txn)
    return txn


def _sale_entry(sale_id: int, transaction_type: str) -> LoyaltyTransaction | None:
    return (
        db.session.query(LoyaltyTransaction)
        .filter_by(sale_id=sale_id, transaction_type=transaction_type)
        .first()
    )


def redeem_points(*, customer_id: int, points: int, sale_id: int, reason: str | None = None) -> int:
    """
    Spend points against a sale. Does not commit.

    The guarded decrement re-checks the balance at write time; losing that
    check surfaces as LoyaltyPointsExceededError.
    """
    if points <= 0:
        return 0
    account = get_account(customer_id)
    if account is None:
        raise LoyaltyPointsExceededError(
            "Customer has no loyalty balance",
            details={"customer_id": customer_id, "requested_points": points, "available_points": 0},
        )

    stmt = (
        update(LoyaltyAccount)
        .where(LoyaltyAccount.id == account.id, LoyaltyAccount.points_balance >= points)
        .values(
            points_balance=LoyaltyAccount.points_balance - points,
            lifetime_points_redeemed=LoyaltyAccount.lifetime_points_redeemed + points,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        db.session.refresh(account)
        raise LoyaltyPointsExceededError(
            "Insufficient loyalty points",
            details={
                "customer_id": customer_id,
                "requested_points": points,
                "available_points": account.points_balance,
            },
        )

    _append(account, LOYALTY_REDEEM, -points, sale_id, reason or f"Redeemed on sale {sale_id}")
    db.session.expire(account)
    return points


def accrue_points(*, customer_id: int, sale_id: int, subtotal_cents: int) -> int:
    """
    Credit points for a paid sale. Does not commit.

    Returns the points credited; 0 when the sale already earned or the
    subtotal is below one point.
    """
    points = calculate_points_earned(subtotal_cents)
    if points <= 0:
        return 0
    if _sale_entry(sale_id, LOYALTY_EARN) is not None:
        current_app.logger.info("Loyalty accrual for sale %s already recorded", sale_id)
        return 0

    customer = db.session.get(Customer, customer_id)
    if customer is None:
        return 0
    account = get_or_create_account(customer)

    stmt = (
        update(LoyaltyAccount)
        .where(LoyaltyAccount.id == account.id)
        .values(
            points_balance=LoyaltyAccount.points_balance + points,
            lifetime_points_earned=LoyaltyAccount.lifetime_points_earned + points,
            updated_at=utcnow(),
        )
    )
    guarded_update(stmt, entity=f"LoyaltyAccount {account.id}")
    _append(account, LOYALTY_EARN, points, sale_id, f"Earned on sale {sale_id}")
    db.session.expire(account)
    return points


def restore_points(*, sale_id: int, reason: str | None = None) -> int:
    """
    Return the points a failed or cancelled sale redeemed. Does not commit.

    Idempotent: a sale is restored at most once.
    """
    redeemed = _sale_entry(sale_id, LOYALTY_REDEEM)
    if redeemed is None:
        return 0
    if _sale_entry(sale_id, LOYALTY_RESTORE) is not None:
        return 0

    points = -redeemed.points
    account = redeemed.account
    stmt = (
        update(LoyaltyAccount)
        .where(LoyaltyAccount.id == account.id)
        .values(
            points_balance=LoyaltyAccount.points_balance + points,
            lifetime_points_redeemed=LoyaltyAccount.lifetime_points_redeemed - points,
            updated_at=utcnow(),
        )
    )
    guarded_update(stmt, entity=f"LoyaltyAccount {account.id}")
    _append(account, LOYALTY_RESTORE, points, sale_id, reason or f"Restored from sale {sale_id}")
    db.session.expire(account)
    return points


def adjust_points(*, customer_id: int, delta: int, reason: str) -> LoyaltyAccount:
    """Manual correction; commits. Cannot take the balance below zero."""
    if not reason:
        raise ValidationError("reason is required for a points adjustment")
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise ValidationError("Customer not found", details={"customer_id": customer_id})

    account = get_or_create_account(customer)
    stmt = update(LoyaltyAccount).where(LoyaltyAccount.id == account.id)
    if delta < 0:
        stmt = stmt.where(LoyaltyAccount.points_balance >= -delta)
    stmt = stmt.values(points_balance=LoyaltyAccount.points_balance + delta, updated_at=utcnow())
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        db.session.rollback()
        raise LoyaltyPointsExceededError(
            "Adjustment would make the balance negative",
            details={"customer_id": customer_id, "delta": delta},
        )
    _append(account, LOYALTY_ADJUST, delta, None, reason)
    db.session.commit()
    return account
