from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

LOYALTY_EARN = "EARN"
LOYALTY_REDEEM = "REDEEM"
LOYALTY_RESTORE = "RESTORE"
LOYALTY_ADJUST = "ADJUST"


class Customer(db.Model):
    """
    Customer master data for tracking purchases and loyalty.

    MULTI-TENANT: Customers are scoped to organizations via org_id.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_org_active", "org_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        account = self.loyalty_account
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "is_active": self.is_active,
            "points_balance": account.points_balance if account else 0,
            "created_at": to_utc_z(self.created_at),
        }


class LoyaltyAccount(db.Model):
    """
    Loyalty points account for a customer. One account per customer.

    points_balance is only ever changed through guarded UPDATE statements in
    loyalty_service; it can never go negative.
    """
    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        db.UniqueConstraint("customer_id", name="uq_loyalty_accounts_customer"),
        db.CheckConstraint("points_balance >= 0", name="ck_loyalty_accounts_balance_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    points_balance = db.Column(db.Integer, nullable=False, default=0)
    lifetime_points_earned = db.Column(db.Integer, nullable=False, default=0)
    lifetime_points_redeemed = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    customer = db.relationship("Customer", backref=db.backref("loyalty_account", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "org_id": self.org_id,
            "points_balance": self.points_balance,
            "lifetime_points_earned": self.lifetime_points_earned,
            "lifetime_points_redeemed": self.lifetime_points_redeemed,
            "updated_at": to_utc_z(self.updated_at),
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of loyalty point events.

    TRANSACTION TYPES:
    - EARN: points accrued from a paid sale
    - REDEEM: points spent against a sale
    - RESTORE: redeemed points returned after a failed or cancelled sale
    - ADJUST: manual correction

    At most one row per (sale_id, transaction_type), so replays of the same
    sale event cannot double-count.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "transaction_type", name="uq_loyalty_txns_sale_type"),
        db.Index("ix_loyalty_txns_account_occurred", "account_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("loyalty_accounts.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)  # EARN, REDEEM, RESTORE, ADJUST
    points = db.Column(db.Integer, nullable=False)  # Positive for earn/restore, negative for redeem

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    reason = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    account = db.relationship("LoyaltyAccount", backref=db.backref("transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "transaction_type": self.transaction_type,
            "points": self.points,
            "sale_id": self.sale_id,
            "reason": self.reason,
            "occurred_at": to_utc_z(self.occurred_at),
        }
