# Overview: Mobile-money reconciliation: persisted state machine, callbacks, expiry sweep and operator actions.

"""
Mobile-money reconciliation

STATE MACHINE (PaymentTransaction.state):
    INITIATED -> PENDING -> CONFIRMED | FAILED | EXPIRED
    INITIATED -> FAILED | EXPIRED
CONFIRMED, FAILED and EXPIRED are terminal and never change again.

SIDE EFFECTS (one DB transaction each):
- CONFIRMED: sale PAID, reserved stock consumed, loyalty points accrued.
- FAILED / EXPIRED: sale FAILED, reserved stock released, redeemed points
  restored.

Callbacks are matched by checkout_request_id against persisted rows only;
nothing depends on memory of the request that started the payment. A
callback for a transaction already in a terminal state is a duplicate and is
acknowledged without effect. The expiry sweep queries the gateway before
expiring an accepted transaction, so a callback that was lost or arrived
before the correlation id was stored still settles the sale.

No DB transaction is held open across a gateway HTTP call.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import exists, func
from sqlalchemy.orm import aliased

from ..errors import (
    DuplicateCallbackError,
    PaymentError,
    PaymentInitiationError,
    PaymentTimeoutError,
    ValidationError,
)
from ..extensions import db
from ..models import PaymentTransaction, Sale
from ..models.sales import (
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PENDING,
    TX_ACTIVE_STATES,
    TX_CONFIRMED,
    TX_EXPIRED,
    TX_FAILED,
    TX_INITIATED,
    TX_PENDING,
)
from ..time_utils import to_utc_z, utcnow
from . import inventory_service, loyalty_service
from .concurrency import lock_for_update, run_atomic
from .ledger_service import append_sale_event
from .payment_gateways import (
    METHOD_MOBILE_MONEY,
    DeferredGateway,
    GatewayAcceptance,
    GatewayResult,
    get_gateway,
    normalize_msisdn,
)

ALLOWED_TRANSITIONS = {
    TX_INITIATED: {TX_PENDING, TX_FAILED, TX_EXPIRED},
    TX_PENDING: {TX_CONFIRMED, TX_FAILED, TX_EXPIRED},
}


# =============================================================================
# STATE MACHINE
# =============================================================================

def transition(tx: PaymentTransaction, new_state: str, *, now: datetime | None = None) -> None:
    """
    Move a transaction to new_state or raise.

    DuplicateCallbackError when the transaction is already terminal;
    PaymentError for any other transition the machine does not allow.
    """
    if tx.is_terminal:
        raise DuplicateCallbackError(
            f"Payment {tx.transaction_ref} already {tx.state}",
            details={"transaction_ref": tx.transaction_ref, "state": tx.state, "requested_state": new_state},
        )
    if new_state not in ALLOWED_TRANSITIONS.get(tx.state, set()):
        raise PaymentError(
            f"Illegal payment transition {tx.state} -> {new_state}",
            details={"transaction_ref": tx.transaction_ref, "state": tx.state, "requested_state": new_state},
        )

    now = now or utcnow()
    previous = tx.state
    tx.state = new_state
    if new_state == TX_PENDING:
        tx.accepted_at = now
    else:
        tx.resolved_at = now
    current_app.logger.info("Payment %s: %s -> %s", tx.transaction_ref, previous, new_state)


def _new_transaction_ref() -> str:
    return f"MM-{uuid.uuid4().hex[:16].upper()}"


def create_initiated_transaction(sale: Sale, phone_number: str, *, actor_user_id: int | None = None) -> PaymentTransaction:
    """Add an INITIATED transaction for a sale. Does not commit."""
    tx = PaymentTransaction(
        transaction_ref=_new_transaction_ref(),
        sale_id=sale.id,
        amount_cents=sale.final_amount_cents,
        phone_number=normalize_msisdn(phone_number),
        state=TX_INITIATED,
        initiated_at=utcnow(),
    )
    db.session.add(tx)
    db.session.flush()
    append_sale_event(
        sale_id=sale.id,
        event_type="payment.initiated",
        payment_transaction_id=tx.id,
        actor_user_id=actor_user_id,
        payload={"transaction_ref": tx.transaction_ref, "amount_cents": tx.amount_cents},
    )
    return tx


def get_active_transaction(sale_id: int, *, lock: bool = False) -> PaymentTransaction | None:
    query = db.session.query(PaymentTransaction).filter(
        PaymentTransaction.sale_id == sale_id,
        PaymentTransaction.state.in_(TX_ACTIVE_STATES),
    )
    if lock:
        query = lock_for_update(query)
    return query.order_by(PaymentTransaction.id.desc()).first()


def _deferred_gateway(gateway: DeferredGateway | None) -> DeferredGateway:
    gateway = gateway or get_gateway(METHOD_MOBILE_MONEY)
    if not getattr(gateway, "is_deferred", False):
        raise ValidationError("MOBILE_MONEY gateway must be deferred")
    return gateway


# =============================================================================
# SIDE EFFECTS
# =============================================================================

def _confirm_sale(sale: Sale, *, now: datetime) -> None:
    if sale.payment_status != PAYMENT_STATUS_PENDING:
        raise PaymentError(
            f"Sale {sale.sale_number} is {sale.payment_status}, cannot confirm payment",
            details={"sale_id": sale.id, "payment_status": sale.payment_status},
        )
    inventory_service.consume_reservations(sale)
    if sale.customer_id:
        sale.points_earned = loyalty_service.accrue_points(
            customer_id=sale.customer_id,
            sale_id=sale.id,
            subtotal_cents=sale.subtotal_cents,
        )
    sale.payment_status = PAYMENT_STATUS_PAID
    sale.paid_at = now


def _fail_sale(sale: Sale, *, reason: str | None) -> None:
    if sale.payment_status == PAYMENT_STATUS_PAID:
        raise PaymentError(
            f"Sale {sale.sale_number} is already PAID",
            details={"sale_id": sale.id, "payment_status": sale.payment_status},
        )
    inventory_service.release_reservations(sale)
    loyalty_service.restore_points(sale_id=sale.id, reason=reason)
    sale.payment_status = PAYMENT_STATUS_FAILED


def _apply_result(tx: PaymentTransaction, result: GatewayResult, *, source: str) -> PaymentTransaction:
    """Resolve a transaction from a gateway result. Caller commits."""
    now = utcnow()
    sale = tx.sale

    if result.succeeded:
        transition(tx, TX_CONFIRMED, now=now)
        tx.receipt_number = result.receipt_number
        tx.paid_amount_cents = result.amount_cents
        if result.amount_cents is not None and result.amount_cents < tx.amount_cents:
            current_app.logger.warning(
                "Payment %s confirmed for %s cents, expected %s",
                tx.transaction_ref, result.amount_cents, tx.amount_cents,
            )
        _confirm_sale(sale, now=now)
        event_type = "payment.confirmed"
    else:
        transition(tx, TX_FAILED, now=now)
        _fail_sale(sale, reason=f"Payment {tx.transaction_ref} failed")
        event_type = "payment.failed"

    tx.result_code = str(result.result_code)
    tx.result_desc = result.result_desc

    append_sale_event(
        sale_id=sale.id,
        event_type=event_type,
        payment_transaction_id=tx.id,
        occurred_at=now,
        note=result.result_desc,
        payload={
            "source": source,
            "checkout_request_id": result.checkout_request_id,
            "result_code": result.result_code,
            "receipt_number": result.receipt_number,
            "amount_cents": result.amount_cents,
        },
    )
    return tx


# =============================================================================
# INITIATION
# =============================================================================

def mark_initiated_accepted(transaction_id: int, acceptance: GatewayAcceptance) -> PaymentTransaction:
    """INITIATED -> PENDING with the gateway's correlation ids; commits."""
    def _op():
        tx = lock_for_update(db.session.query(PaymentTransaction).filter_by(id=transaction_id)).first()
        if tx is None:
            raise PaymentError(f"Payment transaction {transaction_id} not found")

        tx.checkout_request_id = acceptance.checkout_request_id
        tx.merchant_request_id = acceptance.merchant_request_id
        if tx.state != TX_INITIATED:
            # Swept or cancelled while the push was in flight; keep the ids for
            # reconciliation but leave the state alone.
            current_app.logger.warning(
                "Payment %s accepted by gateway after reaching %s", tx.transaction_ref, tx.state
            )
        else:
            transition(tx, TX_PENDING)
            append_sale_event(
                sale_id=tx.sale_id,
                event_type="payment.pending",
                payment_transaction_id=tx.id,
                payload={
                    "checkout_request_id": acceptance.checkout_request_id,
                    "merchant_request_id": acceptance.merchant_request_id,
                },
            )
        db.session.commit()
        return tx

    return run_atomic(_op)


def _record_initiation_failure(transaction_id: int, exc: PaymentInitiationError, *, fail_sale: bool) -> PaymentTransaction:
    def _op():
        tx = lock_for_update(db.session.query(PaymentTransaction).filter_by(id=transaction_id)).first()
        if tx is None:
            raise PaymentError(f"Payment transaction {transaction_id} not found")
        if tx.is_terminal:
            db.session.commit()
            return tx

        transition(tx, TX_FAILED)
        tx.result_desc = (exc.message or "Initiation failed")[:255]
        if fail_sale:
            sale = lock_for_update(db.session.query(Sale).filter_by(id=tx.sale_id)).first()
            _fail_sale(sale, reason=f"Payment {tx.transaction_ref} could not be initiated")
        append_sale_event(
            sale_id=tx.sale_id,
            event_type="payment.initiation_failed",
            payment_transaction_id=tx.id,
            note=exc.message,
            payload=exc.details,
        )
        db.session.commit()
        return tx

    return run_atomic(_op)


def initiate_payment(
    transaction_id: int,
    *,
    gateway: DeferredGateway | None = None,
    fail_sale_on_error: bool = True,
) -> PaymentTransaction:
    """
    Push the payment request for a committed INITIATED transaction.

    Must be called with no open DB transaction. On gateway error the
    transaction is FAILED (and, by default, the sale with it: stock
    released, points restored) before PaymentInitiationError propagates.
    """
    gateway = _deferred_gateway(gateway)
    tx = db.session.get(PaymentTransaction, transaction_id)
    if tx is None:
        raise PaymentError(f"Payment transaction {transaction_id} not found")
    sale = tx.sale
    amount_cents, phone_number, transaction_ref = tx.amount_cents, tx.phone_number, tx.transaction_ref
    sale_id, sale_number = sale.id, sale.sale_number
    db.session.commit()  # end the read transaction before going to the network

    try:
        acceptance = gateway.initiate(
            amount_cents=amount_cents,
            phone_number=phone_number,
            account_reference=sale_number,
            description=f"Sale {sale_number}",
        )
    except PaymentInitiationError as exc:
        current_app.logger.warning(
            "Payment %s for sale %s could not be initiated: %s", transaction_ref, sale_number, exc.message
        )
        _record_initiation_failure(transaction_id, exc, fail_sale=fail_sale_on_error)
        exc.details = {
            **exc.details,
            "sale_id": sale_id,
            "sale_number": sale_number,
            "transaction_ref": transaction_ref,
        }
        raise

    return mark_initiated_accepted(transaction_id, acceptance)


# =============================================================================
# CALLBACKS AND STATUS QUERIES
# =============================================================================

def _resolve(result: GatewayResult, *, source: str) -> PaymentTransaction:
    def _op():
        tx = lock_for_update(
            db.session.query(PaymentTransaction).filter_by(checkout_request_id=result.checkout_request_id)
        ).first()
        if tx is None:
            raise PaymentError(
                "Unknown mobile money transaction",
                details={"checkout_request_id": result.checkout_request_id},
            )
        if (
            result.merchant_request_id
            and tx.merchant_request_id
            and result.merchant_request_id != tx.merchant_request_id
        ):
            raise PaymentError(
                "Mobile money correlation mismatch",
                details={
                    "checkout_request_id": result.checkout_request_id,
                    "merchant_request_id": result.merchant_request_id,
                },
            )
        lock_for_update(db.session.query(Sale).filter_by(id=tx.sale_id)).first()

        try:
            _apply_result(tx, result, source=source)
        except DuplicateCallbackError as exc:
            db.session.rollback()
            current_app.logger.info("Ignoring duplicate %s for %s: %s", source, result.checkout_request_id, exc.message)
            return db.session.query(PaymentTransaction).filter_by(checkout_request_id=result.checkout_request_id).first()

        db.session.commit()
        return tx

    return run_atomic(_op)


def handle_callback(payload: dict, *, gateway: DeferredGateway | None = None) -> PaymentTransaction:
    """
    Apply an out-of-band gateway callback.

    Idempotent: replays of an already-resolved transaction change nothing.
    Raises PaymentError for an unknown or mismatched correlation id.
    """
    gateway = _deferred_gateway(gateway)
    result = gateway.parse_callback(payload)
    try:
        return _resolve(result, source="callback")
    except PaymentError as exc:
        current_app.logger.warning("Mobile money callback rejected: %s %s", exc.message, exc.details)
        raise


def refresh_payment_status(checkout_request_id: str, *, gateway: DeferredGateway | None = None) -> PaymentTransaction:
    """
    Ask the gateway for the outcome of a non-terminal transaction.

    Resolves transactions whose callback was lost or arrived before the
    PENDING state was recorded. Returns the transaction unchanged while the
    customer has not answered.
    """
    gateway = _deferred_gateway(gateway)
    tx = db.session.query(PaymentTransaction).filter_by(checkout_request_id=checkout_request_id).first()
    if tx is None:
        raise PaymentError("Unknown mobile money transaction", details={"checkout_request_id": checkout_request_id})
    if tx.is_terminal:
        return tx
    db.session.commit()

    result = gateway.query_status(checkout_request_id)
    if result is None:
        return tx
    return _resolve(result, source="status_query")


# =============================================================================
# EXPIRY SWEEP
# =============================================================================

def _expire_one(transaction_id: int, cutoff: datetime, now: datetime) -> PaymentTransaction | None:
    def _op():
        tx = lock_for_update(db.session.query(PaymentTransaction).filter_by(id=transaction_id)).first()
        if tx is None or tx.is_terminal or tx.initiated_at > cutoff:
            db.session.commit()
            return None
        sale = lock_for_update(db.session.query(Sale).filter_by(id=tx.sale_id)).first()

        transition(tx, TX_EXPIRED, now=now)
        tx.result_desc = "No callback received before timeout"
        if sale.payment_status == PAYMENT_STATUS_PENDING:
            _fail_sale(sale, reason=f"Payment {tx.transaction_ref} expired")
        append_sale_event(
            sale_id=sale.id,
            event_type="payment.expired",
            payment_transaction_id=tx.id,
            occurred_at=now,
            payload={"initiated_at": to_utc_z(tx.initiated_at)},
        )
        db.session.commit()
        return tx

    return run_atomic(_op)


def _settled_by_gateway(checkout_request_id: str, gateway: DeferredGateway) -> bool:
    """
    Query the gateway before a stale transaction is expired.

    True means the sweep leaves the transaction alone: either it was resolved
    from the answer, or the gateway could not be asked and the next sweep
    tries again. False means the customer never answered.
    """
    try:
        result = gateway.query_status(checkout_request_id)
    except PaymentError as exc:
        current_app.logger.warning(
            "Status query for %s failed, expiry deferred: %s %s", checkout_request_id, exc.message, exc.details
        )
        return True
    if result is None:
        return False

    try:
        _resolve(result, source="expiry_check")
    except PaymentError as exc:
        current_app.logger.warning(
            "Status for %s not applied, expiry deferred: %s %s", checkout_request_id, exc.message, exc.details
        )
    return True


def _abandoned_sale_ids(cutoff: datetime, org_id: int | None) -> list[int]:
    """PENDING mobile-money sales whose every payment attempt ended before cutoff."""
    active_tx = aliased(PaymentTransaction)
    has_active = exists().where(
        active_tx.sale_id == Sale.id,
        active_tx.state.in_(TX_ACTIVE_STATES),
    )
    query = (
        db.session.query(Sale.id)
        .join(PaymentTransaction, PaymentTransaction.sale_id == Sale.id)
        .filter(
            Sale.payment_status == PAYMENT_STATUS_PENDING,
            Sale.payment_method == METHOD_MOBILE_MONEY,
            ~has_active,
        )
    )
    if org_id is not None:
        query = query.filter(Sale.org_id == org_id)
    rows = (
        query.group_by(Sale.id)
        .having(func.max(PaymentTransaction.resolved_at) <= cutoff)
        .order_by(Sale.id.asc())
        .all()
    )
    return [row.id for row in rows]


def _fail_abandoned_sale(sale_id: int, cutoff: datetime, now: datetime) -> PaymentTransaction | None:
    """Fail a PENDING sale left with no active payment; returns its last transaction."""
    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None or sale.payment_status != PAYMENT_STATUS_PENDING or get_active_transaction(sale.id) is not None:
            db.session.commit()
            return None
        last = (
            db.session.query(PaymentTransaction)
            .filter_by(sale_id=sale.id)
            .order_by(PaymentTransaction.id.desc())
            .first()
        )
        if last is None or last.resolved_at is None or last.resolved_at > cutoff:
            db.session.commit()
            return None

        _fail_sale(sale, reason=f"Sale {sale.sale_number} has no payment in progress")
        append_sale_event(
            sale_id=sale.id,
            event_type="payment.abandoned",
            payment_transaction_id=last.id,
            occurred_at=now,
            note="No payment in progress before timeout",
            payload={"last_resolved_at": to_utc_z(last.resolved_at)},
        )
        db.session.commit()
        return last

    return run_atomic(_op)


def _timeout_error(tx: PaymentTransaction, timeout: int) -> PaymentTimeoutError:
    return PaymentTimeoutError(
        f"Payment {tx.transaction_ref} timed out",
        details={
            "transaction_ref": tx.transaction_ref,
            "sale_id": tx.sale_id,
            "checkout_request_id": tx.checkout_request_id,
            "initiated_at": to_utc_z(tx.initiated_at),
            "timeout_seconds": timeout,
        },
    )


def expire_stale_payments(
    now: datetime | None = None,
    *,
    org_id: int | None = None,
    gateway: DeferredGateway | None = None,
) -> list[PaymentTimeoutError]:
    """
    Expire every non-terminal transaction older than the pending timeout.

    A transaction the gateway already accepted is queried first and resolved
    from the answer when there is one; only an unanswered push expires. PENDING
    sales left without an active transaction (a failed retry) are failed once
    their last attempt is older than the timeout. org_id limits the sweep to
    one organization; None sweeps all of them.

    Each expiry commits on its own. Returns one PaymentTimeoutError per
    transaction or sale failed by this sweep.
    """
    now = now or utcnow()
    timeout = int(current_app.config.get("MOBILE_MONEY_PENDING_TIMEOUT_SECONDS", 180))
    cutoff = now - timedelta(seconds=timeout)

    query = (
        db.session.query(PaymentTransaction.id, PaymentTransaction.checkout_request_id)
        .join(Sale, Sale.id == PaymentTransaction.sale_id)
        .filter(
            PaymentTransaction.state.in_(TX_ACTIVE_STATES),
            PaymentTransaction.initiated_at <= cutoff,
        )
    )
    if org_id is not None:
        query = query.filter(Sale.org_id == org_id)
    stale = query.order_by(PaymentTransaction.initiated_at.asc(), PaymentTransaction.id.asc()).all()
    db.session.commit()

    timeouts = []
    if stale:
        gateway = _deferred_gateway(gateway)
    for row in stale:
        if row.checkout_request_id and _settled_by_gateway(row.checkout_request_id, gateway):
            continue
        tx = _expire_one(row.id, cutoff, now)
        if tx is None:
            continue
        current_app.logger.info("Payment %s expired (sale %s)", tx.transaction_ref, tx.sale_id)
        timeouts.append(_timeout_error(tx, timeout))

    for sale_id in _abandoned_sale_ids(cutoff, org_id):
        tx = _fail_abandoned_sale(sale_id, cutoff, now)
        if tx is None:
            continue
        current_app.logger.info("Sale %s failed with no payment in progress", sale_id)
        timeouts.append(_timeout_error(tx, timeout))
    return timeouts


# =============================================================================
# OPERATOR ACTIONS
# =============================================================================

def _lock_pending_sale(sale_id: int, org_id: int | None) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if sale is None or (org_id is not None and sale.org_id != org_id):
        raise PaymentError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    if sale.payment_status != PAYMENT_STATUS_PENDING:
        raise PaymentError(
            f"Sale {sale.sale_number} is {sale.payment_status}, not PENDING",
            details={"sale_id": sale.id, "payment_status": sale.payment_status},
        )
    return sale


def cancel_pending_sale(
    sale_id: int,
    *,
    reason: str,
    actor_user_id: int | None = None,
    org_id: int | None = None,
) -> Sale:
    """Operator cancel of a PENDING sale: active payment FAILED, stock released, points restored."""
    if not reason or not reason.strip():
        raise ValidationError("reason is required to cancel a sale")

    def _op():
        sale = _lock_pending_sale(sale_id, org_id)
        now = utcnow()

        tx = get_active_transaction(sale.id, lock=True)
        if tx is not None:
            transition(tx, TX_FAILED, now=now)
            tx.result_desc = "Cancelled by operator"

        _fail_sale(sale, reason=f"Sale {sale.sale_number} cancelled")
        sale.cancelled_at = now
        sale.cancel_reason = reason.strip()[:255]

        append_sale_event(
            sale_id=sale.id,
            event_type="sale.cancelled",
            payment_transaction_id=tx.id if tx else None,
            actor_user_id=actor_user_id,
            occurred_at=now,
            note=sale.cancel_reason,
        )
        db.session.commit()
        current_app.logger.info("Sale %s cancelled by user %s", sale.sale_number, actor_user_id)
        return sale

    return run_atomic(_op)


def mark_paid_manually(
    sale_id: int,
    *,
    actor_user_id: int | None = None,
    receipt_number: str | None = None,
    note: str | None = None,
    org_id: int | None = None,
) -> Sale:
    """
    Operator confirmation of a PENDING sale paid outside the push flow
    (e.g. the customer paid to the till number directly).
    """
    def _op():
        sale = _lock_pending_sale(sale_id, org_id)
        now = utcnow()

        tx = get_active_transaction(sale.id, lock=True)
        if tx is not None:
            if tx.state == TX_INITIATED:
                transition(tx, TX_PENDING, now=now)
            transition(tx, TX_CONFIRMED, now=now)
            tx.receipt_number = receipt_number
            tx.result_desc = "Confirmed manually"
            tx.paid_amount_cents = tx.amount_cents

        _confirm_sale(sale, now=now)
        append_sale_event(
            sale_id=sale.id,
            event_type="sale.marked_paid",
            payment_transaction_id=tx.id if tx else None,
            actor_user_id=actor_user_id,
            occurred_at=now,
            note=note,
            payload={"receipt_number": receipt_number},
        )
        db.session.commit()
        current_app.logger.info("Sale %s marked paid by user %s", sale.sale_number, actor_user_id)
        return sale

    return run_atomic(_op)


def retry_mobile_payment(
    sale_id: int,
    *,
    phone_number: str | None = None,
    actor_user_id: int | None = None,
    org_id: int | None = None,
    gateway: DeferredGateway | None = None,
) -> PaymentTransaction:
    """
    Send a fresh payment push for a PENDING mobile-money sale.

    The active transaction is superseded (FAILED) without releasing stock or
    restoring points; the sale stays PENDING. If the new push cannot be
    initiated only the new transaction fails; the sale keeps its reservation
    until an operator acts or the expiry sweep fails it after the pending
    timeout.
    """
    gateway = _deferred_gateway(gateway)

    def _op():
        sale = _lock_pending_sale(sale_id, org_id)
        if sale.payment_method != METHOD_MOBILE_MONEY:
            raise PaymentError(
                f"Sale {sale.sale_number} is not a mobile money sale",
                details={"sale_id": sale.id, "payment_method": sale.payment_method},
            )

        previous = get_active_transaction(sale.id, lock=True)
        phone = phone_number or (previous.phone_number if previous else None)
        if phone is None:
            last = (
                db.session.query(PaymentTransaction)
                .filter_by(sale_id=sale.id)
                .order_by(PaymentTransaction.id.desc())
                .first()
            )
            phone = last.phone_number if last else None
        if not phone:
            raise ValidationError("phone_number is required to retry payment")

        if previous is not None:
            transition(previous, TX_FAILED)
            previous.result_desc = "Superseded by retry"
            append_sale_event(
                sale_id=sale.id,
                event_type="payment.superseded",
                payment_transaction_id=previous.id,
                actor_user_id=actor_user_id,
            )

        tx = create_initiated_transaction(sale, phone, actor_user_id=actor_user_id)
        db.session.commit()
        return tx.id

    transaction_id = run_atomic(_op)
    return initiate_payment(transaction_id, gateway=gateway, fail_sale_on_error=False)
