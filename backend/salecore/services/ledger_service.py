# Overview: Append-only audit trail for sale and payment events.

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import SaleEvent
from ..time_utils import utcnow
"""
Audit trail invariants

- Append-only: no updates, no deletes.
- Events are written inside the same DB transaction as the change they record,
  so a rolled-back change leaves no event behind.
- occurred_at is business time (defaults to now).
"""


def append_sale_event(
    *,
    sale_id: int,
    event_type: str,
    payment_transaction_id: int | None = None,
    actor_user_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: dict | None = None,
) -> SaleEvent:
    ev = SaleEvent(
        sale_id=sale_id,
        event_type=event_type,
        payment_transaction_id=payment_transaction_id,
        actor_user_id=actor_user_id,
        occurred_at=occurred_at or utcnow(),
        note=note,
        payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_sale_events(sale_id: int) -> list[SaleEvent]:
    return (
        db.session.query(SaleEvent)
        .filter_by(sale_id=sale_id)
        .order_by(SaleEvent.occurred_at.asc(), SaleEvent.id.asc())
        .all()
    )
