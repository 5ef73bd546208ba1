# Overview: Atomic per-location document numbering.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _bump(location_id: int, document_type: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.location_id == location_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(location_id=location_id, document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    location_id: int,
    document_type: str,
    prefix: str,
    pad: int = 4,
) -> str:
    """
    Allocate the next document number for a location/type, e.g. "S-001-0042".

    Runs inside the caller's transaction; callers own commit and retry. The
    first number for a location is inserted under a savepoint so a concurrent
    insert only rolls back the savepoint, never the caller's work.
    """
    if not location_id:
        raise DocumentSequenceError("location_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    next_num = _bump(location_id, document_type)
    if next_num is None:
        try:
            with db.session.begin_nested():
                db.session.add(
                    DocumentSequence(location_id=location_id, document_type=document_type, next_number=2)
                )
            next_num = 1
        except IntegrityError:
            next_num = _bump(location_id, document_type)
            if next_num is None:
                raise

    return f"{prefix}-{location_id:03d}-{next_num:0{pad}d}"
