# Overview: Human-readable document numbers (PO-20250101-0001 style).

from __future__ import annotations

from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ConcurrentModificationError
from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import today


def next_document_number(
    *,
    document_type: str,
    prefix: str,
    on_date: date | None = None,
    pad: int = 4,
) -> str:
    """
    Atomically allocate the next document number for a type/day.

    Must be called inside an open unit of work; the increment is a single
    UPDATE ... SET next_number = next_number + 1 so two writers never get
    the same number. Losing the race to create the first number of a day
    surfaces as ConcurrentModificationError.
    """
    day = (on_date or today()).strftime("%Y%m%d")

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.sequence_date == day,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    def _current() -> int:
        return (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type, sequence_date=day)
            .scalar()
        )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current() - 1
    else:
        db.session.add(DocumentSequence(document_type=document_type, sequence_date=day, next_number=2))
        try:
            db.session.flush()
        except IntegrityError as exc:
            # Lost the race for the first number of the day; the unit of work is retryable
            db.session.rollback()
            raise ConcurrentModificationError(
                f"Document sequence {document_type} was allocated concurrently",
                {"document_type": document_type, "sequence_date": day},
            ) from exc
        next_num = 1

    return f"{prefix}-{day}-{next_num:0{pad}d}"
