from __future__ import annotations

from ..extensions import db


class DocumentSequence(db.Model):
    """
    Atomic per-day document sequences.

    WHY: Prevent race conditions when generating document numbers
    (PO-20250101-0001, SO-..., INV-..., PAY-..., SHIP-..., ADJ-...).
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "sequence_date", name="uq_doc_sequences_type_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    sequence_date = db.Column(db.String(8), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
