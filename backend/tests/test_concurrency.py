"""
Unit-of-work, retry and document numbering tests.
"""

from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from ims.errors import ConcurrentModificationError, InternalError, ValidationError
from ims.extensions import db
from ims.models import Warehouse
from ims.services import stock_ledger_service as ledger
from ims.services.concurrency import atomic, run_with_retry
from ims.services.document_service import next_document_number


class TestAtomic:

    def test_commit_on_success(self, db_session):
        def _op():
            db.session.add(Warehouse(code="TMP", name="Temp", is_active=True))
            return "ok"

        assert atomic(_op) == "ok"
        db.session.rollback()
        assert db.session.query(Warehouse).filter_by(code="TMP").count() == 1

    def test_rollback_on_business_error(self, db_session):
        def _op():
            db.session.add(Warehouse(code="TMP", name="Temp", is_active=True))
            db.session.flush()
            raise ValidationError("nope")

        with pytest.raises(ValidationError):
            atomic(_op)
        assert db.session.query(Warehouse).filter_by(code="TMP").count() == 0

    def test_storage_errors_become_internal(self, db_session):
        def _op():
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        with pytest.raises(InternalError) as exc_info:
            atomic(_op, operation="broken")

        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert exc_info.value.details == {"operation": "broken"}
        assert exc_info.value.retryable is False


class TestRunWithRetry:

    def test_retries_concurrent_modification(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) < 3:
                raise ConcurrentModificationError("lost race")
            return "done"

        assert run_with_retry(_op, attempts=3, backoff_base=0) == "done"
        assert len(calls) == 3

    def test_gives_up_after_attempts(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise ConcurrentModificationError("lost race")

        with pytest.raises(ConcurrentModificationError):
            run_with_retry(_op, attempts=2, backoff_base=0)
        assert len(calls) == 2

    def test_business_errors_not_retried(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise ValidationError("bad request")

        with pytest.raises(ValidationError):
            run_with_retry(_op)
        assert len(calls) == 1

    def test_retry_rereads_state(self, db_session, stocked_product, warehouse):
        stale_version = ledger.get_stock_record(stocked_product.id, warehouse.id).version_id
        ledger.add_stock(stocked_product.id, warehouse.id, 1)
        attempts = []

        def _op():
            # First attempt uses the stale version; the retry reads it fresh
            version = stale_version if not attempts else ledger.get_stock_record(
                stocked_product.id, warehouse.id
            ).version_id
            attempts.append(version)
            return ledger.remove_stock(stocked_product.id, warehouse.id, 10, expected_version=version)

        assert run_with_retry(_op) == 91
        assert len(attempts) == 2


class TestDocumentNumbers:

    def test_sequential_per_type_and_day(self, db_session):
        day = date(2025, 1, 2)
        first = next_document_number(document_type="PURCHASE_ORDER", prefix="PO", on_date=day)
        second = next_document_number(document_type="PURCHASE_ORDER", prefix="PO", on_date=day)
        other_type = next_document_number(document_type="SALES_ORDER", prefix="SO", on_date=day)
        next_day = next_document_number(document_type="PURCHASE_ORDER", prefix="PO", on_date=date(2025, 1, 3))
        db.session.commit()

        assert first == "PO-20250102-0001"
        assert second == "PO-20250102-0002"
        assert other_type == "SO-20250102-0001"
        assert next_day == "PO-20250103-0001"
