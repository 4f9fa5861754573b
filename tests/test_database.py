"""Tests for the transaction wrapper and conflict retries."""

import pytest
from sqlalchemy.exc import OperationalError

from clinic_booking.core.exceptions import InvalidInputError, TransientStoreConflictError
from clinic_booking.database import retry_on_conflict, transaction
from clinic_booking.models.service import Service


class TestTransaction:
    def test_commits_on_success(self, db):
        with transaction(db):
            db.add(Service(name="Vaccination", duration_minutes=15, max_slots_per_hour=4))
        db.expire_all()
        assert db.query(Service).filter(Service.name == "Vaccination").count() == 1

    def test_rolls_back_business_errors(self, db):
        with pytest.raises(InvalidInputError):
            with transaction(db):
                db.add(Service(name="Vaccination", duration_minutes=15, max_slots_per_hour=4))
                db.flush()
                raise InvalidInputError("nope")
        assert db.query(Service).filter(Service.name == "Vaccination").count() == 0

    def test_store_errors_become_transient_conflicts(self, db):
        with pytest.raises(TransientStoreConflictError) as exc_info:
            with transaction(db):
                raise OperationalError("UPDATE slot_locks", {}, Exception("database is locked"))
        assert exc_info.value.status_code == 503
        assert "database is locked" in exc_info.value.context["store_error"]


class TestRetryOnConflict:
    def test_retries_until_success(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientStoreConflictError("busy")
            return "booked"

        assert retry_on_conflict(flaky, attempts=3) == "booked"
        assert len(calls) == 3

    def test_gives_up_after_attempts(self):
        calls = []

        def always_busy():
            calls.append(1)
            raise TransientStoreConflictError("busy")

        with pytest.raises(TransientStoreConflictError):
            retry_on_conflict(always_busy, attempts=2)
        assert len(calls) == 2

    def test_other_errors_are_not_retried(self):
        calls = []

        def invalid():
            calls.append(1)
            raise InvalidInputError("bad")

        with pytest.raises(InvalidInputError):
            retry_on_conflict(invalid)
        assert len(calls) == 1
