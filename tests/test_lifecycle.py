"""Tests for the booking status state machine."""

import pytest

from clinic_booking.core.exceptions import InvalidTransitionError
from clinic_booking.models.booking import BookingStatus as S
from clinic_booking.services import lifecycle


class TestTransitionTable:
    @pytest.mark.parametrize("current,target", [
        (S.PENDING, S.CONFIRMED),
        (S.PENDING, S.CANCELLED),
        (S.CONFIRMED, S.CHECKED_IN),
        (S.CONFIRMED, S.CANCELLED),
        (S.CONFIRMED, S.NO_SHOW),
        (S.CHECKED_IN, S.IN_PROGRESS),
        (S.CHECKED_IN, S.CANCELLED),
        (S.IN_PROGRESS, S.COMPLETED),
        (S.QUEUED, S.CONFIRMED),
        (S.QUEUED, S.CANCELLED),
    ])
    def test_allowed(self, current, target):
        assert lifecycle.can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (S.PENDING, S.COMPLETED),
        (S.PENDING, S.QUEUED),
        (S.QUEUED, S.PENDING),
        (S.IN_PROGRESS, S.CANCELLED),
        (S.CONFIRMED, S.PENDING),
        (S.COMPLETED, S.CANCELLED),
        (S.CANCELLED, S.CONFIRMED),
        (S.NO_SHOW, S.CONFIRMED),
    ])
    def test_rejected(self, current, target):
        assert not lifecycle.can_transition(current, target)
        with pytest.raises(InvalidTransitionError) as exc_info:
            lifecycle.validate_transition(current, target)
        assert exc_info.value.context == {"from": current.value, "to": target.value}

    def test_terminal_statuses(self):
        """Terminal statuses are exactly the ones with no outgoing edge."""
        assert lifecycle.TERMINAL_STATUSES == {S.COMPLETED, S.CANCELLED, S.NO_SHOW}

    def test_initial_status(self):
        assert lifecycle.decide_initial_status(True) == S.PENDING
        assert lifecycle.decide_initial_status(False) == S.QUEUED

    def test_promotion_triggers(self):
        """Cancelling or completing frees a seat; a no-show does not trigger promotion."""
        assert lifecycle.triggers_promotion(S.CANCELLED)
        assert lifecycle.triggers_promotion(S.COMPLETED)
        assert not lifecycle.triggers_promotion(S.NO_SHOW)
        assert not lifecycle.triggers_promotion(S.CONFIRMED)


class TestApplyTransition:
    def test_records_history(self, db, book):
        booking = book(0)
        lifecycle.apply_transition(db, booking, S.CONFIRMED, "desk", "Checked insurance")
        db.commit()

        assert booking.status == S.CONFIRMED
        last = booking.status_history[-1]
        assert last.old_status == S.PENDING
        assert last.new_status == S.CONFIRMED
        assert last.changed_by == "desk"
        assert last.reason == "Checked insurance"

    def test_invalid_transition_leaves_booking_untouched(self, db, book):
        booking = book(0)
        with pytest.raises(InvalidTransitionError):
            lifecycle.apply_transition(db, booking, S.COMPLETED, "desk")
        db.rollback()

        assert booking.status == S.PENDING
        assert len(booking.status_history) == 1

    def test_record_creation_only_accepts_initial_statuses(self, db, book):
        booking = book(0)
        with pytest.raises(InvalidTransitionError):
            lifecycle.record_creation(db, booking, S.CONFIRMED, "desk")
