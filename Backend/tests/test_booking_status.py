from app.booking_status import (
    BOOKING_STATUSES_DB,
    BookingStatus,
    is_terminal,
    status_filter_values,
    to_booking_status_code,
    to_booking_status_db,
)


class TestToBookingStatusCode:
    def test_accepts_codes_and_labels(self):
        assert to_booking_status_code("pending") == BookingStatus.PENDING
        assert to_booking_status_code("Confirmed") == BookingStatus.CONFIRMED
        assert to_booking_status_code("Partial Refunded") == BookingStatus.PARTIAL_REFUNDED

    def test_normalizes_spacing_case_and_dashes(self):
        assert to_booking_status_code("  PARTIAL-refunded ") == BookingStatus.PARTIAL_REFUNDED
        assert to_booking_status_code("partial   refunded") == BookingStatus.PARTIAL_REFUNDED

    def test_unknown_or_empty_is_none(self):
        assert to_booking_status_code("shipped") is None
        assert to_booking_status_code("") is None
        assert to_booking_status_code(None) is None


class TestToBookingStatusDb:
    def test_maps_codes_to_labels(self):
        assert to_booking_status_db("partial_refunded") == "Partial Refunded"
        assert to_booking_status_db("cancelled") == "Cancelled"

    def test_labels_round_trip(self):
        for label in ["Pending", "Confirmed", "Completed", "Cancelled", "Refunded", "Partial Refunded"]:
            assert to_booking_status_db(label) == label

    def test_unknown_is_none(self):
        assert to_booking_status_db("archived") is None


class TestStatusFilterValues:
    def test_returns_both_spellings(self):
        assert status_filter_values("partial_refunded") == ["Partial Refunded", "partial_refunded"]

    def test_unknown_returns_empty(self):
        assert status_filter_values("nope") == []

    def test_db_list_has_labels_then_codes(self):
        assert BOOKING_STATUSES_DB[:6] == [
            "Pending",
            "Confirmed",
            "Completed",
            "Cancelled",
            "Refunded",
            "Partial Refunded",
        ]
        assert "pending" in BOOKING_STATUSES_DB[6:]


def test_terminal_statuses():
    assert is_terminal("Cancelled")
    assert is_terminal("refunded")
    assert is_terminal("Partial Refunded")
    assert not is_terminal("Confirmed")
    assert not is_terminal(None)
