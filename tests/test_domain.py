# tests/test_domain.py
"""Tests for dispatch domain models"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from pact.core.dispatch.domain import (
    LOCK_COST,
    DispatchMode,
    GeoPoint,
    SiteEntry,
    SiteEntryFilter,
    SiteStatus,
    compute_cost,
    same_place,
    to_money,
)
from pact.core.dispatch.results import ErrorCategory, ErrorCode, OpResult
from conftest import make_entry


class TestSiteStatus:
    @pytest.mark.parametrize("raw, expected", [
        ("Dispatched", SiteStatus.DISPATCHED),
        ("dispatched", SiteStatus.DISPATCHED),
        ("In Progress", SiteStatus.IN_PROGRESS),
        ("in_progress", SiteStatus.IN_PROGRESS),
        ("approved_and_costed", SiteStatus.APPROVED_AND_COSTED),
        ("APPROVED-AND-COSTED", SiteStatus.APPROVED_AND_COSTED),
        (SiteStatus.COMPLETED, SiteStatus.COMPLETED),
    ])
    def test_parse_normalizes_casing(self, raw, expected):
        assert SiteStatus.parse(raw) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            SiteStatus.parse("Archived")

    def test_entry_status_normalized_on_construction(self):
        entry = make_entry(status="accepted", accepted_by="col-ahmed")
        assert entry.status is SiteStatus.ACCEPTED


class TestDispatchMode:
    def test_parse(self):
        assert DispatchMode.parse("open") is DispatchMode.OPEN
        assert DispatchMode.parse("LOCALITY") is DispatchMode.LOCALITY

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            DispatchMode.parse("Region")


class TestSamePlace:
    def test_case_and_whitespace_insensitive(self):
        assert same_place("Khartoum", " khartoum ")
        assert same_place("North  Darfur", "north darfur")

    def test_blank_never_matches(self):
        assert not same_place("", "")
        assert not same_place(None, "Khartoum")

    def test_different(self):
        assert not same_place("Khartoum", "Kassala")


class TestFees:
    def test_to_money_from_float_has_no_binary_noise(self):
        assert to_money(0.1) == Decimal("0.1")

    def test_derived_cost_sums_fees(self):
        entry = make_entry(enumerator_fee=20, transport_fee=10, cost=0)
        assert entry.derived_cost == Decimal("30")

    def test_derived_cost_respects_override(self):
        entry = make_entry(cost=Decimal("45"), cost_overridden=True)
        assert entry.derived_cost == Decimal("45")

    def test_compute_cost(self):
        assert compute_cost(Decimal("20"), Decimal("10")) == (Decimal("30"), False)
        assert compute_cost(Decimal("20"), Decimal("10"), Decimal("25")) == (Decimal("25"), True)


class TestSiteEntry:
    def test_holder_invariant(self):
        assert make_entry().holder_invariant_ok()
        assert make_entry(status=SiteStatus.ACCEPTED, accepted_by="col-ahmed").holder_invariant_ok()
        assert not make_entry(status=SiteStatus.ACCEPTED).holder_invariant_ok()
        assert not make_entry(status=SiteStatus.DISPATCHED, accepted_by="col-ahmed").holder_invariant_ok()

    def test_is_actionable_requires_acknowledged_cost(self):
        entry = make_entry(status=SiteStatus.ACCEPTED, accepted_by="col-ahmed")
        assert not entry.is_actionable
        assert entry.with_patch({"cost_acknowledged": True}).is_actionable

    def test_with_patch_copies(self):
        entry = make_entry()
        patched = entry.with_patch({"status": "Dispatched"})
        assert patched.status is SiteStatus.DISPATCHED
        assert entry.status is SiteStatus.APPROVED_AND_COSTED

    def test_with_patch_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            make_entry().with_patch({"colour": "red"})

    def test_with_patch_rejects_id(self):
        with pytest.raises(ValueError):
            make_entry().with_patch({"id": "other"})

    def test_lock_cost_resolves_against_current_fees(self):
        entry = make_entry(enumerator_fee=Decimal("50"), transport_fee=Decimal("50"), cost=Decimal("30"))
        locked = entry.with_patch({"cost": LOCK_COST, "fees_locked_at": datetime.now(timezone.utc)})
        assert locked.cost == Decimal("100")
        assert locked.fees_locked

    def test_lock_cost_keeps_override(self):
        entry = make_entry(cost=Decimal("75"), cost_overridden=True)
        assert entry.with_patch({"cost": LOCK_COST}).cost == Decimal("75")

    def test_settled_flag(self):
        entry = make_entry()
        assert not entry.is_settled
        assert entry.with_patch({"payment_credited_at": datetime.now(timezone.utc)}).is_settled


class TestGeoPoint:
    def test_round_trip_dict(self):
        point = GeoPoint(15.5881, 32.5342, 12.0)
        assert GeoPoint.from_dict(point.to_dict()) == point

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            GeoPoint(95.0, 10.0)

    def test_from_empty(self):
        assert GeoPoint.from_dict(None) is None


class TestSiteEntryFilter:
    def test_empty_filter_matches_everything(self):
        assert SiteEntryFilter().matches(make_entry())

    def test_status_and_state(self):
        f = SiteEntryFilter(statuses=frozenset({SiteStatus.APPROVED_AND_COSTED}), state="khartoum")
        assert f.matches(make_entry())
        assert not f.matches(make_entry(state="Kassala"))
        assert not f.matches(make_entry(status=SiteStatus.DRAFT))

    def test_unsettled_only(self):
        f = SiteEntryFilter(unsettled_only=True)
        settled = make_entry(payment_credited_at=datetime.now(timezone.utc))
        assert not f.matches(settled)


class TestResults:
    def test_error_code_categories(self):
        assert ErrorCode.ALREADY_CLAIMED.category is ErrorCategory.CONTENTION
        assert ErrorCode.FEES_LOCKED.category is ErrorCategory.PRECONDITION
        assert ErrorCode.LOCATION_MISMATCH.category is ErrorCategory.VALIDATION
        assert ErrorCode.LEDGER_UNAVAILABLE.category is ErrorCategory.DEPENDENT

    def test_http_status(self):
        assert ErrorCode.ALREADY_CLAIMED.http_status == 409
        assert ErrorCode.INVALID_COMMENTS.http_status == 400
        assert ErrorCode.NOT_FOUND.http_status == 404
        assert ErrorCode.LEDGER_UNAVAILABLE.http_status == 503

    def test_every_code_has_a_category_and_message(self):
        for code in ErrorCode:
            assert code.category
            assert OpResult.failure(code).message

    def test_failure_uses_custom_message(self):
        result = OpResult.failure(ErrorCode.WRONG_STATE, "nope")
        assert not result.ok
        assert result.message == "nope"

    def test_success(self):
        result = OpResult.success(42, warnings=("x",))
        assert result.ok and result.value == 42 and result.warnings == ("x",)
