"""Tests for confidence classification and the verification gate."""

import pytest

from src.confidence.engine import can_verify, classify, is_satisfied, unsatisfied_required
from src.models.domain import ConfidenceLevel, FieldValue

REQUIRED = {"invoice_number", "total_amount"}


def _field(score: float, manual: bool = False) -> FieldValue:
    return FieldValue("raw", "raw", score, manually_edited=manual)


class TestIsSatisfied:
    """Tests for the per-field satisfaction rule."""

    def test_at_threshold(self) -> None:
        assert is_satisfied(_field(0.70), 70)

    def test_below_threshold(self) -> None:
        assert not is_satisfied(_field(0.69), 70)

    def test_manual_edit_overrides_score(self) -> None:
        assert is_satisfied(_field(0.0, manual=True), 70)

    def test_zero_threshold_accepts_everything(self) -> None:
        assert is_satisfied(_field(0.0), 0)


class TestClassify:
    """Tests for classify."""

    def test_no_fields_is_empty(self) -> None:
        assert classify({}, 70, REQUIRED) == ConfidenceLevel.EMPTY

    def test_missing_required_field_needs_revision(self) -> None:
        fields = {"invoice_number": _field(0.99)}
        assert classify(fields, 70, REQUIRED) == ConfidenceLevel.NEEDS_REVISION

    def test_low_required_field_needs_revision(self) -> None:
        fields = {"invoice_number": _field(0.99), "total_amount": _field(0.4)}
        assert classify(fields, 70, REQUIRED) == ConfidenceLevel.NEEDS_REVISION

    def test_all_required_satisfied_is_trusted(self) -> None:
        fields = {
            "invoice_number": _field(0.85),
            "total_amount": _field(0.1, manual=True),
            "notes": _field(0.05),
        }
        assert classify(fields, 70, REQUIRED) == ConfidenceLevel.TRUSTED

    def test_no_required_keys_with_fields_is_trusted(self) -> None:
        assert classify({"notes": _field(0.01)}, 70, set()) == ConfidenceLevel.TRUSTED

    def test_never_produces_verified(self) -> None:
        fields = {"invoice_number": _field(1.0), "total_amount": _field(1.0)}
        for current in (None, ConfidenceLevel.TRUSTED, ConfidenceLevel.NEEDS_REVISION):
            assert classify(fields, 70, REQUIRED, current) != ConfidenceLevel.VERIFIED

    def test_verified_is_preserved(self) -> None:
        fields = {"invoice_number": _field(0.2)}
        result = classify(fields, 70, REQUIRED, ConfidenceLevel.VERIFIED)
        assert result == ConfidenceLevel.VERIFIED

    def test_idempotent(self) -> None:
        fields = {"invoice_number": _field(0.9), "total_amount": _field(0.9)}
        first = classify(fields, 70, REQUIRED)
        assert classify(fields, 70, REQUIRED, first) == first

    def test_unsatisfied_required_lists_missing_and_low(self) -> None:
        fields = {"invoice_number": _field(0.3)}
        assert unsatisfied_required(fields, 70, REQUIRED) == ["invoice_number", "total_amount"]


class TestCanVerify:
    """Tests for the verification gate predicate."""

    def test_trusted_can_verify(self) -> None:
        fields = {"invoice_number": _field(0.9), "total_amount": _field(0.9)}
        assert can_verify(fields, 70, REQUIRED)

    @pytest.mark.parametrize(
        "fields",
        [{}, {"invoice_number": _field(0.9)}, {"invoice_number": _field(0.9), "total_amount": _field(0.2)}],
    )
    def test_untrusted_cannot_verify(self, fields: dict[str, FieldValue]) -> None:
        assert not can_verify(fields, 70, REQUIRED)

    def test_already_verified_still_passes(self) -> None:
        assert can_verify({}, 70, REQUIRED, ConfidenceLevel.VERIFIED)
