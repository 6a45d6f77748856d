"""Confidence classification and the manual verification gate.

A record is ``empty`` until extraction returns fields. A field is
satisfied when a reviewer edited it or its confidence reaches the
threshold. Missing or unsatisfied required fields leave the record in
``needs_revision``; otherwise it is ``trusted``. Only an explicit
verification moves a record to ``verified``.
"""

from collections.abc import Collection, Mapping

from src.models.domain import ConfidenceLevel, FieldValue


def is_satisfied(field: FieldValue, threshold: float) -> bool:
    """Return True if a field was manually edited or meets the threshold.

    Args:
        field: Field value with a confidence score in ``[0, 1]``.
        threshold: Percentage threshold in ``[0, 100]``.
    """
    return field.manually_edited or field.confidence_score * 100 >= threshold


def unsatisfied_required(
    fields: Mapping[str, FieldValue],
    threshold: float,
    required_keys: Collection[str],
) -> list[str]:
    """List required keys that are missing or below threshold, sorted."""
    return sorted(
        key
        for key in required_keys
        if key not in fields or not is_satisfied(fields[key], threshold)
    )


def classify(
    fields: Mapping[str, FieldValue],
    threshold: float,
    required_keys: Collection[str],
    current: ConfidenceLevel | None = None,
) -> ConfidenceLevel:
    """Compute the confidence classification of a record.

    Args:
        fields: The record's ``analyzeResult`` field map.
        threshold: Percentage threshold in ``[0, 100]``.
        required_keys: Keys that must be present and satisfied.
        current: The stored classification. A stored ``verified`` is kept;
            it is never produced from any other value.

    Returns:
        The classification.
    """
    if current == ConfidenceLevel.VERIFIED:
        return ConfidenceLevel.VERIFIED
    if not fields:
        return ConfidenceLevel.EMPTY
    if unsatisfied_required(fields, threshold, required_keys):
        return ConfidenceLevel.NEEDS_REVISION
    return ConfidenceLevel.TRUSTED


def can_verify(
    fields: Mapping[str, FieldValue],
    threshold: float,
    required_keys: Collection[str],
    current: ConfidenceLevel | None = None,
) -> bool:
    """Return True if the record may be (or already is) verified."""
    return classify(fields, threshold, required_keys, current) in (
        ConfidenceLevel.TRUSTED,
        ConfidenceLevel.VERIFIED,
    )
