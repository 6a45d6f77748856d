"""Field catalog: the set of extractable field keys and their rules.

The catalog is administrative configuration loaded from YAML. It decides
which keys an ``analyzeResult`` may hold, which of them are required for
a record to be trusted, and how each raw value is normalized.
"""

from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from src.models.domain import FieldCatalogEntry, FieldType, FieldValue
from src.utils.logger import get_logger

from .normalizers import normalize_value

logger = get_logger(__name__)


class FieldCatalog:
    """Read-only collection of field catalog entries.

    Args:
        entries: Catalog entries; keys must be unique.
    """

    def __init__(self, entries: Iterable[FieldCatalogEntry] = ()) -> None:
        self._entries: dict[str, FieldCatalogEntry] = {}
        for entry in entries:
            if entry.key in self._entries:
                raise ValueError(f"Duplicate field catalog key: {entry.key}")
            self._entries[entry.key] = entry

    @classmethod
    def from_yaml(cls, path: Path) -> "FieldCatalog":
        """Load a catalog from a YAML file.

        The file holds a ``fields`` list of mappings with ``key``, ``label``,
        ``order``, ``required`` and ``type``. A missing file yields an empty
        catalog.
        """
        if not path.exists():
            logger.warning("No field catalog at %s, accepting any field key", path)
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        entries = [cls._entry_from_mapping(item) for item in data.get("fields", [])]
        logger.info("Loaded %d catalog fields from %s", len(entries), path)
        return cls(entries)

    @staticmethod
    def _entry_from_mapping(item: Mapping[str, Any]) -> FieldCatalogEntry:
        key = str(item["key"])
        return FieldCatalogEntry(
            key=key,
            label=str(item.get("label") or key),
            order=int(item.get("order") or 0),
            required=bool(item.get("required", False)),
            value_type=FieldType(item.get("type", FieldType.TEXT)),
        )

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> FieldCatalogEntry | None:
        return self._entries.get(key)

    @property
    def entries(self) -> list[FieldCatalogEntry]:
        """Entries in display order."""
        return sorted(self._entries.values(), key=lambda e: (e.order, e.key))

    @property
    def required_keys(self) -> frozenset[str]:
        return frozenset(e.key for e in self._entries.values() if e.required)

    def accepts(self, key: str) -> bool:
        """Return True if ``key`` may be stored; an empty catalog accepts all."""
        return not self._entries or key in self._entries

    def value_type(self, key: str) -> FieldType:
        entry = self._entries.get(key)
        return entry.value_type if entry else FieldType.TEXT

    def build_field(
        self, key: str, raw_value: Any, confidence: float, manually_edited: bool = False
    ) -> FieldValue:
        """Create a field value, normalizing the raw value by catalog type."""
        return FieldValue(
            raw_value=raw_value,
            normalized_value=normalize_value(raw_value, self.value_type(key)),
            confidence_score=max(0.0, min(1.0, float(confidence))),
            manually_edited=manually_edited,
        )

    def ingest(self, analyze_result: Mapping[str, Any] | None) -> dict[str, FieldValue]:
        """Convert an extraction payload into a catalog-conformant field map.

        Accepts either ``{"fields": {...}}`` or the field mapping itself.
        Each field may carry its value under ``rawValue``, ``value``,
        ``content`` or ``valueString`` and its confidence under
        ``confidenceScore`` or ``confidence``. Keys outside the catalog are
        dropped.

        Args:
            analyze_result: Payload from the extraction workflow.

        Returns:
            Mapping of field key to normalized field value.
        """
        if not analyze_result:
            return {}
        raw_fields = analyze_result.get("fields", analyze_result)
        if not isinstance(raw_fields, Mapping):
            return {}

        fields: dict[str, FieldValue] = {}
        dropped: list[str] = []
        for key, raw in raw_fields.items():
            if not self.accepts(key):
                dropped.append(key)
                continue
            if isinstance(raw, Mapping):
                value = next(
                    (raw[k] for k in ("rawValue", "value", "content", "valueString") if k in raw),
                    None,
                )
                confidence = raw.get("confidenceScore", raw.get("confidence"))
                manual = bool(raw.get("manuallyEdited", raw.get("manual", False)))
            else:
                value, confidence, manual = raw, None, False
            score = confidence if isinstance(confidence, int | float) else 0.0
            fields[key] = self.build_field(key, value, score, manual)

        if dropped:
            logger.warning("Dropped %d fields outside the catalog: %s", len(dropped), dropped)
        return fields
