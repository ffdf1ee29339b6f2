"""
Switch Resolution Engine — Catalog vs. Generated Spec Reconciliation
conflict_resolver.py

Responsibilities:
  1. Per-field arbitration between catalog facts and externally generated
     specification values, weighted by lookup confidence
  2. Record every disagreement as a FieldConflict
  3. Summarise conflicts across all switches of one response

External specs use the generator's camelCase keys (actuationForce,
materials.topHousing, ...). Anything not listed here (sound, feel,
use-case prose) passes through untouched.
"""
from __future__ import annotations

import copy
import logging
import re
from enum import Enum
from typing import Any, Mapping, Optional

from models import (
    ConflictReport,
    ConflictResolution,
    ConflictResolutionResult,
    DatabaseContext,
    FieldConflict,
    SwitchConflicts,
    SwitchRecord,
)

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6
REASONABLE_VARIATION = 0.15

RESOLUTION_STRATEGY = "prefer_database_for_factual_specs"
RESOLUTION_NOTE = (
    "Catalog specifications were preferred for factual data when lookup confidence "
    "was high; generated knowledge covers subjective analysis and missing data points."
)

# External key -> (record attribute, accepted external aliases)
FACTUAL_FIELDS: dict[str, tuple[str, tuple[str, ...]]] = {
    "actuationForce": ("actuation_force_g", ("actuationForceG", "actuation_force_g")),
    "bottomOutForce": ("bottom_out_force_g", ("bottomOutForceG", "bottom_out_force_g")),
    "actuationDistance": ("pre_travel_mm", ("preTravel", "preTravelMm", "pre_travel_mm")),
    "totalTravel": ("total_travel_mm", ("totalTravelMm", "total_travel_mm")),
    "manufacturer": ("manufacturer", ()),
    "type": ("type", ()),
}
NUMERIC_FIELDS = {"actuationForce", "bottomOutForce", "actuationDistance", "totalTravel"}

MATERIAL_FIELDS: dict[str, tuple[str, tuple[str, ...]]] = {
    "topHousing": ("top_housing", ("top_housing",)),
    "bottomHousing": ("bottom_housing", ("bottom_housing",)),
    "stem": ("stem", ()),
}

_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*[a-z]*\s*$", re.IGNORECASE)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        m = _NUMBER.match(value)
        if m:
            return float(m.group(1))
    return None


def _values_differ(db_value: Any, ext_value: Any) -> bool:
    a, b = _as_number(db_value), _as_number(ext_value)
    if a is not None and b is not None:
        return a != b
    if isinstance(db_value, str) and isinstance(ext_value, str):
        return db_value.strip().lower() != ext_value.strip().lower()
    return db_value != ext_value


def is_reasonable_variation(db_value: Any, ext_value: Any) -> bool:
    """True if two numbers differ by at most 15% of the larger one."""
    a, b = _as_number(db_value), _as_number(ext_value)
    if a is None or b is None:
        return False
    larger = max(abs(a), abs(b))
    if larger == 0:
        return True
    return abs(a - b) / larger <= REASONABLE_VARIATION


def _lookup(specs: Mapping[str, Any], key: str, aliases: tuple[str, ...]) -> tuple[str, Any]:
    for k in (key,) + aliases:
        if k in specs and specs[k] is not None:
            return k, specs[k]
    return key, None


def _present(value: Any) -> bool:
    return value is not None and not (isinstance(value, str) and not value.strip())


def _record_value(record: SwitchRecord, attr: str) -> Any:
    value = getattr(record, attr)
    return value.value if isinstance(value, Enum) else value


def _arbitrate(
    field: str,
    db_value: Any,
    ext_value: Any,
    confidence: float,
    numeric: bool,
) -> tuple[FieldConflict, Any, Optional[str]]:
    """Returns (conflict, value to keep, optional note)."""
    pct = f"{confidence * 100:.1f}%"
    if confidence >= HIGH_CONFIDENCE:
        return FieldConflict(
            field=field, database_value=db_value, external_value=ext_value,
            resolution=ConflictResolution.DATABASE,
            reason=f"High confidence catalog value ({pct}) preferred for factual specification",
        ), db_value, None

    if confidence >= MEDIUM_CONFIDENCE:
        if numeric and is_reasonable_variation(db_value, ext_value):
            return FieldConflict(
                field=field, database_value=db_value, external_value=ext_value,
                resolution=ConflictResolution.BOTH,
                reason="Medium confidence catalog match within reasonable variation of generated value",
            ), db_value, f"Database: {db_value}, LLM: {ext_value}"
        return FieldConflict(
            field=field, database_value=db_value, external_value=ext_value,
            resolution=ConflictResolution.DATABASE,
            reason=f"Catalog value preferred for factual specification despite medium confidence ({pct})",
        ), db_value, None

    return FieldConflict(
        field=field, database_value=db_value, external_value=ext_value,
        resolution=ConflictResolution.EXTERNAL,
        reason=f"Low catalog confidence ({pct}), using generated value",
    ), ext_value, None


def resolve(
    record: SwitchRecord,
    external_specs: Optional[Mapping[str, Any]],
    confidence: float,
) -> ConflictResolutionResult:
    """
    Merge one catalog record into the generated specs for the same switch.

    High confidence (>= 0.8): catalog wins. Medium (>= 0.6): catalog wins;
    numeric values within 15% are kept with a `<field>_note`. Low: the
    generated value wins. Catalog-only values are adopted silently.
    """
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"confidence must be within [0, 1], got {confidence}")

    specs: dict[str, Any] = copy.deepcopy(dict(external_specs or {}))
    conflicts: list[FieldConflict] = []

    for key, (attr, aliases) in FACTUAL_FIELDS.items():
        db_value = _record_value(record, attr)
        if not _present(db_value):
            continue
        ext_key, ext_value = _lookup(specs, key, aliases)
        if not _present(ext_value):
            specs[key] = db_value
            continue
        if not _values_differ(db_value, ext_value):
            continue
        conflict, keep, note = _arbitrate(key, db_value, ext_value, confidence,
                                          numeric=key in NUMERIC_FIELDS)
        conflicts.append(conflict)
        specs[ext_key] = keep
        if note:
            specs[f"{ext_key}_note"] = note

    materials = specs.get("materials")
    materials = dict(materials) if isinstance(materials, Mapping) else {}
    for key, (attr, aliases) in MATERIAL_FIELDS.items():
        db_value = _record_value(record, attr)
        if not _present(db_value):
            continue
        ext_key, ext_value = _lookup(materials, key, aliases)
        if not _present(ext_value):
            materials[key] = db_value
            continue
        if not _values_differ(db_value, ext_value):
            continue
        conflict, keep, _ = _arbitrate(f"materials.{key}", db_value, ext_value,
                                       confidence, numeric=False)
        conflicts.append(conflict)
        materials[ext_key] = keep
    if materials:
        specs["materials"] = materials

    if conflicts:
        logger.info("Resolved %d conflict(s) for %s at confidence %.2f",
                    len(conflicts), record.name, confidence)
    return ConflictResolutionResult(resolved_specs=specs, conflicts=conflicts)


def _specs_for(
    specs_by_switch: Mapping[str, Mapping[str, Any]], *names: str
) -> Optional[Mapping[str, Any]]:
    lowered = {k.lower(): v for k, v in specs_by_switch.items()}
    for n in names:
        if n and n.lower() in lowered:
            return lowered[n.lower()]
    return None


def apply_conflict_resolution(
    specs_by_switch: Mapping[str, Mapping[str, Any]],
    context: DatabaseContext,
) -> ConflictReport:
    """
    Resolve generated specs (keyed by switch name) against every found
    switch in `context`.
    """
    report = ConflictReport()
    for result in context.switches:
        if not result.found or result.data is None:
            continue
        record = result.data
        external = _specs_for(specs_by_switch, record.name, result.resolved_name,
                              result.query_fragment)
        resolved = resolve(record, external, result.confidence)
        report.resolved_specs[record.name] = resolved.resolved_specs
        if resolved.conflicts:
            report.conflicts.append(
                SwitchConflicts(switch_name=record.name, conflicts=resolved.conflicts))

    report.conflicts_found = len(report.conflicts)
    if report.conflicts_found:
        report.note = RESOLUTION_NOTE
    return report
