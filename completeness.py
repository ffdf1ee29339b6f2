"""
completeness.py — Data-completeness scoring and lookup-context assembly.

Scores how much of each found record's factual schema is populated and
decides whether the result set is good enough to drive generation or
whether downstream should lean on general knowledge instead.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence, Union

from models import (
    CompletenessReport,
    DataQuality,
    EnhancedDatabaseContext,
    LookupResult,
    LookupUsage,
    SwitchRecord,
)

logger = logging.getLogger(__name__)

CRITICAL_FIELDS = ("name", "manufacturer")
SPECIFICATION_FIELDS = (
    "type",
    "top_housing",
    "bottom_housing",
    "stem",
    "mount",
    "spring",
    "actuation_force_g",
    "bottom_out_force_g",
    "pre_travel_mm",
    "total_travel_mm",
)
ALL_FIELDS = CRITICAL_FIELDS + SPECIFICATION_FIELDS

LOW_CONFIDENCE_THRESHOLD = 0.7
INCOMPLETE_THRESHOLD = 0.6
FALLBACK_COMPLETENESS_THRESHOLD = 0.4


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def analyze(record: Union[SwitchRecord, Mapping[str, Any]]) -> CompletenessReport:
    data = record.model_dump() if isinstance(record, SwitchRecord) else dict(record)

    missing = [f for f in ALL_FIELDS if not _is_present(data.get(f))]
    present = len(ALL_FIELDS) - len(missing)

    return CompletenessReport(
        completeness_score=present / len(ALL_FIELDS),
        missing_fields=missing,
        critical_fields_missing=any(f in missing for f in CRITICAL_FIELDS),
        has_specifications=any(f not in missing for f in SPECIFICATION_FIELDS),
    )


def recommend_llm_fallback(
    successful: int, failed: int, incomplete: int, overall_completeness: float
) -> bool:
    return (
        failed > successful
        or overall_completeness < FALLBACK_COMPLETENESS_THRESHOLD
        or incomplete > successful / 2
    )


def build_context(
    results: Sequence[LookupResult],
    requested_names: Sequence[str],
    warnings: Sequence[str] = (),
) -> EnhancedDatabaseContext:
    """
    Aggregate per-fragment lookups into an EnhancedDatabaseContext.
    `requested_names[i]` labels `results[i]`; missing labels become switch_<n>.
    """
    incomplete_names: list[str] = []
    not_found: list[str] = []
    total_completeness = 0.0
    successful = failed = low_confidence = incomplete = 0

    for i, result in enumerate(results):
        label = requested_names[i] if i < len(requested_names) else f"switch_{i + 1}"

        if not result.found:
            not_found.append(label)
            failed += 1
            continue

        successful += 1
        if result.confidence < LOW_CONFIDENCE_THRESHOLD:
            low_confidence += 1

        if result.data is not None:
            report = analyze(result.data)
            total_completeness += report.completeness_score
            if report.completeness_score < INCOMPLETE_THRESHOLD or not report.has_specifications:
                incomplete_names.append(label)
                incomplete += 1

    overall = total_completeness / successful if successful else 0.0
    fallback = recommend_llm_fallback(successful, failed, incomplete, overall)

    if fallback:
        logger.info(
            "Catalog context weak (found %d/%d, completeness %.2f); recommending LLM fallback",
            successful, len(results), overall)

    return EnhancedDatabaseContext(
        switches=list(results),
        total_found=successful,
        total_requested=len(requested_names),
        warnings=list(warnings),
        data_quality=DataQuality(
            overall_completeness=overall,
            switches_with_incomplete_data=incomplete_names,
            switches_not_found=not_found,
            has_any_data=successful > 0,
            recommend_llm_fallback=fallback,
        ),
        usage=LookupUsage(
            successful_lookups=successful,
            failed_lookups=failed,
            low_confidence_lookups=low_confidence,
            incomplete_data_count=incomplete,
        ),
    )
