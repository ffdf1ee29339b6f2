"""
Switch Resolution Engine — Query Intent Parsing
intent_parser.py

Responsibilities:
  1. Extract candidate switch-name fragments from a free-text query
  2. Infer query-level context: implicit brand/type, comparison type,
     use case, preference words
  3. AI parsing behind a breaker, with a heuristic fallback
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional

from circuit_breaker import CircuitBreaker
from errors import CircuitOpenError, SwitchResolutionError
from llm_client import TextGenerationClient, extract_json_object
from models import ComparisonType, IntentContext
from query_builder import MATERIAL_TERMS, resolve_characteristic, resolve_material

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.5

IMPLICIT_BRAND_COLORS = ["red", "brown", "blue", "black", "clear", "green", "white", "yellow"]

SWITCH_INDICATORS = ["switch", "mx", "gateron", "cherry", "linear", "tactile", "clicky"]

CHARACTERISTIC_WORDS = [
    "smooth", "clicky", "tactile", "linear", "quiet",
    "loud", "light", "heavy", "fast", "responsive",
]

# Checked in order; first hit wins
USE_CASE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("gaming", ("gaming", "game")),
    ("office", ("office", "work", "quiet")),
    ("programming", ("programming", "coding")),
    ("typing", ("typing", "writing")),
]
USE_CASES = {name for name, _ in USE_CASE_KEYWORDS}

TYPE_WORDS = ("linear", "tactile", "clicky")


# ============================================================
# Heuristics
# ============================================================

def _has_word(text: str, word: str) -> bool:
    return re.search(rf"(?<![a-z0-9]){re.escape(word)}(?![a-z0-9])", text) is not None


def detect_use_case(query: str) -> Optional[str]:
    q = query.lower()
    for name, keywords in USE_CASE_KEYWORDS:
        if any(kw in q for kw in keywords):
            return name
    return None


def extract_preferences(query: str) -> list[str]:
    """Characteristic words plus canonical material names mentioned in the query."""
    q = query.lower()
    prefs = [w for w in CHARACTERISTIC_WORDS if w in q]
    for definition in MATERIAL_TERMS.values():
        if any(_has_word(q, t) for t in definition.terms()):
            if definition.primary_name not in prefs:
                prefs.append(definition.primary_name)
    return prefs


_SPLIT_VS = re.compile(r"\s+(?:vs\.?|versus)\s+", re.IGNORECASE)
_SPLIT_LIST = re.compile(r"\s*,\s*|\s+and\s+|\s*/\s*", re.IGNORECASE)
_COMPARE_LEAD = re.compile(
    r"^.*?\b(?:difference\s+between|compare|comparing|comparison\s+of)\s+", re.IGNORECASE)
_TRAILING_CONTEXT = re.compile(r"\s+\b(?:for|in|on|when|which|that|with)\b.*$", re.IGNORECASE)
_NOISE_WORDS = re.compile(r"\b(?:the|a|an|switch(?:es)?|between)\b", re.IGNORECASE)
_QUOTED = re.compile(r"[\"“]([^\"”]{2,})[\"”]")


def _clean_part(part: str) -> str:
    part = _TRAILING_CONTEXT.sub("", part)
    part = _NOISE_WORDS.sub(" ", part)
    part = re.sub(r"[?!.;:]+$", "", part.strip())
    return " ".join(part.split())


def split_comparison(query: str) -> list[str]:
    """
    Split "X vs Y", "compare X and Y", "difference between X and Y" and
    comma lists into cleaned parts. Returns [] when the query is not a
    comparison of two or more things.
    """
    text = query.strip()
    lead = _COMPARE_LEAD.match(text)
    is_compare = lead is not None
    if lead:
        text = text[lead.end():]

    parts = _SPLIT_VS.split(text)
    if len(parts) < 2 and not is_compare:
        return []

    out: list[str] = []
    for p in parts:
        out.extend(_SPLIT_LIST.split(p) if (is_compare or len(parts) > 1) else [p])
    cleaned = [c for c in (_clean_part(p) for p in out) if c]
    return cleaned if len(cleaned) >= 2 else []


def _two_word_windows(query: str) -> list[str]:
    words = re.findall(r"[a-z0-9][a-z0-9'\-]*", query.lower())
    picked: list[str] = []
    last_end = -1
    for i in range(len(words) - 1):
        combo = f"{words[i]} {words[i + 1]}"
        if i > last_end and any(ind in combo for ind in SWITCH_INDICATORS):
            picked.append(" ".join(w.capitalize() for w in combo.split()))
            last_end = i + 1
    return picked


def _dedupe(names: list[str]) -> list[str]:
    seen: set[str] = set()
    out = []
    for n in names:
        key = n.lower()
        if key not in seen:
            seen.add(key)
            out.append(n)
    return out


def rule_based_intent(query: str) -> IntentContext:
    q = query.lower()
    intended: list[str] = []
    implicit_brand: Optional[str] = None
    comparison_type = ComparisonType.SWITCHES

    colors = [c for c in IMPLICIT_BRAND_COLORS if _has_word(q, c)]
    if len(colors) > 1 and "cherry" not in q and "gateron" not in q:
        implicit_brand = "Cherry MX"
        intended.extend(f"Cherry MX {c.capitalize()}" for c in colors)

    intended.extend(m.strip() for m in _QUOTED.findall(query))

    if not intended:
        parts = split_comparison(query)
        if parts and all(resolve_material(p) for p in parts):
            comparison_type = ComparisonType.MATERIALS
        elif parts and all(resolve_characteristic(p) for p in parts):
            comparison_type = ComparisonType.CHARACTERISTICS
        else:
            intended.extend(parts)

    if not intended and comparison_type == ComparisonType.SWITCHES:
        intended.extend(_two_word_windows(query))

    if not intended and comparison_type == ComparisonType.SWITCHES:
        intended.append(query.strip())

    types = [t for t in TYPE_WORDS if _has_word(q, t)]
    preferences = extract_preferences(query)
    if comparison_type != ComparisonType.SWITCHES:
        for p in split_comparison(query):
            d = resolve_material(p) or resolve_characteristic(p)
            if d is not None and d.primary_name not in preferences:
                preferences.append(d.primary_name)

    return IntentContext(
        intended_switches=_dedupe(intended),
        implicit_brand=implicit_brand,
        implicit_type=types[0] if len(types) == 1 else None,
        comparison_type=comparison_type,
        use_case=detect_use_case(q),
        preferences=preferences,
        confidence=FALLBACK_CONFIDENCE,
    )


# ============================================================
# AI Parsing
# ============================================================

def build_intent_prompt(query: str) -> str:
    return f"""Extract the mechanical keyboard switches a user is asking about.

Query: "{query}"

Bare colors ("red vs brown") usually mean Cherry MX. Material comparisons
("POM vs PC") and feel comparisons ("smooth vs clicky") list the terms as
preferences instead of switches.

Respond with ONLY this JSON:
{{"intendedSwitches": [], "implicitBrand": null, "implicitType": null,
  "queryContext": {{"comparisonType": "switches|materials|characteristics",
                    "useCase": "gaming|typing|office|programming|null",
                    "preferences": []}},
  "confidence": 0.0}}"""


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _opt_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip() and value.strip().lower() != "null":
        return value.strip()
    return None


def intent_from_payload(data: dict, query: str) -> IntentContext:
    ctx = data.get("queryContext") if isinstance(data.get("queryContext"), dict) else {}
    try:
        comparison_type = ComparisonType(str(ctx.get("comparisonType", "switches")).lower())
    except ValueError:
        comparison_type = ComparisonType.SWITCHES

    use_case = _opt_str(ctx.get("useCase"))
    if use_case is not None and use_case.lower() not in USE_CASES:
        use_case = None

    raw_confidence = data.get("confidence")
    try:
        confidence = (FALLBACK_CONFIDENCE if raw_confidence is None
                      else max(0.0, min(1.0, float(raw_confidence))))
    except (TypeError, ValueError):
        confidence = FALLBACK_CONFIDENCE

    intended = _dedupe(_str_list(data.get("intendedSwitches")))
    if not intended and comparison_type == ComparisonType.SWITCHES:
        intended = [query.strip()]

    return IntentContext(
        intended_switches=intended,
        implicit_brand=_opt_str(data.get("implicitBrand")),
        implicit_type=_opt_str(data.get("implicitType")),
        comparison_type=comparison_type,
        use_case=use_case.lower() if use_case else None,
        preferences=_str_list(ctx.get("preferences")),
        confidence=confidence,
    )


class IntentParser:
    """Parses a query into an IntentContext; never raises for bad AI output."""

    def __init__(
        self,
        text_client: Optional[TextGenerationClient],
        breaker: CircuitBreaker,
        *,
        enabled: bool = True,
        timeout_s: float = 8.0,
    ):
        self.text_client = text_client
        self.breaker = breaker
        self.enabled = enabled
        self.timeout_s = timeout_s

    async def parse(self, query: str) -> IntentContext:
        if not query or not query.strip():
            raise ValueError("query must be a non-empty string")

        if self.enabled and self.text_client is not None and self.breaker.is_available:
            try:
                async with self.breaker.guard():
                    text = await asyncio.wait_for(
                        self.text_client.generate(build_intent_prompt(query), temperature=0.1),
                        timeout=self.timeout_s,
                    )
                    intent = intent_from_payload(extract_json_object(text), query)
                logger.info("AI intent: %d switch(es), brand=%s, type=%s",
                            len(intent.intended_switches), intent.implicit_brand,
                            intent.comparison_type.value)
                return intent
            except CircuitOpenError as e:
                logger.info("AI intent parsing skipped: %s", e)
            except (SwitchResolutionError, asyncio.TimeoutError) as e:
                logger.warning("AI intent parsing failed, using heuristics: %s", e)

        intent = rule_based_intent(query)
        logger.info("Heuristic intent: %s (brand=%s)", intent.intended_switches, intent.implicit_brand)
        return intent
