"""
Switch Resolution Engine — Name Normalization
name_normalizer.py

Responsibilities:
  1. Batched AI canonicalization of raw fragments (one call per request)
  2. Deterministic rule-based canonicalization used when the AI path is
     disabled, broken, or its breaker is open
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional, Sequence

from circuit_breaker import CircuitBreaker
from errors import CircuitOpenError, NormalizationError, SwitchResolutionError
from llm_client import TextGenerationClient, extract_json_object
from models import NormalizationResult

logger = logging.getLogger(__name__)

RULE_BASED_CONFIDENCE = 0.8
DEFAULT_AI_CONFIDENCE = 0.5
MAX_SUGGESTIONS = 2


# ============================================================
# Rule-Based Normalization
# ============================================================

# Lowercased token -> canonical spelling
TOKEN_CASING: dict[str, str] = {
    "gat": "Gateron",
    "gateron": "Gateron",
    "cherry": "Cherry",
    "mx": "MX",
    "kailh": "Kailh",
    "zealios": "Zealios",
    "zilents": "Zilents",
    "akko": "Akko",
    "cs": "CS",
    "jwk": "JWK",
    "durock": "Durock",
    "ttc": "TTC",
    "nk": "NovelKeys",
    "novelkeys": "NovelKeys",
    "outemu": "Outemu",
    "tecsee": "Tecsee",
    "ktt": "KTT",
    "hmx": "HMX",
    "pc": "PC",
    "pom": "POM",
    "pok": "POK",
    "uhmwpe": "UHMWPE",
    "v2": "V2",
    "v3": "V3",
}

# Multi-word community names, applied after token casing
COMPOUND_TERMS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\bholy\s+pandas?\b", re.IGNORECASE), "Holy Panda"),
    (re.compile(r"\boil\s+kings?\b", re.IGNORECASE), "Oil King"),
    (re.compile(r"\bbox\b", re.IGNORECASE), "BOX"),
]

_WORD = re.compile(r"^[a-z]+$")


def rule_normalize(name: str) -> str:
    """
    Canonicalize casing and spacing of a switch name without any I/O.

        rule_normalize("  gat   yelow ")  -> "Gateron Yelow"
        rule_normalize("mx blue")         -> "Cherry MX Blue"
        rule_normalize("holy pandas")     -> "Holy Panda"
    """
    tokens = name.strip().split()
    if not tokens:
        return ""

    out: list[str] = []
    for tok in tokens:
        low = tok.lower()
        if low in TOKEN_CASING:
            out.append(TOKEN_CASING[low])
        elif _WORD.match(tok):
            out.append(tok.capitalize())
        else:
            out.append(tok)

    # "MX Blue" on its own means the Cherry MX family
    if out[0] == "MX":
        out.insert(0, "Cherry")

    text = " ".join(out)
    for pattern, replacement in COMPOUND_TERMS:
        text = pattern.sub(replacement, text)
    return text


def rule_based_results(fragments: Sequence[str]) -> list[NormalizationResult]:
    return [
        NormalizationResult(
            original=f,
            normalized=rule_normalize(f) or f,
            confidence=RULE_BASED_CONFIDENCE,
            suggestions=[],
        )
        for f in fragments
    ]


# ============================================================
# AI Normalization
# ============================================================

def build_normalization_prompt(fragments: Sequence[str]) -> str:
    numbered = "\n".join(f'{i + 1}. "{f}"' for i, f in enumerate(fragments))
    return f"""You normalize mechanical keyboard switch names for catalog lookup.
Fix manufacturer spelling and capitalization, expand abbreviations
("gat" -> "Gateron", "mx blue" -> "Cherry MX Blue") and keep colors,
weights and variants.

Names:
{numbered}

Return ONLY this JSON, with exactly {len(fragments)} entries in the same order:
{{"normalizations": [{{"original": "...", "normalized": "...", "confidence": 0.0, "suggestions": []}}]}}
Use confidence 0.8+ for clear cases, 0.5-0.7 when unsure, and at most
{MAX_SUGGESTIONS} alternative suggestions."""


def _clamp(value: Any, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    if v != v:  # NaN
        return default
    return max(0.0, min(1.0, v))


def parse_normalization_response(
    text: str, fragments: Sequence[str]
) -> list[NormalizationResult]:
    """
    Map the model's JSON onto `fragments` one-to-one, filling any missing
    entry with the rule-based form.
    """
    data = extract_json_object(text)
    entries = data.get("normalizations")
    if not isinstance(entries, list):
        raise NormalizationError("Response has no 'normalizations' list")

    results = []
    for i, original in enumerate(fragments):
        entry = entries[i] if i < len(entries) and isinstance(entries[i], dict) else {}
        normalized = entry.get("normalized")
        if not isinstance(normalized, str) or not normalized.strip():
            normalized = rule_normalize(original) or original
        raw_suggestions = entry.get("suggestions")
        suggestions = [
            s.strip() for s in raw_suggestions if isinstance(s, str) and s.strip()
        ][:MAX_SUGGESTIONS] if isinstance(raw_suggestions, list) else []
        results.append(NormalizationResult(
            original=original,
            normalized=" ".join(normalized.split()),
            confidence=_clamp(entry.get("confidence"), DEFAULT_AI_CONFIDENCE),
            suggestions=suggestions,
        ))
    return results


class NameNormalizer:
    """
    Canonicalizes a batch of fragments. The AI path runs behind the
    `ai_normalization` breaker; any failure falls back to the rules.
    """

    def __init__(
        self,
        text_client: Optional[TextGenerationClient],
        breaker: CircuitBreaker,
        *,
        enabled: bool = True,
        timeout_s: float = 8.0,
        temperature: float = 0.1,
        max_tokens: int = 800,
    ):
        self.text_client = text_client
        self.breaker = breaker
        self.enabled = enabled
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def ai_available(self) -> bool:
        return self.enabled and self.text_client is not None and self.breaker.is_available

    async def normalize(
        self, fragments: Sequence[str], use_ai: bool = True
    ) -> list[NormalizationResult]:
        fragments = list(fragments)
        if not fragments:
            return []
        if not (use_ai and self.ai_available):
            return rule_based_results(fragments)

        try:
            return await self._normalize_with_ai(fragments)
        except CircuitOpenError as e:
            logger.info("AI normalization skipped: %s", e)
        except (SwitchResolutionError, asyncio.TimeoutError) as e:
            logger.warning("AI normalization failed, using rule-based normalization: %s", e)
        return rule_based_results(fragments)

    async def _normalize_with_ai(self, fragments: list[str]) -> list[NormalizationResult]:
        prompt = build_normalization_prompt(fragments)
        async with self.breaker.guard():
            text = await asyncio.wait_for(
                self.text_client.generate(
                    prompt, temperature=self.temperature, max_tokens=self.max_tokens),
                timeout=self.timeout_s,
            )
            results = parse_normalization_response(text, fragments)

        logger.info(
            "AI normalization: %s",
            ", ".join(f'"{r.original}" -> "{r.normalized}" ({r.confidence:.0%})' for r in results),
        )
        return results
