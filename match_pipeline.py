"""
Switch Resolution Engine — Tiered Match Strategy Pipeline
match_pipeline.py

Responsibilities:
  1. Resolve one fragment against a list of catalog names, trying in order:
     exact -> brand-completed fuzzy -> fuzzy -> embedding -> AI disambiguation
  2. Stop at the first stage whose confidence clears that stage's threshold
  3. Degrade to the unresolved default instead of raising
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional, Sequence, Union

from rapidfuzz.distance import Levenshtein

from brand_completion import complete
from catalog_repository import CatalogStore
from circuit_breaker import BreakerRegistry
from embeddings import EmbeddingClient
from errors import (
    CatalogQueryError,
    CircuitOpenError,
    DisambiguationError,
    SwitchResolutionError,
)
from llm_client import TextGenerationClient, extract_json_object
from models import (
    IntentContext,
    MatchMethod,
    ResolutionMetadata,
    ResolutionQuery,
    ResolvedSwitch,
)
from name_normalizer import rule_normalize

logger = logging.getLogger(__name__)


# ============================================================
# Configuration
# ============================================================

@dataclass(frozen=True)
class MatchThresholds:
    """Per-stage acceptance thresholds."""
    exact: float = 0.95
    fuzzy: float = 0.8
    embedding: float = 0.65
    ai_disambiguation: float = 0.6
    fuzzy_candidate_floor: float = 0.7  # fuzzy candidates at or below this are ignored

    def __post_init__(self):
        for f in fields(self):
            v = getattr(self, f.name)
            if not 0.0 <= v <= 1.0:
                raise ValueError(f"threshold {f.name} must be within [0, 1], got {v}")

    def merged(self, overrides: Optional[Mapping[str, float]]) -> "MatchThresholds":
        """Copy with any of exact/fuzzy/embedding/ai_disambiguation overridden."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown thresholds: {sorted(unknown)}")
        return replace(self, **dict(overrides))

    @classmethod
    def from_settings(cls, settings) -> "MatchThresholds":
        return cls(**settings.resolution_thresholds)


DEFAULT_THRESHOLDS = MatchThresholds()


@dataclass(frozen=True)
class PipelineOptions:
    """Stage feature flags."""
    enable_fuzzy: bool = True
    enable_brand_completion: bool = True
    enable_embedding: bool = True
    enable_ai_disambiguation: bool = False
    candidate_limit: int = 20
    unresolved_confidence: float = 0.3


# ============================================================
# String Similarity
# ============================================================

def string_similarity(a: str, b: str) -> float:
    """(maxLen - editDistance) / maxLen; two empty strings are identical."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - Levenshtein.distance(a, b)) / max_len


def best_fuzzy_match(
    query: str, names: Sequence[str], floor: float = 0.7
) -> Optional[tuple[str, float]]:
    """
    Highest case-insensitive similarity above `floor`. Earlier names win
    ties so results are stable for a fixed catalog order.
    """
    q = " ".join(query.lower().split())
    best: Optional[tuple[str, float]] = None
    for name in names:
        sim = string_similarity(q, name.lower())
        if sim > floor and (best is None or sim > best[1]):
            best = (name, sim)
    return best


def find_exact(fragment: str, names: Sequence[str]) -> Optional[str]:
    key = " ".join(fragment.lower().split())
    for name in names:
        if name.lower() == key:
            return name
    return None


# ============================================================
# Pipeline
# ============================================================

class MatchStrategyPipeline:
    """
    Resolves fragments one at a time. Holds no per-request state, so one
    instance is shared by concurrent requests; the only shared mutable
    state is in the injected breakers.
    """

    def __init__(
        self,
        store: Optional[CatalogStore],
        breakers: BreakerRegistry,
        *,
        embedder: Optional[EmbeddingClient] = None,
        text_client: Optional[TextGenerationClient] = None,
        thresholds: MatchThresholds = DEFAULT_THRESHOLDS,
        options: PipelineOptions = PipelineOptions(),
        call_timeout_s: float = 8.0,
    ):
        self.store = store
        self.breakers = breakers
        self.embedder = embedder
        self.text_client = text_client
        self.thresholds = thresholds
        self.options = options
        self.call_timeout_s = call_timeout_s

    async def resolve(
        self,
        query: Union[str, ResolutionQuery],
        intent: Optional[IntentContext],
        catalog_names: Sequence[str],
        thresholds: Optional[MatchThresholds] = None,
        options: Optional[PipelineOptions] = None,
        warnings: Optional[list[str]] = None,
    ) -> ResolvedSwitch:
        """A bare string takes its brand/type hints from `intent`."""
        t = thresholds or self.thresholds
        opts = options or self.options
        warnings = warnings if warnings is not None else []
        if isinstance(query, str):
            query = ResolutionQuery(
                query_fragment=query,
                implicit_brand=intent.implicit_brand if intent else None,
                implicit_type=intent.implicit_type if intent else None,
            )
        fragment = " ".join(query.query_fragment.split())

        # 1. Exact
        exact = find_exact(fragment, catalog_names)
        if exact is not None and 1.0 >= t.exact:
            return self._accept(fragment, exact, 1.0, MatchMethod.EXACT)

        # 2. Brand-completed fuzzy
        brand = query.implicit_brand
        if opts.enable_fuzzy and opts.enable_brand_completion and brand:
            completed = complete(fragment, brand)
            if completed != fragment:
                hit = best_fuzzy_match(completed, catalog_names, t.fuzzy_candidate_floor)
                if hit and hit[1] >= t.fuzzy:
                    return self._accept(
                        fragment, hit[0], hit[1], MatchMethod.FUZZY,
                        brand_completed=True,
                        metadata=ResolutionMetadata(
                            original_query=fragment,
                            inferred_brand=brand,
                            inferred_type=query.implicit_type,
                        ),
                    )

        # 3. Plain fuzzy, on the fragment and its rule-normalized form
        best: Optional[tuple[str, float]] = None
        variants = [fragment, rule_normalize(fragment)] if opts.enable_fuzzy else []
        for variant in dict.fromkeys(variants):
            if not variant:
                continue
            hit = best_fuzzy_match(variant, catalog_names, t.fuzzy_candidate_floor)
            if hit and (best is None or hit[1] > best[1]):
                best = hit
        if best and best[1] >= t.fuzzy:
            return self._accept(fragment, best[0], best[1], MatchMethod.FUZZY)

        # 4. Embedding
        if opts.enable_embedding:
            hit = await self._embedding_match(fragment, catalog_names, warnings)
            if hit and hit[1] >= t.embedding:
                return self._accept(fragment, hit[0], hit[1], MatchMethod.EMBEDDING)

        # 5. AI disambiguation
        if opts.enable_ai_disambiguation:
            hit = await self._ai_disambiguation(
                fragment, intent, catalog_names, opts.candidate_limit, warnings)
            if hit and hit[1] >= t.ai_disambiguation:
                return self._accept(
                    fragment, hit[0], hit[1], MatchMethod.AI_DISAMBIGUATION,
                    metadata=ResolutionMetadata(
                        original_query=fragment,
                        ambiguity_resolved=True,
                        note=hit[2] or None,
                    ),
                )

        # 6. Unresolved
        logger.info('No match for "%s" (unresolved, %.2f)', fragment, opts.unresolved_confidence)
        return unresolved(fragment, opts.unresolved_confidence)

    def _accept(
        self,
        fragment: str,
        name: str,
        confidence: float,
        method: MatchMethod,
        brand_completed: bool = False,
        metadata: Optional[ResolutionMetadata] = None,
    ) -> ResolvedSwitch:
        confidence = max(0.0, min(1.0, confidence))
        logger.info('Resolved "%s" -> "%s" via %s (%.2f)%s', fragment, name,
                    method.value, confidence, " [brand-completed]" if brand_completed else "")
        return ResolvedSwitch(
            query_fragment=fragment,
            resolved_name=name,
            confidence=confidence,
            match_method=method,
            database_match=True,
            brand_completed=brand_completed,
            metadata=metadata,
        )

    # ----------------------------------------------------------
    # Embedding stage
    # ----------------------------------------------------------

    async def _embedding_match(
        self, fragment: str, names: Sequence[str], warnings: list[str]
    ) -> Optional[tuple[str, float]]:
        breaker = self.breakers.embedding_service
        if self.embedder is None or self.store is None or not names:
            return None
        if not breaker.is_available:
            return None

        try:
            async with breaker.guard():
                vector = await asyncio.wait_for(
                    self.embedder.embed(fragment), timeout=self.call_timeout_s)
        except CircuitOpenError:
            return None
        except (SwitchResolutionError, asyncio.TimeoutError) as e:
            logger.warning('Embedding stage failed for "%s": %s', fragment, e)
            warnings.append(f'Embedding search unavailable for "{fragment}"')
            return None

        try:
            hits = await asyncio.wait_for(
                self.store.vector_lookup(vector, limit=1, names=list(names)),
                timeout=self.call_timeout_s,
            )
        except (CatalogQueryError, asyncio.TimeoutError) as e:
            logger.warning('Vector lookup failed for "%s": %s', fragment, e)
            return None

        if not hits:
            return None
        record, similarity = hits[0]
        return record.name, similarity

    # ----------------------------------------------------------
    # AI disambiguation stage
    # ----------------------------------------------------------

    async def _ai_disambiguation(
        self,
        fragment: str,
        intent: Optional[IntentContext],
        names: Sequence[str],
        limit: int,
        warnings: list[str],
    ) -> Optional[tuple[str, float, str]]:
        breaker = self.breakers.ai_disambiguation
        if self.text_client is None or not names or not breaker.is_available:
            return None

        candidates = disambiguation_candidates(fragment, names, limit)
        prompt = build_disambiguation_prompt(fragment, candidates, intent, len(names))
        try:
            async with breaker.guard():
                text = await asyncio.wait_for(
                    self.text_client.generate(prompt, temperature=0.1),
                    timeout=self.call_timeout_s,
                )
                return parse_disambiguation(text, candidates)
        except CircuitOpenError:
            return None
        except (SwitchResolutionError, asyncio.TimeoutError) as e:
            logger.warning('AI disambiguation failed for "%s": %s', fragment, e)
            warnings.append(f'AI disambiguation unavailable for "{fragment}"')
            return None


def unresolved(fragment: str, confidence: float = 0.3) -> ResolvedSwitch:
    return ResolvedSwitch(
        query_fragment=fragment,
        resolved_name=fragment,
        confidence=confidence,
        match_method=MatchMethod.UNRESOLVED,
        database_match=False,
        brand_completed=False,
        metadata=ResolutionMetadata(original_query=fragment),
    )


def disambiguation_candidates(fragment: str, names: Sequence[str], limit: int) -> list[str]:
    """The `limit` catalog names most similar to the fragment, stable on ties."""
    if limit < 1:
        raise ValueError("limit must be >= 1")
    q = fragment.lower()
    ranked = sorted(
        enumerate(names),
        key=lambda p: (-string_similarity(q, p[1].lower()), p[0]),
    )
    return [name for _, name in ranked[:limit]]


def build_disambiguation_prompt(
    fragment: str,
    candidates: Sequence[str],
    intent: Optional[IntentContext],
    total: int,
) -> str:
    context = {}
    if intent is not None:
        context = {
            "implicitBrand": intent.implicit_brand,
            "comparisonType": intent.comparison_type.value,
            "useCase": intent.use_case,
            "preferences": intent.preferences,
        }
    more = "..." if total > len(candidates) else ""
    return f"""Match a keyboard switch reference to one catalog entry.

Fragment: "{fragment}"
Context: {json.dumps(context)}
Candidates: {", ".join(candidates)}{more}

Respond with ONLY this JSON:
{{"bestMatch": "exact candidate name or null", "confidence": 0.0, "reasoning": "short"}}
If nothing fits, return {{"bestMatch": null, "confidence": 0.0, "reasoning": "no_suitable_match"}}"""


def parse_disambiguation(
    text: str, candidates: Sequence[str]
) -> Optional[tuple[str, float, str]]:
    """
    Returns (candidate name, confidence, reasoning) or None when the model
    declined. Names outside the candidate list are rejected.
    """
    data = extract_json_object(text)
    best = data.get("bestMatch")
    if not isinstance(best, str) or not best.strip():
        return None
    try:
        confidence = max(0.0, min(1.0, float(data.get("confidence") or 0.0)))
    except (TypeError, ValueError) as e:
        raise DisambiguationError("Non-numeric disambiguation confidence") from e

    by_lower = {c.lower(): c for c in candidates}
    name = by_lower.get(best.strip().lower())
    if name is None:
        logger.warning('AI disambiguation named "%s", which is not a candidate', best)
        return None
    reasoning = data.get("reasoning") if isinstance(data.get("reasoning"), str) else ""
    return name, confidence, reasoning
