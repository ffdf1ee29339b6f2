"""
Switch Resolution Engine — Orchestration Service
switch_resolution.py

Responsibilities:
  1. Catalog lookups for extracted switch names (normalize -> resolve -> fetch)
  2. Query-level resolution (intent parse -> per-fragment pipeline)
  3. Completeness-annotated context for downstream generation
  4. Catalog vs. generated spec conflict resolution
  5. Name validation, characteristic/material discovery, status

One versioned contract; behaviour differences are option flags.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar, Union

from catalog_repository import AsyncPGCatalogStore, CatalogStore, DatabasePool
from circuit_breaker import BreakerRegistry, get_breakers
from completeness import build_context
from config import Settings, configure_logging, get_settings
from conflict_resolver import apply_conflict_resolution, resolve
from embeddings import EmbeddingClient, build_embedding_client
from errors import CatalogQueryError, SwitchResolutionError
from intent_parser import IntentParser
from llm_client import TextGenerationClient, build_text_client
from match_pipeline import (
    MatchStrategyPipeline,
    MatchThresholds,
    PipelineOptions,
    unresolved,
)
from models import (
    MATCH_METHOD_PRIORITY,
    ConflictReport,
    ConflictResolutionResult,
    DatabaseContext,
    EnhancedDatabaseContext,
    IntentContext,
    LookupResult,
    MatchMethod,
    ResolutionQuery,
    ResolvedSwitch,
    SwitchRecord,
    SwitchResolutionResult,
)
from name_normalizer import NameNormalizer
from query_builder import contains_pattern, prefix_pattern, select_variety

logger = logging.getLogger(__name__)

API_VERSION = "2.0"

T = TypeVar("T")
Item = TypeVar("Item")

# Brand keyword -> catalog name prefixes tried in order
BRAND_PREFIXES: dict[str, tuple[str, ...]] = {
    "gateron": ("gateron",),
    "cherry": ("cherry mx", "cherry"),
    "kailh": ("kailh",),
    "akko": ("akko cs", "akko"),
    "jwk": ("jwk", "durock"),
    "novelkeys": ("novelkeys", "nk"),
    "zeal": ("zealios", "zilents", "zeal"),
    "holy": ("holy panda",),
}


# ============================================================
# Options
# ============================================================

@dataclass
class LookupOptions:
    """Flags for fetch_switch_specifications."""
    confidence_threshold: float = 0.5
    max_switches_per_lookup: int = 5
    enable_embedding_search: bool = True
    enable_fuzzy_matching: bool = True
    enable_llm_normalization: bool = True
    implicit_brand: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "LookupOptions":
        return cls(
            confidence_threshold=settings.lookup_confidence_threshold,
            max_switches_per_lookup=settings.max_switches_per_lookup,
            enable_llm_normalization=settings.enable_llm_normalization,
        )


@dataclass
class ResolutionOptions:
    """Flags for resolve_switches."""
    enable_ai_disambiguation: bool = False
    enable_brand_completion: bool = True
    enable_embedding: bool = True
    thresholds: Optional[Mapping[str, float]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResolutionOptions":
        return cls(
            enable_ai_disambiguation=settings.enable_ai_disambiguation,
            enable_brand_completion=settings.enable_brand_completion,
        )


@dataclass
class _Outcome:
    """Result of one fan-out item plus the warnings it produced."""
    value: Any
    warnings: list[str] = field(default_factory=list)


def format_low_confidence_warning(r: ResolvedSwitch) -> str:
    return (
        f'Low confidence match for "{r.query_fragment}" → '
        f'"{r.resolved_name}" ({r.confidence * 100:.1f}%)'
    )


def overall_resolution_method(results: Sequence[ResolvedSwitch]) -> MatchMethod:
    """Weakest accepted method across fragments; unresolved when nothing matched."""
    accepted = [r.match_method for r in results if r.match_method != MatchMethod.UNRESOLVED]
    if not accepted:
        return MatchMethod.UNRESOLVED
    return max(accepted, key=MATCH_METHOD_PRIORITY.index)


# ============================================================
# Service
# ============================================================

class SwitchResolutionService:
    """
    Resolution/retrieval engine consumed by the generation layer.

    Exposed:
    - fetch_switch_specifications(names, options) -> DatabaseContext
    - create_enhanced_database_context(results, names) -> EnhancedDatabaseContext
    - resolve_switches(query, available_names, options) -> SwitchResolutionResult
    - resolve_data_conflicts(record, external_specs, confidence) -> ConflictResolutionResult
    - apply_conflict_resolution(specs_by_switch, context) -> ConflictReport
    - validate_switch_names(names) -> list[str]
    - find_switches_for_characteristic(term, limit) -> list[SwitchRecord]
    - find_switches_for_material(term, limit) -> list[SwitchRecord]
    - get_status() -> dict
    """

    api_version = API_VERSION

    def __init__(
        self,
        store: CatalogStore,
        *,
        text_client: Optional[TextGenerationClient] = None,
        embedder: Optional[EmbeddingClient] = None,
        breakers: Optional[BreakerRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.text_client = text_client
        self.embedder = embedder
        self.breakers = breakers or get_breakers()
        s = self.settings

        self.thresholds = MatchThresholds.from_settings(s)
        self.pipeline_options = PipelineOptions(
            enable_brand_completion=s.enable_brand_completion,
            enable_ai_disambiguation=s.enable_ai_disambiguation,
            candidate_limit=s.disambiguation_candidate_limit,
            unresolved_confidence=s.unresolved_confidence,
        )
        self.pipeline = MatchStrategyPipeline(
            store,
            self.breakers,
            embedder=embedder,
            text_client=text_client,
            thresholds=self.thresholds,
            options=self.pipeline_options,
            call_timeout_s=s.external_call_timeout_s,
        )
        self.normalizer = NameNormalizer(
            text_client,
            self.breakers.ai_normalization,
            enabled=s.enable_llm_normalization,
            timeout_s=s.external_call_timeout_s,
            temperature=s.llm_temperature,
            max_tokens=s.llm_max_tokens,
        )
        self.intent_parser = IntentParser(
            text_client,
            self.breakers.intent_parsing,
            timeout_s=s.external_call_timeout_s,
        )
        if s.resolution_concurrency < 1:
            raise ValueError("resolution_concurrency must be >= 1")
        self.concurrency = s.resolution_concurrency
        self.fragment_timeout_s = s.fragment_timeout_s
        self.request_timeout_s = s.request_timeout_s

    @classmethod
    async def create(cls, settings: Optional[Settings] = None) -> "SwitchResolutionService":
        """Build the production wiring: asyncpg pool, HTTP clients, shared breakers."""
        settings = settings or get_settings()
        configure_logging(settings)
        db = DatabasePool.from_settings(settings)
        await db.initialize()
        service = cls(
            AsyncPGCatalogStore(db),
            text_client=build_text_client(settings),
            embedder=build_embedding_client(settings),
            settings=settings,
        )
        service._db = db
        return service

    async def aclose(self) -> None:
        if self.text_client is not None:
            await self.text_client.aclose()
        if self.embedder is not None:
            await self.embedder.aclose()
        db = getattr(self, "_db", None)
        if db is not None:
            await db.close()

    # ----------------------------------------------------------
    # Fan-out
    # ----------------------------------------------------------

    async def _fan_out(
        self,
        items: Sequence[Item],
        worker: Callable[[Item, list[str]], Awaitable[T]],
        fallback: Callable[[Item], T],
        label: Callable[[Item], str],
    ) -> tuple[list[T], list[str]]:
        """
        Run `worker` over `items` with bounded concurrency, a per-item timeout
        and an overall request timeout. Output order matches input order;
        items that fail, time out, or are still pending yield `fallback(item)`.
        """
        sem = asyncio.Semaphore(self.concurrency)

        async def run(item: Item) -> _Outcome:
            out = _Outcome(value=None)
            async with sem:
                try:
                    out.value = await asyncio.wait_for(
                        worker(item, out.warnings), timeout=self.fragment_timeout_s)
                except asyncio.TimeoutError:
                    logger.warning('Timed out after %.1fs resolving "%s"',
                                   self.fragment_timeout_s, label(item))
                    out.warnings.append(f'Timed out resolving "{label(item)}"')
                    out.value = fallback(item)
                except SwitchResolutionError as e:
                    logger.warning('Resolution failed for "%s": %s', label(item), e)
                    out.warnings.append(f'Lookup failed for "{label(item)}"')
                    out.value = fallback(item)
            return out

        tasks = [asyncio.create_task(run(item)) for item in items]
        if not tasks:
            return [], []
        try:
            done, pending = await asyncio.wait(tasks, timeout=self.request_timeout_s)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()

        values: list[T] = []
        warnings: list[str] = []
        for task, item in zip(tasks, items):
            if task in done:
                outcome = task.result()
                values.append(outcome.value)
                warnings.extend(outcome.warnings)
            else:
                logger.warning('Request timeout: "%s" left unresolved', label(item))
                warnings.append(f'Request timed out before "{label(item)}" was resolved')
                values.append(fallback(item))
        return values, warnings

    async def _catalog_names(self, warnings: list[str]) -> list[str]:
        try:
            return await asyncio.wait_for(
                self.store.all_names(), timeout=self.settings.external_call_timeout_s)
        except (CatalogQueryError, asyncio.TimeoutError) as e:
            logger.warning("Could not list catalog names: %s", e)
            warnings.append("Catalog unavailable; switches could not be matched")
            return []

    # ----------------------------------------------------------
    # Catalog lookup
    # ----------------------------------------------------------

    async def fetch_switch_specifications(
        self,
        names: Sequence[str],
        options: Optional[LookupOptions] = None,
    ) -> DatabaseContext:
        """
        Look up each requested switch: normalize, resolve through the
        pipeline, retry with the original spelling if the normalized one
        misses, then fetch the full catalog record.
        """
        opts = options or LookupOptions.from_settings(self.settings)
        if opts.max_switches_per_lookup < 1:
            raise ValueError("max_switches_per_lookup must be >= 1")
        if not 0.0 <= opts.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")

        started = time.perf_counter()
        requested = [n for n in (" ".join(x.split()) for x in names) if n]
        requested = requested[:opts.max_switches_per_lookup]
        if not requested:
            return DatabaseContext(total_requested=0)

        normalized = await self.normalizer.normalize(
            requested, use_ai=opts.enable_llm_normalization)
        warnings: list[str] = []
        catalog_names = await self._catalog_names(warnings)

        pipeline_opts = PipelineOptions(
            enable_fuzzy=opts.enable_fuzzy_matching,
            enable_brand_completion=self.pipeline_options.enable_brand_completion,
            enable_embedding=opts.enable_embedding_search,
            enable_ai_disambiguation=self.pipeline_options.enable_ai_disambiguation,
            candidate_limit=self.pipeline_options.candidate_limit,
            unresolved_confidence=self.pipeline_options.unresolved_confidence,
        )

        intent = IntentContext(implicit_brand=opts.implicit_brand) if opts.implicit_brand else None

        async def lookup(pair: tuple[str, str], item_warnings: list[str]) -> LookupResult:
            original, norm = pair
            resolved = await self.pipeline.resolve(
                ResolutionQuery(query_fragment=norm, implicit_brand=opts.implicit_brand),
                intent, catalog_names, options=pipeline_opts, warnings=item_warnings)
            if not self._accepted(resolved, opts) and norm.lower() != original.lower():
                logger.info('Normalized lookup missed for "%s", retrying "%s"', norm, original)
                retry = await self.pipeline.resolve(
                    ResolutionQuery(query_fragment=original, implicit_brand=opts.implicit_brand),
                    intent, catalog_names, options=pipeline_opts, warnings=item_warnings)
                if self._accepted(retry, opts):
                    resolved = retry
            return await self._to_lookup_result(original, resolved, opts, item_warnings)

        def fallback(pair: tuple[str, str]) -> LookupResult:
            return self._not_found(pair[0])

        pairs = [(r.original, r.normalized) for r in normalized]
        results, fan_warnings = await self._fan_out(
            pairs, lookup, fallback, label=lambda p: p[0])
        warnings.extend(fan_warnings)

        found = sum(1 for r in results if r.found)
        logger.info("Catalog lookup: found %d/%d in %.0fms",
                    found, len(requested), (time.perf_counter() - started) * 1000)
        return DatabaseContext(
            switches=results,
            total_found=found,
            total_requested=len(requested),
            warnings=warnings,
        )

    @staticmethod
    def _accepted(resolved: ResolvedSwitch, opts: LookupOptions) -> bool:
        return resolved.database_match and resolved.confidence >= opts.confidence_threshold

    def _not_found(self, original: str, resolved: Optional[ResolvedSwitch] = None) -> LookupResult:
        base = resolved or unresolved(original, self.pipeline_options.unresolved_confidence)
        return LookupResult(
            **base.model_dump(exclude={"query_fragment"}),
            query_fragment=original,
            found=False,
            data=None,
        )

    async def _to_lookup_result(
        self,
        original: str,
        resolved: ResolvedSwitch,
        opts: LookupOptions,
        warnings: list[str],
    ) -> LookupResult:
        if not self._accepted(resolved, opts):
            return self._not_found(original, resolved)
        try:
            record = await asyncio.wait_for(
                self.store.exact_lookup(resolved.resolved_name),
                timeout=self.settings.external_call_timeout_s,
            )
        except (CatalogQueryError, asyncio.TimeoutError) as e:
            logger.warning('Fetching record "%s" failed: %s', resolved.resolved_name, e)
            warnings.append(f'Catalog record for "{resolved.resolved_name}" unavailable')
            return self._not_found(original)
        if record is None:
            return self._not_found(original)
        return LookupResult(
            **resolved.model_dump(exclude={"query_fragment", "resolved_name"}),
            query_fragment=original,
            resolved_name=record.name,
            found=True,
            data=record,
        )

    def create_enhanced_database_context(
        self,
        results: Union[DatabaseContext, Sequence[LookupResult]],
        original_names: Sequence[str],
    ) -> EnhancedDatabaseContext:
        if isinstance(results, DatabaseContext):
            return build_context(results.switches, original_names, results.warnings)
        return build_context(results, original_names)

    # ----------------------------------------------------------
    # Query resolution
    # ----------------------------------------------------------

    async def resolve_switches(
        self,
        query: str,
        available_names: Optional[Sequence[str]] = None,
        options: Optional[ResolutionOptions] = None,
    ) -> SwitchResolutionResult:
        """Parse intent, resolve every intended switch, and grade the result."""
        if not query or not query.strip():
            raise ValueError("query must be a non-empty string")
        opts = options or ResolutionOptions.from_settings(self.settings)
        thresholds = self.thresholds.merged(opts.thresholds)
        started = time.perf_counter()

        intent = await self.intent_parser.parse(query)
        warnings: list[str] = []
        names = list(available_names) if available_names else await self._catalog_names(warnings)

        pipeline_opts = PipelineOptions(
            enable_brand_completion=opts.enable_brand_completion,
            enable_embedding=opts.enable_embedding,
            enable_ai_disambiguation=opts.enable_ai_disambiguation,
            candidate_limit=self.pipeline_options.candidate_limit,
            unresolved_confidence=self.pipeline_options.unresolved_confidence,
        )

        async def resolve_one(fragment: str, item_warnings: list[str]) -> ResolvedSwitch:
            query = ResolutionQuery(
                query_fragment=fragment,
                implicit_brand=intent.implicit_brand,
                implicit_type=intent.implicit_type,
            )
            return await self.pipeline.resolve(
                query, intent, names, thresholds, pipeline_opts, item_warnings)

        def fallback(fragment: str) -> ResolvedSwitch:
            return unresolved(" ".join(fragment.split()), pipeline_opts.unresolved_confidence)

        resolved, fan_warnings = await self._fan_out(
            intent.intended_switches, resolve_one, fallback, label=lambda f: f)
        warnings.extend(fan_warnings)

        for r in resolved:
            if r.confidence < thresholds.embedding:
                warnings.append(format_low_confidence_warning(r))

        confidence = sum(r.confidence for r in resolved) / len(resolved) if resolved else 0.0
        method = overall_resolution_method(resolved)
        logger.info("Resolved %d switch(es) for query in %.0fms (confidence %.2f, method %s)",
                    len(resolved), (time.perf_counter() - started) * 1000,
                    confidence, method.value)

        return SwitchResolutionResult(
            original_query=query,
            resolved_switches=resolved,
            confidence=confidence,
            resolution_method=method,
            warnings=warnings,
            intent=intent,
        )

    # ----------------------------------------------------------
    # Conflict resolution
    # ----------------------------------------------------------

    def resolve_data_conflicts(
        self,
        record: SwitchRecord,
        external_specs: Optional[Mapping[str, Any]],
        confidence: float,
    ) -> ConflictResolutionResult:
        return resolve(record, external_specs, confidence)

    def apply_conflict_resolution(
        self,
        specs_by_switch: Mapping[str, Mapping[str, Any]],
        context: DatabaseContext,
    ) -> ConflictReport:
        return apply_conflict_resolution(specs_by_switch, context)

    # ----------------------------------------------------------
    # Name validation & discovery
    # ----------------------------------------------------------

    async def validate_switch_names(self, names: Sequence[str]) -> list[str]:
        """
        Map candidate names onto catalog names: exact, then the tiered
        prefix/substring/manufacturer lookup, then all-words, then brand prefix.
        Unmatched names are dropped; output is deduplicated in input order.
        """
        validated: list[str] = []
        for name in names:
            clean = " ".join(name.lower().split())
            if len(clean) < 2:
                continue
            try:
                match = await self._validate_one(clean)
            except CatalogQueryError as e:
                logger.warning('Validation lookup failed for "%s": %s', name, e)
                continue
            if match and match not in validated:
                validated.append(match)
        return validated

    async def _validate_one(self, clean: str) -> Optional[str]:
        record = await self.store.exact_lookup(clean)
        if record is not None:
            return record.name

        candidates = await self.store.find_candidates_by_name(clean, limit=3)
        if candidates:
            return candidates[0][0].name

        words = [w for w in clean.split() if len(w) > 2]
        if len(words) > 1:
            hits = await self.store.like_lookup(contains_pattern(words[0]), limit=50)
            for r in hits:
                if all(w in r.name.lower() for w in words):
                    return r.name

        for brand, prefixes in BRAND_PREFIXES.items():
            if brand not in clean:
                continue
            for prefix in prefixes:
                hits = await self.store.like_lookup(prefix_pattern(prefix), limit=5)
                if hits:
                    for r in hits:
                        if any(w in r.name.lower() for w in words):
                            return r.name
                    return hits[0].name
        return None

    async def find_switches_for_characteristic(
        self, term: str, limit: int = 20
    ) -> list[SwitchRecord]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        try:
            records = await self.store.find_by_characteristic(term, limit=limit)
        except CatalogQueryError as e:
            logger.warning('Characteristic search "%s" failed: %s', term, e)
            return []
        logger.info('Found %d switch(es) for characteristic "%s"', len(records), term)
        return records

    async def find_switches_for_material(
        self, term: str, limit: int = 5
    ) -> list[SwitchRecord]:
        """Manufacturer- and type-diverse examples of switches using a material."""
        if limit < 1:
            raise ValueError("limit must be >= 1")
        try:
            records = await self.store.find_by_material(term, limit=max(limit * 4, 10))
        except CatalogQueryError as e:
            logger.warning('Material search "%s" failed: %s', term, e)
            return []
        return select_variety(records, limit)

    async def find_switches_for_material_comparison(
        self, materials: Sequence[str], max_count: int = 3
    ) -> list[str]:
        """Representative switch names across several material preferences."""
        pooled: list[SwitchRecord] = []
        for m in materials:
            pooled.extend(await self.find_switches_for_material(m, limit=10))
        return [r.name for r in select_variety(pooled, max_count)]

    # ----------------------------------------------------------
    # Status
    # ----------------------------------------------------------

    async def get_status(self) -> dict:
        health = await self.store.health_check()
        try:
            stats: dict = await self.store.get_stats()
        except CatalogQueryError as e:
            stats = {"error": str(e)}
        return {
            "api_version": API_VERSION,
            "is_available": health.get("status") == "healthy",
            "database": health,
            "catalog": stats,
            "embedding_service_available": self.breakers.embedding_service.is_available,
            "llm_normalization_available": self.normalizer.ai_available,
            "breakers": self.breakers.snapshot(),
        }
