import asyncio
import json
import time

import httpx
import pytest

from catalog_repository import InMemoryCatalogStore
from circuit_breaker import BreakerState
from conftest import DIM, ScriptedTextClient, SlowEmbedder, axis
from embeddings import EmbeddingClient, OllamaEmbeddingClient
from errors import CatalogQueryError
from llm_client import OllamaTextClient
from models import DatabaseContext, MatchMethod
from switch_resolution import (
    API_VERSION,
    LookupOptions,
    ResolutionOptions,
    SwitchResolutionService,
    overall_resolution_method,
)


class DelayedEmbedder(EmbeddingClient):
    """Per-text latency so completion order differs from request order."""

    def __init__(self, table: dict):
        super().__init__("delayed", DIM)
        self.table = table

    async def embed(self, text: str) -> list[float]:
        delay, vector = self.table.get(text.lower(), (0.0, axis(DIM - 1)))
        await asyncio.sleep(delay)
        return vector


class ExplodingEmbedder(EmbeddingClient):
    def __init__(self):
        super().__init__("exploding", DIM)

    async def embed(self, text: str) -> list[float]:
        raise RuntimeError("bug in embedder")


class BrokenStore(InMemoryCatalogStore):

    async def all_names(self):
        raise CatalogQueryError("connection reset")

    async def find_by_characteristic(self, term, limit=20):
        raise CatalogQueryError("connection reset")

    async def get_stats(self):
        raise CatalogQueryError("connection reset")


class BrokenRecordStore(InMemoryCatalogStore):

    async def exact_lookup(self, name):
        raise CatalogQueryError("statement timeout")


@pytest.fixture
def service(store, embedder, breakers, settings) -> SwitchResolutionService:
    return SwitchResolutionService(store, embedder=embedder, breakers=breakers, settings=settings)


class TestFetchSwitchSpecifications:

    @pytest.mark.asyncio
    async def test_mixed_lookup(self, service):
        ctx = await service.fetch_switch_specifications(
            ["cherry mx red", "gat yelow", "Imaginary Super Switch 9000"])

        assert ctx.total_requested == 3
        assert ctx.total_found == 2
        red, yellow, ghost = ctx.switches

        assert red.found and red.data.name == "Cherry MX Red"
        assert red.query_fragment == "cherry mx red"
        assert red.match_method == MatchMethod.EXACT

        assert yellow.found and yellow.resolved_name == "Gateron Yellow"
        assert yellow.match_method == MatchMethod.FUZZY
        assert yellow.data.actuation_force_g == 50

        assert not ghost.found
        assert ghost.data is None
        assert ghost.database_match is False
        assert ghost.query_fragment == "Imaginary Super Switch 9000"

    @pytest.mark.asyncio
    async def test_truncates_and_drops_blank_names(self, service):
        names = ["", "cherry mx red", "  ", "holy panda", "a", "b", "c", "d", "e"]
        ctx = await service.fetch_switch_specifications(names)
        assert ctx.total_requested == 5
        assert [r.query_fragment for r in ctx.switches][:2] == ["cherry mx red", "holy panda"]

        empty = await service.fetch_switch_specifications(["", "   "])
        assert empty.total_requested == 0
        assert empty.switches == []

    @pytest.mark.asyncio
    async def test_confidence_threshold(self, service):
        ctx = await service.fetch_switch_specifications(
            ["gat yelow"], LookupOptions(confidence_threshold=0.95))
        assert ctx.total_found == 0
        assert ctx.switches[0].found is False

    @pytest.mark.asyncio
    async def test_retries_original_name_when_normalized_name_misses(
        self, store, embedder, breakers, settings
    ):
        client = ScriptedTextClient(json.dumps({"normalizations": [
            {"normalized": "Totally Different Thing", "confidence": 0.9}]}))
        service = SwitchResolutionService(
            store, text_client=client, embedder=embedder, breakers=breakers, settings=settings)

        ctx = await service.fetch_switch_specifications(["Holy Panda"])
        assert ctx.switches[0].found
        assert ctx.switches[0].resolved_name == "Holy Panda"
        assert len(client.prompts) == 1

    @pytest.mark.asyncio
    async def test_implicit_brand(self, service):
        ctx = await service.fetch_switch_specifications(
            ["red"], LookupOptions(implicit_brand="Cherry MX"))
        assert ctx.switches[0].found
        assert ctx.switches[0].resolved_name == "Cherry MX Red"
        assert ctx.switches[0].brand_completed is True

    @pytest.mark.asyncio
    async def test_fuzzy_can_be_disabled(self, service):
        ctx = await service.fetch_switch_specifications(
            ["gat yelow"], LookupOptions(enable_fuzzy_matching=False))
        assert ctx.total_found == 0

    @pytest.mark.asyncio
    async def test_catalog_outage_degrades(self, catalog, embedder, breakers, settings):
        service = SwitchResolutionService(
            BrokenStore(catalog), embedder=embedder, breakers=breakers, settings=settings)
        ctx = await service.fetch_switch_specifications(["cherry mx red", "holy panda"])
        assert ctx.total_found == 0
        assert all(not r.found for r in ctx.switches)
        assert any("Catalog unavailable" in w for w in ctx.warnings)

    @pytest.mark.asyncio
    async def test_record_fetch_failure_marks_not_found(self, catalog, embedder, breakers, settings):
        service = SwitchResolutionService(
            BrokenRecordStore(catalog), embedder=embedder, breakers=breakers, settings=settings)
        ctx = await service.fetch_switch_specifications(["cherry mx red"])
        assert ctx.switches[0].found is False
        assert ctx.warnings == ['Catalog record for "Cherry MX Red" unavailable']

    @pytest.mark.asyncio
    async def test_malformed_upstream_bodies_degrade(self, store, breakers, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[0.1, 0.2])

        def http():
            return httpx.AsyncClient(transport=httpx.MockTransport(handler))

        service = SwitchResolutionService(
            store,
            text_client=OllamaTextClient(settings, http=http()),
            embedder=OllamaEmbeddingClient(settings, http=http()),
            breakers=breakers,
            settings=settings,
        )
        ctx = await service.fetch_switch_specifications(["Imaginary Super Switch 9000"])
        assert ctx.total_found == 0
        assert ctx.switches[0].found is False

        result = await service.resolve_switches('tell me about "Cherry MX Red"')
        assert [r.resolved_name for r in result.resolved_switches] == ["Cherry MX Red"]
        assert result.resolved_switches[0].match_method == MatchMethod.EXACT
        await service.aclose()

    @pytest.mark.asyncio
    async def test_invalid_options(self, service):
        with pytest.raises(ValueError):
            await service.fetch_switch_specifications(["x"], LookupOptions(max_switches_per_lookup=0))
        with pytest.raises(ValueError):
            await service.fetch_switch_specifications(["x"], LookupOptions(confidence_threshold=2))

    @pytest.mark.asyncio
    async def test_enhanced_context(self, service):
        names = ["cherry mx red", "gat yelow", "Imaginary Super Switch 9000"]
        ctx = await service.fetch_switch_specifications(names)
        enhanced = service.create_enhanced_database_context(ctx, names)

        assert enhanced.total_found == 2
        assert enhanced.data_quality.switches_not_found == ["Imaginary Super Switch 9000"]
        assert enhanced.data_quality.overall_completeness == pytest.approx((1.0 + 11 / 12) / 2)
        assert enhanced.data_quality.has_any_data
        assert not enhanced.data_quality.recommend_llm_fallback
        assert enhanced.usage.failed_lookups == 1

        from_list = service.create_enhanced_database_context(ctx.switches, names)
        assert from_list.data_quality == enhanced.data_quality


class TestResolveSwitches:

    @pytest.mark.asyncio
    async def test_exact_matches_in_query_order(self, service):
        result = await service.resolve_switches('"Gateron Yellow" and "cherry mx red"')
        assert [r.resolved_name for r in result.resolved_switches] == [
            "Gateron Yellow", "Cherry MX Red"]
        assert result.confidence == 1.0
        assert result.resolution_method == MatchMethod.EXACT
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_weakest_method_and_mean_confidence(self, service):
        result = await service.resolve_switches('"gat yelow" vs "cherry mx red"')
        assert result.resolution_method == MatchMethod.FUZZY
        assert result.confidence == pytest.approx((13 / 14 + 1.0) / 2)
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_bare_colors(self, service):
        result = await service.resolve_switches("red vs brown")
        assert [r.resolved_name for r in result.resolved_switches] == [
            "Cherry MX Red", "Cherry MX Brown"]
        assert result.intent.implicit_brand == "Cherry MX"

    @pytest.mark.asyncio
    async def test_low_confidence_warning(self, service):
        result = await service.resolve_switches('Tell me about "Imaginary Super Switch 9000"')
        assert result.resolution_method == MatchMethod.UNRESOLVED
        assert result.confidence == pytest.approx(0.3)
        assert result.warnings == [
            'Low confidence match for "Imaginary Super Switch 9000" → '
            '"Imaginary Super Switch 9000" (30.0%)'
        ]

    @pytest.mark.asyncio
    async def test_available_names_restrict_matching(self, service):
        result = await service.resolve_switches('"cherry mx red"', available_names=["Gateron Yellow"])
        assert result.resolved_switches[0].database_match is False

    @pytest.mark.asyncio
    async def test_threshold_overrides(self, service):
        result = await service.resolve_switches(
            '"gat yelow"', options=ResolutionOptions(thresholds={"fuzzy": 0.95}))
        assert result.resolution_method == MatchMethod.UNRESOLVED

    @pytest.mark.asyncio
    async def test_empty_query(self, service):
        with pytest.raises(ValueError):
            await service.resolve_switches("  ")

    def test_overall_method(self):
        assert overall_resolution_method([]) == MatchMethod.UNRESOLVED


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_output_order_matches_input_order(self, store, breakers, settings):
        embedder = DelayedEmbedder({
            "first one": (0.15, axis(0)),
            "second one": (0.0, axis(4)),
            "third one": (0.05, axis(6)),
        })
        settings = settings.model_copy(update={"resolution_concurrency": 3})
        service = SwitchResolutionService(store, embedder=embedder, breakers=breakers,
                                          settings=settings)

        result = await service.resolve_switches('"first one", "second one", "third one"')
        assert [r.resolved_name for r in result.resolved_switches] == [
            "Cherry MX Red", "Gateron Yellow", "Holy Panda"]
        assert all(r.match_method == MatchMethod.EMBEDDING for r in result.resolved_switches)

    @pytest.mark.asyncio
    async def test_slow_fragment_times_out_alone(self, store, breakers, settings):
        settings = settings.model_copy(update={"fragment_timeout_s": 0.2})
        service = SwitchResolutionService(store, embedder=SlowEmbedder(10), breakers=breakers,
                                          settings=settings)

        result = await service.resolve_switches('"Imaginary Super Switch 9000" vs "cherry mx red"')
        ghost, red = result.resolved_switches
        assert ghost.match_method == MatchMethod.UNRESOLVED
        assert ghost.confidence == 0.3
        assert red.resolved_name == "Cherry MX Red"
        assert 'Timed out resolving "Imaginary Super Switch 9000"' in result.warnings
        assert breakers.embedding_service.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_request_timeout_cancels_pending_fragments(self, store, breakers, settings):
        settings = settings.model_copy(update={
            "resolution_concurrency": 1, "fragment_timeout_s": 5.0, "request_timeout_s": 0.3})
        service = SwitchResolutionService(store, embedder=SlowEmbedder(10), breakers=breakers,
                                          settings=settings)

        started = time.perf_counter()
        result = await service.resolve_switches('"Imaginary One" vs "Imaginary Two"')
        assert time.perf_counter() - started < 2.0
        assert [r.query_fragment for r in result.resolved_switches] == [
            "Imaginary One", "Imaginary Two"]
        assert all(not r.database_match for r in result.resolved_switches)
        assert sum("Request timed out" in w for w in result.warnings) == 2
        assert breakers.embedding_service.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_programming_errors_propagate(self, store, breakers, settings):
        service = SwitchResolutionService(store, embedder=ExplodingEmbedder(), breakers=breakers,
                                          settings=settings)
        with pytest.raises(RuntimeError):
            await service.resolve_switches('"Imaginary Super Switch 9000"')


class TestConflicts:

    @pytest.mark.asyncio
    async def test_catalog_wins_at_high_confidence(self, service):
        ctx = await service.fetch_switch_specifications(["cherry mx red", "Imaginary 9000"])
        report = service.apply_conflict_resolution(
            {"Cherry MX Red": {"actuationForceG": 54, "sound": "smooth"}}, ctx)

        assert report.conflicts_found == 1
        specs = report.resolved_specs["Cherry MX Red"]
        assert specs["actuationForceG"] == 45
        assert specs["sound"] == "smooth"

    @pytest.mark.asyncio
    async def test_single_record(self, service, store):
        record = await store.exact_lookup("Gateron Yellow")
        result = service.resolve_data_conflicts(record, {"type": "tactile"}, 0.5)
        assert result.resolved_specs["type"] == "tactile"

    def test_empty_context(self, service):
        report = service.apply_conflict_resolution({}, DatabaseContext())
        assert report.conflicts_found == 0
        assert report.resolved_specs == {}


class TestDiscovery:

    @pytest.mark.asyncio
    async def test_validate_switch_names(self, service):
        names = ["cherry mx red", "yellow", "gateron oil", "kailh jade", "bogus", "x",
                 "Cherry MX Red"]
        assert await service.validate_switch_names(names) == [
            "Cherry MX Red", "Gateron Yellow", "Gateron Oil King", "Kailh Box Jade"]

    @pytest.mark.asyncio
    async def test_validate_uses_tiered_name_candidates(self, service):
        assert await service.validate_switch_names(["drop holy"]) == ["Holy Panda"]
        assert await service.validate_switch_names(["cherry mx b"]) == ["Cherry MX Blue"]

    @pytest.mark.asyncio
    async def test_validate_falls_back_to_brand_prefix(self, service):
        assert await service.validate_switch_names(["cherry pink"]) == ["Cherry MX Red"]

    @pytest.mark.asyncio
    async def test_characteristic(self, service):
        records = await service.find_switches_for_characteristic("clicky")
        assert [r.name for r in records] == ["Cherry MX Blue", "Kailh Box Jade"]
        with pytest.raises(ValueError):
            await service.find_switches_for_characteristic("clicky", limit=0)

    @pytest.mark.asyncio
    async def test_characteristic_catalog_error(self, catalog, breakers, settings):
        service = SwitchResolutionService(BrokenStore(catalog), breakers=breakers, settings=settings)
        assert await service.find_switches_for_characteristic("smooth") == []

    @pytest.mark.asyncio
    async def test_material_examples_are_diverse(self, service):
        records = await service.find_switches_for_material("pom", limit=3)
        assert [r.name for r in records] == ["Cherry MX Black", "Gateron Oil King", "Holy Panda"]

    @pytest.mark.asyncio
    async def test_material_comparison(self, service):
        names = await service.find_switches_for_material_comparison(["pom", "pc"], max_count=3)
        assert names == ["Cherry MX Black", "Gateron Oil King", "Holy Panda"]


class TestStatus:

    @pytest.mark.asyncio
    async def test_status(self, service):
        status = await service.get_status()
        assert status["api_version"] == API_VERSION
        assert status["is_available"] is True
        assert status["catalog"]["total_switches"] == 9
        assert status["embedding_service_available"] is True
        assert status["llm_normalization_available"] is False
        assert set(status["breakers"]) == {
            "ai_normalization", "embedding_service", "ai_disambiguation", "intent_parsing"}
        await service.aclose()

    @pytest.mark.asyncio
    async def test_status_with_stats_failure(self, catalog, breakers, settings):
        service = SwitchResolutionService(BrokenStore(catalog), breakers=breakers, settings=settings)
        status = await service.get_status()
        assert "error" in status["catalog"]

    def test_invalid_concurrency(self, store, breakers, settings):
        with pytest.raises(ValueError):
            SwitchResolutionService(store, breakers=breakers,
                                    settings=settings.model_copy(update={"resolution_concurrency": 0}))
