import json

import pytest

from brand_completion import complete, is_cherry_family, needs_completion
from conftest import ScriptedTextClient
from errors import NormalizationError, TextGenerationError
from name_normalizer import (
    RULE_BASED_CONFIDENCE,
    NameNormalizer,
    parse_normalization_response,
    rule_normalize,
)


class TestRuleNormalize:

    @pytest.mark.parametrize("raw,expected", [
        ("  gat   yelow ", "Gateron Yelow"),
        ("mx blue", "Cherry MX Blue"),
        ("cherry mx red", "Cherry MX Red"),
        ("holy pandas", "Holy Panda"),
        ("gateron oil kings", "Gateron Oil King"),
        ("nk cream", "NovelKeys Cream"),
        ("akko cs lavender", "Akko CS Lavender"),
        ("kailh box jade", "Kailh BOX Jade"),
        ("Gateron Ink V2", "Gateron Ink V2"),
        ("", ""),
    ])
    def test_examples(self, raw, expected):
        assert rule_normalize(raw) == expected

    def test_idempotent(self):
        once = rule_normalize("gat yelow")
        assert rule_normalize(once) == once


class TestParseNormalizationResponse:

    def test_maps_entries_in_order(self):
        text = json.dumps({"normalizations": [
            {"original": "gat yelow", "normalized": "Gateron Yellow", "confidence": 0.9,
             "suggestions": ["Gateron Milky Yellow", "Gateron Yellow Pro", "extra"]},
            {"original": "mx red", "normalized": "Cherry MX Red", "confidence": 7},
        ]})
        results = parse_normalization_response(text, ["gat yelow", "mx red"])
        assert [r.normalized for r in results] == ["Gateron Yellow", "Cherry MX Red"]
        assert results[0].suggestions == ["Gateron Milky Yellow", "Gateron Yellow Pro"]
        assert results[1].confidence == 1.0

    def test_missing_entries_fall_back_to_rules(self):
        text = '{"normalizations": [{"normalized": "Gateron Yellow", "confidence": 0.9}]}'
        results = parse_normalization_response(text, ["gat yelow", "mx blue"])
        assert results[1].original == "mx blue"
        assert results[1].normalized == "Cherry MX Blue"

    def test_requires_list(self):
        with pytest.raises(NormalizationError):
            parse_normalization_response('{"foo": 1}', ["x"])


class TestNameNormalizer:

    @pytest.mark.asyncio
    async def test_rule_path_without_client(self, breakers):
        normalizer = NameNormalizer(None, breakers.ai_normalization)
        results = await normalizer.normalize(["gat yelow"])
        assert results[0].normalized == "Gateron Yelow"
        assert results[0].confidence == RULE_BASED_CONFIDENCE
        assert not normalizer.ai_available

    @pytest.mark.asyncio
    async def test_single_batched_ai_call(self, breakers):
        client = ScriptedTextClient(json.dumps({"normalizations": [
            {"normalized": "Gateron Yellow", "confidence": 0.9},
            {"normalized": "Cherry MX Red", "confidence": 0.95},
        ]}))
        normalizer = NameNormalizer(client, breakers.ai_normalization)
        results = await normalizer.normalize(["gat yelow", "mx red"])
        assert [r.normalized for r in results] == ["Gateron Yellow", "Cherry MX Red"]
        assert len(client.prompts) == 1
        assert '"gat yelow"' in client.prompts[0]

    @pytest.mark.asyncio
    async def test_malformed_reply_falls_back_and_trips_breaker(self, breakers):
        client = ScriptedTextClient("I cannot help with that.", "{}")
        normalizer = NameNormalizer(client, breakers.ai_normalization)

        results = await normalizer.normalize(["mx blue"])
        assert results[0].normalized == "Cherry MX Blue"
        assert not breakers.ai_normalization.is_available

        await normalizer.normalize(["mx blue"])
        assert len(client.prompts) == 1

    @pytest.mark.asyncio
    async def test_client_error_falls_back(self, breakers):
        client = ScriptedTextClient(TextGenerationError("502"))
        normalizer = NameNormalizer(client, breakers.ai_normalization)
        results = await normalizer.normalize(["holy pandas"])
        assert results[0].normalized == "Holy Panda"

    @pytest.mark.asyncio
    async def test_use_ai_false_skips_client(self, breakers):
        client = ScriptedTextClient()
        normalizer = NameNormalizer(client, breakers.ai_normalization)
        await normalizer.normalize(["mx red"], use_ai=False)
        assert client.prompts == []

    @pytest.mark.asyncio
    async def test_empty_batch(self, breakers):
        normalizer = NameNormalizer(ScriptedTextClient(), breakers.ai_normalization)
        assert await normalizer.normalize([]) == []


class TestBrandCompletion:

    @pytest.mark.parametrize("fragment,brand,expected", [
        ("red", "Cherry MX", "Cherry MX Red"),
        ("Brown", "Cherry", "Cherry MX Brown"),
        ("oil king", "Gateron", "Gateron oil king"),
        ("yellow", "Gateron", "Gateron yellow"),
        ("Gateron Yellow", "Gateron", "Gateron Yellow"),
        ("cherry mx red", "Cherry MX", "cherry mx red"),
        ("red", None, "red"),
        ("red", "  ", "red"),
    ])
    def test_complete(self, fragment, brand, expected):
        assert complete(fragment, brand) == expected

    def test_cherry_family(self):
        assert is_cherry_family("Cherry MX")
        assert is_cherry_family("MX")
        assert not is_cherry_family("Gateron")

    def test_needs_completion(self):
        assert needs_completion("red", "Cherry MX")
        assert not needs_completion("", "Cherry MX")
        assert not needs_completion("Cherry MX Red", "cherry mx")
