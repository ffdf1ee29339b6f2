"""Shared fixtures: a seeded in-memory catalog and scripted external clients."""
import asyncio
from typing import Optional

import pytest

from catalog_repository import InMemoryCatalogStore
from circuit_breaker import BreakerRegistry
from config import Settings
from embeddings import EmbeddingClient
from errors import EmbeddingServiceError, TextGenerationError
from llm_client import TextGenerationClient
from match_pipeline import MatchStrategyPipeline
from models import SwitchRecord

DIM = 16


def axis(i: int, dim: int = DIM) -> list[float]:
    v = [0.0] * dim
    v[i] = 1.0
    return v


# Index i gets the unit vector e_i as its embedding
CATALOG = [
    dict(name="Cherry MX Red", manufacturer="Cherry", type="linear",
         top_housing="Nylon", bottom_housing="Nylon", stem="POM", mount="5-pin",
         spring="Gold-plated", actuation_force_g=45, bottom_out_force_g=75,
         pre_travel_mm=2.0, total_travel_mm=4.0),
    dict(name="Cherry MX Brown", manufacturer="Cherry", type="tactile",
         top_housing="Nylon", bottom_housing="Nylon", stem="POM",
         actuation_force_g=55, bottom_out_force_g=55, pre_travel_mm=2.0, total_travel_mm=4.0),
    dict(name="Cherry MX Blue", manufacturer="Cherry", type="clicky",
         top_housing="Nylon", bottom_housing="Nylon", stem="POM",
         actuation_force_g=60, pre_travel_mm=2.2, total_travel_mm=4.0),
    dict(name="Cherry MX Black", manufacturer="Cherry", type="linear",
         top_housing="Nylon", bottom_housing="Nylon", stem="POM", actuation_force_g=60),
    dict(name="Gateron Yellow", manufacturer="Gateron", type="linear",
         top_housing="Polycarbonate", bottom_housing="Nylon", stem="POM", mount="5-pin",
         actuation_force_g=50, bottom_out_force_g=67, pre_travel_mm=2.0, total_travel_mm=4.0),
    dict(name="Gateron Oil King", manufacturer="Gateron", type="linear",
         top_housing="Nylon", bottom_housing="Nylon", stem="POM",
         actuation_force_g=55, bottom_out_force_g=65),
    dict(name="Holy Panda", manufacturer="Drop", type="tactile",
         top_housing="Polycarbonate", bottom_housing="Nylon", stem="POM", actuation_force_g=67),
    dict(name="Kailh Box Jade", manufacturer="Kailh", type="clicky",
         top_housing="PC", bottom_housing="Nylon", stem="POM", actuation_force_g=50),
    dict(name="Akko CS Lavender", manufacturer="Akko"),
]


def build_catalog() -> list[SwitchRecord]:
    return [SwitchRecord(**row, embedding=tuple(axis(i))) for i, row in enumerate(CATALOG)]


class FakeEmbedder(EmbeddingClient):
    """Looks text up in a fixed table; anything else maps to the unused last axis."""

    def __init__(self, vectors: Optional[dict] = None, dim: int = DIM):
        super().__init__("fake", dim)
        self.vectors = {k.lower(): v for k, v in (vectors or {}).items()}
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return self.vectors.get(text.strip().lower(), axis(self.dim - 1, self.dim))


class FailingEmbedder(EmbeddingClient):
    def __init__(self):
        super().__init__("failing", DIM)
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        raise EmbeddingServiceError("connection refused")


class SlowEmbedder(EmbeddingClient):
    def __init__(self, delay_s: float = 10.0):
        super().__init__("slow", DIM)
        self.delay_s = delay_s

    async def embed(self, text: str) -> list[float]:
        await asyncio.sleep(self.delay_s)
        return axis(DIM - 1)


class ScriptedTextClient(TextGenerationClient):
    """Replays canned completions in order; exceptions in the script are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def generate(self, prompt, *, temperature=None, max_tokens=None):
        self.prompts.append(prompt)
        if not self.responses:
            raise TextGenerationError("script exhausted")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def catalog() -> list[SwitchRecord]:
    return build_catalog()


@pytest.fixture
def store(catalog) -> InMemoryCatalogStore:
    return InMemoryCatalogStore(catalog)


@pytest.fixture
def catalog_names(catalog) -> list[str]:
    return [r.name for r in catalog]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breakers(clock) -> BreakerRegistry:
    return BreakerRegistry(failure_threshold=1, cooldown_s=300.0, clock=clock)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        enable_llm_normalization=True,
        enable_ai_disambiguation=False,
        resolution_concurrency=2,
        external_call_timeout_s=5.0,
        fragment_timeout_s=2.0,
        request_timeout_s=5.0,
    )


@pytest.fixture
def pipeline(store, breakers, embedder) -> MatchStrategyPipeline:
    return MatchStrategyPipeline(store, breakers, embedder=embedder)
