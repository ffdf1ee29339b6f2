"""
errors.py — Failure taxonomy for the resolution engine.

External clients raise these; the pipeline catches them and degrades to
the next strategy instead of failing the request.
"""

from __future__ import annotations


class SwitchResolutionError(Exception):
    """Base class for every recoverable failure in this package."""


class NormalizationError(SwitchResolutionError):
    """AI normalization call failed, timed out or returned malformed JSON."""


class EmbeddingServiceError(SwitchResolutionError):
    """Embedding service unreachable or returned an unusable vector."""


class CatalogQueryError(SwitchResolutionError):
    """A catalog read failed."""


class DisambiguationError(SwitchResolutionError):
    """AI disambiguation call failed."""


class TextGenerationError(SwitchResolutionError):
    """Text-generation call failed or returned an unusable payload."""


class LLMResponseError(TextGenerationError):
    """Text-generation response did not contain a usable JSON object."""


class CircuitOpenError(SwitchResolutionError):
    """Call rejected because the dependency's circuit breaker is open."""

    def __init__(self, breaker_name: str, retry_in_s: float):
        self.breaker_name = breaker_name
        self.retry_in_s = retry_in_s
        super().__init__(
            f"Circuit '{breaker_name}' is open (retry in {retry_in_s:.0f}s)"
        )
