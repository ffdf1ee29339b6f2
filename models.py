"""
Switch Resolution Engine — Core Pydantic Models
models.py
"""
from __future__ import annotations
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

# ============================================================
# Enums
# ============================================================

class SwitchType(str, Enum):
    LINEAR = "linear"
    TACTILE = "tactile"
    CLICKY = "clicky"

class MatchMethod(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    EMBEDDING = "embedding"
    AI_DISAMBIGUATION = "ai_disambiguation"
    UNRESOLVED = "unresolved"

# Strategy order used by the pipeline; lower index = tried first
MATCH_METHOD_PRIORITY: list[MatchMethod] = [
    MatchMethod.EXACT,
    MatchMethod.FUZZY,
    MatchMethod.EMBEDDING,
    MatchMethod.AI_DISAMBIGUATION,
    MatchMethod.UNRESOLVED,
]

class ComparisonType(str, Enum):
    SWITCHES = "switches"
    MATERIALS = "materials"
    CHARACTERISTICS = "characteristics"

class ConflictResolution(str, Enum):
    DATABASE = "database"
    EXTERNAL = "external"
    BOTH = "both"

# ============================================================
# Catalog Models
# ============================================================

class SwitchRecord(BaseModel):
    """Read-only snapshot of one catalog row."""
    model_config = ConfigDict(frozen=True)

    name: str
    manufacturer: Optional[str] = None
    type: Optional[SwitchType] = None

    # Materials
    top_housing: Optional[str] = None
    bottom_housing: Optional[str] = None
    stem: Optional[str] = None
    mount: Optional[str] = None
    spring: Optional[str] = None

    # Force (grams) / travel (mm)
    actuation_force_g: Optional[float] = None
    bottom_out_force_g: Optional[float] = None
    pre_travel_mm: Optional[float] = None
    total_travel_mm: Optional[float] = None

    embedding: Optional[tuple[float, ...]] = Field(default=None, repr=False)

    @field_validator("actuation_force_g", "bottom_out_force_g",
                     "pre_travel_mm", "total_travel_mm")
    @classmethod
    def non_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("force/travel values cannot be negative")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, v: Any) -> Optional[SwitchType]:
        """Catalog rows spell types loosely ("Linear", "Silent Tactile"); anything else is unknown."""
        if v is None or isinstance(v, SwitchType):
            return v
        text = str(v).strip().lower()
        for kind in SwitchType:
            if kind.value in text:
                return kind
        return None

# ============================================================
# Resolution Models
# ============================================================

class ResolutionQuery(BaseModel):
    """One fragment to resolve, with the brand/type hints inherited from its query."""
    query_fragment: str
    implicit_brand: Optional[str] = None
    implicit_type: Optional[str] = None

class IntentContext(BaseModel):
    """Query-level intent shared by every fragment of one request."""
    intended_switches: list[str] = Field(default_factory=list)
    implicit_brand: Optional[str] = None
    implicit_type: Optional[str] = None
    comparison_type: ComparisonType = ComparisonType.SWITCHES
    use_case: Optional[str] = None  # gaming, typing, office, programming
    preferences: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

class NormalizationResult(BaseModel):
    original: str
    normalized: str
    confidence: float = Field(ge=0.0, le=1.0)
    suggestions: list[str] = Field(default_factory=list, max_length=2)

class ResolutionMetadata(BaseModel):
    original_query: str
    inferred_brand: Optional[str] = None
    inferred_type: Optional[str] = None
    ambiguity_resolved: bool = False
    note: Optional[str] = None

class ResolvedSwitch(BaseModel):
    query_fragment: str
    resolved_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    match_method: MatchMethod
    database_match: bool
    brand_completed: bool = False
    metadata: Optional[ResolutionMetadata] = None

class LookupResult(ResolvedSwitch):
    """A resolved fragment plus the catalog record it points at, if any."""
    found: bool = False
    data: Optional[SwitchRecord] = None

class SwitchResolutionResult(BaseModel):
    original_query: str
    resolved_switches: list[ResolvedSwitch]
    confidence: float = Field(ge=0.0, le=1.0)
    resolution_method: MatchMethod
    warnings: list[str] = Field(default_factory=list)
    intent: Optional[IntentContext] = None

# ============================================================
# Context Models
# ============================================================

class DatabaseContext(BaseModel):
    switches: list[LookupResult] = Field(default_factory=list)
    total_found: int = 0
    total_requested: int = 0
    warnings: list[str] = Field(default_factory=list)

class DataQuality(BaseModel):
    overall_completeness: float = Field(ge=0.0, le=1.0)
    switches_with_incomplete_data: list[str] = Field(default_factory=list)
    switches_not_found: list[str] = Field(default_factory=list)
    has_any_data: bool
    recommend_llm_fallback: bool

class LookupUsage(BaseModel):
    successful_lookups: int = 0
    failed_lookups: int = 0
    low_confidence_lookups: int = 0
    incomplete_data_count: int = 0

class EnhancedDatabaseContext(DatabaseContext):
    data_quality: DataQuality
    usage: LookupUsage

class CompletenessReport(BaseModel):
    completeness_score: float = Field(ge=0.0, le=1.0)
    missing_fields: list[str] = Field(default_factory=list)
    critical_fields_missing: bool
    has_specifications: bool

# ============================================================
# Conflict Models
# ============================================================

class FieldConflict(BaseModel):
    field: str
    database_value: Any = None
    external_value: Any = None
    resolution: ConflictResolution
    reason: str

class ConflictResolutionResult(BaseModel):
    resolved_specs: dict[str, Any] = Field(default_factory=dict)
    conflicts: list[FieldConflict] = Field(default_factory=list)

class SwitchConflicts(BaseModel):
    switch_name: str
    conflicts: list[FieldConflict]

class ConflictReport(BaseModel):
    """Summary attached to a generated response after merging catalog data."""
    resolved_specs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    conflicts_found: int = 0
    resolution_strategy: str = "prefer_database_for_factual_specs"
    conflicts: list[SwitchConflicts] = Field(default_factory=list)
    note: Optional[str] = None
