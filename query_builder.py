"""
Switch Resolution Engine — Catalog Query Building
query_builder.py

Responsibilities:
  1. Positional ($n) parameter accumulation for asyncpg
  2. Characteristic vocabulary (smooth, thocky, ...) -> SQL conditions and
     the equivalent in-memory predicates
  3. Material alias table -> SQL conditions
  4. LIKE-pattern helpers and variety sampling of result sets
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from models import SwitchRecord

logger = logging.getLogger(__name__)

# Catalog table and column names
SWITCHES_TABLE = "switches"

SELECT_COLUMNS = """
    s.name, s.manufacturer, s.type,
    s.top_housing, s.bottom_housing, s.stem, s.mount, s.spring,
    s.actuation_force, s.bottom_force, s.pre_travel, s.total_travel
"""

# Record attribute -> SQL column
COLUMN_FOR_FIELD = {
    "name": "s.name",
    "manufacturer": "s.manufacturer",
    "type": "s.type",
    "top_housing": "s.top_housing",
    "bottom_housing": "s.bottom_housing",
    "stem": "s.stem",
    "actuation_force_g": "s.actuation_force",
}


# ============================================================
# Parameter Accumulation
# ============================================================

@dataclass
class SQLBuilder:
    """
    Collects bind values and hands out their $n placeholders.

        b = SQLBuilder()
        cond = f"LOWER(s.name) LIKE {b.add('%red%')}"
        await conn.fetch(f"SELECT ... WHERE {cond}", *b.params)
    """
    params: list[Any] = field(default_factory=list)

    def add(self, value: Any) -> str:
        self.params.append(value)
        return f"${len(self.params)}"

    def like(self, column: str, term: str) -> str:
        """Case-insensitive substring condition on one column."""
        return f"LOWER({column}) LIKE {self.add(contains_pattern(term))} ESCAPE '\\'"

    def any_like(self, columns: Sequence[str], terms: Sequence[str]) -> str:
        conds = [self.like(col, t) for t in terms for col in columns]
        return or_join(conds)


def or_join(conditions: Iterable[str]) -> str:
    conds = [c for c in conditions if c]
    if not conds:
        return ""
    if len(conds) == 1:
        return conds[0]
    return "(" + " OR ".join(conds) + ")"


def and_join(conditions: Iterable[str]) -> str:
    conds = [c for c in conditions if c]
    if not conds:
        return ""
    if len(conds) == 1:
        return conds[0]
    return "(" + " AND ".join(conds) + ")"


# ============================================================
# LIKE Helpers
# ============================================================

def escape_like(term: str) -> str:
    """Escape LIKE wildcards so user text matches literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def contains_pattern(term: str) -> str:
    return f"%{escape_like(term.strip().lower())}%"


def prefix_pattern(term: str) -> str:
    return f"{escape_like(term.strip().lower())}%"


def build_like_lookup(pattern: str, limit: int) -> tuple[str, list[Any]]:
    """Case-insensitive LIKE over the name column. `pattern` carries its own wildcards."""
    if limit < 1:
        raise ValueError("limit must be >= 1")
    b = SQLBuilder()
    sql = f"""
        SELECT {SELECT_COLUMNS}
        FROM {SWITCHES_TABLE} s
        WHERE LOWER(s.name) LIKE {b.add(pattern.lower())} ESCAPE '\\'
        ORDER BY LENGTH(s.name), s.name
        LIMIT {b.add(limit)}
    """
    return sql, b.params


def _contains(value: Optional[str], term: str) -> bool:
    return bool(value) and term.lower() in value.lower()


# ============================================================
# Characteristic Vocabulary
# ============================================================

@dataclass(frozen=True)
class ForceCondition:
    operator: str  # '>', '<', 'BETWEEN'
    values: tuple[float, ...]

    def __post_init__(self):
        expected = 2 if self.operator == "BETWEEN" else 1
        if self.operator not in (">", "<", "BETWEEN") or len(self.values) != expected:
            raise ValueError(f"Invalid force condition {self.operator} {self.values}")

    def matches(self, force: Optional[float]) -> bool:
        if force is None:
            return False
        if self.operator == ">":
            return force > self.values[0]
        if self.operator == "<":
            return force < self.values[0]
        return self.values[0] <= force <= self.values[1]

    def to_sql(self, b: SQLBuilder) -> str:
        col = COLUMN_FOR_FIELD["actuation_force_g"]
        if self.operator == "BETWEEN":
            return f"{col} BETWEEN {b.add(self.values[0])} AND {b.add(self.values[1])}"
        return f"{col} {self.operator} {b.add(self.values[0])}"


@dataclass(frozen=True)
class CharacteristicDefinition:
    """
    A feel/sound descriptor and the catalog evidence that suggests it.
    Type, material, force and name conditions are alternatives (OR).
    """
    primary_name: str
    synonyms: tuple[str, ...] = ()
    variations: tuple[str, ...] = ()
    common_typos: tuple[str, ...] = ()
    types: tuple[str, ...] = ()
    housing: tuple[str, ...] = ()
    stem: tuple[str, ...] = ()
    force: Optional[ForceCondition] = None
    names: tuple[str, ...] = ()

    def terms(self) -> tuple[str, ...]:
        return (self.primary_name,) + self.synonyms + self.variations + self.common_typos

    def matches(self, record: SwitchRecord) -> bool:
        """In-memory evaluation of the same OR-combined conditions as the SQL."""
        if any(_contains(record.type, t) for t in self.types):
            return True
        if any(_contains(record.top_housing, m) or _contains(record.bottom_housing, m)
               for m in self.housing):
            return True
        if any(_contains(record.stem, m) for m in self.stem):
            return True
        if self.force is not None and self.force.matches(record.actuation_force_g):
            return True
        if any(_contains(record.name, n) for n in self.names):
            return True
        if not self.has_conditions():
            return _contains(record.name, self.primary_name)
        return False

    def has_conditions(self) -> bool:
        return bool(self.types or self.housing or self.stem or self.force or self.names)


SWITCH_CHARACTERISTICS: dict[str, CharacteristicDefinition] = {
    "smooth": CharacteristicDefinition(
        primary_name="smooth",
        synonyms=("linear", "buttery", "silky", "fluid", "flowing", "seamless"),
        variations=("smoothness", "smooth feel", "smooth action", "smooth linear"),
        common_typos=("smoth", "smoooth", "smouth", "smoof"),
        types=("linear",),
        housing=("pom",),
        stem=("pom", "pok", "uhmwpe"),
        names=("oil", "smooth", "cream", "silk", "butter"),
    ),
    "creamy": CharacteristicDefinition(
        primary_name="creamy",
        synonyms=("buttery", "smooth", "luxurious", "rich", "velvety"),
        variations=("cream", "creamy feel", "creamy smooth", "butter-like"),
        common_typos=("creemy", "cremy", "craemy", "creami"),
        types=("linear",),
        housing=("pom",),
        stem=("pom", "pok"),
        force=ForceCondition("BETWEEN", (45, 60)),
        names=("cream", "oil", "butter"),
    ),
    "clicky": CharacteristicDefinition(
        primary_name="clicky",
        synonyms=("clicking", "audible", "loud", "tactile-audible"),
        variations=("click", "clicky feel", "audible click", "clicking sound"),
        common_typos=("clickey", "clikey", "clickly"),
        types=("clicky",),
        names=("blue", "green", "click", "loud"),
    ),
    "tactile": CharacteristicDefinition(
        primary_name="tactile",
        synonyms=("bumpy", "feedback", "responsive", "non-linear"),
        variations=("tactile bump", "tactile feel", "tactile feedback", "bump"),
        common_typos=("tactyle", "tactil", "tactiele", "tactle"),
        types=("tactile",),
        names=("brown", "clear", "bump", "tactile"),
    ),
    "silent": CharacteristicDefinition(
        primary_name="silent",
        synonyms=("quiet", "dampened", "muted", "silenced"),
        variations=("silent operation", "quiet typing", "dampened sound", "silenced switches"),
        common_typos=("slient", "silet", "silant", "queit"),
        types=("silent", "quiet"),
        names=("silent", "quiet", "dampened"),
    ),
    "thocky": CharacteristicDefinition(
        primary_name="thocky",
        synonyms=("deep", "full", "rich", "resonant", "bassy"),
        variations=("thock", "thocky sound", "deep sound", "full sound"),
        common_typos=("thockey", "thoky", "thocki", "thoccy"),
        housing=("nylon", "pom"),
        force=ForceCondition(">", (55,)),
    ),
    "crisp": CharacteristicDefinition(
        primary_name="crisp",
        synonyms=("clacky", "sharp", "bright", "clear", "defined"),
        variations=("crisp sound", "clacky feel", "sharp sound", "bright sound"),
        common_typos=("crysp", "crispy", "crips", "claky"),
        types=("clicky", "linear"),
        housing=("pc", "polycarbonate"),
    ),
    "heavy": CharacteristicDefinition(
        primary_name="heavy",
        synonyms=("stiff", "firm", "strong", "resistant", "weighted"),
        variations=("heavy spring", "heavy weight", "high force", "stiff actuation"),
        common_typos=("hevy", "haevy", "heavey", "heafy"),
        force=ForceCondition(">", (60,)),
    ),
    "light": CharacteristicDefinition(
        primary_name="light",
        synonyms=("soft", "easy", "gentle", "quick"),
        variations=("light touch", "light actuation", "low force", "easy press"),
        common_typos=("lite", "ligt", "ligth", "lihgt"),
        force=ForceCondition("<", (50,)),
    ),
}


def resolve_characteristic(term: str) -> Optional[CharacteristicDefinition]:
    """
    Map a user descriptor to its definition. Primary names win over
    synonyms; among synonyms/variations/typos the first table entry wins.
    """
    t = " ".join(term.lower().split())
    if not t:
        return None
    if t in SWITCH_CHARACTERISTICS:
        return SWITCH_CHARACTERISTICS[t]
    for definition in SWITCH_CHARACTERISTICS.values():
        if t in definition.terms():
            return definition
    return None


def build_characteristic_condition(
    definition: CharacteristicDefinition, b: SQLBuilder
) -> str:
    conds: list[str] = []
    if definition.types:
        conds.append(b.any_like([COLUMN_FOR_FIELD["type"]], definition.types))

    material: list[str] = []
    if definition.housing:
        material.append(b.any_like(
            [COLUMN_FOR_FIELD["top_housing"], COLUMN_FOR_FIELD["bottom_housing"]],
            definition.housing))
    if definition.stem:
        material.append(b.any_like([COLUMN_FOR_FIELD["stem"]], definition.stem))
    if material:
        conds.append(or_join(material))

    if definition.force is not None:
        conds.append(definition.force.to_sql(b))
    if definition.names:
        conds.append(b.any_like([COLUMN_FOR_FIELD["name"]], definition.names))

    if not conds:
        conds.append(b.like(COLUMN_FOR_FIELD["name"], definition.primary_name))
    return or_join(conds)


def build_generic_term_condition(term: str, b: SQLBuilder) -> str:
    """Fallback for descriptors outside the vocabulary: substring on name/type/materials."""
    cols = [COLUMN_FOR_FIELD[k] for k in ("name", "type", "top_housing", "bottom_housing", "stem")]
    return b.any_like(cols, [term])


def generic_term_matches(term: str, record: SwitchRecord) -> bool:
    return any(
        _contains(v, term)
        for v in (record.name, record.type, record.top_housing, record.bottom_housing, record.stem)
    )


# ============================================================
# Material Vocabulary
# ============================================================

@dataclass(frozen=True)
class MaterialDefinition:
    """A switch material, its aliases, and where in a record it shows up."""
    primary_name: str
    aliases: tuple[str, ...] = ()
    common_typos: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()
    in_housing: bool = True
    in_stem: bool = False
    in_name: bool = False

    def terms(self) -> tuple[str, ...]:
        return (self.primary_name,) + self.aliases + self.common_typos

    def search_patterns(self) -> tuple[str, ...]:
        return self.patterns or (self.primary_name,)

    def matches(self, record: SwitchRecord) -> bool:
        for p in self.search_patterns():
            if self.in_housing and (_contains(record.top_housing, p)
                                    or _contains(record.bottom_housing, p)):
                return True
            if self.in_stem and _contains(record.stem, p):
                return True
            if self.in_name and _contains(record.name, p):
                return True
        return False


MATERIAL_TERMS: dict[str, MaterialDefinition] = {
    "polycarbonate": MaterialDefinition(
        "polycarbonate", aliases=("pc", "poly", "polycarb"),
        common_typos=("polycarbonite", "polycarbon", "polycarbonyte", "polcarb", "polycarbinate"),
        patterns=("pc", "polycarbonate"),
    ),
    "nylon": MaterialDefinition(
        "nylon", aliases=("pa", "pa66", "polyamide"),
        common_typos=("nylong", "nylone", "nilon", "nyloon"),
    ),
    "pom": MaterialDefinition(
        "pom", aliases=("polyoxymethylene", "delrin", "acetal"),
        common_typos=("polyoxymethelene", "polyoxymethilene", "delerin"),
        in_stem=True,
    ),
    "pa12": MaterialDefinition(
        "pa12", aliases=("nylon 12", "pa-12", "polyamide 12"),
        common_typos=("nylon12", "nylone 12"),
        patterns=("pa12", "nylon 12"),
    ),
    "uhmwpe": MaterialDefinition(
        "uhmwpe", aliases=("ultra-high molecular weight polyethylene", "uhmw",
                           "ultra high molecular weight pe"),
        common_typos=("uhmw-pe", "umhwpe", "uhmwp"),
        patterns=("uhmwpe", "uhmw"),
        in_housing=False, in_stem=True,
    ),
    "pok": MaterialDefinition(
        "pok", aliases=("polyketone", "poly ketone"),
        common_typos=("polykeeton", "polketone"),
        patterns=("pok", "polyketone"),
        in_housing=False, in_stem=True,
    ),
    "ink": MaterialDefinition(
        "ink", aliases=("ink blend", "gateron ink", "ink material"),
        common_typos=("inck", "inc"),
        in_name=True,
    ),
    "abs": MaterialDefinition(
        "abs", aliases=("acrylonitrile butadiene styrene", "abs plastic", "plastic"),
        common_typos=("abz",),
    ),
    "aluminum": MaterialDefinition(
        "aluminum", aliases=("aluminium", "al", "alu"),
        common_typos=("aluminim", "aluminun", "alluminum"),
        patterns=("aluminum", "aluminium"),
        in_stem=True, in_name=True,
    ),
    "brass": MaterialDefinition(
        "brass", aliases=("brass alloy", "bronze"), common_typos=("bras", "brss", "brash"),
        in_stem=True, in_name=True,
    ),
    "steel": MaterialDefinition(
        "steel", aliases=("stainless steel", "ss"), common_typos=("steal", "stell"),
        in_stem=True, in_name=True,
    ),
    "copper": MaterialDefinition(
        "copper", aliases=("cu", "copper alloy"), common_typos=("coper", "coppe", "cupper"),
        in_stem=True, in_name=True,
    ),
}


def resolve_material(term: str) -> Optional[MaterialDefinition]:
    t = " ".join(term.lower().replace(" housing", "").replace(" stem", "").split())
    if not t:
        return None
    if t in MATERIAL_TERMS:
        return MATERIAL_TERMS[t]
    for definition in MATERIAL_TERMS.values():
        if t in definition.terms():
            return definition
    return None


def build_material_condition(term: str, b: SQLBuilder) -> str:
    """
    SQL condition for one material term. Unknown materials search housing,
    stem and name for the literal term.
    """
    definition = resolve_material(term)
    if definition is None:
        cols = [COLUMN_FOR_FIELD[k] for k in ("top_housing", "bottom_housing", "stem", "name")]
        return b.any_like(cols, [term.strip().lower()])

    cols: list[str] = []
    if definition.in_housing:
        cols += [COLUMN_FOR_FIELD["top_housing"], COLUMN_FOR_FIELD["bottom_housing"]]
    if definition.in_stem:
        cols.append(COLUMN_FOR_FIELD["stem"])
    if definition.in_name:
        cols.append(COLUMN_FOR_FIELD["name"])
    return b.any_like(cols, definition.search_patterns())


def material_matches(term: str, record: SwitchRecord) -> bool:
    definition = resolve_material(term)
    if definition is None:
        t = term.strip().lower()
        return any(_contains(v, t) for v in
                   (record.top_housing, record.bottom_housing, record.stem, record.name))
    return definition.matches(record)


# ============================================================
# Result Sampling
# ============================================================

def select_variety(records: Sequence[SwitchRecord], max_count: int) -> list[SwitchRecord]:
    """
    Deduplicate by name, then pick up to `max_count` records: first one per
    manufacturer, then unseen types, then fill in original order.
    """
    if max_count < 0:
        raise ValueError("max_count must be >= 0")

    seen: set[str] = set()
    unique: list[SwitchRecord] = []
    for r in records:
        if r.name not in seen:
            seen.add(r.name)
            unique.append(r)
    if len(unique) <= max_count:
        return unique

    selected: list[SwitchRecord] = []
    chosen: set[str] = set()
    used_manufacturers: set[str] = set()
    used_types: set[str] = set()

    for r in unique:
        if len(selected) >= max_count:
            break
        mfr = (r.manufacturer or "").lower()
        if mfr not in used_manufacturers:
            selected.append(r)
            chosen.add(r.name)
            used_manufacturers.add(mfr)
            used_types.add((r.type or "").lower())

    for r in unique:
        if len(selected) >= max_count:
            break
        kind = (r.type or "").lower()
        if r.name not in chosen and kind not in used_types:
            selected.append(r)
            chosen.add(r.name)
            used_types.add(kind)

    for r in unique:
        if len(selected) >= max_count:
            break
        if r.name not in chosen:
            selected.append(r)
            chosen.add(r.name)

    return selected
