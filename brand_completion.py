"""
brand_completion.py — Implicit manufacturer prefixing for bare fragments.

"red" with an implicit "Cherry MX" context becomes "Cherry MX Red"; "oil king"
with an implicit "Gateron" becomes "Gateron oil king".
"""

from __future__ import annotations

from typing import Optional

CHERRY_MX_PREFIX = "Cherry MX"

COLOR_VOCABULARY = frozenset({
    "red", "brown", "blue", "black", "clear", "green",
    "white", "yellow", "grey", "gray",
})


def is_cherry_family(brand: str) -> bool:
    b = brand.lower()
    return "cherry" in b or "mx" in b.split()


def needs_completion(fragment: str, implicit_brand: Optional[str]) -> bool:
    if not implicit_brand or not implicit_brand.strip() or not fragment.strip():
        return False
    return implicit_brand.strip().lower() not in fragment.lower()


def complete(fragment: str, implicit_brand: Optional[str]) -> str:
    """Return `fragment` with the implicit brand applied, or unchanged."""
    if not needs_completion(fragment, implicit_brand):
        return fragment

    brand = implicit_brand.strip()
    bare = " ".join(fragment.split())
    if is_cherry_family(brand) and bare.lower() in COLOR_VOCABULARY:
        return f"{CHERRY_MX_PREFIX} {bare.capitalize()}"
    return f"{brand} {bare}"
