# matrix_hub/services/search_tokens.py
"""
Search keys and token sets for the matrix view.

The store has no full-text search, so every entry carries:
- ``name_key`` / ``sku_key``: lowercase, no whitespace, alphanumerics only
  (used for prefix range queries)
- ``search_tokens``: a small set used for array-membership lookups
  (words, "200ml"-style size tokens, SKU parts)
"""
from __future__ import annotations
import re
from typing import List, Optional

MIN_TOKEN_LENGTH = 3
MAX_TOKEN_LENGTH = 24
MAX_TOKENS = 40

_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]")
_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")
_NUMBER = re.compile(r"^\d+(\.\d+)?$")
_LETTERS = re.compile(r"^[a-z]+$")
_FUSED = re.compile(r"\d+(?:\.\d+)?[a-z]+")


def make_search_key(s: Optional[str]) -> str:
    if s is None:
        return ""
    k = str(s).lower().strip()
    k = _WHITESPACE.sub("", k)
    return _NON_ALNUM.sub("", k)


def _words(s: str) -> List[str]:
    return [p for p in _NON_ALNUM_RUN.sub(" ", s).split() if p]


def make_search_tokens(item_name: Optional[str], sku: Optional[str]) -> List[str]:
    """
    Bounded, deterministic token list (first-seen order, at most 40).

    "Tito's Vodka 200 ml" -> ["tito", "vodka", "200", "200ml"]
    Tokens shorter than 3 or longer than 24 characters are dropped.
    """
    tokens: List[str] = []
    seen = set()

    def add(t: str) -> None:
        k = make_search_key(t)
        if MIN_TOKEN_LENGTH <= len(k) <= MAX_TOKEN_LENGTH and k not in seen:
            seen.add(k)
            tokens.append(k)

    name = (item_name or "").lower()
    sku_str = (sku or "").lower()

    parts = _words(name)
    for p in parts:
        add(p)

    # 200 ml -> 200ml
    for a, b in zip(parts, parts[1:]):
        if _NUMBER.match(a) and _LETTERS.match(b):
            add(f"{a}{b}")

    # already fused: 200ml, 12pk, 0.5l
    for t in _FUSED.findall(name):
        add(t)

    if sku_str:
        for p in _words(sku_str):
            add(p)
        add(sku_str)

    return tokens[:MAX_TOKENS]
