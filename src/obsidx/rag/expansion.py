"""Query expansion: routed variants of a search query.

A variant is tagged with the index it is sent to:
  lex   → BM25 text index (keyword rephrasing)
  vec   → vector index (semantic paraphrase)
  hyde  → vector index, embedded as a hypothetical answer passage

Variants come from a completion model (``parse_expansion`` over its reply) or
from ``heuristic_variants`` when no model is configured or it is unavailable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class Route(str, Enum):
    LEX = "lex"
    VEC = "vec"
    HYDE = "hyde"


@dataclass(frozen=True)
class Variant:
    route: Route
    text: str


STOPWORDS: frozenset[str] = frozenset(
    """
    a about an and any are as at be been but by can could did do does for from
    had has have how i if in into is it its me my no not of on or our should so
    some than that the their them then there these they this those to was we
    were what when where which who whom why will with would you your
    """.split()
)

_WORD_RE = re.compile(r"\w+", re.UNICODE)
_LINE_RE = re.compile(r"^\s*(?:[-*\d.)]+\s*)?(lex|vec|hyde)\s*[:=]\s*(.+?)\s*$", re.IGNORECASE)

EXPANSION_PROMPT = """\
Rewrite the search query below for a personal notes search engine.
Answer with at most {n} lines, each in exactly one of these forms:
lex: <keywords for full-text search>
vec: <a natural-language paraphrase of the query>
hyde: <one or two sentences a relevant note might contain>
No other text.

Query: {query}
"""


def keywords(text: str) -> list[str]:
    """Lower-cased content words of *text* in first-seen order, stopwords removed."""
    seen: list[str] = []
    for word in _WORD_RE.findall(text.lower()):
        if word in STOPWORDS or (len(word) < 2 and not word.isdigit()):
            continue
        if word not in seen:
            seen.append(word)
    return seen


def expansion_prompt(query: str, max_variants: int) -> str:
    return EXPANSION_PROMPT.format(n=max_variants, query=query.strip())


def parse_expansion(reply: str, query: str, max_variants: int) -> list[Variant]:
    """Parse ``route: text`` lines from a model reply; unknown lines are ignored."""
    variants: list[Variant] = []
    for line in reply.splitlines():
        match = _LINE_RE.match(line)
        if match:
            variants.append(Variant(Route(match.group(1).lower()), match.group(2).strip()))
    return clean_variants(query, variants, max_variants)


def heuristic_variants(query: str, max_variants: int) -> list[Variant]:
    """Model-free lexical variants: stopword-stripped keywords, then stemmed keywords."""
    terms = keywords(query)
    if not terms or max_variants < 1:
        return []
    candidates = [
        Variant(Route.LEX, " ".join(terms)),
        Variant(Route.LEX, " ".join(_stem(t) for t in terms)),
    ]
    return clean_variants(query, candidates, max_variants)


def clean_variants(query: str, variants: list[Variant], max_variants: int) -> list[Variant]:
    """Drop empty variants and duplicates (of each other or of the query); cap the count."""
    seen = {_normalize(query)}
    kept: list[Variant] = []
    for variant in variants:
        norm = _normalize(variant.text)
        if not norm or norm in seen:
            continue
        seen.add(norm)
        kept.append(Variant(variant.route, variant.text.strip()))
        if len(kept) >= max_variants:
            break
    return kept


def _normalize(text: str) -> str:
    return " ".join(_WORD_RE.findall(text.lower()))


def _stem(word: str) -> str:
    for suffix in ("ing", "ies", "es", "ed", "s"):
        if len(word) > len(suffix) + 3 and word.endswith(suffix):
            return word[: -len(suffix)] + ("y" if suffix == "ies" else "")
    return word
