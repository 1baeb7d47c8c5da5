"""Medication-name normalization and similarity scoring.

Product names typed by pharmacies, pasted from supplier lists or read off a
prescription photo by the vision service are messy in the same ways:
  - "AMOXICILINA 500MG" vs "Amoxicilina 500 mg"
  - Unicode accents, mixed case, irregular spacing
  - Dosage numbers that carry most of the meaning ("Coartem 6" vs "Coartem 12")

This module exposes a single scorer with three named policies so the weights
live in one place:

    STRICT          containment-or-equal, binary.  Blocks duplicate catalog /
                    stock entries.
    RANKED          exact 1.0, containment 0.8, else Jaccard token overlap.
                    Accepted at >= 0.55.  Ranks "did-you-mean" catalog links.
    NUMERIC_AWARE   additive, asymmetric (query vs. stock name).  Accepted at
                    >= 5.  Links AI-extracted names to a pharmacy's own stock.

``normalize_series`` / ``normalize_dataframe_column`` apply the same
normalization to Polars data for bulk imports.
"""
from __future__ import annotations

import re
import unicodedata
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence, TypeVar

import polars as pl

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Compiled regex patterns – evaluated once at import time
# ---------------------------------------------------------------------------

# Digit–letter and letter–digit boundaries (e.g. "500MG" → "500 mg")
_DIG_LETTER = re.compile(r"([0-9])([a-z])")
_LETTER_DIG = re.compile(r"([a-z])([0-9])")
_NON_ALNUM = re.compile(r"[^0-9a-z]+")
_DIGITS = re.compile(r"\d+")
_PARENTHESISED = re.compile(r"\s*\([^)]*\)")

# Articles, prepositions and filler words (pt / es / en) dropped when a name
# is reduced to keywords.  Tokens shorter than 3 chars are dropped anyway.
STOPWORDS: frozenset[str] = frozenset({
    "das", "dos", "del", "las", "los", "com", "con", "sem", "sin", "para",
    "por", "pelo", "pela", "uma", "uno", "una", "the", "and", "with", "for",
    "per", "tomar", "usar", "uso", "via", "cada", "dia", "dias",
})

KEYWORD_MIN_LENGTH = 3


class MatchPolicy(str, Enum):
    STRICT = "strict"
    RANKED = "ranked"
    NUMERIC_AWARE = "numeric-aware"


#: Minimum score at which each policy accepts a candidate.
ACCEPT_THRESHOLDS: dict[MatchPolicy, float] = {
    MatchPolicy.STRICT: 1.0,
    MatchPolicy.RANKED: 0.55,
    MatchPolicy.NUMERIC_AWARE: 5.0,
}

# RANKED weights
RANKED_EXACT = 1.0
RANKED_CONTAINMENT = 0.8

# NUMERIC_AWARE weights
NUMERIC_EXACT = 20.0
NUMERIC_CONTAINS_QUERY = 10.0
NUMERIC_PER_TOKEN = 3.0
NUMERIC_PER_DIGITS = 5.0


# ---------------------------------------------------------------------------
# Normalization / tokenization
# ---------------------------------------------------------------------------

def normalize(text: Optional[str]) -> str:
    """
    Canonical comparison form of a medication name.

    Pipeline:
      1. Unicode NFKD, strip accents → lowercase ASCII
      2. Insert space between digit/letter boundaries
      3. Replace non-alphanumeric characters with spaces
      4. Collapse whitespace

    Returns ``""`` for ``None``, empty or whitespace-only input.
    """
    if not text or not str(text).strip():
        return ""

    nfkd = unicodedata.normalize("NFKD", str(text))
    ascii_text = nfkd.encode("ascii", "ignore").decode("ascii").lower()

    ascii_text = _DIG_LETTER.sub(r"\1 \2", ascii_text)
    ascii_text = _LETTER_DIG.sub(r"\1 \2", ascii_text)

    ascii_text = _NON_ALNUM.sub(" ", ascii_text)
    return re.sub(r"\s+", " ", ascii_text).strip()


def tokenize(normalized: str, keywords: bool = False) -> list[str]:
    """
    Split a normalized name on non-alphanumeric boundaries.

    With ``keywords=True`` tokens shorter than ``KEYWORD_MIN_LENGTH`` and
    stopwords are dropped.  Order is preserved; duplicates are kept.
    """
    tokens = [t for t in _NON_ALNUM.split(normalized or "") if t]
    if not keywords:
        return tokens
    return [t for t in tokens if len(t) >= KEYWORD_MIN_LENGTH and t not in STOPWORDS]


def digit_sequences(normalized: str) -> set[str]:
    return set(_DIGITS.findall(normalized or ""))


def format_for_customer(name: str) -> str:
    """Drop parenthesised internal notes from a stock name ("Dolex (cx 20)" → "Dolex")."""
    return _PARENTHESISED.sub("", name or "").strip()


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

def _strict(a: str, b: str) -> float:
    if a == b or a in b or b in a:
        return 1.0
    return 0.0


def _jaccard(a: str, b: str) -> float:
    tokens_a = set(tokenize(a))
    tokens_b = set(tokenize(b))
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def _ranked(a: str, b: str) -> float:
    if a == b:
        return RANKED_EXACT
    jaccard = _jaccard(a, b)
    if a in b or b in a:
        return max(RANKED_CONTAINMENT, jaccard)
    return jaccard


def _numeric_aware(query: str, stock_name: str) -> float:
    score = 0.0
    if stock_name == query:
        score += NUMERIC_EXACT
    if query in stock_name:
        score += NUMERIC_CONTAINS_QUERY

    shared_tokens = set(tokenize(query, keywords=True)) & set(tokenize(stock_name))
    score += NUMERIC_PER_TOKEN * len(shared_tokens)

    shared_digits = digit_sequences(query) & digit_sequences(stock_name)
    score += NUMERIC_PER_DIGITS * len(shared_digits)
    return score


_POLICIES: dict[MatchPolicy, Callable[[str, str], float]] = {
    MatchPolicy.STRICT: _strict,
    MatchPolicy.RANKED: _ranked,
    MatchPolicy.NUMERIC_AWARE: _numeric_aware,
}


def score(a: Optional[str], b: Optional[str], policy: MatchPolicy = MatchPolicy.RANKED) -> float:
    """
    Similarity of two raw names under *policy*.

    For ``NUMERIC_AWARE`` *a* is the query (AI-extracted name) and *b* the
    stock name; the policy is deliberately not symmetric.  Never raises on
    malformed input: anything that normalizes to ``""`` scores 0.
    """
    norm_a = normalize(a)
    norm_b = normalize(b)
    if not norm_a or not norm_b:
        return 0.0
    return _POLICIES[MatchPolicy(policy)](norm_a, norm_b)


def is_match(a: Optional[str], b: Optional[str], policy: MatchPolicy = MatchPolicy.RANKED) -> bool:
    return score(a, b, policy) >= ACCEPT_THRESHOLDS[MatchPolicy(policy)]


# ---------------------------------------------------------------------------
# Collection helpers
# ---------------------------------------------------------------------------

def _identity(value):
    return value


def best_match(
    query: Optional[str],
    candidates: Iterable[T],
    key: Callable[[T], str] = _identity,
    policy: MatchPolicy = MatchPolicy.NUMERIC_AWARE,
) -> Optional[T]:
    """
    Return the single highest-scoring candidate that clears the policy
    threshold, or ``None``.  The first candidate wins a tie.
    """
    threshold = ACCEPT_THRESHOLDS[MatchPolicy(policy)]
    best: Optional[T] = None
    best_score = 0.0
    for candidate in candidates:
        candidate_score = score(query, key(candidate), policy)
        if candidate_score >= threshold and candidate_score > best_score:
            best = candidate
            best_score = candidate_score
    return best


def rank(
    query: Optional[str],
    candidates: Sequence[T],
    key: Callable[[T], str] = _identity,
    policy: MatchPolicy = MatchPolicy.RANKED,
    limit: Optional[int] = None,
) -> list[tuple[T, float]]:
    """
    Accepted candidates with their scores, by descending score.  ``sorted``
    is stable, so ties keep the original collection order.
    """
    threshold = ACCEPT_THRESHOLDS[MatchPolicy(policy)]
    scored = [(candidate, score(query, key(candidate), policy)) for candidate in candidates]
    accepted = sorted(
        (item for item in scored if item[1] >= threshold),
        key=lambda item: item[1],
        reverse=True,
    )
    if limit is not None:
        accepted = accepted[: max(limit, 0)]
    return accepted


# ---------------------------------------------------------------------------
# Polars helpers (bulk import)
# ---------------------------------------------------------------------------

def normalize_series(series: pl.Series) -> pl.Series:
    """
    Apply ``normalize`` to a Polars :class:`~polars.Series` of strings.

    Returns a new ``Utf8`` Series with normalized values (``None`` → ``""``).
    """
    filled = series.cast(pl.Utf8).fill_null("")
    return filled.map_elements(normalize, return_dtype=pl.Utf8)


def normalize_dataframe_column(df: pl.DataFrame, col: str) -> pl.DataFrame:
    """
    Return *df* with an additional column ``<col>_normalized`` containing
    the normalized values of *col*.
    """
    normalized = normalize_series(df[col])
    return df.with_columns(normalized.alias(f"{col}_normalized"))
