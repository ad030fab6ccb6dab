"""Tokenizing, relevance scoring and excerpts shared by every storage adapter.

Both adapters rank through this module so a query returns the same matches in
the same order whichever backend is configured. A query word occurs wherever a
document token starts with it, so "auth" matches "authentication".
"""

import re
from collections import Counter
from collections.abc import Iterable

from knowsys_mcp.documents.models import SearchMatch

TOKEN_PATTERN = re.compile(r"[^\W_]+")
WHITESPACE_PATTERN = re.compile(r"\s+")

# A title hit counts as much as this many body hits
TITLE_WEIGHT = 3

CONTEXT_BEFORE = 60
CONTEXT_AFTER = 100


def tokenize(text: str) -> list[str]:
    """Split text into lowercase alphanumeric tokens."""
    return TOKEN_PATTERN.findall(text.lower())


def token_counts(text: str) -> dict[str, int]:
    """Count tokens, keyed in sorted order so serialized maps are stable."""
    counts = Counter(tokenize(text))
    return {token: counts[token] for token in sorted(counts)}


def query_terms(query: str) -> list[str]:
    """Unique query words in first-seen order."""
    seen: dict[str, None] = {}
    for token in tokenize(query):
        seen.setdefault(token, None)
    return list(seen)


def occurrences(term: str, counts: dict[str, int]) -> int:
    """Number of tokens starting with term."""
    return sum(count for token, count in counts.items() if token.startswith(term))


def relevance(
    terms: Iterable[str],
    title_counts: dict[str, int],
    body_counts: dict[str, int],
) -> int:
    """
    Score a document for a set of query words.

    Every word must occur in the title or body, otherwise the score is 0.
    The score is the sum over words of TITLE_WEIGHT * title hits + body hits,
    so it never decreases as occurrences grow.
    """
    total = 0
    for term in terms:
        in_title = occurrences(term, title_counts)
        in_body = occurrences(term, body_counts)
        if in_title == 0 and in_body == 0:
            return 0
        total += TITLE_WEIGHT * in_title + in_body
    return total


def _collapse(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def excerpt(
    terms: list[str],
    title: str,
    body: str,
    body_counts: dict[str, int] | None = None,
) -> str:
    """
    Short excerpt around the first hit of the strongest query word.

    The strongest word is the one with the most body hits; words that only
    occur in the title fall back to the title itself.
    """
    if body_counts is None:
        body_counts = token_counts(body)
    ranked = sorted(terms, key=lambda t: -occurrences(t, body_counts))
    for term in ranked:
        match = re.search(rf"(?<![^\W_]){re.escape(term)}", body, re.IGNORECASE)
        if match is None:
            continue
        start = max(0, match.start() - CONTEXT_BEFORE)
        end = min(len(body), match.end() + CONTEXT_AFTER)
        snippet = _collapse(body[start:end])
        if start > 0:
            snippet = f"...{snippet}"
        if end < len(body):
            snippet = f"{snippet}..."
        return snippet
    return _collapse(title)


def score_document(
    terms: list[str],
    doc_type: str,
    file: str,
    title: str,
    body: str,
    recency: str | None,
    title_counts: dict[str, int] | None = None,
    body_counts: dict[str, int] | None = None,
) -> SearchMatch | None:
    """
    Score one document, returning a SearchMatch or None if it does not match.

    Precomputed token counts are used when given, otherwise title and body
    are tokenized here.
    """
    if title_counts is None:
        title_counts = token_counts(title)
    if body_counts is None:
        body_counts = token_counts(body)
    score = relevance(terms, title_counts, body_counts)
    if score == 0:
        return None
    return SearchMatch(
        type=doc_type,
        file=file,
        context=excerpt(terms, title, body, body_counts),
        relevance=score,
        recency=recency or "",
    )


def rank(matches: Iterable[SearchMatch]) -> list[SearchMatch]:
    """Order by relevance descending, then most recent first, then file path."""
    ordered = sorted(matches, key=lambda m: m.file)
    ordered.sort(key=lambda m: m.recency, reverse=True)
    ordered.sort(key=lambda m: m.relevance, reverse=True)
    return ordered
