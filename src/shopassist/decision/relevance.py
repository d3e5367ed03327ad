"""Relevance scoring for shopping search results.

Search providers return plenty of near misses (accessories, older models,
bundles). Each candidate title is scored against the query with a handful of
additive signals, then filtered by a per-search-type threshold.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

SCORE_PHRASE_MATCH = 1.0
SCORE_ALL_WORDS = 0.8
SCORE_PARTIAL_WORDS = 0.5
SCORE_WORD_ORDER = 0.3
SCORE_BRAND_MATCH = 0.4
SCORE_MODEL_MATCH = 0.5
PENALTY_MODEL_MISMATCH = 0.3
PENALTY_UNRELATED_WORD = 0.05

MIN_SIGNIFICANT_QUERY_WORD = 3
MIN_SIGNIFICANT_TITLE_WORD = 4
OVERALL_TOP_N = 3

NO_PRODUCTS_HINT = "No products found"

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "were", "be",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "can", "new", "latest", "best", "pro", "air",
        "version", "model", "series", "generation", "gen",
    }
)

BRANDS = frozenset(
    {
        "apple", "iphone", "ipad", "macbook", "samsung", "galaxy",
        "google", "pixel", "xiaomi", "oneplus", "sony", "dell",
        "hp", "lenovo", "asus", "acer", "msi", "lg", "huawei",
        "nike", "adidas", "puma", "reebok", "under", "armour",
    }
)

DEFAULT_POLICIES: Dict[str, Tuple[float, int]] = {
    "exact": (0.7, 3),
    "parameters": (0.5, 6),
    "category": (0.3, 8),
}
FALLBACK_SEARCH_TYPE = "parameters"

_WORD_RE = re.compile(r"[\w\-.]+")


def _words(text: str) -> List[str]:
    return [w.strip(".-") for w in _WORD_RE.findall(text.lower()) if w.strip(".-")]


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


@dataclass
class ShoppingItem:
    """One raw search-provider result."""

    title: str
    price: str = ""
    merchant: str = ""
    rating: float = 0.0
    link: str = ""
    position: int = 0
    product_id: str = ""
    thumbnail: str = ""
    reviews: int = 0
    page_token: str = ""

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ShoppingItem":
        """Build an item from a provider record, tolerating missing or mistyped fields."""
        return cls(
            title=_str(record.get("title")),
            price=_str(record.get("price")),
            merchant=_str(record.get("source")) or _str(record.get("merchant")),
            rating=_float(record.get("rating")),
            link=_str(record.get("link")) or _str(record.get("product_link")),
            position=_int(record.get("position")),
            product_id=_str(record.get("product_id")),
            thumbnail=_str(record.get("thumbnail")),
            reviews=_int(record.get("reviews")),
            page_token=_str(record.get("immersive_product_page_token")),
        )


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: ShoppingItem
    score: float


@dataclass
class RelevanceResult:
    kept: List[ScoredCandidate] = field(default_factory=list)
    overall_score: float = 0.0
    is_relevant: bool = False
    alternative_hint: str = ""

    @property
    def products(self) -> List[ShoppingItem]:
        return [sc.candidate for sc in self.kept]


class RelevanceEngine:
    """Scores candidates against a query and applies the search-type policy."""

    def __init__(self, policies: Optional[Mapping[str, Tuple[float, int]]] = None) -> None:
        self._policies = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)

    def policy(self, search_type: str) -> Tuple[float, int]:
        """(threshold, max_results) for a search type; unknown types use ``parameters``."""
        return self._policies.get(search_type, self._policies[FALLBACK_SEARCH_TYPE])

    def filter(
        self,
        query: str,
        candidates: Sequence[ShoppingItem],
        search_type: str,
    ) -> RelevanceResult:
        if not candidates:
            return RelevanceResult(alternative_hint=NO_PRODUCTS_HINT)

        threshold, max_results = self.policy(search_type)
        scored = [ScoredCandidate(c, self.score(query, c.title)) for c in candidates]
        scored.sort(key=lambda sc: sc.score, reverse=True)

        kept = [sc for sc in scored if sc.score >= threshold][:max_results]
        top = kept[:OVERALL_TOP_N]
        overall = sum(sc.score for sc in top) / len(top) if top else 0.0
        result = RelevanceResult(
            kept=kept,
            overall_score=overall,
            is_relevant=bool(kept) and overall >= threshold,
        )

        if not result.is_relevant:
            best = scored[0].candidate
            result.alternative_hint = (
                "Found similar products but exact match not available. "
                f"Best alternative: {best.title}"
            )

        logger.debug(
            "Relevance for %r (%s): kept %d/%d, overall %.2f, relevant=%s",
            query,
            search_type,
            len(kept),
            len(candidates),
            overall,
            result.is_relevant,
        )
        return result

    def score(self, query: str, title: str) -> float:
        """Relevance of one title to the query, clipped to [0, 1]."""
        query_lower = " ".join(query.lower().split())
        title_lower = title.lower()
        query_words = _words(query_lower)
        title_words = _words(title_lower)
        if not query_words:
            return 0.0

        score = 0.0
        if query_lower and query_lower in title_lower:
            score += SCORE_PHRASE_MATCH

        if all(word in title_lower for word in query_words):
            score += SCORE_ALL_WORDS

        significant = [
            w
            for w in query_words
            if len(w) >= MIN_SIGNIFICANT_QUERY_WORD and w not in STOP_WORDS
        ]
        if significant:
            matched = sum(1 for w in significant if w in title_lower)
            score += SCORE_PARTIAL_WORDS * matched / len(significant)

        score += SCORE_WORD_ORDER * word_order_score(query_words, title_words)

        title_set = set(title_words)
        if any(w in BRANDS and w in title_set for w in query_words):
            score += SCORE_BRAND_MATCH

        model_numbers = [w for w in query_words if any(ch.isdigit() for ch in w)]
        if model_numbers:
            if any(m in title_set for m in model_numbers):
                score += SCORE_MODEL_MATCH
            else:
                score -= PENALTY_MODEL_MISMATCH

        for tw in title_words:
            if len(tw) < MIN_SIGNIFICANT_TITLE_WORD or tw in STOP_WORDS:
                continue
            if not any(tw == qw or qw in tw or tw in qw for qw in query_words):
                score -= PENALTY_UNRELATED_WORD

        return min(1.0, max(0.0, score))


def word_order_score(query_words: Sequence[str], title_words: Sequence[str]) -> float:
    """Share of adjacent query-word pairs that keep their order in the title."""
    if len(query_words) < 2:
        return 0.0

    def first_position(word: str) -> int:
        for i, tw in enumerate(title_words):
            if word in tw:
                return i
        return -1

    matches = 0
    for first, second in zip(query_words, query_words[1:]):
        p1, p2 = first_position(first), first_position(second)
        if p1 != -1 and p2 != -1 and p1 < p2:
            matches += 1
    return matches / (len(query_words) - 1)
