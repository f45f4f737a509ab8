"""
Cross-source near-duplicate detection and merging.

Independent sources often cover the same announcement under different
titles and URLs. Items are grouped greedily (first match wins, no
backtracking) on a weighted similarity score and each group collapses into
one item taken from its most reliable source.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

import Levenshtein

from timeline_ingest.core.logging import get_logger
from timeline_ingest.models.items import NormalizedItem
from timeline_ingest.models.pipeline import DedupeSettings
from timeline_ingest.services.item_normalization import url_domain

logger = get_logger()

TIER_RANKS: Dict[str, int] = {
    "official": 4,
    "academic": 3,
    "journalism": 2,
    "community": 1,
    "unranked": 0,
}

SOURCE_TIERS: Dict[str, str] = {
    "OpenAI Blog": "official",
    "Anthropic": "official",
    "Google AI": "official",
    "DeepMind Blog": "official",
    "ArXiv": "academic",
    "Papers with Code": "academic",
    "MIT Technology Review": "journalism",
    "The Verge": "journalism",
    "VentureBeat": "journalism",
    "TechCrunch": "journalism",
    "HackerNews": "community",
}

_PUNCT_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")
_ACRONYM_RE = re.compile(r"^[A-Z]{2,}$")
_DIGIT_RE = re.compile(r"\d")


@dataclass(frozen=True)
class DedupeConfig:
    similarity_threshold: float = 0.6
    time_window: timedelta = timedelta(hours=48)
    use_fuzzy_matching: bool = True
    title_weight: float = 0.5
    content_weight: float = 0.3
    domain_bonus: float = 0.1
    time_weight: float = 0.1
    content_prefix_chars: int = 500
    # Key-term overlap only counts above this value.
    key_terms_min: float = 0.5
    source_tiers: Mapping[str, str] = field(default_factory=lambda: dict(SOURCE_TIERS))

    @classmethod
    def from_settings(cls, settings: DedupeSettings) -> "DedupeConfig":
        return cls(
            similarity_threshold=settings.similarity_threshold,
            time_window=timedelta(hours=settings.time_window_hours),
            use_fuzzy_matching=settings.use_fuzzy_matching,
            title_weight=settings.weights.title,
            content_weight=settings.weights.content,
            domain_bonus=settings.weights.domain,
            time_weight=settings.weights.time,
        )


@dataclass
class DuplicateGroup:
    primary: NormalizedItem
    members: List[NormalizedItem]
    # Score of each joined member against the seed item, keyed by item id.
    pairwise_scores: Dict[str, float] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.members)


# -------- text similarity ----------------------------------------------------

def normalize_text(text: Optional[str]) -> str:
    lowered = (text or "").lower()
    return _WS_RE.sub(" ", _PUNCT_RE.sub(" ", lowered)).strip()


def extract_key_terms(text: Optional[str]) -> Set[str]:
    """Numbers, long words and upper-case acronyms, lowercased."""
    terms: Set[str] = set()
    for token in _PUNCT_RE.sub(" ", text or "").split():
        if _DIGIT_RE.search(token) or len(token) > 4 or _ACRONYM_RE.match(token):
            terms.add(token.lower())
    return terms


def jaccard_similarity(a: str, b: str) -> float:
    words_a = {w for w in a.split(" ") if len(w) > 2}
    words_b = {w for w in b.split(" ") if len(w) > 2}
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def key_terms_similarity(a: Optional[str], b: Optional[str]) -> float:
    terms_a = extract_key_terms(a)
    terms_b = extract_key_terms(b)
    if not terms_a or not terms_b:
        return 0.0
    return len(terms_a & terms_b) / min(len(terms_a), len(terms_b))


def levenshtein_similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / longest


def text_similarity(a: Optional[str], b: Optional[str], config: DedupeConfig) -> float:
    """Maximum over several signals; one strong signal is enough."""
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if norm_a == norm_b:
        return 1.0

    scores = [jaccard_similarity(norm_a, norm_b)]
    if norm_a and norm_b and (norm_a in norm_b or norm_b in norm_a):
        scores.append(0.9)
    key_terms = key_terms_similarity(a, b)
    if key_terms > config.key_terms_min:
        scores.append(key_terms)
    if config.use_fuzzy_matching:
        scores.append(levenshtein_similarity(norm_a, norm_b))
    return max(scores)


# -------- service ------------------------------------------------------------

class DeduplicationService:
    def __init__(self, config: Optional[DedupeConfig] = None) -> None:
        self.config = config or DedupeConfig()

    def similarity(self, a: NormalizedItem, b: NormalizedItem) -> float:
        cfg = self.config
        if a.url == b.url:
            return 1.0

        window_s = cfg.time_window.total_seconds()
        delta_s = abs((a.published_at - b.published_at).total_seconds())
        if window_s <= 0 or delta_s > window_s:
            return 0.0

        score = text_similarity(a.title, b.title, cfg) * cfg.title_weight
        if a.summary and b.summary:
            prefix = cfg.content_prefix_chars
            score += text_similarity(a.summary[:prefix], b.summary[:prefix], cfg) * cfg.content_weight
        domain_a = url_domain(a.url)
        if domain_a and domain_a == url_domain(b.url):
            score += cfg.domain_bonus
        score += (1.0 - delta_s / window_s) * cfg.time_weight
        return score

    def source_rank(self, item: NormalizedItem) -> int:
        tier = item.metadata.get("tier") or self.config.source_tiers.get(item.source) or "unranked"
        return TIER_RANKS.get(str(tier).lower(), 0)

    def find_duplicate_groups(self, items: Sequence[NormalizedItem]) -> List[DuplicateGroup]:
        groups: List[DuplicateGroup] = []
        grouped = [False] * len(items)

        for i, seed in enumerate(items):
            if grouped[i]:
                continue
            grouped[i] = True
            group = DuplicateGroup(primary=seed, members=[seed])

            for j in range(i + 1, len(items)):
                if grouped[j]:
                    continue
                candidate = items[j]
                score = self.similarity(seed, candidate)
                if score < self.config.similarity_threshold:
                    continue
                grouped[j] = True
                group.members.append(candidate)
                group.pairwise_scores[candidate.id] = score
                if self.source_rank(candidate) > self.source_rank(group.primary):
                    group.primary = candidate

            groups.append(group)
        return groups

    def merge_group(self, group: DuplicateGroup) -> NormalizedItem:
        if group.size == 1:
            return group.primary

        primary = group.primary
        sources: List[str] = []
        urls: List[str] = []
        duplicate_count = 0
        summary = primary.summary
        authors = primary.authors
        metadata: Dict[str, Any] = {}

        for member in group.members:
            for source in member.metadata.get("sources") or [member.source]:
                if source not in sources:
                    sources.append(source)
            for url in member.metadata.get("all_urls") or [member.url]:
                if url not in urls:
                    urls.append(url)
            duplicate_count += int(member.metadata.get("duplicate_count") or 1)
            if member.summary and len(member.summary) > len(summary or ""):
                summary = member.summary
            if not authors and member.authors:
                authors = member.authors
            if member is not primary:
                metadata.update(member.metadata)
        metadata.update(primary.metadata)
        metadata.update(sources=sources, all_urls=urls, duplicate_count=duplicate_count)

        return primary.model_copy(update={"summary": summary, "authors": authors, "metadata": metadata})

    def _single_pass(self, items: Sequence[NormalizedItem]) -> List[NormalizedItem]:
        return [self.merge_group(group) for group in self.find_duplicate_groups(items)]

    def deduplicate(self, items: Sequence[NormalizedItem]) -> List[NormalizedItem]:
        """
        Greedy grouping + merge, repeated until no pair merges any more so the
        result is stable under a second call. Input order decides seeds.
        """
        current = list(items)
        while True:
            merged = self._single_pass(current)
            if len(merged) == len(current):
                return merged
            current = merged


def deduplication_stats(
    original: Sequence[NormalizedItem],
    deduplicated: Sequence[NormalizedItem],
) -> Dict[str, Any]:
    original_count = len(original)
    deduplicated_count = len(deduplicated)
    removed = original_count - deduplicated_count
    return {
        "original_count": original_count,
        "deduplicated_count": deduplicated_count,
        "duplicates_removed": removed,
        "deduplication_rate": removed / original_count if original_count else 0.0,
    }
