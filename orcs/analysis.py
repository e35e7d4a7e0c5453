"""
Reference analysis: where a tag is already marked, and where it probably
should be.

Tagged references are the tag's own markers. Untagged references are
whole-word matches of the tag's search terms that are not inside any marker
(of any tag). Matching runs on a marker-stripped copy of each region; every
hit is mapped back to the marked-up text before the overlap check, so a
match is never reported at a position that is already tagged.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

from .card_store import CardStore
from .config import AnalysisSettings
from .errors import ValidationError
from .markup import MARKER_RE, overlaps, term_pattern
from .types import Card, Tag

logger = logging.getLogger(__name__)

ANALYSIS_CONTEXTS = ("similarity", "document", "repository")

# Search terms shorter than this are ignored
MIN_TERM_LENGTH = 2

# Confidence weights
BASE_CONFIDENCE = 0.5
EXACT_MATCH_BONUS = 0.3
CONTEXT_TYPE_BONUS = 0.1
SHORT_MATCH_PENALTY = 0.2
PROPER_NOUN_BONUS = 0.1


@dataclass(frozen=True)
class AliasPolicy:
    """Which analysis contexts also search a tag's aliases."""
    similarity_search: bool = False
    document_search: bool = True
    repository_search: bool = True

    @classmethod
    def from_settings(cls, settings: AnalysisSettings) -> "AliasPolicy":
        return cls(
            similarity_search=settings.similarity_search,
            document_search=settings.document_search,
            repository_search=settings.repository_search,
        )

    def uses_aliases(self, context: str) -> bool:
        return {
            "similarity": self.similarity_search,
            "document": self.document_search,
            "repository": self.repository_search,
        }[context]


@dataclass
class TaggedReference:
    tag_id: str
    filename: str
    region: str
    context: str
    exact_text: str
    start: int
    end: int
    type: str = "text"

    @property
    def location(self) -> str:
        return f"Characters {self.start}-{self.end}"


@dataclass
class UntaggedReference:
    text: str
    term: str
    filename: str
    region: str
    context: str
    start: int
    end: int
    confidence: float
    reasons: list[str] = field(default_factory=list)
    type: str = "text"


@dataclass
class ReferenceAnalysis:
    tagged: list[TaggedReference] = field(default_factory=list)
    untagged: list[UntaggedReference] = field(default_factory=list)

    @property
    def total_tagged_count(self) -> int:
        return len(self.tagged)

    @property
    def total_untagged_count(self) -> int:
        return len(self.untagged)

    def to_dict(self) -> dict:
        return {
            "tagged": [asdict(r) for r in self.tagged],
            "untagged": [asdict(r) for r in self.untagged],
            "total_tagged_count": self.total_tagged_count,
            "total_untagged_count": self.total_untagged_count,
        }


def extract_context(text: str, start: int, length: int, radius: int = 100) -> str:
    """
    Up to ``radius`` characters either side of a match.

    When a sentence end ('.') is found on both sides, the context is trimmed
    to the enclosing sentence.
    """
    lo = max(0, start - radius)
    hi = min(len(text), start + length + radius)
    before = text[lo:start]
    match = text[start:start + length]
    after = text[start + length:hi]
    sentence_start = before.rfind(".") + 1
    sentence_end = after.find(".")
    if sentence_start > 0 and sentence_end > 0:
        return (before[sentence_start:] + match + after[:sentence_end + 1]).strip()
    return (before + match + after).strip()


def calculate_confidence(term: str, matched: str, context: str, tag: Tag) -> float:
    confidence = BASE_CONFIDENCE
    if term.lower() == matched.lower():
        confidence += EXACT_MATCH_BONUS
    if tag.entity_type and tag.entity_type.lower() in context.lower():
        confidence += CONTEXT_TYPE_BONUS
    if len(matched) < 3:
        confidence -= SHORT_MATCH_PENALTY
    if matched[:1].isupper():
        confidence += PROPER_NOUN_BONUS
    return max(0.0, min(1.0, confidence))


def match_reasons(term: str, matched: str, context: str, tag: Tag) -> list[str]:
    reasons = []
    if term.lower() == tag.name.lower():
        reasons.append("Exact name match")
    else:
        reasons.append("Alias match")
    if matched[:1].isupper():
        reasons.append("Proper noun formatting")
    if tag.entity_type and tag.entity_type.lower() in context.lower():
        reasons.append(f"Context mentions {tag.entity_type}")
    return reasons


def strip_with_offsets(text: str) -> tuple[str, list[int]]:
    """
    Remove markers, keeping their visible text.

    Returns the stripped text and, for each of its characters, the index of
    the same character in the marked-up text.
    """
    out: list[str] = []
    offsets: list[int] = []
    last = 0
    for m in MARKER_RE.finditer(text):
        out.append(text[last:m.start()])
        offsets.extend(range(last, m.start()))
        out.append(m.group("text"))
        offsets.extend(range(m.start("text"), m.end("text")))
        last = m.end()
    out.append(text[last:])
    offsets.extend(range(last, len(text)))
    return "".join(out), offsets


def _dedupe(refs: Iterable[UntaggedReference]) -> list[UntaggedReference]:
    seen: set[tuple[str, str, int, str]] = set()
    out = []
    for ref in refs:
        key = (ref.filename, ref.region, ref.start, ref.text)
        if key in seen:
            continue
        seen.add(key)
        out.append(ref)
    return out


class ReferenceAnalyzer:
    """Scans cards for tagged and untagged references to one tag."""

    def __init__(self, cards: CardStore, settings: Optional[AnalysisSettings] = None):
        self.cards = cards
        self.settings = settings or AnalysisSettings()

    def search_terms(self, tag: Tag, policy: AliasPolicy, context: str) -> list[str]:
        terms = [tag.name]
        if policy.uses_aliases(context):
            terms.extend(tag.aliases)
        return [t for t in dict.fromkeys(t.strip() for t in terms) if len(t) >= MIN_TERM_LENGTH]

    def _cards(self, filenames: Optional[list[str]]) -> list[Card]:
        cards = self.cards.list_cards()
        if filenames:
            wanted = set(filenames)
            cards = [c for c in cards if c.filename in wanted or c.source_file in wanted]
        return cards

    def analyze(
        self,
        tag: Tag,
        policy: Optional[AliasPolicy] = None,
        context: str = "repository",
        filenames: Optional[list[str]] = None,
    ) -> ReferenceAnalysis:
        """
        Find tagged and untagged references to ``tag``.

        Args:
            tag: Target tag
            policy: Alias policy; defaults to the configured one
            context: One of similarity, document, repository
            filenames: Restrict the scan to these cards (card or source names)
        """
        if context not in ANALYSIS_CONTEXTS:
            raise ValidationError(f"Unknown analysis context: {context!r}")
        policy = policy or AliasPolicy.from_settings(self.settings)
        terms = self.search_terms(tag, policy, context)
        radius = self.settings.context_radius

        result = ReferenceAnalysis()
        untagged: list[UntaggedReference] = []
        for card in self._cards(filenames):
            kind = "csv" if card.file_type == "csv" else "text"
            for region, text in card.regions().items():
                result.tagged.extend(self._tagged(tag, card, region, text, kind, radius))
                untagged.extend(self._untagged(tag, terms, card, region, text, kind, radius))

        untagged = _dedupe(untagged)
        untagged.sort(key=lambda r: r.confidence, reverse=True)
        result.untagged = untagged[:self.settings.max_untagged]
        logger.debug(
            "Analysis of %s: %d tagged, %d untagged", tag.id, len(result.tagged), len(result.untagged)
        )
        return result

    def _tagged(self, tag, card, region, text, kind, radius) -> list[TaggedReference]:
        refs = []
        for m in MARKER_RE.finditer(text):
            if m.group("id") != tag.id:
                continue
            refs.append(TaggedReference(
                tag_id=tag.id,
                filename=card.filename,
                region=region,
                context=extract_context(text, m.start(), m.end() - m.start(), radius),
                exact_text=m.group("text"),
                start=m.start(),
                end=m.end(),
                type=kind,
            ))
        return refs

    def _untagged(self, tag, terms, card, region, text, kind, radius) -> list[UntaggedReference]:
        spans = [(m.start(), m.end()) for m in MARKER_RE.finditer(text)]
        stripped, offsets = strip_with_offsets(text)
        refs = []
        for term in terms:
            for m in term_pattern(term).finditer(stripped):
                start = offsets[m.start()]
                end = offsets[m.end() - 1] + 1
                if overlaps(start, end, spans):
                    continue
                matched = m.group(0)
                ctx = extract_context(stripped, m.start(), len(matched), radius)
                refs.append(UntaggedReference(
                    text=matched,
                    term=term,
                    filename=card.filename,
                    region=region,
                    context=ctx,
                    start=start,
                    end=end,
                    confidence=calculate_confidence(term, matched, ctx, tag),
                    reasons=match_reasons(term, matched, ctx, tag),
                    type=kind,
                ))
        return refs
