"""Hybrid entity extraction.

Rule-based pass (regex + stop words, no ML dependencies) with an optional
model-based pass through the completion client:

* Type-specific patterns for person / project / organization / place / concept
* Stop-word and minimum-length filtering, leading/trailing stop-word trimming
  for person names ("Yesterday Sarah Chen" -> "Sarah Chen")
* Overlap resolution as a pure interval sweep (longer match wins a tie)
* Heuristic confidence scoring
* Model output parsed into a validated result (``ParsedEntities`` or
  ``InvalidOutput``), never trusted as-is
* Merge of both passes and a final type-correction pass

Pattern and stop-word tables are module-level immutables built at import
time and shared read-only by every worker.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, List, Optional, Pattern, Sequence, Tuple, Union

from . import metrics
from .config import Config, load_config
from .llm import CompletionError

logger = logging.getLogger(__name__)

ENTITY_TYPES: Tuple[str, ...] = ("person", "project", "organization", "place", "concept")

CONTEXT_WINDOW = 30
MODEL_MIN_CONFIDENCE = 0.3


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractedEntity:
    """One candidate entity mention found in a text."""
    name: str
    entity_type: str
    mention_text: str
    start: int
    end: int
    confidence: float
    context: Optional[str] = None
    relationship: Optional[str] = None
    method: str = "regex"  # regex | llm

    @property
    def length(self) -> int:
        return self.end - self.start

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.entity_type,
            "mention_text": self.mention_text,
            "start": self.start,
            "end": self.end,
            "confidence": round(self.confidence, 4),
            "context": self.context,
            "relationship": self.relationship,
            "method": self.method,
        }


@dataclass(frozen=True)
class ExtractionOptions:
    force_model: bool = False
    regex_only: bool = False
    min_confidence: Optional[float] = None


@dataclass(frozen=True)
class ModelEntity:
    """A schema-checked entity proposed by the model."""
    name: str
    entity_type: str
    confidence: float
    relationship: Optional[str] = None
    mention_text: Optional[str] = None


@dataclass(frozen=True)
class ParsedEntities:
    entities: Tuple[ModelEntity, ...]


@dataclass(frozen=True)
class InvalidOutput:
    reason: str


ModelOutput = Union[ParsedEntities, InvalidOutput]


# ---------------------------------------------------------------------------
# Static tables
# ---------------------------------------------------------------------------

STOP_WORDS: FrozenSet[str] = frozenset(w.lower() for w in (
    # sentence starters / pronouns / possessives / articles
    "I", "I'm", "I've", "I'll", "I'd", "We", "You", "He", "She", "It", "They",
    "Me", "Him", "Her", "Us", "Them", "My", "Your", "His", "Its", "Our", "Their",
    "The", "A", "An", "This", "That", "These", "Those", "What", "When", "Where",
    "Why", "How", "Who", "Which", "There", "Here", "If", "Yes", "No", "Hi",
    "Hello", "Thanks", "Please", "Maybe", "Well", "Ok", "Okay",
    # time words
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
    "January", "February", "March", "April", "May", "June", "July", "August",
    "September", "October", "November", "December",
    "Today", "Tomorrow", "Yesterday", "Tonight", "Morning", "Afternoon", "Evening",
    "Week", "Weekend", "Month", "Year",
    # holidays
    "Christmas", "Thanksgiving", "Easter", "Halloween", "Hanukkah",
    # fillers / conjunctions
    "Also", "Just", "Really", "Very", "Now", "Then", "So", "But", "And", "Or",
    "Not", "Only", "Still", "Even", "After", "Before", "During", "About",
    # ordinals / generic adjectives
    "First", "Second", "Third", "Next", "Last", "New", "Old",
    "Major", "Minor", "Big", "Small", "Main", "Other", "Same", "Final",
    "Current", "Recent", "Latest", "Good", "Great", "Bad",
    # auxiliaries / quantifiers
    "Need", "Met", "Got", "Had", "Has", "Have", "Was", "Were", "Been", "Being",
    "Some", "Any", "All", "Most", "Many", "Few", "Every", "Each",
    # titles and roles
    "CTO", "CEO", "CFO", "COO", "VP",
    # institution words that are never names on their own
    "County", "Oncology", "Hospital", "Clinic", "Center", "Calendar", "Palace",
    "Chinese", "Restaurant", "Church", "School", "University", "Medical",
    "Dental", "Flooring", "Command", "Gastro",
    # numbers
    "One", "Two", "Three", "Four", "Five", "Six", "Seven", "Eight", "Nine", "Ten",
    # gerunds that open sentences
    "Connecting", "Integrating", "Working", "Planning", "Meeting", "Starting",
    "Side", "Plan", "Project",
))

_NAME_TITLE = r"(?:Dr|Mr|Mrs|Ms|Prof|Sir|Dame)\.?"

# On an identical span the earlier pattern wins, so the cue-word patterns
# come before the generic capitalized-name ones.
RULE_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    ("project", re.compile(r"\b(?:the\s+)?([A-Z][a-zA-Z0-9]+)\s+project(?:\s|$|[,.])")),
    ("project", re.compile(r"\bProject\s+([A-Z][a-zA-Z0-9]+)\b")),
    ("project", re.compile(r"\bworking on\s+(?:the\s+)?([A-Z][a-zA-Z0-9]+)\b")),
    ("organization", re.compile(
        r"\b([A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+)*\s+"
        r"(?:Inc|Corp|LLC|Ltd|Co|Company|Corporation|Industries|Group|Foundation))\b"
    )),
    ("concept", re.compile(
        r"(?i:\b(?:the concept of|the idea of))\s+\"?([A-Z][a-zA-Z]*(?:\s+[A-Z][a-zA-Z]*)*)\"?"
    )),
    ("person", re.compile(r"\b([A-Z][a-z]+\s+[A-Z][a-z'-]+)\b")),
    ("person", re.compile(r"\b([A-Z][a-z]+\s+[A-Z][a-z]+\s+[A-Z][a-z'-]+)\b")),
    ("person", re.compile(rf"\b({_NAME_TITLE}\s+[A-Z][a-z]+(?:\s+[A-Z][a-z'-]+)?)\b")),
    ("place", re.compile(r"\b(?:in|from|near)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\b")),
)

RELATIONSHIP_INDICATORS: Tuple[Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in (
        r"\bmy\s+(?:wife|husband|partner|friend|boss|colleague|sister|brother|mom|dad|"
        r"mother|father|son|daughter|uncle|aunt|cousin|grandma|grandpa|girlfriend|boyfriend)\b",
        r"\bour\s+(?:client|customer|partner|vendor)\b",
        r"\bmet with\s+\w+",
        r"\btalked to\s+\w+",
        r"\bcalled\s+\w+",
        r"\bnamed\s+\w+",
    )
)

# Token -> forced type; scanned right to left so the head noun wins
# ("Orange County Hospital" is an organization).
TYPE_INDICATORS: Dict[str, str] = {
    "county": "place",
    "township": "place",
    "street": "place",
    "avenue": "place",
    "boulevard": "place",
    "hospital": "organization",
    "oncology": "organization",
    "clinic": "organization",
    "corporation": "organization",
    "corp": "organization",
    "inc": "organization",
    "llc": "organization",
    "ltd": "organization",
    "university": "organization",
    "college": "organization",
    "church": "organization",
    "restaurant": "organization",
    "foundation": "organization",
    "bank": "organization",
    "calendar": "concept",
    "api": "concept",
    "platform": "concept",
    "framework": "concept",
    "protocol": "concept",
    "algorithm": "concept",
}

_TWO_WORD_NAME_RE = re.compile(r"^[A-Z][a-z]+\s+[A-Z][a-z]+$")
_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_TOKEN_RE = re.compile(r"\S+")

EXTRACTION_SYSTEM_PROMPT = """You extract named entities from short personal notes.
Return ONLY a JSON array, no prose. Each element must look like:
{"name": "<entity name>", "type": "person|project|organization|place|concept",
 "relationship": "<relationship to the author, e.g. wife, boss, client, or null>",
 "confidence": <number between 0 and 1>,
 "mentionText": "<exact text used in the note>"}
Only include real named entities (people, projects, companies, places, named ideas).
Never return dates, weekdays, pronouns or generic words. Return [] when there are none."""


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def is_stop_word(name: str) -> bool:
    """True when the name, or every word in it, is a stop word."""
    words = name.lower().split()
    if not words:
        return True
    return name.lower() in STOP_WORDS or all(w in STOP_WORDS for w in words)


def _trim_stop_tokens(name: str) -> Tuple[str, int]:
    """Strip leading/trailing stop-word tokens. Returns (name, offset into original)."""
    tokens = list(_TOKEN_RE.finditer(name))
    while tokens and tokens[0].group(0).lower() in STOP_WORDS:
        tokens.pop(0)
    while tokens and tokens[-1].group(0).lower() in STOP_WORDS:
        tokens.pop()
    if not tokens:
        return "", 0
    return name[tokens[0].start():tokens[-1].end()], tokens[0].start()


def _context(text: str, start: int, end: int) -> str:
    return text[max(0, start - CONTEXT_WINDOW):min(len(text), end + CONTEXT_WINDOW)].strip()


def calculate_confidence(name: str, entity_type: str, text: str) -> float:
    """Heuristic confidence for a rule-based match."""
    confidence = 0.7
    if " " in name:
        confidence += 0.1

    occurrences = len(re.findall(re.escape(name), text, re.IGNORECASE))
    if occurrences > 1:
        confidence += min(0.1, occurrences * 0.02)

    if entity_type == "person" and _TWO_WORD_NAME_RE.match(name):
        confidence += 0.1
    if entity_type == "project" and "project" in text.lower():
        confidence += 0.05

    return min(confidence, 1.0)


def resolve_overlaps(candidates: Sequence[ExtractedEntity]) -> List[ExtractedEntity]:
    """Keep the first non-overlapping candidate per position.

    Candidates are ordered by (start asc, length desc) so that on a shared
    start the longer, more specific match is kept.  The input order breaks
    any remaining tie.
    """
    ordered = sorted(candidates, key=lambda e: (e.start, -e.length))
    kept: List[ExtractedEntity] = []
    last_end = -1
    for cand in ordered:
        if cand.start >= last_end:
            kept.append(cand)
            last_end = cand.end
    return kept


def extract_rule_based(text: str) -> List[ExtractedEntity]:
    """Run every rule pattern over *text* and return non-overlapping candidates."""
    candidates: List[ExtractedEntity] = []
    for entity_type, pattern in RULE_PATTERNS:
        for match in pattern.finditer(text):
            raw = match.group(1)
            start = match.start(1)
            if entity_type == "person":
                raw, offset = _trim_stop_tokens(raw)
                start += offset
            name = raw.strip()
            if not name:
                continue

            min_len = 3 if entity_type == "project" else 2
            if len(name) < min_len or is_stop_word(name):
                continue

            end = start + len(name)
            candidates.append(ExtractedEntity(
                name=name,
                entity_type=entity_type,
                mention_text=name if entity_type == "person" else match.group(0).strip(),
                start=start,
                end=end,
                confidence=calculate_confidence(name, entity_type, text),
                context=_context(text, start, end),
                method="regex",
            ))
    return resolve_overlaps(candidates)


def has_relationship_indicator(text: str) -> bool:
    return any(p.search(text) for p in RELATIONSHIP_INDICATORS)


def should_invoke_model(
    entities: Sequence[ExtractedEntity],
    text: str,
    options: Optional[ExtractionOptions] = None,
    min_confidence: float = 0.6,
) -> bool:
    """Decide whether the rule-based result needs model augmentation."""
    options = options or ExtractionOptions()
    if options.regex_only:
        return False
    if options.force_model or not entities:
        return True

    if has_relationship_indicator(text) and not any(
        e.entity_type == "person" for e in entities
    ):
        return True

    threshold = options.min_confidence if options.min_confidence is not None else min_confidence
    mean = sum(e.confidence for e in entities) / len(entities)
    return mean < threshold


def parse_model_output(content: Optional[str]) -> ModelOutput:
    """Validate raw model text into ``ParsedEntities`` or ``InvalidOutput``.

    The first-to-last bracket span is decoded as JSON; items that fail the
    schema (name, type enum, numeric confidence >= 0.3, not a stop word) are
    dropped individually.
    """
    match = _JSON_ARRAY_RE.search(content or "")
    if not match:
        return InvalidOutput("no JSON array in model output")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        return InvalidOutput(f"malformed JSON: {exc.msg}")
    if not isinstance(data, list):
        return InvalidOutput("top-level JSON value is not an array")

    entities: List[ModelEntity] = []
    for item in data:
        if not isinstance(item, dict):
            continue

        name = item.get("name")
        if not isinstance(name, str) or len(name.strip()) < 2:
            continue
        name = name.strip()

        entity_type = item.get("type")
        if not isinstance(entity_type, str) or entity_type.lower() not in ENTITY_TYPES:
            continue

        confidence = item.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            continue
        if not math.isfinite(confidence) or confidence < MODEL_MIN_CONFIDENCE:
            continue

        if is_stop_word(name):
            continue

        relationship = item.get("relationship")
        if not isinstance(relationship, str) or relationship.strip().lower() in ("", "null", "none"):
            relationship = None
        else:
            relationship = relationship.strip()

        mention = item.get("mentionText")
        entities.append(ModelEntity(
            name=name,
            entity_type=entity_type.lower(),
            confidence=max(MODEL_MIN_CONFIDENCE, min(1.0, float(confidence))),
            relationship=relationship,
            mention_text=mention.strip() if isinstance(mention, str) and mention.strip() else None,
        ))

    return ParsedEntities(tuple(entities))


def merge_extractions(
    rule_based: Sequence[ExtractedEntity],
    model_based: Sequence[ModelEntity],
    text: str,
) -> List[ExtractedEntity]:
    """Add model entities not already covered by a rule-based name, sorted by position."""
    merged = list(rule_based)
    covered = [e.name.lower() for e in rule_based]
    lowered = text.lower()

    for proposed in model_based:
        key = proposed.name.lower()
        if any(key in name or name in key for name in covered):
            continue

        idx = lowered.find(key)
        start = idx if idx >= 0 else 0
        end = start + len(proposed.name)
        merged.append(ExtractedEntity(
            name=proposed.name,
            entity_type=proposed.entity_type,
            mention_text=proposed.mention_text or proposed.name,
            start=start,
            end=end,
            confidence=proposed.confidence,
            context=_context(text, start, end) if idx >= 0 else proposed.mention_text,
            relationship=proposed.relationship,
            method="llm",
        ))
        covered.append(key)

    merged.sort(key=lambda e: e.start)
    return merged


def correct_entity_types(entities: Sequence[ExtractedEntity]) -> List[ExtractedEntity]:
    """Override types when the name carries a strong indicator token."""
    corrected: List[ExtractedEntity] = []
    for entity in entities:
        forced = None
        for token in reversed(entity.name.split()):
            forced = TYPE_INDICATORS.get(token.strip(".,;:'\"()").lower())
            if forced:
                break
        if forced and forced != entity.entity_type:
            logger.debug("Type correction: %s %s -> %s", entity.name, entity.entity_type, forced)
            entity = replace(entity, entity_type=forced)
        corrected.append(entity)
    return corrected


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class EntityExtractor:
    """Rule-based extraction, augmented by the completion model when it helps.

    *completer* is anything with an async ``complete(messages, temperature,
    max_tokens) -> str``; without one, extraction is rule-based only.
    """

    def __init__(self, completer: Any = None, config: Optional[Config] = None) -> None:
        self.completer = completer
        self.config = config or load_config()

    def extract_rule_based(self, text: str) -> List[ExtractedEntity]:
        return extract_rule_based(text)

    async def extract(
        self, text: str, options: Optional[ExtractionOptions] = None
    ) -> List[ExtractedEntity]:
        """Return ordered, type-corrected entity candidates for *text*."""
        if not text or not text.strip():
            raise ValueError("text must be non-empty")

        rule_based = extract_rule_based(text)
        use_model = self.completer is not None and should_invoke_model(
            rule_based, text, options, self.config.min_regex_confidence
        )
        if not use_model:
            return correct_entity_types(rule_based)

        model_based = await self._extract_with_model(text)
        logger.debug(
            "Extraction: %d rule-based, %d model-based candidates",
            len(rule_based), len(model_based),
        )
        return correct_entity_types(merge_extractions(rule_based, model_based, text))

    async def _extract_with_model(self, text: str) -> List[ModelEntity]:
        messages = [
            {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
            {"role": "user", "content": text},
        ]
        try:
            content = await asyncio.wait_for(
                self.completer.complete(
                    messages,
                    temperature=self.config.llm_extraction_temperature,
                    max_tokens=self.config.llm_extraction_max_tokens,
                ),
                timeout=self.config.llm_timeout_seconds,
            )
        except (CompletionError, asyncio.TimeoutError) as exc:
            logger.warning("Model extraction unavailable, using rule-based result: %s", exc)
            metrics.record_model_call("extraction", "error")
            return []

        parsed = parse_model_output(content)
        if isinstance(parsed, InvalidOutput):
            logger.warning("Discarding model extraction output: %s", parsed.reason)
            metrics.record_model_call("extraction", "invalid")
            return []

        metrics.record_model_call("extraction", "ok")
        return list(parsed.entities)
