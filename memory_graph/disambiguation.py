"""Same-name entity disambiguation.

Decides whether a freshly extracted mention refers to an entity that is
already stored under the same canonical name and type, or to a new one
(two different people called "Rick").

* No candidates: new entity.
* One candidate: relationship hints decide; when a hint is missing on either
  side the ``disambiguation_single_policy`` setting applies (``merge``
  assumes the same entity, ``strict`` creates a new one).
* Several candidates: a unique exact relationship match wins outright,
  otherwise the completion model picks a numbered candidate or ``NEW``.
  Any failure or unusable answer falls back to the most-mentioned candidate.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any, Optional, Sequence, Union

from . import metrics
from .config import Config, load_config
from .llm import CompletionError

if TYPE_CHECKING:
    from .entities import Entity
    from .extraction import ExtractedEntity

logger = logging.getLogger(__name__)

NEW_ENTITY = "NEW"

_ANSWER_RE = re.compile(r"\b(new|\d+)\b", re.IGNORECASE)

TIEBREAK_SYSTEM_PROMPT = """You decide whether a new mention refers to one of several known entities that share the same name.
Answer with ONLY the number of the matching candidate, or NEW if the mention is a different entity."""


def _norm(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = " ".join(value.split()).casefold()
    return value or None


def relationship_hint(entity: "Entity") -> Optional[str]:
    """The stored relationship hint of an entity, if any."""
    hint = entity.attributes.get("initial_relationship")
    return hint if isinstance(hint, str) and hint.strip() else None


def most_mentioned(candidates: Sequence["Entity"]) -> "Entity":
    """Deterministic fallback: highest mention_count, then oldest, then id."""
    return sorted(candidates, key=lambda e: (-e.mention_count, e.first_seen_at, e.id))[0]


def parse_tiebreak_answer(answer: Optional[str], candidate_count: int) -> Union[int, str, None]:
    """Parse a tie-break reply into a 0-based index, ``NEW_ENTITY`` or None (unusable)."""
    match = _ANSWER_RE.search(answer or "")
    if not match:
        return None
    token = match.group(1)
    if token.lower() == "new":
        return NEW_ENTITY
    index = int(token)
    if 1 <= index <= candidate_count:
        return index - 1
    return None


def build_tiebreak_prompt(candidate: "ExtractedEntity", existing: Sequence["Entity"]) -> str:
    lines = [
        f"New mention: {candidate.name}",
        f"Relationship: {candidate.relationship or 'unknown'}",
        f"Context: {candidate.context or candidate.mention_text}",
        "",
        "Candidates:",
    ]
    for i, entity in enumerate(existing, start=1):
        hint = relationship_hint(entity) or "unknown"
        line = f"{i}. {entity.name} (relationship: {hint}; mentioned {entity.mention_count} times)"
        if entity.description:
            line += f" - {entity.description}"
        lines.append(line)
    lines.append("")
    lines.append("Answer with the candidate number or NEW.")
    return "\n".join(lines)


class DisambiguationResolver:
    """``resolve(candidate, existing) -> existing entity id | None``."""

    def __init__(self, completer: Any = None, config: Optional[Config] = None) -> None:
        self.completer = completer
        self.config = config or load_config()

    async def resolve(
        self, candidate: "ExtractedEntity", existing: Sequence["Entity"]
    ) -> Optional[str]:
        if not existing:
            return None
        if len(existing) == 1:
            return self._resolve_single(candidate, existing[0])
        return await self._resolve_many(candidate, existing)

    def _resolve_single(self, candidate: "ExtractedEntity", entity: "Entity") -> Optional[str]:
        new_hint = _norm(candidate.relationship)
        old_hint = _norm(relationship_hint(entity))

        if new_hint and old_hint:
            return entity.id if new_hint == old_hint else None
        if (new_hint or old_hint) and self.config.disambiguation_single_policy == "strict":
            return None
        return entity.id

    async def _resolve_many(
        self, candidate: "ExtractedEntity", existing: Sequence["Entity"]
    ) -> Optional[str]:
        new_hint = _norm(candidate.relationship)
        if new_hint:
            exact = [e for e in existing if _norm(relationship_hint(e)) == new_hint]
            if len(exact) == 1:
                return exact[0].id

        fallback = most_mentioned(existing)
        if self.completer is None:
            return fallback.id

        messages = [
            {"role": "system", "content": TIEBREAK_SYSTEM_PROMPT},
            {"role": "user", "content": build_tiebreak_prompt(candidate, existing)},
        ]
        try:
            answer = await asyncio.wait_for(
                self.completer.complete(
                    messages,
                    temperature=0.0,
                    max_tokens=self.config.disambiguation_max_tokens,
                ),
                timeout=self.config.llm_timeout_seconds,
            )
        except (CompletionError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Disambiguation tie-break failed for %r, using most-mentioned %s: %s",
                candidate.name, fallback.id, exc,
            )
            metrics.record_model_call("disambiguation", "error")
            return fallback.id

        choice = parse_tiebreak_answer(answer, len(existing))
        if choice is None:
            logger.warning(
                "Unusable tie-break answer %r for %r, using most-mentioned %s",
                (answer or "")[:40], candidate.name, fallback.id,
            )
            metrics.record_model_call("disambiguation", "invalid")
            return fallback.id

        metrics.record_model_call("disambiguation", "ok")
        if choice == NEW_ENTITY:
            return None
        return existing[int(choice)].id
