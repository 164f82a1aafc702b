"""
Model provider gateway.

One interface over interchangeable classification/extraction backends. A
provider turns raw model text into the same normalized shapes whatever model
produced it, and raises only two kinds of error:

- BackendUnreachableError: network, timeout, auth or quota failures
- ProviderResponseInvalidError: output that is not the JSON we asked for

Retries are not done here; the enrichment pipeline owns them.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any, Sequence

import structlog
from pydantic import BaseModel, Field

from mnemo.core.exceptions import ProviderResponseInvalidError
from mnemo.models.schemas import BackendHealth, ClassificationLabel, Memory, RelationKind
from mnemo.monitoring.metrics import track_provider_call

logger = structlog.get_logger(__name__)


# =============================================================================
# Output Shapes
# =============================================================================


class Classification(BaseModel):
    """Normalized output of ``classify``."""

    label: ClassificationLabel
    concepts: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class RelationCandidate(BaseModel):
    """A relation proposed by ``extract_relations``."""

    source_id: str
    target_id: str
    kind: RelationKind = RelationKind.RELATED_TO
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


# =============================================================================
# Prompts
# =============================================================================

CLASSIFY_PROMPT = """Classify this memory entry. Return ONLY a JSON object with this exact structure:

{{
  "label": "technical|emotional|procedural|factual|other",
  "concepts": ["concept1", "concept2", "concept3"],
  "confidence": 0.85
}}

Classification guidelines:
- technical: code, systems, tools, debugging details
- emotional: feelings, experiences, relationships
- procedural: how-tos, workflows, step-by-step methods
- factual: objective information, definitions, reference facts
- other: anything that fits none of the above

Extract 2-5 key concepts as short noun phrases.

Memory:
{text}

Return ONLY the JSON, no explanation."""

RELATIONS_PROMPT = """Find relationships between these memories. Return ONLY a JSON object:

{{
  "relations": [
    {{"source": "<memory id>", "target": "<memory id>", "kind": "related_to|elaborates|depends_on|contradicts|same_topic", "confidence": 0.8}}
  ]
}}

Only use ids from the list below. Omit pairs that are unrelated. Return an empty list if none are related.

Memories:
{memories}

Return ONLY the JSON, no explanation."""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


# =============================================================================
# Normalization
# =============================================================================


def parse_json_response(provider: str, text: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating code fences and chatter."""
    text = (text or "").strip()

    # Strip markdown code fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise ProviderResponseInvalidError(provider, "No JSON object in response", {"response": text[:200]})
        try:
            parsed = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise ProviderResponseInvalidError(provider, f"Invalid JSON: {e}", {"response": text[:200]})

    if not isinstance(parsed, dict):
        raise ProviderResponseInvalidError(provider, "Response is not a JSON object", {"response": text[:200]})
    return parsed


def clamp_confidence(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return max(0.0, min(1.0, number))


def normalize_label(value: Any) -> ClassificationLabel:
    try:
        return ClassificationLabel(str(value).strip().lower())
    except ValueError:
        return ClassificationLabel.OTHER


def normalize_kind(value: Any) -> RelationKind:
    cleaned = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return RelationKind(cleaned)
    except ValueError:
        return RelationKind.RELATED_TO


def normalize_concepts(values: Any) -> list[str]:
    """Deduplicate case-insensitively, keeping the first spelling seen."""
    if not isinstance(values, list):
        return []
    seen: dict[str, str] = {}
    for value in values:
        if not isinstance(value, str):
            continue
        cleaned = value.strip()
        if cleaned and cleaned.lower() not in seen:
            seen[cleaned.lower()] = cleaned
    return list(seen.values())


# =============================================================================
# Provider Interface
# =============================================================================


class ModelProvider(ABC):
    """
    Base class for model providers.

    Subclasses implement ``_complete`` (prompt in, raw text out) plus
    ``health_check`` and ``close``. Prompting and normalization live here so
    every provider returns identical shapes.
    """

    name: str = "provider"

    def __init__(self, model: str, max_input_chars: int = 4000) -> None:
        self.model = model
        self.max_input_chars = max_input_chars

    @abstractmethod
    async def _complete(self, prompt: str) -> str:
        """Send one prompt and return the raw text response."""

    @abstractmethod
    async def health_check(self) -> BackendHealth:
        """Check reachability without raising."""

    async def close(self) -> None:
        pass

    def _validate_input(self, text: str) -> None:
        if not text or not text.strip():
            raise ValueError("text must not be empty")
        if len(text) > self.max_input_chars:
            raise ValueError(
                f"text is {len(text)} chars, longer than the {self.max_input_chars} char limit"
            )

    async def classify(self, text: str) -> Classification:
        """Classify one text into the closed label set and extract its concepts."""
        self._validate_input(text)
        with track_provider_call(self.name, "classify"):
            raw = await self._complete(CLASSIFY_PROMPT.format(text=text))
            parsed = parse_json_response(self.name, raw)

        if "label" not in parsed and "memory_type" not in parsed:
            raise ProviderResponseInvalidError(self.name, "Missing label in classification", {"response": parsed})

        classification = Classification(
            label=normalize_label(parsed.get("label", parsed.get("memory_type"))),
            concepts=normalize_concepts(parsed.get("concepts", parsed.get("extracted_concepts"))),
            confidence=clamp_confidence(parsed.get("confidence")),
        )
        logger.debug(
            "memory_classified",
            provider=self.name,
            label=classification.label.value,
            concepts=len(classification.concepts),
        )
        return classification

    async def extract_relations(self, memories: Sequence[Memory]) -> list[RelationCandidate]:
        """Propose relations between the given memories.

        Candidates referring to unknown ids or to the same memory twice are
        dropped; duplicate pairs keep the highest confidence.
        """
        if len(memories) < 2:
            return []

        listing = "\n".join(
            f"- id: {memory.id}\n  topic: {memory.topic}\n  content: {memory.content[:500]}"
            for memory in memories
        )
        prompt = RELATIONS_PROMPT.format(memories=listing)
        if len(prompt) > self.max_input_chars * 2:
            prompt = prompt[: self.max_input_chars * 2]

        with track_provider_call(self.name, "extract_relations"):
            raw = await self._complete(prompt)
            parsed = parse_json_response(self.name, raw)

        items = parsed.get("relations")
        if not isinstance(items, list):
            raise ProviderResponseInvalidError(self.name, "Missing relations list", {"response": parsed})

        known = {memory.id for memory in memories}
        best: dict[tuple[str, str, RelationKind], RelationCandidate] = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            source = str(item.get("source", item.get("source_id", "")))
            target = str(item.get("target", item.get("target_id", "")))
            if source not in known or target not in known or source == target:
                continue
            candidate = RelationCandidate(
                source_id=source,
                target_id=target,
                kind=normalize_kind(item.get("kind", "related_to")),
                confidence=clamp_confidence(item.get("confidence")),
            )
            key = (source, target, candidate.kind)
            if key not in best or best[key].confidence < candidate.confidence:
                best[key] = candidate

        return list(best.values())
