"""
JSON extraction for model output.

Gemini tends to wrap JSON in prose or Markdown fences. extract_json_object()
digs the first usable object out of such text and never raises;
parse_classification() is the strict boundary that turns that object into a
ContextClassification.
"""

import json
import logging
import re
from typing import List, Optional

from aac_models import ContextClassification, ContextType, DisplayTile

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_GREEDY_RE = re.compile(r"\{[\s\S]*\}")


class ClassificationParseError(ValueError):
    """Model output could not be turned into a classification."""


def _loads_object(text: str) -> Optional[dict]:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def _balanced_candidates(text: str):
    """Yield every balanced {...} substring, one per opening brace."""
    for start, char in enumerate(text):
        if char != "{":
            continue
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            c = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif c == "\\":
                    escaped = True
                elif c == '"':
                    in_string = False
                continue
            if c == '"':
                in_string = True
            elif c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
                if depth == 0:
                    yield text[start:index + 1]
                    break


def extract_json_object(text) -> Optional[dict]:
    """
    Pull the first JSON object out of free text.

    Tries, in order: strict parse (after stripping a code fence),
    a balanced-brace scan, then a greedy regex. Returns None if nothing parses.
    """
    if not isinstance(text, str) or not text.strip():
        return None

    stripped = text.strip()
    fence = _FENCE_RE.search(stripped)
    if fence:
        stripped = fence.group(1).strip()

    data = _loads_object(stripped)
    if data is not None:
        return data

    for candidate in _balanced_candidates(stripped):
        data = _loads_object(candidate)
        if data is not None:
            return data

    match = _GREEDY_RE.search(stripped)
    if match:
        return _loads_object(match.group(0))
    return None


def _pick(data: dict, *keys, default=None):
    for key in keys:
        if key in data:
            return data[key]
    return default


def parse_classification(data) -> ContextClassification:
    """
    Validate a parsed model payload into a ContextClassification.

    Accepts {"context": {...}} or a flat object, camelCase or snake_case keys.

    Raises:
        ClassificationParseError: primary context missing/unknown or
            confidence not a number
    """
    if not isinstance(data, dict):
        raise ClassificationParseError("payload is not an object")

    body = data.get("context") if isinstance(data.get("context"), dict) else data

    raw_primary = _pick(body, "primaryContext", "primary_context", "context")
    primary = ContextType.parse(raw_primary)
    if primary is None:
        raise ClassificationParseError(f"unknown primary context: {raw_primary!r}")

    raw_confidence = _pick(body, "confidenceScore", "confidence_score", "confidence")
    if isinstance(raw_confidence, bool):
        raise ClassificationParseError("confidence must be a number")
    try:
        confidence = float(raw_confidence)
    except (TypeError, ValueError):
        raise ClassificationParseError(f"confidence must be a number: {raw_confidence!r}")
    if confidence != confidence:  # NaN
        raise ClassificationParseError("confidence must be a number")
    confidence = min(1.0, max(0.0, confidence))

    secondary = []
    for label in _pick(body, "secondaryContexts", "secondary_contexts", default=[]) or []:
        parsed = ContextType.parse(label)
        if parsed is not None:
            secondary.append(parsed)

    entities = [
        str(e) for e in (_pick(body, "entitiesDetected", "entities_detected", "entities", default=[]) or [])
        if isinstance(e, str) and e.strip()
    ]

    inference = _pick(body, "situationInference", "situation_inference", default="") or ""
    social_cue = _pick(body, "socialCue", "social_cue")

    return ContextClassification(
        primary_context=primary,
        confidence_score=confidence,
        secondary_contexts=tuple(secondary),
        entities_detected=tuple(entities),
        situation_inference=str(inference),
        social_cue=str(social_cue) if social_cue else None,
    )


def parse_live_tiles(data) -> List[DisplayTile]:
    """
    Validate a model-suggested tile array. Malformed entries are skipped.
    """
    if not isinstance(data, list):
        return []

    tiles = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            continue
        label = item.get("label") or item.get("text")
        if not isinstance(label, str) or not label.strip():
            continue
        tts = item.get("tts") if isinstance(item.get("tts"), str) else label
        relevance = _pick(item, "relevanceScore", "relevance_score")
        if isinstance(relevance, bool) or not isinstance(relevance, (int, float)):
            relevance = None
        tiles.append(DisplayTile(
            id=str(item.get("id") or f"live_{index}"),
            text=label.strip(),
            tts=tts,
            emoji=str(item.get("emoji") or "💬"),
            is_suggested=True,
            relevance_score=relevance,
        ))

    if len(tiles) < len(data):
        logger.debug(f"Dropped {len(data) - len(tiles)} malformed live tiles")
    return tiles
