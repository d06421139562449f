"""
Gemini REST classifier for Glimpse

Single-shot image -> context classification, used when the live channel is
off or unavailable. Also generates bespoke phrases for a focused entity.
"""

import base64
import binascii
import hashlib
import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from typing import List, Optional

from cachetools import TTLCache
from dotenv import load_dotenv
from google import genai
from google.genai.types import GenerateContentConfig, Part

from aac_models import ContextClassification, ContextType, DisplayTile, normalize_entity
from json_extract import ClassificationParseError, extract_json_object, parse_classification
from tile_catalog import FALLBACK_ENTITY_PHRASES

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_CLASSIFIER_MODEL = "gemini-2.0-flash"
DEFAULT_PHRASE_MODEL = "gemini-2.0-flash"

CLASSIFIER_PROMPT = """Classify where this photo was taken from the point of view of a child who uses an AAC device.
Reply with JSON only:
{
  "primaryContext": one of [%s],
  "confidenceScore": 0.0-1.0,
  "secondaryContexts": [up to 2 other likely contexts],
  "entitiesDetected": [short snake_case names of notable objects or people],
  "situationInference": "one short sentence"
}
Use "unknown" for selfies or when the camera faces the child."""

ENTITY_PHRASE_PROMPT = """A non-verbal child is looking at: "{entity}"{where}.
Suggest 4-6 short things the child might want to say about it.
First person, labels of 1-3 words, tts as a full friendly sentence, one emoji each."""

ENTITY_PHRASE_SCHEMA = {
    "type": "object",
    "properties": {
        "phrases": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "label": {"type": "string"},
                    "tts": {"type": "string"},
                    "emoji": {"type": "string"},
                },
                "required": ["label", "tts", "emoji"],
            },
        }
    },
    "required": ["phrases"],
}


class ClassifierError(Exception):
    """Classification could not be produced (network, quota, bad output)."""


class RateLimiter:
    """Simple sliding window rate limiter."""

    def __init__(self, max_calls: int = 30, window_seconds: float = 60.0):
        """
        Args:
            max_calls: Maximum calls allowed in the window
            window_seconds: Time window in seconds
        """
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.calls = deque()

    def is_allowed(self) -> bool:
        """Check if a call is allowed and record it if so."""
        now = time.time()

        while self.calls and self.calls[0] < now - self.window_seconds:
            self.calls.popleft()

        if len(self.calls) < self.max_calls:
            self.calls.append(now)
            return True
        return False

    def wait_time(self) -> float:
        """Return seconds until next call is allowed (0 if allowed now)."""
        if len(self.calls) < self.max_calls:
            return 0.0
        oldest = self.calls[0]
        return max(0.0, oldest + self.window_seconds - time.time())


def make_genai_client() -> genai.Client:
    """
    Gemini client from the environment: API key first, then Vertex AI.

    Raises:
        ValueError: neither GEMINI_API_KEY nor GOOGLE_CLOUD_PROJECT is set
    """
    api_key = os.environ.get("GEMINI_API_KEY")
    if api_key:
        return genai.Client(api_key=api_key)

    project = os.environ.get("GOOGLE_CLOUD_PROJECT")
    location = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
    if not project:
        raise ValueError("GEMINI_API_KEY or GOOGLE_CLOUD_PROJECT not found in environment")

    return genai.Client(
        vertexai=True,
        project=project,
        location=location
    )


def decode_image(image_data: str) -> bytes:
    """Decode base64 image, handling data URL prefix."""
    if image_data.startswith("data:"):
        image_data = image_data.split(",", 1)[1]
    return base64.b64decode(image_data)


@dataclass
class ClassificationResult:
    """Classification with timing metrics."""
    classification: ContextClassification
    latency_ms: float
    cached: bool


class GeminiContextClassifier:
    """
    Image -> ContextClassification via generate_content.

    Identical frames (same bytes + hint) within the cache TTL are served
    from memory and don't count against the rate limit.
    """

    def __init__(
        self,
        client=None,
        model: Optional[str] = None,
        phrase_model: str = DEFAULT_PHRASE_MODEL,
        cache_ttl: int = 30,
        cache_maxsize: int = 100,
        rate_limit_calls: int = 30,
        rate_limit_window: float = 60.0
    ):
        self.client = client if client is not None else make_genai_client()
        self.model = model or os.environ.get("GEMINI_CLASSIFIER_MODEL", DEFAULT_CLASSIFIER_MODEL)
        self.phrase_model = phrase_model
        self.cache = TTLCache(maxsize=cache_maxsize, ttl=cache_ttl)
        self.rate_limiter = RateLimiter(max_calls=rate_limit_calls, window_seconds=rate_limit_window)

    def _cache_key(self, image_bytes: bytes, location_hint: Optional[str]) -> str:
        image_hash = hashlib.md5(image_bytes).hexdigest()
        return f"{image_hash}_{location_hint or ''}"

    def _build_prompt(self, location_hint: Optional[str]) -> str:
        labels = ", ".join(c.value for c in ContextType)
        prompt = CLASSIFIER_PROMPT % labels
        if location_hint:
            prompt += f"\nThe child is at or near: {location_hint}."
        return prompt

    async def classify(self, image_base64: str, location_hint: Optional[str] = None) -> ClassificationResult:
        """
        Classify one camera frame.

        Args:
            image_base64: Base64 JPEG (data URL prefix allowed)
            location_hint: Nearby place name, if known

        Returns:
            ClassificationResult

        Raises:
            ClassifierError: on any failure, including rate limiting
        """
        start_time = time.perf_counter()

        try:
            image_bytes = decode_image(image_base64)
        except (binascii.Error, ValueError) as e:
            raise ClassifierError(f"Invalid image data: {e}") from e

        cache_key = self._cache_key(image_bytes, location_hint)
        if cache_key in self.cache:
            return ClassificationResult(
                classification=self.cache[cache_key],
                latency_ms=(time.perf_counter() - start_time) * 1000,
                cached=True
            )

        if not self.rate_limiter.is_allowed():
            wait = self.rate_limiter.wait_time()
            raise ClassifierError(f"Rate limited, try again in {wait:.1f}s")

        image_part = Part.from_bytes(data=image_bytes, mime_type="image/jpeg")
        config = GenerateContentConfig(
            temperature=0.1,
            max_output_tokens=512,
            response_mime_type="application/json"
        )

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=[{"role": "user", "parts": [image_part, {"text": self._build_prompt(location_hint)}]}],
                config=config
            )
        except Exception as e:
            raise ClassifierError(f"Gemini request failed: {e}") from e

        data = extract_json_object(getattr(response, "text", None))
        if data is None:
            raise ClassifierError("No JSON in classifier response")
        try:
            classification = parse_classification(data)
        except ClassificationParseError as e:
            raise ClassifierError(str(e)) from e

        self.cache[cache_key] = classification
        latency = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"🤖 Classified {classification.primary_context.value} "
            f"({classification.confidence_score:.2f}) in {latency:.0f}ms"
        )

        return ClassificationResult(classification=classification, latency_ms=latency, cached=False)

    async def generate_entity_phrases(self, entity: str, context: Optional[ContextType] = None) -> List[DisplayTile]:
        """
        LLM phrases about one entity. Falls back to generic phrases on failure.
        """
        key = normalize_entity(entity)
        where = f" while at a {context.value.replace('_', ' ')}" if context else ""
        config = GenerateContentConfig(
            temperature=0.7,
            response_mime_type="application/json",
            response_schema=ENTITY_PHRASE_SCHEMA
        )

        try:
            response = await self.client.aio.models.generate_content(
                model=self.phrase_model,
                contents=ENTITY_PHRASE_PROMPT.format(entity=entity.replace("_", " "), where=where),
                config=config
            )
            data = extract_json_object(getattr(response, "text", None)) or {}
            phrases = [
                p for p in data.get("phrases") or []
                if isinstance(p, dict) and isinstance(p.get("label"), str) and p["label"].strip()
            ][:6]
            if not phrases:
                raise ClassifierError("No phrases in response")
        except Exception as e:
            logger.error(f"❌ Entity phrases failed for {key}: {e}", exc_info=True)
            return fallback_entity_phrases(key)

        logger.info(f"✓ {len(phrases)} phrases for {key}")
        return [
            DisplayTile(
                id=f"entity_{key}_{i}",
                text=p["label"].strip(),
                tts=p.get("tts") or p["label"],
                emoji=p.get("emoji") or "💬",
                is_suggested=True,
                relevance_score=90 - i * 5,
            )
            for i, p in enumerate(phrases)
        ]


def fallback_entity_phrases(entity: str) -> List[DisplayTile]:
    key = normalize_entity(entity)
    return [
        DisplayTile(
            id=f"entity_{key}_{i}",
            text=label,
            tts=tts,
            emoji=emoji,
            is_suggested=True,
            relevance_score=80 - i * 5,
        )
        for i, (label, tts, emoji) in enumerate(FALLBACK_ENTITY_PHRASES)
    ]
