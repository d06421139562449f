"""
Shared data types for the Glimpse AAC backend.

Context labels, classifier output and the tile shapes that flow from the
static catalog through the grid generator to the UI.
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class ContextType(str, Enum):
    """Closed set of situations the classifier may report."""
    RESTAURANT_COUNTER = "restaurant_counter"
    RESTAURANT_TABLE = "restaurant_table"
    PLAYGROUND = "playground"
    CLASSROOM = "classroom"
    HOME_KITCHEN = "home_kitchen"
    HOME_LIVING = "home_living"
    STORE_CHECKOUT = "store_checkout"
    MEDICAL_OFFICE = "medical_office"
    BATHROOM = "bathroom"
    GREETING = "greeting"
    # Also "feelings / selfie mode"
    UNKNOWN = "unknown"

    @property
    def category(self) -> str:
        """Coarse category: the first underscore-delimited token."""
        return self.value.split("_")[0]

    @classmethod
    def parse(cls, label) -> Optional["ContextType"]:
        """
        Map a free-form label onto the enum.

        Returns None for anything outside the closed set, so garbage labels
        from the model never reach the stabilizer.
        """
        if isinstance(label, ContextType):
            return label
        if not isinstance(label, str):
            return None
        normalized = re.sub(r"[\s\-]+", "_", label.strip().lower())
        if not normalized:
            return None
        try:
            return cls(normalized)
        except ValueError:
            return CONTEXT_ALIASES.get(normalized)


# Short labels used by the live prompt
CONTEXT_ALIASES = {
    "restaurant": ContextType.RESTAURANT_COUNTER,
    "kitchen": ContextType.HOME_KITCHEN,
    "home": ContextType.HOME_LIVING,
    "living_room": ContextType.HOME_LIVING,
    "store": ContextType.STORE_CHECKOUT,
    "shop": ContextType.STORE_CHECKOUT,
    "medical": ContextType.MEDICAL_OFFICE,
    "doctor": ContextType.MEDICAL_OFFICE,
    "school": ContextType.CLASSROOM,
    "park": ContextType.PLAYGROUND,
    "restroom": ContextType.BATHROOM,
    "feelings": ContextType.UNKNOWN,
    "selfie": ContextType.UNKNOWN,
}


def format_context(context: Optional[ContextType]) -> str:
    """Human readable label: restaurant_counter -> Restaurant Counter."""
    if context is None:
        return "Unknown"
    value = context.value if isinstance(context, ContextType) else str(context)
    return " ".join(word.capitalize() for word in value.split("_"))


def normalize_entity(entity: str) -> str:
    """Lowercase and join words with underscores (boost table key format)."""
    return re.sub(r"\s+", "_", entity.strip().lower())


@dataclass(frozen=True)
class ContextClassification:
    """One model inference result for a single frame or turn."""
    primary_context: ContextType
    confidence_score: float
    secondary_contexts: Tuple[ContextType, ...] = ()
    entities_detected: Tuple[str, ...] = ()
    situation_inference: str = ""
    social_cue: Optional[str] = None
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TileDefinition:
    """Static phrase template owned by the catalog."""
    id: str
    label: str
    tts: Optional[str]  # None for action tiles
    emoji: str
    priority: int
    always_show: bool = False
    action: Optional[str] = None  # "expand_grid" | "navigate"


@dataclass(frozen=True)
class DisplayTile:
    """UI-facing projection of a tile."""
    id: str
    text: str
    tts: Optional[str]
    emoji: str
    is_core: bool = False
    is_suggested: bool = False
    relevance_score: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "tts": self.tts,
            "emoji": self.emoji,
            "is_core": self.is_core,
            "is_suggested": self.is_suggested,
            "relevance_score": self.relevance_score,
        }


@dataclass(frozen=True)
class Place:
    """Nearby place record returned by the places lookup."""
    name: str
    types: List[str] = field(default_factory=list)
    address: Optional[str] = None
