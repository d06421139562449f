"""
Affirmation Policy for Glimpse

Decides WHETHER a classification can be trusted as-is or the user should
confirm it first. Pure: no I/O, no state.

    >= auto          accept silently
    >= quick_confirm yes/no prompt
    >= disambiguate  pick from the top guesses
    below            full location picker
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from aac_models import ContextClassification, ContextType, format_context
from tile_catalog import LOCATION_OPTIONS


class AffirmationMethod(Enum):
    """How a classification was (or should be) affirmed."""
    AUTO = "auto"
    QUICK_CONFIRM = "quick_confirm"
    DISAMBIGUATION = "disambiguation"
    MANUAL = "manual"
    FEELINGS = "feelings"


@dataclass
class AffirmationConfig:
    """Tunable confidence bands."""
    auto_threshold: float = 0.85
    quick_confirm_threshold: float = 0.6
    disambiguation_threshold: float = 0.3
    max_choices: int = 3


@dataclass(frozen=True)
class UiOption:
    label: str
    icon: str
    context: Optional[ContextType] = None
    action: Optional[str] = None  # "show_alternatives"

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "icon": self.icon,
            "context": self.context.value if self.context else None,
            "action": self.action,
        }


@dataclass(frozen=True)
class AffirmationUI:
    type: str  # "binary" | "multi_choice" | "full_picker"
    prompt: str
    options: tuple = ()

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "prompt": self.prompt,
            "options": [o.to_dict() for o in self.options],
        }


@dataclass(frozen=True)
class AffirmationResult:
    """Result of affirmation evaluation."""
    affirmed: bool
    method: AffirmationMethod
    final_context: Optional[ContextType] = None
    show_ui: Optional[AffirmationUI] = None

    @property
    def ui_options(self) -> tuple:
        return self.show_ui.options if self.show_ui else ()


def _choice_contexts(classification: ContextClassification, limit: int) -> List[ContextType]:
    choices: List[ContextType] = []
    for context in (classification.primary_context, *classification.secondary_contexts):
        if context not in choices:
            choices.append(context)
        if len(choices) >= limit:
            break
    return choices


def affirm_context(
    classification: ContextClassification,
    config: AffirmationConfig | None = None
) -> AffirmationResult:
    """
    Pick the affirmation method for a classification.

    Args:
        classification: Latest classifier output
        config: Optional AffirmationConfig (defaults if None)

    Returns:
        AffirmationResult; show_ui is set whenever affirmed is False
    """
    if config is None:
        config = AffirmationConfig()

    primary = classification.primary_context
    confidence = classification.confidence_score

    # Feelings mode never asks
    if primary == ContextType.UNKNOWN:
        return AffirmationResult(
            affirmed=True,
            method=AffirmationMethod.FEELINGS,
            final_context=ContextType.UNKNOWN,
        )

    if confidence >= config.auto_threshold:
        return AffirmationResult(
            affirmed=True,
            method=AffirmationMethod.AUTO,
            final_context=primary,
        )

    if confidence >= config.quick_confirm_threshold:
        return AffirmationResult(
            affirmed=False,
            method=AffirmationMethod.QUICK_CONFIRM,
            show_ui=AffirmationUI(
                type="binary",
                prompt=f"Are you at a {format_context(primary)}?",
                options=(
                    UiOption("Yes", "✓", context=primary),
                    UiOption("No", "✗", action="show_alternatives"),
                ),
            ),
        )

    if confidence >= config.disambiguation_threshold:
        return AffirmationResult(
            affirmed=False,
            method=AffirmationMethod.DISAMBIGUATION,
            show_ui=AffirmationUI(
                type="multi_choice",
                prompt="Where are you?",
                options=tuple(
                    UiOption(format_context(c), "📍", context=c)
                    for c in _choice_contexts(classification, config.max_choices)
                ),
            ),
        )

    return AffirmationResult(
        affirmed=False,
        method=AffirmationMethod.MANUAL,
        show_ui=full_picker(),
    )


def full_picker() -> AffirmationUI:
    return AffirmationUI(
        type="full_picker",
        prompt="Choose your situation",
        options=tuple(
            UiOption(label, emoji, context=context) for context, emoji, label in LOCATION_OPTIONS
        ),
    )


def alternatives_for(classification: ContextClassification) -> AffirmationUI:
    """Follow-up prompt after the user answers "No" to a quick confirm."""
    others = [c for c in classification.secondary_contexts if c != classification.primary_context]
    if not others:
        return full_picker()
    return AffirmationUI(
        type="multi_choice",
        prompt="Where are you?",
        options=tuple(
            UiOption(format_context(c), "📍", context=c) for c in others[:3]
        ),
    )
