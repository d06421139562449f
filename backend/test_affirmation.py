"""
Tests for the affirmation policy.

Run: pytest test_affirmation.py
"""

import pytest

from aac_models import ContextClassification, ContextType
from affirmation import (
    AffirmationConfig,
    AffirmationMethod,
    affirm_context,
    alternatives_for,
    full_picker,
)


def classify(primary, confidence, secondary=()):
    return ContextClassification(
        primary_context=primary,
        confidence_score=confidence,
        secondary_contexts=tuple(secondary),
    )


def test_high_confidence_is_auto_affirmed():
    result = affirm_context(classify(ContextType.PLAYGROUND, 0.9))

    assert result.affirmed
    assert result.method == AffirmationMethod.AUTO
    assert result.final_context == ContextType.PLAYGROUND
    assert result.show_ui is None


def test_threshold_boundaries_are_inclusive():
    assert affirm_context(classify(ContextType.CLASSROOM, 0.85)).method == AffirmationMethod.AUTO
    assert affirm_context(classify(ContextType.CLASSROOM, 0.6)).method == AffirmationMethod.QUICK_CONFIRM
    assert affirm_context(classify(ContextType.CLASSROOM, 0.3)).method == AffirmationMethod.DISAMBIGUATION
    assert affirm_context(classify(ContextType.CLASSROOM, 0.29)).method == AffirmationMethod.MANUAL


def test_medium_confidence_asks_yes_no():
    result = affirm_context(classify(ContextType.RESTAURANT_COUNTER, 0.7))

    assert not result.affirmed
    assert result.final_context is None
    assert result.show_ui.type == "binary"
    assert result.show_ui.prompt == "Are you at a Restaurant Counter?"
    yes, no = result.ui_options
    assert (yes.label, yes.icon, yes.context) == ("Yes", "✓", ContextType.RESTAURANT_COUNTER)
    assert (no.label, no.icon, no.action) == ("No", "✗", "show_alternatives")


def test_low_confidence_offers_top_guesses():
    result = affirm_context(classify(
        ContextType.HOME_KITCHEN, 0.4,
        secondary=[ContextType.HOME_KITCHEN, ContextType.HOME_LIVING, ContextType.CLASSROOM, ContextType.BATHROOM],
    ))

    assert result.show_ui.type == "multi_choice"
    assert result.show_ui.prompt == "Where are you?"
    assert [o.context for o in result.ui_options] == [
        ContextType.HOME_KITCHEN, ContextType.HOME_LIVING, ContextType.CLASSROOM,
    ]
    assert [o.label for o in result.ui_options] == ["Home Kitchen", "Home Living", "Classroom"]
    assert all(o.icon == "📍" for o in result.ui_options)


def test_very_low_confidence_shows_full_picker():
    result = affirm_context(classify(ContextType.STORE_CHECKOUT, 0.1))

    assert result.method == AffirmationMethod.MANUAL
    assert result.show_ui == full_picker()
    assert result.show_ui.prompt == "Choose your situation"
    assert len(result.ui_options) == 6


@pytest.mark.parametrize("confidence", [0.0, 0.5, 0.99])
def test_unknown_is_feelings_mode_at_any_confidence(confidence):
    result = affirm_context(classify(ContextType.UNKNOWN, confidence))

    assert result.affirmed
    assert result.method == AffirmationMethod.FEELINGS
    assert result.final_context == ContextType.UNKNOWN


def test_custom_thresholds():
    config = AffirmationConfig(auto_threshold=0.5, quick_confirm_threshold=0.4, max_choices=1)

    assert affirm_context(classify(ContextType.GREETING, 0.55), config).affirmed
    result = affirm_context(classify(ContextType.GREETING, 0.35, [ContextType.PLAYGROUND]), config)
    assert [o.context for o in result.ui_options] == [ContextType.GREETING]


def test_alternatives_exclude_rejected_primary():
    ui = alternatives_for(classify(
        ContextType.PLAYGROUND, 0.7, secondary=[ContextType.PLAYGROUND, ContextType.CLASSROOM],
    ))

    assert ui.type == "multi_choice"
    assert [o.context for o in ui.options] == [ContextType.CLASSROOM]


def test_alternatives_without_secondaries_fall_back_to_picker():
    assert alternatives_for(classify(ContextType.PLAYGROUND, 0.7)) == full_picker()


def test_ui_serializes():
    payload = affirm_context(classify(ContextType.BATHROOM, 0.65)).show_ui.to_dict()

    assert payload["type"] == "binary"
    assert payload["options"][0] == {"label": "Yes", "icon": "✓", "context": "bathroom", "action": None}
    assert payload["options"][1]["context"] is None
