"""
Tests for the context stabilizer reducer and its asyncio runner.

Run: pytest test_context_stabilizer.py
"""

import asyncio

from aac_models import ContextType, DisplayTile
from affirmation import AffirmationMethod
from context_stabilizer import (
    AffirmationConfirmed,
    AffirmationDismissed,
    ApplyPendingContext,
    BackgroundUpdate,
    ClassificationReceived,
    ClearNotification,
    ClearSessionLocation,
    ContextStabilizer,
    DismissShiftAlert,
    FocusEntity,
    HideLocationPicker,
    LiveSessionEnded,
    LiveSessionStarted,
    LiveTilesReceived,
    LockContext,
    ResetShiftCounter,
    SelectLocation,
    SetConnectionMode,
    SetEntities,
    SetEntityPhrases,
    SetFallbackTiles,
    SetLoading,
    SetSessionLocation,
    ShowLocationPicker,
    StabilizerConfig,
    StabilizerState,
    TriggerShiftRefetch,
    UnlockContext,
    display_tiles,
    reduce,
    state_to_dict,
)

PG = ContextType.PLAYGROUND
CL = ContextType.CLASSROOM
RC = ContextType.RESTAURANT_COUNTER

NO_GATE = StabilizerConfig(require_affirmation=False)


def run(events, config=NO_GATE, state=None, start=1000.0):
    state = state or StabilizerState()
    now = start
    for event in events:
        now += 1.0
        state = reduce(state, event, config, now)
    return state


def frame(make, primary, confidence=0.9, **kwargs):
    return ClassificationReceived(make(primary, confidence, **kwargs))


def showing(context):
    """State already displaying a context."""
    return run([SelectLocation(context), ClearSessionLocation()])


# =============================================================================
# Debounce
# =============================================================================

def test_two_matching_frames_open_a_transition(make_classification):
    first = run([frame(make_classification, PG)])
    assert first.pending_context == PG
    assert first.context_debounce_count == 1
    assert not first.context.transition_pending

    second = run([frame(make_classification, PG)], state=first)
    assert second.context.transition_pending
    assert second.context.current is None

    applied = reduce(second, ApplyPendingContext(), NO_GATE, 2000.0)
    assert applied.context.current == PG
    assert applied.pending_context is None
    assert not applied.context.transition_pending
    assert applied.notification.type == "context_changed"
    assert applied.notification.message == "Context updated: Playground"
    assert applied.notification.to_context == PG
    assert applied.context_tiles


def test_flicker_never_opens_a_transition(make_classification):
    state = StabilizerState()
    for context in (PG, CL, PG, CL, PG):
        state = run([frame(make_classification, context)], state=state)
        assert not state.context.transition_pending
        assert state.context_debounce_count == 1

    assert reduce(state, ApplyPendingContext(), NO_GATE) is state


def test_frame_matching_current_cancels_pending(make_classification):
    state = run([frame(make_classification, PG)], state=showing(CL))
    assert state.pending_context == PG

    state = run([frame(make_classification, CL)], state=state)
    assert state.pending_context is None
    assert state.context_debounce_count == 0
    assert state.context.current == CL


def test_new_label_clears_open_transition(make_classification):
    state = run([frame(make_classification, PG), frame(make_classification, PG), frame(make_classification, RC)])

    assert state.pending_context == RC
    assert not state.context.transition_pending
    assert reduce(state, ApplyPendingContext(), NO_GATE) is state


def test_higher_threshold_needs_more_frames(make_classification):
    config = StabilizerConfig(debounce_threshold=3, require_affirmation=False)
    state = run([frame(make_classification, PG)] * 2, config=config)
    assert not state.context.transition_pending
    assert state.context_debounce_count == 2

    state = run([frame(make_classification, PG)], config=config, state=state)
    assert state.context.transition_pending


def test_single_blip_resets_the_run(make_classification):
    config = StabilizerConfig(debounce_threshold=3, require_affirmation=False)
    state = StabilizerState()
    pending_after = []
    for context in (PG, CL, PG, PG, PG):
        state = run([frame(make_classification, context, 0.95)], config=config, state=state)
        pending_after.append(state.context.transition_pending)
        # Nothing becomes visible without the timer
        assert state.context.current is None

    assert pending_after == [False, False, False, False, True]
    assert state.pending_context == PG
    assert state.context_debounce_count == 3

    state = run([ApplyPendingContext()], config=config, state=state)
    assert state.context.current == PG
    assert state.context.previous is None


def test_previous_context_is_tracked(make_classification):
    state = run([frame(make_classification, PG)] * 2 + [ApplyPendingContext()], state=showing(CL))
    assert state.context.current == PG
    assert state.context.previous == CL


# =============================================================================
# Lock
# =============================================================================

def test_lock_freezes_visible_context(make_classification):
    state = run([LockContext(CL)], state=showing(PG))
    assert state.context_locked
    assert state.locked_context == CL
    assert state.context.current == CL
    assert state.notification.message == "Locked: Classroom"
    tiles = state.context_tiles

    state = run([frame(make_classification, PG, 0.9)] * 2, state=state)
    assert state.context.current == CL
    assert state.context_tiles == tiles
    assert state.pending_context is None
    assert state.background_context == PG
    assert state.background_confidence == 0.9
    assert state.major_shift_detected


def test_major_shift_is_sticky_until_dismissed(make_classification):
    state = run([LockContext(CL), frame(make_classification, PG, 0.9), frame(make_classification, CL, 0.4)])
    assert state.background_context == CL
    assert state.major_shift_detected

    state = run([DismissShiftAlert()], state=state)
    assert not state.major_shift_detected


def test_low_confidence_background_is_not_a_major_shift():
    state = run([LockContext(CL), BackgroundUpdate(PG, 0.5)])
    assert state.background_context == PG
    assert not state.major_shift_detected


def test_low_confidence_frames_leave_locked_tiles_alone(make_classification):
    locked = run([LockContext(CL)])
    state = locked
    for context, confidence in ((PG, 0.79), (RC, 0.5), (PG, 0.3), (PG, 0.79)):
        state = run([frame(make_classification, context, confidence)], state=state)

    assert state.context.current == CL
    assert state.context_tiles == locked.context_tiles
    assert not state.major_shift_detected
    assert state.pending_context is None
    assert state.background_context == PG

    state = run([ApplyPendingContext()], state=state)
    assert state.context_tiles == locked.context_tiles


def test_background_update_ignored_when_unlocked():
    state = showing(PG)
    assert reduce(state, BackgroundUpdate(CL, 0.99), NO_GATE) is state


def test_apply_pending_is_a_noop_while_locked(make_classification):
    state = run([frame(make_classification, PG)] * 2)
    assert state.context.transition_pending

    state = run([LockContext(CL)], state=state)
    assert reduce(state, ApplyPendingContext(), NO_GATE) is state


def test_unlock_keeps_tiles_and_resumes_scanning(make_classification):
    locked = run([LockContext(CL), frame(make_classification, PG, 0.95)])
    state = run([UnlockContext()], state=locked)

    assert not state.context_locked
    assert state.locked_context is None
    assert state.background_context is None
    assert not state.major_shift_detected
    assert state.context.current == CL
    assert state.context_tiles == locked.context_tiles
    assert state.notification.message == "Context unlocked - scanning..."

    state = run([frame(make_classification, PG)] * 2, state=state)
    assert state.context.transition_pending


def test_live_tiles_ignored_while_locked():
    state = run([LockContext(CL)])
    tiles = (DisplayTile("t1", "Hi", "Hi", "👋", is_suggested=True),)
    assert reduce(state, LiveTilesReceived(tiles), NO_GATE) is state


# =============================================================================
# Affirmation gate
# =============================================================================

def test_medium_confidence_waits_for_confirmation(make_classification):
    state = run([frame(make_classification, PG, 0.7)], config=StabilizerConfig())

    assert state.context.current is None
    assert state.pending_context is None
    assert state.affirmation.method == AffirmationMethod.QUICK_CONFIRM
    assert state.notification.type == "awaiting_confirmation"
    assert state.notification.message == "Are you at a Playground?"

    state = run([AffirmationConfirmed(PG)], config=StabilizerConfig(), state=state)
    assert state.context.current == PG
    assert state.affirmation is None
    assert state.notification.type == "context_confirmed"
    assert state.notification.message == "Confirmed: Playground"


def test_only_one_prompt_at_a_time(make_classification):
    config = StabilizerConfig()
    state = run([frame(make_classification, PG, 0.7), frame(make_classification, CL, 0.4)], config=config)

    assert state.affirmation.method == AffirmationMethod.QUICK_CONFIRM
    assert state.affirmation_source.primary_context == PG
    assert state.context.classification.primary_context == CL


def test_high_confidence_skips_the_prompt(make_classification):
    state = run([frame(make_classification, PG, 0.9)] * 2, config=StabilizerConfig())
    assert state.affirmation is None
    assert state.context.transition_pending


def test_frame_matching_current_skips_the_prompt(make_classification):
    state = run([frame(make_classification, PG, 0.4)], config=StabilizerConfig(), state=showing(PG))
    assert state.affirmation is None


def test_no_shows_alternatives(make_classification):
    config = StabilizerConfig()
    state = run([frame(make_classification, PG, 0.7, secondary=[CL, RC])], config=config)

    state = run([AffirmationDismissed(show_alternatives=True)], config=config, state=state)
    assert state.affirmation.show_ui.type == "multi_choice"
    assert [o.context for o in state.affirmation.show_ui.options] == [CL, RC]

    state = run([AffirmationDismissed()], config=config, state=state)
    assert state.affirmation is None
    assert state.context.current is None


def test_confirm_while_locked_only_closes_prompt(make_classification):
    config = StabilizerConfig()
    state = run([frame(make_classification, PG, 0.7), LockContext(CL), AffirmationConfirmed(PG)], config=config)
    assert state.context.current == CL
    assert state.affirmation is None


def test_feelings_mode_never_asks(make_classification):
    state = run([frame(make_classification, ContextType.UNKNOWN, 0.2)], config=StabilizerConfig())
    assert state.affirmation is None
    assert state.pending_context is None
    assert not state.context.transition_pending
    assert state.context.current == ContextType.UNKNOWN
    assert [t.id for t in state.context_tiles][:2] == ["feel_1", "feel_2"]


def test_feelings_frame_shows_feelings_immediately(make_classification):
    config = StabilizerConfig()
    state = reduce(StabilizerState(), frame(make_classification, ContextType.UNKNOWN, 0.95), config, 1000.0)

    assert state.context.current == ContextType.UNKNOWN
    assert state.notification.type == "context_changed"

    again = reduce(state, frame(make_classification, ContextType.UNKNOWN, 0.9), config, 1001.0)
    assert again.context.current == ContextType.UNKNOWN
    assert again.context.confirmed_at == 1000.0
    assert again.context_tiles == state.context_tiles


def test_feelings_frame_closes_open_prompt(make_classification):
    config = StabilizerConfig()
    state = run([frame(make_classification, PG, 0.7), frame(make_classification, ContextType.UNKNOWN, 0.6)],
                config=config)
    assert state.affirmation is None
    assert state.context.current == ContextType.UNKNOWN


def test_debounced_change_closes_stale_prompt(make_classification):
    config = StabilizerConfig()
    state = run([frame(make_classification, PG, 0.7)], config=config)
    assert state.affirmation is not None

    state = run([frame(make_classification, CL, 0.95)] * 2 + [ApplyPendingContext()], config=config, state=state)
    assert state.context.current == CL
    assert state.affirmation is None
    assert state.affirmation_source is None


# =============================================================================
# Session location
# =============================================================================

def test_session_location_settles_the_context(make_classification):
    state = run([ShowLocationPicker(), SetSessionLocation(PG, place_name="Central Park", area_name="NYC")])

    assert state.context.current == PG
    assert state.session_location.place_name == "Central Park"
    assert not state.show_location_picker

    state = run([frame(make_classification, RC, 0.95)] * 2, state=state)
    assert state.context.current == PG
    assert state.pending_context is None


def test_session_context_recovers_after_fallback(make_classification):
    state = run([SetSessionLocation(PG, "Central Park"), SetFallbackTiles()])
    assert state.context.current == ContextType.UNKNOWN

    state = run([frame(make_classification, PG, 0.99)] * 10 + [ApplyPendingContext()], state=state)
    assert state.context.current == PG
    assert state.session_location.context == PG
    assert any(t.id.startswith("pg_") for t in state.context_tiles)


def test_feelings_frame_overrides_session_until_next_frame(make_classification):
    state = run([SetSessionLocation(PG), frame(make_classification, ContextType.UNKNOWN, 0.5)])
    assert state.context.current == ContextType.UNKNOWN
    assert state.session_location.context == PG

    state = run([frame(make_classification, RC, 0.5)], state=state)
    assert state.context.current == PG


def test_sustained_cross_category_frames_flag_a_shift(make_classification):
    config = StabilizerConfig(shift_threshold=3)
    state = run([SetSessionLocation(PG, "Central Park")], config=config)

    state = run([frame(make_classification, CL, 0.9)] * 2, config=config, state=state)
    assert state.shift_counter == 2
    assert state.pending_shift_context == CL
    assert not state.location_shift_detected

    state = run([frame(make_classification, CL, 0.9)], config=config, state=state)
    assert state.location_shift_detected

    state = run([TriggerShiftRefetch()], config=config, state=state)
    assert state.shift_counter == 0
    assert not state.location_shift_detected
    assert state.pending_shift_context == CL


def test_same_category_or_low_confidence_resets_the_shift_counter(make_classification):
    state = run([SetSessionLocation(RC), frame(make_classification, CL, 0.9)])
    assert state.shift_counter == 1

    state = run([frame(make_classification, ContextType.RESTAURANT_TABLE, 0.9)], state=state)
    assert state.shift_counter == 0
    assert state.pending_shift_context is None

    state = run([frame(make_classification, CL, 0.5)], state=state)
    assert state.shift_counter == 0


def test_select_location_keeps_place_names():
    state = run([SetSessionLocation(PG, "Central Park", "NYC"), SelectLocation(CL)])

    assert state.context.current == CL
    assert state.session_location.context == CL
    assert state.session_location.place_name == "Central Park"
    assert state.session_location.area_name == "NYC"


def test_clear_session_location_and_picker():
    state = run([SetSessionLocation(PG), ClearSessionLocation(), ShowLocationPicker()])
    assert state.session_location is None
    assert state.show_location_picker

    state = run([HideLocationPicker()], state=state)
    assert not state.show_location_picker


def test_reset_shift_counter(make_classification):
    config = StabilizerConfig(shift_threshold=1)
    state = run([SetSessionLocation(PG), frame(make_classification, CL, 0.95)], config=config)
    assert state.location_shift_detected

    state = run([ResetShiftCounter()], state=state)
    assert state.shift_counter == 0
    assert state.pending_shift_context is None
    assert not state.location_shift_detected


# =============================================================================
# Entities
# =============================================================================

def test_focus_entity_flow():
    wide = StabilizerConfig(require_affirmation=False, grid_size=12)
    state = run([SetEntities(("Swing", "slide"))], config=wide, state=showing(PG))
    assert state.detected_entities == ("swing", "slide")

    state = run([FocusEntity("Dog")], config=wide, state=state)
    assert state.focused_entity == "dog"
    assert state.detected_entities == ("dog", "swing", "slide")
    assert state.entity_phrases_loading
    assert "adhoc_dog" in [t.id for t in state.context_tiles]

    phrases = (DisplayTile("entity_dog_0", "Nice dog", "What a nice dog", "🐕", is_suggested=True),)
    assert reduce(state, SetEntityPhrases("cat", phrases), NO_GATE) is state

    state = run([SetEntityPhrases("dog", phrases)], state=state)
    assert not state.entity_phrases_loading
    assert [t.id for t in display_tiles(state)] == ["core_yes", "core_no", "core_help", "core_more", "entity_dog_0"]

    state = run([FocusEntity(None)], state=state)
    assert state.focused_entity is None
    assert state.entity_phrases == ()
    ids = [t.id for t in display_tiles(state)]
    assert ids[:4] == ["core_yes", "core_no", "core_help", "core_more"]
    assert any(i.startswith("pg_") for i in ids)


def test_focused_entity_survives_new_frames(make_classification):
    state = run([FocusEntity("dog"), frame(make_classification, PG, entities=["swing"])], state=showing(PG))
    assert state.detected_entities == ("dog", "swing")
    assert state.focused_entity == "dog"


# =============================================================================
# Fallbacks, live tiles, notifications, connection
# =============================================================================

def test_fallback_tiles():
    state = run([SetLoading(True), SetFallbackTiles()], config=StabilizerConfig(grid_size=6), state=showing(PG))

    assert not state.is_loading
    assert state.context.current == ContextType.UNKNOWN
    assert state.context.previous == PG
    assert [t.id for t in state.context_tiles] == ["feel_1", "feel_2", "feel_5", "feel_3", "feel_4"]
    assert state.notification.message == "Offline - using fallbacks"


def test_fallback_tiles_respect_lock():
    locked = run([LockContext(CL)])
    state = run([SetLoading(True), SetFallbackTiles()], state=locked)

    assert state.context.current == CL
    assert state.context_tiles == locked.context_tiles
    assert not state.is_loading


def test_live_tiles_replace_context_tiles():
    tiles = (
        DisplayTile("core_yes", "Yes", "Yes", "✅", is_core=True),
        DisplayTile("t1", "Push me", "Push me please", "🫷", is_suggested=True, relevance_score=95),
    )
    state = run([LiveTilesReceived(tiles)], state=showing(PG))
    assert [t.id for t in state.context_tiles] == ["t1"]
    assert reduce(state, LiveTilesReceived(()), NO_GATE) is state


def test_display_tiles_are_unique_by_id():
    tiles = (DisplayTile("core_yes", "Yes!", "Yes!", "👍", is_suggested=True),)
    state = run([LiveTilesReceived(tiles)], state=showing(PG))
    assert [t.id for t in display_tiles(state)] == ["core_yes", "core_no", "core_help", "core_more"]


def test_clear_notification_only_clears_matching_timestamp():
    state = reduce(StabilizerState(), LockContext(PG), NO_GATE, 50.0)
    assert reduce(state, ClearNotification(49.0), NO_GATE) is state
    assert reduce(state, ClearNotification(50.0), NO_GATE).notification is None
    assert reduce(state, ClearNotification(), NO_GATE).notification is None


def test_connection_events():
    state = run([LiveSessionStarted()])
    assert state.live_session_active
    assert state.connection_mode == "live"

    state = run([LiveSessionEnded(), SetConnectionMode("rest")], state=state)
    assert not state.live_session_active
    assert state.connection_mode == "rest"


def test_last_update_only_moves_on_change():
    state = reduce(StabilizerState(), SetLoading(True), NO_GATE, 10.0)
    assert state.last_update == 10.0

    same = reduce(state, ClearNotification(), NO_GATE, 20.0)
    assert same is state
    assert same.last_update == 10.0


def test_unknown_event_is_ignored():
    state = StabilizerState()
    assert reduce(state, object(), NO_GATE) is state


def test_state_to_dict(make_classification):
    state = run([
        SetSessionLocation(PG, "Central Park"),
        frame(make_classification, PG, 0.8, entities=["swing"], inference="Kids on swings"),
    ])
    data = state_to_dict(state)

    assert data["context"]["current"] == "playground"
    assert data["context"]["current_label"] == "Playground"
    assert data["context"]["confidence"] == 0.8
    assert data["context"]["situation_inference"] == "Kids on swings"
    assert data["tiles"][0]["id"] == "core_yes"
    assert data["session_location"] == {"context": "playground", "place_name": "Central Park", "area_name": None}
    assert data["context"]["icon"] == "🛝"
    assert data["entities"] == ["swing"]
    assert data["entity_chips"] == [{"name": "swing", "emoji": "🎢"}]
    assert data["locked"] is False
    assert data["affirmation"] is None
    assert data["connection_mode"] == "rest"


# =============================================================================
# Runner
# =============================================================================

def test_runner_applies_transition_after_interval(make_classification):
    async def scenario():
        stabilizer = ContextStabilizer(StabilizerConfig(debounce_interval_s=0.01, notification_ttl_s=0.05))
        seen = []
        stabilizer.add_listener(seen.append)
        stabilizer.start()

        stabilizer.dispatch(frame(make_classification, PG, 0.95))
        stabilizer.dispatch(frame(make_classification, PG, 0.95))
        await stabilizer.drain()
        assert stabilizer.state.context.transition_pending
        assert stabilizer.state.context.current is None

        await asyncio.sleep(0.03)
        await stabilizer.drain()
        assert stabilizer.state.context.current == PG
        assert stabilizer.state.notification.message == "Context updated: Playground"

        await asyncio.sleep(0.1)
        await stabilizer.drain()
        assert stabilizer.state.notification is None

        await stabilizer.close()
        return seen

    seen = asyncio.run(scenario())
    assert len(seen) == 4


def test_runner_drops_transition_that_is_no_longer_pending(make_classification):
    async def scenario():
        stabilizer = ContextStabilizer(StabilizerConfig(debounce_interval_s=0.02))
        stabilizer.dispatch(frame(make_classification, PG, 0.95))
        stabilizer.dispatch(frame(make_classification, PG, 0.95))
        stabilizer.dispatch(frame(make_classification, CL, 0.95))
        await stabilizer.drain()
        await asyncio.sleep(0.05)
        await stabilizer.drain()
        state = stabilizer.state
        await stabilizer.close()
        return state

    state = asyncio.run(scenario())
    assert state.context.current is None
    assert state.pending_context == CL


def test_runner_survives_a_failing_listener():
    async def scenario():
        stabilizer = ContextStabilizer()
        stabilizer.add_listener(lambda state: 1 / 0)
        stabilizer.dispatch(SetLoading(True))
        stabilizer.dispatch(LiveSessionStarted())
        await stabilizer.drain()
        state = stabilizer.state
        await stabilizer.close()
        return state

    state = asyncio.run(scenario())
    assert state.is_loading
    assert state.live_session_active


def test_close_drops_later_events_and_timers(make_classification):
    async def scenario():
        stabilizer = ContextStabilizer(StabilizerConfig(debounce_interval_s=0.01))
        stabilizer.dispatch(frame(make_classification, PG, 0.95))
        stabilizer.dispatch(frame(make_classification, PG, 0.95))
        await stabilizer.drain()
        await stabilizer.close()

        accepted = stabilizer.dispatch(LockContext(CL))
        await asyncio.sleep(0.03)
        return stabilizer, accepted

    stabilizer, accepted = asyncio.run(scenario())
    assert not accepted
    assert stabilizer.closed
    assert stabilizer.state.context.current is None
    assert stabilizer.state.context.transition_pending
