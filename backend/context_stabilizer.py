"""
Context Stabilizer for Glimpse

Turns a noisy stream of per-frame classifications into a stable decision
about which tiles to show.

Two layers:
- reduce(state, event, config, now): pure transition over frozen dataclasses.
- ContextStabilizer: owns the current state, an asyncio.Queue of events
  (one event applied to completion before the next), the single-shot debounce
  timer and the notification expiry timer.

Debounce is keyed by label only: N matching frames open a transition, the
timer applies it if it is still pending when it fires.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from aac_models import (
    ContextClassification,
    ContextType,
    DisplayTile,
    format_context,
    normalize_entity,
)
from affirmation import AffirmationConfig, AffirmationResult, affirm_context, alternatives_for
from grid_generator import context_display_tiles, core_display_tiles, generate_grid
from tile_catalog import CONTEXT_ICONS, CORE_TILES, TILE_SETS, entity_emoji

logger = logging.getLogger(__name__)


# =============================================================================
# STATE
# =============================================================================

@dataclass(frozen=True)
class ContextState:
    current: Optional[ContextType] = None
    previous: Optional[ContextType] = None
    classification: Optional[ContextClassification] = None
    confirmed_at: Optional[float] = None
    # True only while a debounce window is open
    transition_pending: bool = False


@dataclass(frozen=True)
class SessionLocation:
    """Where the user has settled. Per-frame classifications never overwrite it."""
    context: ContextType
    place_name: Optional[str] = None
    area_name: Optional[str] = None
    locked_at: float = 0.0


@dataclass(frozen=True)
class Notification:
    type: str  # "context_changed" | "context_confirmed" | "awaiting_confirmation"
    message: str
    timestamp: float
    from_context: Optional[ContextType] = None
    to_context: Optional[ContextType] = None


@dataclass(frozen=True)
class StabilizerState:
    context: ContextState = field(default_factory=ContextState)

    # Debounce
    pending_context: Optional[ContextType] = None
    context_debounce_count: int = 0

    # Lock
    context_locked: bool = False
    locked_context: Optional[ContextType] = None
    locked_at: Optional[float] = None
    background_context: Optional[ContextType] = None
    background_confidence: float = 0.0
    major_shift_detected: bool = False

    # Session location
    place_name: Optional[str] = None
    session_location: Optional[SessionLocation] = None
    show_location_picker: bool = False
    shift_counter: int = 0
    pending_shift_context: Optional[ContextType] = None
    location_shift_detected: bool = False

    # Entities
    detected_entities: Tuple[str, ...] = ()
    focused_entity: Optional[str] = None
    entity_phrases: Tuple[DisplayTile, ...] = ()
    entity_phrases_loading: bool = False

    # Tiles
    core_tiles: Tuple[DisplayTile, ...] = field(default_factory=core_display_tiles)
    context_tiles: Tuple[DisplayTile, ...] = ()

    # Affirmation prompt (at most one open)
    affirmation: Optional[AffirmationResult] = None
    affirmation_source: Optional[ContextClassification] = None

    # Connection
    connection_mode: str = "rest"  # "live" | "rest"
    live_session_active: bool = False

    is_loading: bool = False
    notification: Optional[Notification] = None
    last_update: Optional[float] = None


@dataclass
class StabilizerConfig:
    """Tunable parameters for the stabilizer."""
    # Matching frames needed before a transition is pending
    debounce_threshold: int = 1
    debounce_interval_s: float = 0.1

    # Background label confidence that counts as a major shift while locked
    major_shift_confidence: float = 0.8

    # Consecutive cross-category frames before re-resolving the session location
    shift_threshold: int = 3

    grid_size: int = 9
    notification_ttl_s: float = 3.0

    # Ask the user before switching on low/medium confidence guesses
    require_affirmation: bool = True
    affirmation: AffirmationConfig = field(default_factory=AffirmationConfig)


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class ClassificationReceived:
    classification: ContextClassification


@dataclass(frozen=True)
class DebounceContext:
    context: ContextType


@dataclass(frozen=True)
class ApplyPendingContext:
    pass


@dataclass(frozen=True)
class LockContext:
    context: ContextType


@dataclass(frozen=True)
class UnlockContext:
    pass


@dataclass(frozen=True)
class BackgroundUpdate:
    context: ContextType
    confidence: float


@dataclass(frozen=True)
class DismissShiftAlert:
    pass


@dataclass(frozen=True)
class CheckShift:
    context: ContextType
    confidence: float


@dataclass(frozen=True)
class TriggerShiftRefetch:
    pass


@dataclass(frozen=True)
class ResetShiftCounter:
    pass


@dataclass(frozen=True)
class FocusEntity:
    entity: Optional[str]


@dataclass(frozen=True)
class SetEntities:
    entities: Tuple[str, ...]


@dataclass(frozen=True)
class SetEntityPhrases:
    entity: str
    phrases: Tuple[DisplayTile, ...]


@dataclass(frozen=True)
class SetEntityPhrasesLoading:
    loading: bool


@dataclass(frozen=True)
class SetFallbackTiles:
    pass


@dataclass(frozen=True)
class SetLoading:
    loading: bool


@dataclass(frozen=True)
class LiveTilesReceived:
    tiles: Tuple[DisplayTile, ...]


@dataclass(frozen=True)
class ClearNotification:
    # Only clears the notification with this timestamp; None clears any
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class SetConnectionMode:
    mode: str


@dataclass(frozen=True)
class LiveSessionStarted:
    pass


@dataclass(frozen=True)
class LiveSessionEnded:
    pass


@dataclass(frozen=True)
class SetPlaceName:
    place_name: Optional[str]


@dataclass(frozen=True)
class SetSessionLocation:
    context: ContextType
    place_name: Optional[str] = None
    area_name: Optional[str] = None


@dataclass(frozen=True)
class ClearSessionLocation:
    pass


@dataclass(frozen=True)
class ShowLocationPicker:
    pass


@dataclass(frozen=True)
class HideLocationPicker:
    pass


@dataclass(frozen=True)
class SelectLocation:
    context: ContextType


@dataclass(frozen=True)
class AffirmationConfirmed:
    context: ContextType


@dataclass(frozen=True)
class AffirmationDismissed:
    # "No" on a yes/no prompt asks again with the alternatives
    show_alternatives: bool = False


# =============================================================================
# REDUCER
# =============================================================================

def _grid_tiles(
    context: ContextType,
    config: StabilizerConfig,
    entities: Sequence[str] = (),
    situation_inference: Optional[str] = None,
    grid_size: Optional[int] = None,
) -> Tuple[DisplayTile, ...]:
    grid = generate_grid(
        context,
        grid_size=grid_size or config.grid_size,
        entities=entities,
        situation_inference=situation_inference,
    )
    return context_display_tiles(grid)


def _inference(state: StabilizerState) -> Optional[str]:
    classification = state.context.classification
    return classification.situation_inference if classification else None


def _with_focus_first(entities: Sequence[str], focused: Optional[str]) -> Tuple[str, ...]:
    if not focused:
        return tuple(entities)
    return (focused,) + tuple(e for e in entities if e != focused)


def _grid_entities(state: StabilizerState) -> Tuple[str, ...]:
    return _with_focus_first(state.detected_entities, state.focused_entity)


def _show_context(state: StabilizerState, context: ContextType, config: StabilizerConfig, now: float) -> StabilizerState:
    """Make a context visible with freshly generated tiles."""
    previous = state.context.current if state.context.current != context else state.context.previous
    return replace(
        state,
        context=replace(
            state.context,
            current=context,
            previous=previous,
            confirmed_at=now,
            transition_pending=False,
        ),
        context_tiles=_grid_tiles(context, config, _grid_entities(state), _inference(state)),
        pending_context=None,
        context_debounce_count=0,
    )


def _set_entities(state: StabilizerState, entities: Sequence[str]) -> StabilizerState:
    entities = tuple(normalize_entity(e) for e in entities if e and e.strip())
    # Focused entity stays in the list even after it leaves the frame
    if state.focused_entity and state.focused_entity not in entities:
        entities = (state.focused_entity,) + entities
    return replace(state, detected_entities=entities)


def _on_classification(state, event, config, now):
    classification = event.classification
    state = replace(
        state,
        context=replace(state.context, classification=classification),
        is_loading=False,
    )
    state = _set_entities(state, classification.entities_detected)
    state = _on_check_shift(
        state, CheckShift(classification.primary_context, classification.confidence_score), config, now
    )

    if state.context_locked:
        return _on_background_update(
            state, BackgroundUpdate(classification.primary_context, classification.confidence_score), config, now
        )

    # Feelings mode: no prompt, no debounce
    if classification.primary_context == ContextType.UNKNOWN:
        if state.context.current == ContextType.UNKNOWN and state.pending_context is None:
            return state
        return _change_context(state, ContextType.UNKNOWN, config, now)

    location = state.session_location
    if location is not None:
        # Fallback or feelings tiles give way to the settled context
        if state.context.current != location.context:
            return _show_context(state, location.context, config, now)
        return state

    if config.require_affirmation and classification.primary_context != state.context.current:
        result = affirm_context(classification, config.affirmation)
        if not result.affirmed:
            if state.affirmation is not None:
                return state
            return replace(
                state,
                affirmation=result,
                affirmation_source=classification,
                notification=Notification(
                    type="awaiting_confirmation",
                    message=result.show_ui.prompt,
                    timestamp=now,
                    from_context=state.context.current,
                    to_context=classification.primary_context,
                ),
            )

    return _on_debounce(state, DebounceContext(classification.primary_context), config, now)


def _on_debounce(state, event, config, now):
    incoming = event.context

    # Already showing it: stay
    if incoming == state.context.current:
        if state.pending_context is None and not state.context.transition_pending:
            return state
        return replace(
            state,
            pending_context=None,
            context_debounce_count=0,
            context=replace(state.context, transition_pending=False),
        )

    if incoming == state.pending_context:
        count = state.context_debounce_count + 1
        if count >= config.debounce_threshold:
            return replace(
                state,
                context_debounce_count=count,
                context=replace(state.context, transition_pending=True),
            )
        return replace(state, context_debounce_count=count)

    # New label restarts the run; a single frame never opens a transition
    return replace(
        state,
        pending_context=incoming,
        context_debounce_count=1,
        context=replace(state.context, transition_pending=False),
    )


def _change_context(state, context: ContextType, config, now):
    """Visible context change: fresh tiles, any open prompt closed, notification."""
    before = state.context.current
    state = _show_context(state, context, config, now)
    return replace(
        state,
        affirmation=None,
        affirmation_source=None,
        notification=Notification(
            type="context_changed",
            message=f"Context updated: {format_context(context)}",
            timestamp=now,
            from_context=before,
            to_context=context,
        ),
    )


def _on_apply_pending(state, event, config, now):
    pending = state.pending_context
    if pending is None or not state.context.transition_pending or state.context_locked:
        return state
    return _change_context(state, pending, config, now)


def _on_lock(state, event, config, now):
    state = _show_context(state, event.context, config, now)
    return replace(
        state,
        context_locked=True,
        locked_context=event.context,
        locked_at=now,
        background_context=None,
        background_confidence=0.0,
        major_shift_detected=False,
        shift_counter=0,
        pending_shift_context=None,
        location_shift_detected=False,
        affirmation=None,
        affirmation_source=None,
        notification=Notification(
            type="context_confirmed",
            message=f"Locked: {format_context(event.context)}",
            timestamp=now,
            to_context=event.context,
        ),
    )


def _on_unlock(state, event, config, now):
    return replace(
        state,
        context_locked=False,
        locked_context=None,
        locked_at=None,
        background_context=None,
        background_confidence=0.0,
        major_shift_detected=False,
        notification=Notification(
            type="context_changed",
            message="Context unlocked - scanning...",
            timestamp=now,
        ),
    )


def _on_background_update(state, event, config, now):
    if not state.context_locked:
        return state
    is_major = event.context != state.locked_context and event.confidence >= config.major_shift_confidence
    return replace(
        state,
        background_context=event.context,
        background_confidence=event.confidence,
        # Sticky until the user locks or dismisses
        major_shift_detected=state.major_shift_detected or is_major,
    )


def _on_dismiss_shift(state, event, config, now):
    return replace(state, major_shift_detected=False)


def _on_check_shift(state, event, config, now):
    if state.session_location is None:
        return state

    same_category = state.session_location.context.category == event.context.category
    if same_category or event.confidence < config.major_shift_confidence:
        if state.shift_counter == 0 and state.pending_shift_context is None:
            return state
        return replace(state, shift_counter=0, pending_shift_context=None)

    count = state.shift_counter + 1
    return replace(
        state,
        shift_counter=count,
        pending_shift_context=event.context,
        location_shift_detected=state.location_shift_detected or count >= config.shift_threshold,
    )


def _on_trigger_shift_refetch(state, event, config, now):
    # Keeps pending_shift_context for the caller
    return replace(state, shift_counter=0, location_shift_detected=False)


def _on_reset_shift_counter(state, event, config, now):
    return replace(state, shift_counter=0, pending_shift_context=None, location_shift_detected=False)


def _on_focus_entity(state, event, config, now):
    context = state.context.current or ContextType.UNKNOWN

    if not event.entity:
        state = replace(state, focused_entity=None, entity_phrases=(), entity_phrases_loading=False)
        if state.context.current is None:
            return state
        return replace(
            state,
            context_tiles=_grid_tiles(context, config, state.detected_entities, _inference(state)),
        )

    entity = normalize_entity(event.entity)
    entities = _with_focus_first(state.detected_entities, entity)
    return replace(
        state,
        focused_entity=entity,
        detected_entities=entities,
        entity_phrases=(),
        entity_phrases_loading=True,
        context_tiles=_grid_tiles(context, config, entities, _inference(state)),
    )


def _on_set_entities(state, event, config, now):
    return _set_entities(state, event.entities)


def _on_set_entity_phrases(state, event, config, now):
    # Late result for an entity that is no longer focused
    if state.focused_entity != normalize_entity(event.entity):
        return state
    return replace(state, entity_phrases=tuple(event.phrases), entity_phrases_loading=False)


def _on_set_entity_phrases_loading(state, event, config, now):
    return replace(state, entity_phrases_loading=event.loading)


def _on_set_fallback_tiles(state, event, config, now):
    if state.context_locked:
        return replace(state, is_loading=False) if state.is_loading else state

    unknown_size = len(CORE_TILES) + len(TILE_SETS[ContextType.UNKNOWN])
    tiles = _grid_tiles(
        ContextType.UNKNOWN, config, grid_size=max(config.grid_size, unknown_size)
    )
    previous = state.context.current if state.context.current != ContextType.UNKNOWN else state.context.previous
    return replace(
        state,
        is_loading=False,
        context=replace(
            state.context,
            current=ContextType.UNKNOWN,
            previous=previous,
            confirmed_at=now,
            transition_pending=False,
        ),
        pending_context=None,
        context_debounce_count=0,
        context_tiles=tiles,
        notification=Notification(
            type="context_changed",
            message="Offline - using fallbacks",
            timestamp=now,
        ),
    )


def _on_set_loading(state, event, config, now):
    return replace(state, is_loading=event.loading)


def _on_live_tiles(state, event, config, now):
    if state.context_locked:
        return state
    tiles = tuple(t for t in event.tiles if not t.is_core)
    if not tiles:
        return state
    return replace(state, context_tiles=tiles)


def _on_clear_notification(state, event, config, now):
    if state.notification is None:
        return state
    if event.timestamp is not None and state.notification.timestamp != event.timestamp:
        return state
    return replace(state, notification=None)


def _on_set_connection_mode(state, event, config, now):
    return replace(state, connection_mode=event.mode)


def _on_live_session_started(state, event, config, now):
    return replace(state, live_session_active=True, connection_mode="live")


def _on_live_session_ended(state, event, config, now):
    return replace(state, live_session_active=False)


def _on_set_place_name(state, event, config, now):
    return replace(state, place_name=event.place_name)


def _settle(state, location: SessionLocation, config, now):
    state = _show_context(state, location.context, config, now)
    return replace(
        state,
        session_location=location,
        shift_counter=0,
        pending_shift_context=None,
        location_shift_detected=False,
        show_location_picker=False,
        affirmation=None,
        affirmation_source=None,
    )


def _on_set_session_location(state, event, config, now):
    location = SessionLocation(
        context=event.context,
        place_name=event.place_name,
        area_name=event.area_name,
        locked_at=now,
    )
    return _settle(state, location, config, now)


def _on_clear_session_location(state, event, config, now):
    return replace(
        state,
        session_location=None,
        shift_counter=0,
        pending_shift_context=None,
        location_shift_detected=False,
    )


def _on_show_location_picker(state, event, config, now):
    return replace(state, show_location_picker=True)


def _on_hide_location_picker(state, event, config, now):
    return replace(state, show_location_picker=False)


def _on_select_location(state, event, config, now):
    # Context-only change keeps the known place/area names
    previous = state.session_location
    location = SessionLocation(
        context=event.context,
        place_name=previous.place_name if previous else None,
        area_name=previous.area_name if previous else None,
        locked_at=now,
    )
    return _settle(state, location, config, now)


def _on_affirmation_confirmed(state, event, config, now):
    state = replace(state, affirmation=None, affirmation_source=None)
    if state.context_locked:
        return state
    state = _show_context(state, event.context, config, now)
    return replace(
        state,
        notification=Notification(
            type="context_confirmed",
            message=f"Confirmed: {format_context(event.context)}",
            timestamp=now,
            to_context=event.context,
        ),
    )


def _on_affirmation_dismissed(state, event, config, now):
    if state.affirmation is None:
        return state
    if event.show_alternatives and state.affirmation_source is not None:
        return replace(
            state,
            affirmation=replace(state.affirmation, show_ui=alternatives_for(state.affirmation_source)),
        )
    return replace(state, affirmation=None, affirmation_source=None)


_HANDLERS: Dict[type, Callable] = {
    ClassificationReceived: _on_classification,
    DebounceContext: _on_debounce,
    ApplyPendingContext: _on_apply_pending,
    LockContext: _on_lock,
    UnlockContext: _on_unlock,
    BackgroundUpdate: _on_background_update,
    DismissShiftAlert: _on_dismiss_shift,
    CheckShift: _on_check_shift,
    TriggerShiftRefetch: _on_trigger_shift_refetch,
    ResetShiftCounter: _on_reset_shift_counter,
    FocusEntity: _on_focus_entity,
    SetEntities: _on_set_entities,
    SetEntityPhrases: _on_set_entity_phrases,
    SetEntityPhrasesLoading: _on_set_entity_phrases_loading,
    SetFallbackTiles: _on_set_fallback_tiles,
    SetLoading: _on_set_loading,
    LiveTilesReceived: _on_live_tiles,
    ClearNotification: _on_clear_notification,
    SetConnectionMode: _on_set_connection_mode,
    LiveSessionStarted: _on_live_session_started,
    LiveSessionEnded: _on_live_session_ended,
    SetPlaceName: _on_set_place_name,
    SetSessionLocation: _on_set_session_location,
    ClearSessionLocation: _on_clear_session_location,
    ShowLocationPicker: _on_show_location_picker,
    HideLocationPicker: _on_hide_location_picker,
    SelectLocation: _on_select_location,
    AffirmationConfirmed: _on_affirmation_confirmed,
    AffirmationDismissed: _on_affirmation_dismissed,
}


def reduce(
    state: StabilizerState,
    event,
    config: StabilizerConfig | None = None,
    now: float | None = None
) -> StabilizerState:
    """
    Apply one event. Returns the same object when nothing changed.
    """
    if config is None:
        config = StabilizerConfig()
    if now is None:
        now = time.time()

    handler = _HANDLERS.get(type(event))
    if handler is None:
        logger.warning(f"⚠️ Unhandled stabilizer event: {type(event).__name__}")
        return state

    new_state = handler(state, event, config, now)
    if new_state is state:
        return state
    return replace(new_state, last_update=now)


def display_tiles(state: StabilizerState) -> List[DisplayTile]:
    """Core tiles, then entity phrases (when focused) or context tiles, unique by id."""
    if state.focused_entity and state.entity_phrases:
        active = state.entity_phrases
    else:
        active = state.context_tiles

    seen = set()
    tiles = []
    for tile in (*state.core_tiles, *active):
        if tile.id in seen:
            continue
        seen.add(tile.id)
        tiles.append(tile)
    return tiles


def _value(context: Optional[ContextType]) -> Optional[str]:
    return context.value if context else None


def state_to_dict(state: StabilizerState) -> dict:
    """UI projection sent to the browser."""
    classification = state.context.classification
    location = state.session_location
    return {
        "context": {
            "current": _value(state.context.current),
            "current_label": format_context(state.context.current),
            "icon": CONTEXT_ICONS.get(state.context.current),
            "previous": _value(state.context.previous),
            "confidence": classification.confidence_score if classification else None,
            "situation_inference": classification.situation_inference if classification else None,
            "social_cue": classification.social_cue if classification else None,
            "transition_pending": state.context.transition_pending,
        },
        "tiles": [t.to_dict() for t in display_tiles(state)],
        "locked": state.context_locked,
        "locked_context": _value(state.locked_context),
        "background_context": _value(state.background_context),
        "background_confidence": state.background_confidence,
        "major_shift_detected": state.major_shift_detected,
        "place_name": state.place_name,
        "session_location": {
            "context": location.context.value,
            "place_name": location.place_name,
            "area_name": location.area_name,
        } if location else None,
        "show_location_picker": state.show_location_picker,
        "location_shift_detected": state.location_shift_detected,
        "entities": list(state.detected_entities),
        "entity_chips": [{"name": e, "emoji": entity_emoji(e)} for e in state.detected_entities],
        "focused_entity": state.focused_entity,
        "entity_phrases_loading": state.entity_phrases_loading,
        "affirmation": {
            "method": state.affirmation.method.value,
            "ui": state.affirmation.show_ui.to_dict() if state.affirmation.show_ui else None,
        } if state.affirmation else None,
        "connection_mode": state.connection_mode,
        "live_session_active": state.live_session_active,
        "is_loading": state.is_loading,
        "notification": {
            "type": state.notification.type,
            "message": state.notification.message,
            "from_context": _value(state.notification.from_context),
            "to_context": _value(state.notification.to_context),
        } if state.notification else None,
    }


# =============================================================================
# RUNNER
# =============================================================================

class ContextStabilizer:
    """
    Owns a StabilizerState and feeds it events one at a time.

    Usage:
        stabilizer = ContextStabilizer(config)
        stabilizer.add_listener(on_state)
        stabilizer.start()           # inside a running loop
        stabilizer.dispatch(ClassificationReceived(c))
        ...
        await stabilizer.close()
    """

    def __init__(self, config: StabilizerConfig | None = None, clock: Callable[[], float] = time.time):
        self.config = config or StabilizerConfig()
        self._clock = clock
        self._state = StabilizerState()
        self._listeners: List[Callable[[StabilizerState], None]] = []
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._notification_handle: Optional[asyncio.TimerHandle] = None
        self._closed = False

    @property
    def state(self) -> StabilizerState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: Callable[[StabilizerState], None]):
        self._listeners.append(listener)

    def start(self):
        if self._task is not None or self._closed:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def dispatch(self, event) -> bool:
        """Queue an event. Dropped (returns False) after close()."""
        if self._closed:
            logger.debug(f"Dropped {type(event).__name__} after close")
            return False
        if self._queue is None:
            self.start()
        self._queue.put_nowait(event)
        return True

    async def drain(self):
        """Wait until every queued event has been applied."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                self._apply(event)
            except Exception as e:
                logger.error(f"❌ Stabilizer failed on {type(event).__name__}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def _apply(self, event):
        if self._closed:
            return
        previous = self._state
        new_state = reduce(previous, event, self.config, self._clock())
        if new_state is previous:
            return
        self._state = new_state

        if new_state.context.current != previous.context.current:
            logger.info(
                f"✓ Context: {format_context(previous.context.current)} -> "
                f"{format_context(new_state.context.current)}"
            )

        self._arm_timers(previous, new_state)

        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"❌ Stabilizer listener failed: {e}", exc_info=True)

    def _arm_timers(self, previous: StabilizerState, state: StabilizerState):
        loop = asyncio.get_running_loop()

        opened = state.context.transition_pending and (
            not previous.context.transition_pending or previous.pending_context != state.pending_context
        )
        if opened:
            # Single-shot, re-armed per opened transition
            if self._debounce_handle is not None:
                self._debounce_handle.cancel()
            self._debounce_handle = loop.call_later(
                self.config.debounce_interval_s, self.dispatch, ApplyPendingContext()
            )

        notification = state.notification
        if notification is not None and notification is not previous.notification:
            if self._notification_handle is not None:
                self._notification_handle.cancel()
            self._notification_handle = loop.call_later(
                self.config.notification_ttl_s, self.dispatch, ClearNotification(notification.timestamp)
            )

    async def close(self):
        """Cancel timers and the consumer. Later dispatches are dropped."""
        if self._closed:
            return
        self._closed = True
        for handle in (self._debounce_handle, self._notification_handle):
            if handle is not None:
                handle.cancel()
        self._debounce_handle = None
        self._notification_handle = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._listeners.clear()
