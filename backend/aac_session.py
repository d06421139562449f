"""
AAC Session orchestrator for Glimpse

One AACSession per connected browser. It owns:

1. The ContextStabilizer (all visible state flows through it)
2. The Gemini Live client (streaming path, optional)
3. The REST classifier (fallback path), speech and places collaborators

Exactly one upstream source feeds the stabilizer at a time: live when the
socket is up, REST otherwise. Every failure degrades instead of surfacing:
REST errors -> fallback tiles, live exhaustion -> REST, TTS errors -> device
speech, places errors -> no location.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set, Tuple

from aac_models import ContextType, Place
from audio_service import TARGET_SAMPLE_RATE, PCMAudioPlayer, PlaybackScheduler, pcm16_to_float32, resample_to_16k
from classifier_service import ClassifierError, fallback_entity_phrases
from context_stabilizer import (
    AffirmationConfirmed,
    AffirmationDismissed,
    ClassificationReceived,
    ContextStabilizer,
    DismissShiftAlert,
    FocusEntity,
    HideLocationPicker,
    LiveSessionEnded,
    LiveSessionStarted,
    LiveTilesReceived,
    LockContext,
    SelectLocation,
    SetConnectionMode,
    SetEntityPhrases,
    SetEntityPhrasesLoading,
    SetFallbackTiles,
    SetLoading,
    SetPlaceName,
    SetSessionLocation,
    ShowLocationPicker,
    StabilizerConfig,
    StabilizerState,
    TriggerShiftRefetch,
    UnlockContext,
    display_tiles,
    state_to_dict,
)
from gemini_live import LiveCallbacks
from places_service import PlacesError, context_for_place, nearest_place
from speech_service import SpeechResult

logger = logging.getLogger(__name__)

Emitter = Callable[[str, dict], Awaitable[None]]


@dataclass
class SessionConfig:
    """Per-connection settings."""
    # Minimum seconds between frames sent upstream (~1 fps)
    frame_interval_s: float = field(default_factory=lambda: float(os.getenv("FRAME_INTERVAL_S", "1.0")))

    # Play live model audio on the server's speakers as well
    play_audio_locally: bool = field(
        default_factory=lambda: os.getenv("PLAY_AUDIO_LOCALLY", "false").lower() == "true"
    )

    # Live connected but no usable context/tiles for this long -> fallback tiles (0 disables)
    live_output_timeout_s: float = field(
        default_factory=lambda: float(os.getenv("LIVE_OUTPUT_TIMEOUT_S", "15.0"))
    )

    places_radius_m: float = 100.0
    stabilizer: StabilizerConfig = field(default_factory=StabilizerConfig)


class AACSession:
    """
    Orchestrates one user's AAC session.

    Usage:
        session = AACSession(config, classifier=..., speech=..., places=...,
                             live_factory=..., emit=sio_emit)
        await session.start()
        await session.handle_frame(jpeg_base64)
        ...
        await session.close()
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        classifier=None,
        speech=None,
        places=None,
        live_factory: Optional[Callable] = None,
        emit: Optional[Emitter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            config: SessionConfig (uses defaults if None)
            classifier: GeminiContextClassifier or None (fallback tiles only)
            speech: SpeechService or None
            places: PlacesClient or None
            live_factory: (LiveCallbacks, place_name) -> GeminiLiveClient
            emit: async (event, payload) sink towards the browser
            clock: monotonic time source for frame throttling
        """
        self.config = config or SessionConfig()
        self.classifier = classifier
        self.speech = speech
        self.places = places
        self.live_factory = live_factory
        self._emit = emit
        self._clock = clock

        self.stabilizer = ContextStabilizer(self.config.stabilizer)
        self.stabilizer.add_listener(self._on_state)

        self.live = None
        self._live_enabled = False
        self.audio_scheduler = PlaybackScheduler()
        self.local_player = PCMAudioPlayer() if self.config.play_audio_locally else None

        self._last_frame_time: Optional[float] = None
        self._rest_lock = asyncio.Lock()
        self._last_coords: Optional[Tuple[float, float]] = None
        self._tasks: Set[asyncio.Task] = set()
        self._phrase_task: Optional[asyncio.Task] = None
        self._shift_task: Optional[asyncio.Task] = None
        self._output_guard: Optional[asyncio.TimerHandle] = None
        self._closed = False

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    @property
    def state(self) -> StabilizerState:
        return self.stabilizer.state

    @property
    def live_connected(self) -> bool:
        return self._live_enabled and self.live is not None and self.live.is_connected

    def _dispatch(self, event) -> bool:
        if self._closed:
            return False
        return self.stabilizer.dispatch(event)

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        if self._closed:
            coro.close()
            return None
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ Session task failed: {error}", exc_info=error)

    def _on_state(self, state: StabilizerState):
        if self._emit is not None:
            self._spawn(self._emit_state())

        if state.location_shift_detected and (self._shift_task is None or self._shift_task.done()):
            self._shift_task = self._spawn(self._resolve_shift())

    async def _emit_state(self):
        if self._emit is None or self._closed:
            return
        await self._emit("aac_state", self.snapshot())
        await self._emit("debug_state", self.debug_snapshot())

    async def start(self, live: bool = False):
        self.stabilizer.start()
        if live:
            await self.set_live(True)

    async def settle(self):
        """Wait for queued events and spawned work to finish."""
        while True:
            await self.stabilizer.drain()
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Upstream: frames and audio
    # ------------------------------------------------------------------

    async def handle_frame(self, image_base64: str) -> bool:
        """
        Route one camera frame to the active source.

        Returns:
            True if the frame was sent upstream, False if throttled/dropped
        """
        if self._closed or not image_base64:
            return False

        now = self._clock()
        if self._last_frame_time is not None and now - self._last_frame_time < self.config.frame_interval_s:
            return False
        self._last_frame_time = now

        if self.live_connected:
            return await self.live.send_frame(image_base64)

        if self.classifier is None:
            self._dispatch(SetFallbackTiles())
            return False

        # One REST call in flight; extra frames are dropped
        if self._rest_lock.locked():
            return False

        async with self._rest_lock:
            self._dispatch(SetLoading(True))
            try:
                result = await self.classifier.classify(image_base64, location_hint=self.state.place_name)
            except ClassifierError as e:
                logger.warning(f"⚠️ Classification failed, using fallbacks: {e}")
                self._dispatch(SetFallbackTiles())
                return True
            except Exception as e:
                logger.error(f"❌ Unexpected classifier error: {e}", exc_info=True)
                self._dispatch(SetFallbackTiles())
                return True

        self._dispatch(ClassificationReceived(result.classification))
        return True

    async def handle_audio(self, pcm: bytes, sample_rate: int = TARGET_SAMPLE_RATE) -> bool:
        """Forward microphone PCM (16-bit mono) to the live channel only."""
        if not self.live_connected or not pcm:
            return False
        if sample_rate != TARGET_SAMPLE_RATE:
            pcm = resample_to_16k(pcm16_to_float32(pcm), sample_rate)
            if not pcm:
                return False
        return await self.live.send_audio(pcm)

    # ------------------------------------------------------------------
    # Live channel
    # ------------------------------------------------------------------

    def _live_callbacks(self) -> LiveCallbacks:
        return LiveCallbacks(
            on_connect=self._on_live_connect,
            on_context=self._on_live_context,
            on_tiles=self._on_live_tiles,
            on_audio=self._on_live_audio,
            on_error=lambda e: logger.warning(f"⚠️ Live error: {e}"),
            on_disconnect=self._on_live_disconnect,
            on_session_expiring=lambda: logger.info("⏱️ Live session expiring, rotating"),
            on_reconnecting=lambda attempt, delay: logger.info(
                f"🔄 Live reconnect attempt {attempt} in {delay:.1f}s"
            ),
            on_failed=self._on_live_failed,
        )

    def _arm_output_guard(self):
        self._cancel_output_guard()
        if self._closed or self.config.live_output_timeout_s <= 0:
            return
        self._output_guard = asyncio.get_running_loop().call_later(
            self.config.live_output_timeout_s, self._on_output_timeout
        )

    def _cancel_output_guard(self):
        if self._output_guard is not None:
            self._output_guard.cancel()
            self._output_guard = None

    def _on_output_timeout(self):
        self._output_guard = None
        if not self.live_connected:
            return
        logger.warning(f"⚠️ No live context for {self.config.live_output_timeout_s:.0f}s, using fallbacks")
        self._dispatch(SetFallbackTiles())

    def _on_live_connect(self):
        self._dispatch(LiveSessionStarted())
        self._arm_output_guard()

    def _on_live_context(self, classification):
        self._arm_output_guard()
        self._dispatch(ClassificationReceived(classification))

    def _on_live_tiles(self, tiles):
        self._arm_output_guard()
        self._dispatch(LiveTilesReceived(tuple(tiles)))

    def _on_live_disconnect(self):
        self._cancel_output_guard()
        self._dispatch(LiveSessionEnded())

    def _on_live_audio(self, pcm: bytes):
        delay = self.audio_scheduler.start_delay(pcm)
        if self.local_player is not None:
            self.local_player.play(pcm)
        if self._emit is not None:
            self._spawn(self._emit("audio", {
                "pcm": pcm,
                "start_delay_s": delay,
                "sample_rate": self.audio_scheduler.sample_rate,
            }))

    def _on_live_failed(self, error: Exception):
        logger.warning(f"⚠️ Live channel gave up ({error}), switching to REST")
        self._cancel_output_guard()
        self._live_enabled = False
        self._dispatch(SetConnectionMode("rest"))
        self._dispatch(LiveSessionEnded())

    async def set_live(self, enabled: bool) -> bool:
        """
        Switch between the live channel and REST.

        Returns:
            True if live is now connected
        """
        if self._closed:
            return False

        if not enabled:
            await self._stop_live()
            self._dispatch(SetConnectionMode("rest"))
            self._dispatch(LiveSessionEnded())
            return False

        if self.live_factory is None:
            logger.warning("⚠️ Live mode requested but no live client is configured")
            return False

        if self.live is None:
            self.live = self.live_factory(self._live_callbacks(), self.state.place_name)

        self._live_enabled = True
        try:
            connected = await self.live.connect()
        except ValueError as e:
            logger.warning(f"⚠️ Live unavailable: {e}")
            self._live_enabled = False
            self.live = None
            self._dispatch(SetConnectionMode("rest"))
            return False

        if not connected:
            logger.warning("⚠️ Live not connected yet, REST stays active")
        return connected

    async def _stop_live(self):
        self._cancel_output_guard()
        self._live_enabled = False
        live, self.live = self.live, None
        if live is not None:
            await live.disconnect()
        self.audio_scheduler.reset()
        if self.local_player is not None:
            self.local_player.stop()

    # ------------------------------------------------------------------
    # Location
    # ------------------------------------------------------------------

    async def _lookup(self, lat: float, lng: float) -> Optional[Place]:
        if self.places is None or not self.places.configured:
            return None
        try:
            places = await asyncio.to_thread(
                self.places.search_nearby, lat, lng, self.config.places_radius_m
            )
        except PlacesError as e:
            logger.warning(f"⚠️ Places lookup failed: {e}")
            return None
        return nearest_place(places)

    async def update_location(self, lat: float, lng: float) -> Optional[Place]:
        """Resolve GPS to a place and settle the session on it when it maps to a context."""
        self._last_coords = (lat, lng)
        place = await self._lookup(lat, lng)
        if place is None:
            return None

        self._dispatch(SetPlaceName(place.name))
        if self.live is not None:
            # Takes effect on the next session rotation
            self.live.config.place_name = place.name

        context = context_for_place(place)
        if context is not None:
            self._dispatch(SetSessionLocation(context, place_name=place.name, area_name=place.address))
        logger.info(f"📍 At {place.name} -> {context.value if context else 'no context'}")
        return place

    def location_unavailable(self):
        """GPS denied or missing: let the user pick."""
        logger.info("📍 Location unavailable")
        self._last_coords = None
        if self.state.session_location is None:
            self._dispatch(ShowLocationPicker())

    async def _resolve_shift(self):
        await self.stabilizer.drain()
        pending = self.state.pending_shift_context
        if pending is None:
            self._dispatch(TriggerShiftRefetch())
            return

        logger.info(f"🔄 Location shift towards {pending.value}, re-resolving")
        place = None
        if self._last_coords is not None:
            place = await self._lookup(*self._last_coords)

        current = self.state.session_location
        context = context_for_place(place) if place is not None else None
        if place is not None and context is not None and (current is None or place.name != current.place_name):
            self._dispatch(SetPlaceName(place.name))
            self._dispatch(SetSessionLocation(context, place_name=place.name, area_name=place.address))
        else:
            self._dispatch(SelectLocation(pending))
        self._dispatch(TriggerShiftRefetch())

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def focus_entity(self, entity: Optional[str]):
        """Focus (or clear with None) an entity and fetch phrases for it."""
        if self._phrase_task is not None and not self._phrase_task.done():
            self._phrase_task.cancel()
        self._phrase_task = None

        self._dispatch(FocusEntity(entity))
        if not entity:
            return

        if self.classifier is None:
            self._dispatch(SetEntityPhrases(entity, tuple(fallback_entity_phrases(entity))))
            return
        self._phrase_task = self._spawn(self._fetch_phrases(entity))

    async def _fetch_phrases(self, entity: str):
        try:
            phrases = await self.classifier.generate_entity_phrases(entity, self.state.context.current)
        except Exception as e:
            logger.error(f"❌ Entity phrase fetch failed for {entity}: {e}", exc_info=True)
            phrases = []

        if not phrases:
            # Keep the entity-biased grid
            self._dispatch(SetEntityPhrasesLoading(False))
            return
        self._dispatch(SetEntityPhrases(entity, tuple(phrases)))

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def lock(self, context=None) -> bool:
        target = ContextType.parse(context) if context is not None else self.state.context.current
        if target is None:
            return False
        return self._dispatch(LockContext(target))

    def unlock(self) -> bool:
        return self._dispatch(UnlockContext())

    def switch_to_background(self) -> bool:
        """Accept a major shift: lock onto the background context."""
        background = self.state.background_context
        if background is None:
            return False
        return self._dispatch(LockContext(background))

    def dismiss_shift(self) -> bool:
        return self._dispatch(DismissShiftAlert())

    def confirm_context(self, context) -> bool:
        target = ContextType.parse(context)
        if target is None:
            return False
        return self._dispatch(AffirmationConfirmed(target))

    def dismiss_affirmation(self, show_alternatives: bool = False) -> bool:
        return self._dispatch(AffirmationDismissed(show_alternatives))

    def select_location(self, context) -> bool:
        target = ContextType.parse(context)
        if target is None:
            return False
        return self._dispatch(SelectLocation(target))

    def show_location_picker(self, visible: bool = True) -> bool:
        return self._dispatch(ShowLocationPicker() if visible else HideLocationPicker())

    async def speak(self, text: str) -> SpeechResult:
        """Speak a tile: live voice when connected, otherwise the speech service."""
        if self.live_connected and await self.live.request_tts(text):
            return SpeechResult(audio_data=b"", source="live")
        if self.speech is None:
            return SpeechResult(audio_data=b"", source="browser")
        return await self.speech.speak(text)

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    def session_time_remaining(self) -> float:
        return self.live.session_time_remaining() if self.live_connected else 0.0

    def snapshot(self) -> dict:
        data = state_to_dict(self.state)
        data["session_time_remaining"] = self.session_time_remaining()
        return data

    def debug_snapshot(self) -> dict:
        state = self.state
        classification = state.context.classification
        last_update = (
            datetime.fromtimestamp(state.last_update, tz=timezone.utc).isoformat()
            if state.last_update else None
        )
        return {
            "connection_mode": state.connection_mode,
            "live_session_active": state.live_session_active,
            "session_time_remaining": round(self.session_time_remaining(), 1),
            "current_context": state.context.current.value if state.context.current else None,
            "background_context": state.background_context.value if state.background_context else None,
            "confidence": classification.confidence_score if classification else None,
            "is_locked": state.context_locked,
            "tile_count": len(display_tiles(state)),
            "last_update": last_update,
        }

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self):
        """Stop live, cancel in-flight work and the stabilizer. Idempotent."""
        if self._closed:
            return
        await self._stop_live()
        self._closed = True

        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self.stabilizer.close()
        logger.info("✓ Session closed")
