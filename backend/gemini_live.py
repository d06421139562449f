"""
Gemini Live streaming client for Glimpse

Keeps one BidiGenerateContent WebSocket open, streams camera frames and
microphone audio up, and turns the model's JSON replies into
ContextClassification / DisplayTile callbacks. Native audio replies are
queued and handed to on_audio.

Sessions are capped by the API, so the client rotates the socket shortly
before expiry and reconnects with exponential backoff on abnormal closes.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import websockets
from dotenv import load_dotenv

from json_extract import ClassificationParseError, extract_json_object, parse_classification, parse_live_tiles

load_dotenv()

logger = logging.getLogger(__name__)

LIVE_ENDPOINT = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1alpha.GenerativeService.BidiGenerateContent"
)
DEFAULT_LIVE_MODEL = "gemini-2.0-flash-exp"

NORMAL_CLOSURE = 1000

# Keys that mark a model reply as carrying a classification
CLASSIFICATION_KEYS = ("context", "primaryContext", "primary_context")

LIVE_SYSTEM_PROMPT = """You help a non-verbal child communicate. You see their camera and hear their surroundings.
For every frame reply with one JSON object and nothing else:
{
  "context": {
    "primaryContext": "restaurant|kitchen|home|playground|classroom|store|medical|bathroom|greeting|unknown",
    "confidenceScore": 0.0-1.0,
    "secondaryContexts": [],
    "entitiesDetected": ["cup", "menu"],
    "socialCue": "question_detected|offer_detected|waiting|null",
    "situationInference": "one short sentence"
  },
  "tiles": [{"id": "tile_1", "label": "Yes please", "tts": "Yes please!", "emoji": "👍", "relevanceScore": 95}]
}
- If someone is talking to the child, suggest tiles that answer them
- Otherwise suggest requests that fit the scene
- First person, 1-3 word labels, 3-6 tiles, relevance 0-100
- Use "unknown" when the camera faces the child"""


def build_system_prompt(place_name: Optional[str] = None, base_prompt: str = LIVE_SYSTEM_PROMPT) -> str:
    """Append the nearby place (from GPS) to the prompt when known."""
    if not place_name:
        return base_prompt
    return (
        f"{base_prompt}\n\nLocation Context:\nThe child is at or near \"{place_name}\". "
        "Use this to inform the context and tiles."
    )


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before reconnect attempt N (1-based): min(base * 2^(N-1), max)."""
    return min(base * (2 ** (attempt - 1)), maximum)


@dataclass
class LiveClientConfig:
    """Tunable parameters for the live channel."""
    api_key: str = field(default_factory=lambda: os.environ.get("GEMINI_API_KEY", ""))
    model: str = field(default_factory=lambda: os.environ.get("GEMINI_LIVE_MODEL", DEFAULT_LIVE_MODEL))
    endpoint: str = LIVE_ENDPOINT
    voice: str = "Puck"
    response_modalities: List[str] = field(default_factory=lambda: ["AUDIO", "TEXT"])
    system_prompt: str = LIVE_SYSTEM_PROMPT
    place_name: Optional[str] = None

    # API session cap and how early to rotate
    session_limit_s: float = 120.0
    reconnect_buffer_s: float = 10.0

    max_reconnect_attempts: int = 5
    base_reconnect_delay_s: float = 1.0
    max_reconnect_delay_s: float = 30.0

    connect_timeout_s: float = 10.0
    audio_queue_size: int = 64


@dataclass
class LiveCallbacks:
    """Optional hooks. All are plain callables run on the event loop."""
    on_connect: Optional[Callable[[], None]] = None
    on_context: Optional[Callable] = None          # (ContextClassification)
    on_tiles: Optional[Callable] = None            # (List[DisplayTile])
    on_audio: Optional[Callable[[bytes], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_disconnect: Optional[Callable[[], None]] = None
    on_session_expiring: Optional[Callable[[], None]] = None
    on_reconnecting: Optional[Callable[[int, float], None]] = None
    on_failed: Optional[Callable[[Exception], None]] = None


def _default_connect(url: str):
    return websockets.connect(url, max_size=None)


class GeminiLiveClient:
    """
    One streaming session to the Gemini Live API.

    Usage:
        client = GeminiLiveClient(LiveClientConfig(), LiveCallbacks(on_context=...))
        await client.connect()
        await client.send_frame(jpeg_base64)
        ...
        await client.disconnect()
    """

    def __init__(
        self,
        config: Optional[LiveClientConfig] = None,
        callbacks: Optional[LiveCallbacks] = None,
        connect_factory: Optional[Callable] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            config: LiveClientConfig (defaults read the environment)
            callbacks: LiveCallbacks to notify
            connect_factory: url -> awaitable connection; swapped out in tests
            clock: monotonic time source for the session timer
        """
        self.config = config or LiveClientConfig()
        self.callbacks = callbacks or LiveCallbacks()
        self._connect_factory = connect_factory or _default_connect
        self._clock = clock

        # Session state
        self._ws = None
        self.is_connected = False
        self._connect_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._first_attempt: Optional[asyncio.Event] = None
        self._session_timer: Optional[asyncio.TimerHandle] = None
        self._close_task: Optional[asyncio.Task] = None
        self._session_started: Optional[float] = None
        self._closing = False
        self._rotating = False

        self._audio_queue: deque = deque(maxlen=self.config.audio_queue_size)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _url(self) -> str:
        return f"{self.config.endpoint}?key={self.config.api_key}"

    def _setup_message(self) -> dict:
        return {
            "setup": {
                "model": f"models/{self.config.model}",
                "generationConfig": {
                    "responseModalities": list(self.config.response_modalities),
                    "speechConfig": {
                        "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.config.voice}}
                    },
                },
                "systemInstruction": {
                    "parts": [{"text": build_system_prompt(self.config.place_name, self.config.system_prompt)}]
                },
            }
        }

    async def connect(self) -> bool:
        """
        Start the session loop and wait for the first connection attempt.

        Returns:
            True if the socket is open and the setup message was sent
        """
        async with self._connect_lock:
            if self.running:
                return self.is_connected
            if not self.config.api_key:
                raise ValueError("GEMINI_API_KEY not found in environment")

            self._closing = False
            self._first_attempt = asyncio.Event()
            self._task = asyncio.create_task(self._run())

        try:
            await asyncio.wait_for(self._first_attempt.wait(), timeout=self.config.connect_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("⚠️ Live connect timed out")
        return self.is_connected

    async def disconnect(self):
        """Close the session. No callbacks fire after this returns."""
        async with self._connect_lock:
            self._closing = True
            self._cancel_session_timer()

            if self._ws is not None:
                await self._close_socket(self._ws)

            task = self._task
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            close_task, self._close_task = self._close_task, None
            if close_task is not None and not close_task.done():
                await close_task

            self._task = None
            self._ws = None
            self.is_connected = False
            self._session_started = None

    async def _run(self):
        attempts = 0
        while not self._closing:
            error: Optional[Exception] = None
            try:
                ws = await self._connect_factory(self._url())
            except (websockets.WebSocketException, OSError, asyncio.TimeoutError) as e:
                error = e
                logger.warning(f"⚠️ Live connect failed: {e}")
                self._fire("on_error", e)
                self._signal_first_attempt()
            else:
                attempts = 0
                error = await self._serve(ws)

            if self._closing:
                break

            if self._rotating:
                # Planned rotation does not count as a failure
                self._rotating = False
                logger.info("🔄 Rotating live session")
                continue

            if error is None:
                logger.info("✓ Live session closed normally")
                break

            attempts += 1
            if attempts > self.config.max_reconnect_attempts:
                logger.error(f"❌ Live reconnect failed after {self.config.max_reconnect_attempts} attempts")
                self._fire("on_failed", error)
                break

            delay = backoff_delay(attempts, self.config.base_reconnect_delay_s, self.config.max_reconnect_delay_s)
            logger.warning(
                f"⚠️ Live disconnected ({error}), attempt {attempts}/{self.config.max_reconnect_attempts} "
                f"in {delay:.1f}s"
            )
            self._fire("on_reconnecting", attempts, delay)
            await asyncio.sleep(delay)

    async def _serve(self, ws) -> Optional[Exception]:
        """Run one open socket. Returns None for a normal close or rotation."""
        self._ws = ws
        error: Optional[Exception] = None
        try:
            await ws.send(json.dumps(self._setup_message()))
            self.is_connected = True
            self._session_started = self._clock()
            self._arm_session_timer()
            logger.info(f"✅ Live session open ({self.config.model})")
            self._fire("on_connect")
            self._signal_first_attempt()

            async for message in ws:
                self._handle_message(message)

            code = getattr(ws, "close_code", None)
            if code != NORMAL_CLOSURE and not self._rotating:
                error = ConnectionError(f"live socket closed with code {code}")
        except (websockets.ConnectionClosed, OSError) as e:
            if not self._rotating:
                error = e
        finally:
            self._cancel_session_timer()
            self._ws = None
            self.is_connected = False
            self._signal_first_attempt()

        if error is not None:
            self._fire("on_error", error)
        self._fire("on_disconnect")
        return error

    def _signal_first_attempt(self):
        if self._first_attempt is not None:
            self._first_attempt.set()

    # ------------------------------------------------------------------
    # Session rotation
    # ------------------------------------------------------------------

    def _arm_session_timer(self):
        self._cancel_session_timer()
        delay = max(0.0, self.config.session_limit_s - self.config.reconnect_buffer_s)
        self._session_timer = asyncio.get_running_loop().call_later(delay, self._rotate)

    def _cancel_session_timer(self):
        if self._session_timer is not None:
            self._session_timer.cancel()
            self._session_timer = None

    def _rotate(self):
        self._session_timer = None
        ws = self._ws
        if ws is None or self._closing:
            return
        self._fire("on_session_expiring")
        self._rotating = True
        self._close_task = asyncio.get_running_loop().create_task(self._close_socket(ws))

    async def _close_socket(self, ws):
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Live close error: {e}")

    def session_time_remaining(self) -> float:
        """Seconds until the API cuts the session (0 when not connected)."""
        if not self.is_connected or self._session_started is None:
            return 0.0
        elapsed = self._clock() - self._session_started
        return max(0.0, self.config.session_limit_s - elapsed)

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    def _handle_message(self, message):
        if isinstance(message, (bytes, bytearray)):
            # JSON envelopes can arrive as binary frames too
            if message[:1] == b"{":
                try:
                    message = bytes(message).decode("utf-8")
                except UnicodeDecodeError:
                    self._push_audio(bytes(message))
                    return
            else:
                self._push_audio(bytes(message))
                return

        try:
            envelope = json.loads(message)
        except ValueError:
            return
        if not isinstance(envelope, dict):
            return

        if "setupComplete" in envelope:
            logger.info("✓ Live setup complete")
            return

        server_content = envelope.get("serverContent")
        if not isinstance(server_content, dict):
            return
        model_turn = server_content.get("modelTurn")
        if not isinstance(model_turn, dict):
            return

        for part in model_turn.get("parts") or []:
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("text"), str):
                self._handle_text(part["text"])
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict):
                mime = inline.get("mimeType") or inline.get("mime_type") or ""
                if not str(mime).startswith("audio/"):
                    continue
                try:
                    audio = base64.b64decode(inline.get("data") or "", validate=True)
                except (binascii.Error, ValueError):
                    continue
                if audio:
                    self._push_audio(audio)

    def _handle_text(self, text: str):
        data = extract_json_object(text)
        if data is None:
            return

        if any(key in data for key in CLASSIFICATION_KEYS):
            try:
                classification = parse_classification(data)
            except ClassificationParseError as e:
                logger.debug(f"Dropped live context: {e}")
            else:
                self._fire("on_context", classification)

        tiles = parse_live_tiles(data.get("tiles"))
        if tiles:
            self._fire("on_tiles", tiles)

    def _push_audio(self, audio: bytes):
        self._audio_queue.append(audio)
        self._fire("on_audio", audio)

    def drain_audio(self) -> List[bytes]:
        """Take every queued audio chunk."""
        chunks = list(self._audio_queue)
        self._audio_queue.clear()
        return chunks

    def _fire(self, name: str, *args):
        if self._closing:
            return
        callback = getattr(self.callbacks, name, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"❌ Live callback {name} failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def _send(self, payload: dict) -> bool:
        ws = self._ws
        if ws is None or not self.is_connected:
            return False
        try:
            await ws.send(json.dumps(payload))
            return True
        except websockets.ConnectionClosed as e:
            logger.warning(f"⚠️ Live send failed: {e}")
            return False

    async def send_frame(self, image_base64: str) -> bool:
        """Send one JPEG frame (base64, data URL prefix allowed)."""
        if image_base64.startswith("data:"):
            image_base64 = image_base64.split(",", 1)[1]
        return await self._send({
            "realtime_input": {
                "media_chunks": [{"mime_type": "image/jpeg", "data": image_base64}]
            }
        })

    async def send_audio(self, pcm_16k: bytes) -> bool:
        """Send raw PCM: 16 kHz, 16-bit signed, mono."""
        return await self._send({
            "realtime_input": {
                "media_chunks": [{
                    "mime_type": "audio/pcm;rate=16000",
                    "data": base64.b64encode(pcm_16k).decode("ascii"),
                }]
            }
        })

    async def send_text(self, text: str) -> bool:
        return await self._send({
            "client_content": {
                "turns": [{"role": "user", "parts": [{"text": text}]}],
                "turn_complete": True,
            }
        })

    async def request_tts(self, phrase: str) -> bool:
        """Ask the model to speak a phrase with its native voice."""
        return await self.send_text(f'Please speak this phrase aloud: "{phrase}"')
