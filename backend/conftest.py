"""
Shared fakes for the Glimpse backend tests.

Nothing here talks to the network: Gemini, the Live socket and the places
API are all replaced by in-memory stand-ins.
"""

import asyncio
import json
from types import SimpleNamespace

import pytest

from aac_models import ContextClassification, ContextType
from classifier_service import ClassificationResult, ClassifierError, fallback_entity_phrases
from gemini_live import LiveClientConfig
from speech_service import SpeechResult


def classification(primary=ContextType.PLAYGROUND, confidence=0.9, secondary=(), entities=(), inference=""):
    return ContextClassification(
        primary_context=primary,
        confidence_score=confidence,
        secondary_contexts=tuple(secondary),
        entities_detected=tuple(entities),
        situation_inference=inference,
    )


@pytest.fixture
def make_classification():
    return classification


# =============================================================================
# google-genai
# =============================================================================

class FakeModels:
    """Stands in for client.aio.models; replies are consumed in order."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def generate_content(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        reply = self.replies.pop(0) if self.replies else Exception("no reply queued")
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeGenaiClient:
    def __init__(self, *replies):
        self.models = FakeModels(replies)
        self.aio = SimpleNamespace(models=self.models)


def text_reply(text):
    return SimpleNamespace(text=text)


def audio_reply(data):
    inline = SimpleNamespace(data=data, mime_type="audio/pcm")
    part = SimpleNamespace(inline_data=inline)
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])


# =============================================================================
# Session collaborators
# =============================================================================

class FakeClassifier:
    """Returns queued classifications (or raises queued errors)."""

    def __init__(self, *results, phrases=None):
        self.results = list(results)
        self.calls = []
        self.phrase_calls = []
        self.phrases = phrases
        self.gate = None  # asyncio.Event to hold classify() open

    async def classify(self, image_base64, location_hint=None):
        self.calls.append((image_base64, location_hint))
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if self.results else ClassifierError("no result queued")
        if isinstance(result, Exception):
            raise result
        return ClassificationResult(classification=result, latency_ms=1.0, cached=False)

    async def generate_entity_phrases(self, entity, context=None):
        self.phrase_calls.append((entity, context))
        if isinstance(self.phrases, Exception):
            raise self.phrases
        if self.phrases is None:
            return fallback_entity_phrases(entity)
        return list(self.phrases)


class FakeSpeech:
    def __init__(self, result=None):
        self.result = result or SpeechResult(audio_data=b"\x01\x00" * 10, source="gemini")
        self.spoken = []

    async def speak(self, text, voice=None):
        self.spoken.append(text)
        return self.result


class FakePlaces:
    """Blocking search_nearby like PlacesClient."""

    def __init__(self, *responses, configured=True):
        self.responses = list(responses)
        self.configured = configured
        self.calls = []

    def search_nearby(self, lat, lng, radius_m=100.0, max_results=3):
        self.calls.append((lat, lng, radius_m))
        response = self.responses.pop(0) if self.responses else []
        if isinstance(response, Exception):
            raise response
        return response


class FakeLiveClient:
    """Minimal GeminiLiveClient surface used by AACSession."""

    def __init__(self, callbacks, place_name=None, connect_result=True, connect_error=None):
        self.callbacks = callbacks
        self.config = LiveClientConfig(api_key="test-key", place_name=place_name)
        self.connect_result = connect_result
        self.connect_error = connect_error
        self.is_connected = False
        self.frames = []
        self.audio = []
        self.tts = []
        self.disconnected = False

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.is_connected = self.connect_result
        if self.is_connected and self.callbacks.on_connect:
            self.callbacks.on_connect()
        return self.is_connected

    async def disconnect(self):
        self.disconnected = True
        self.is_connected = False

    async def send_frame(self, image_base64):
        self.frames.append(image_base64)
        return True

    async def send_audio(self, pcm):
        self.audio.append(pcm)
        return True

    async def request_tts(self, phrase):
        self.tts.append(phrase)
        return True

    def session_time_remaining(self):
        return 95.0


class Emitted:
    """Collects (event, payload) pairs from AACSession."""

    def __init__(self):
        self.events = []

    async def __call__(self, event, payload):
        self.events.append((event, payload))

    def of(self, name):
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def emitted():
    return Emitted()


# =============================================================================
# Live socket
# =============================================================================

class FakeWebSocket:
    """
    Async-iterable socket. Messages fed with feed(); close() or the end of
    the scripted messages stops iteration unless hold_open is set.
    """

    def __init__(self, messages=(), close_code=1000, hold_open=False):
        self.sent = []
        self.close_code = close_code
        self.closed = False
        self._incoming = asyncio.Queue()
        for message in messages:
            self._incoming.put_nowait(message)
        if not hold_open:
            self._incoming.put_nowait(None)

    def feed(self, message):
        self._incoming.put_nowait(message)

    async def send(self, data):
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(data))

    async def close(self):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeConnector:
    """connect_factory for GeminiLiveClient: hands out scripted sockets or errors."""

    def __init__(self, *results, default=None):
        self.results = list(results)
        self.default = default
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        if self.results:
            result = self.results.pop(0)
        elif self.default is not None:
            result = self.default()
        else:
            result = OSError("connection refused")
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def fake_ws():
    return FakeWebSocket


@pytest.fixture
def connector():
    return FakeConnector


@pytest.fixture
def fakes():
    """The fake classes, for tests that build their own."""
    return SimpleNamespace(
        Classifier=FakeClassifier,
        Speech=FakeSpeech,
        Places=FakePlaces,
        Live=FakeLiveClient,
        GenaiClient=FakeGenaiClient,
        text_reply=text_reply,
        audio_reply=audio_reply,
    )
