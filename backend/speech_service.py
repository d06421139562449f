"""
Speech output for Glimpse

Gemini TTS for natural voices, with on-device pyttsx3 synthesis as the
fallback so a tapped tile is always spoken.
"""

import asyncio
import logging
import os
import tempfile
import time
import wave
from dataclasses import dataclass
from typing import Optional

import pyttsx3
from dotenv import load_dotenv
from google.genai.types import GenerateContentConfig, SpeechConfig, VoiceConfig

load_dotenv()

logger = logging.getLogger(__name__)

TTS_MODEL = "gemini-2.5-flash-preview-tts"
DEFAULT_VOICE = "Leda"
SAMPLE_RATE = 24000


class SpeechError(Exception):
    """Synthesis failed. Never escapes SpeechService.speak()."""


@dataclass
class SpeechResult:
    """Synthesized speech as raw PCM (16-bit, mono)."""
    audio_data: bytes
    sample_rate: int = SAMPLE_RATE
    source: str = "gemini"  # "gemini" | "device" | "browser"
    latency_ms: float = 0.0

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_data)

    def save_wav(self, filepath: str):
        """Save audio as WAV file."""
        with wave.open(filepath, 'wb') as wav:
            wav.setnchannels(1)  # Mono
            wav.setsampwidth(2)  # 16-bit
            wav.setframerate(self.sample_rate)
            wav.writeframes(self.audio_data)


def _synthesize_on_device(text: str, rate_delta: int = -30) -> SpeechResult:
    """Blocking pyttsx3 render to a temp WAV, returned as PCM."""
    fd, path = tempfile.mkstemp(suffix=".wav")
    os.close(fd)
    try:
        engine = pyttsx3.init()
        engine.setProperty('rate', engine.getProperty('rate') + rate_delta)
        engine.save_to_file(text, path)
        engine.runAndWait()
        engine.stop()

        with wave.open(path, 'rb') as wav:
            if wav.getsampwidth() != 2 or wav.getnchannels() != 1:
                raise SpeechError("Unexpected device audio format")
            return SpeechResult(
                audio_data=wav.readframes(wav.getnframes()),
                sample_rate=wav.getframerate(),
                source="device",
            )
    finally:
        try:
            os.remove(path)
        except OSError:
            pass


class SpeechService:
    """
    Text -> speech.

    Usage:
        service = SpeechService(client)
        result = await service.speak("I would like water please")
    """

    def __init__(self, client=None, model: str = TTS_MODEL, voice: str = DEFAULT_VOICE, use_device_fallback: bool = True):
        """
        Args:
            client: google-genai Client, or None for device-only speech
            model: Gemini TTS model
            voice: Prebuilt voice name
            use_device_fallback: Try pyttsx3 before giving up
        """
        self.client = client
        self.model = model
        self.voice = voice
        self.use_device_fallback = use_device_fallback

    async def _synthesize_gemini(self, text: str, voice: str) -> bytes:
        config = GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=SpeechConfig(
                voice_config=VoiceConfig(
                    prebuilt_voice_config={"voice_name": voice}
                )
            )
        )
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=f'Say exactly: "{text}"',
            config=config
        )

        try:
            inline = response.candidates[0].content.parts[0].inline_data
        except (AttributeError, IndexError, TypeError) as e:
            raise SpeechError("No audio in TTS response") from e
        if inline is None or not inline.data:
            raise SpeechError("No audio in TTS response")
        return inline.data

    async def speak(self, text: str, voice: Optional[str] = None) -> SpeechResult:
        """
        Synthesize text. Never raises for synthesis failures.

        Returns:
            SpeechResult; source "browser" with empty audio means the
            client should speak it itself
        """
        start_time = time.perf_counter()
        voice = voice or self.voice

        if self.client is not None:
            try:
                audio = await self._synthesize_gemini(text, voice)
                latency = (time.perf_counter() - start_time) * 1000
                logger.info(f"🔊 Gemini TTS: {len(audio)} bytes in {latency:.0f}ms")
                return SpeechResult(audio_data=audio, source="gemini", latency_ms=latency)
            except Exception as e:
                logger.warning(f"⚠️ Gemini TTS failed, using device speech: {e}")

        if self.use_device_fallback:
            try:
                result = await asyncio.to_thread(_synthesize_on_device, text)
                result.latency_ms = (time.perf_counter() - start_time) * 1000
                logger.info(f"🔊 Device TTS: {len(result.audio_data)} bytes")
                return result
            except Exception as e:
                logger.error(f"❌ Device TTS failed: {e}", exc_info=True)

        return SpeechResult(
            audio_data=b"",
            source="browser",
            latency_ms=(time.perf_counter() - start_time) * 1000,
        )
