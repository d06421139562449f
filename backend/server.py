"""
Glimpse AAC Server
Receives camera frames and taps via Socket.IO, keeps one AACSession per
client, and pushes the stabilized tile state back to the browser.
"""

import base64
import binascii
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

import socketio
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from aac_models import ContextType
from aac_session import AACSession, SessionConfig
from affirmation import AffirmationConfig
from classifier_service import GeminiContextClassifier, fallback_entity_phrases, make_genai_client
from context_stabilizer import StabilizerConfig
from gemini_live import GeminiLiveClient, LiveClientConfig
from grid_generator import generate_grid
from places_service import PlacesClient
from speech_service import SpeechService

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', '8000'))
GRID_SIZE = int(os.getenv('GRID_SIZE', '9'))
CONTEXT_DEBOUNCE_FRAMES = int(os.getenv('CONTEXT_DEBOUNCE_FRAMES', '1'))
CONTEXT_DEBOUNCE_MS = int(os.getenv('CONTEXT_DEBOUNCE_MS', '100'))
REQUIRE_AFFIRMATION = os.getenv('REQUIRE_AFFIRMATION', 'true').lower() == 'true'

DEBUG_ROOM = 'debug'

# Shared services (created at startup, any of them may be missing)
classifier: Optional[GeminiContextClassifier] = None
speech_service: Optional[SpeechService] = None
places_client: Optional[PlacesClient] = None

# One session per connected socket
sessions: Dict[str, AACSession] = {}


def stabilizer_config() -> StabilizerConfig:
    return StabilizerConfig(
        debounce_threshold=CONTEXT_DEBOUNCE_FRAMES,
        debounce_interval_s=CONTEXT_DEBOUNCE_MS / 1000.0,
        grid_size=GRID_SIZE,
        require_affirmation=REQUIRE_AFFIRMATION,
        affirmation=AffirmationConfig(),
    )


def live_available() -> bool:
    return bool(os.getenv('GEMINI_API_KEY'))


def make_live_client(callbacks, place_name: Optional[str]) -> GeminiLiveClient:
    return GeminiLiveClient(LiveClientConfig(place_name=place_name), callbacks)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global classifier, speech_service, places_client

    try:
        logger.info("🤖 Initializing Gemini services...")
        client = make_genai_client()
        classifier = GeminiContextClassifier(client=client)
        speech_service = SpeechService(client=client)
        logger.info(f"✓ Classifier ready ({classifier.model})")
    except Exception as e:
        logger.error(f"✗ Gemini initialization failed, fallback tiles only: {e}")
        classifier = None
        speech_service = SpeechService(client=None)

    places_client = PlacesClient()
    if places_client.configured:
        logger.info("✓ Places lookup enabled")
    else:
        logger.info("⚠️ GOOGLE_PLACES_API_KEY not set, location lookup disabled")

    yield

    logger.info("🛑 Shutting down server...")
    for sid in list(sessions):
        session = sessions.pop(sid, None)
        if session is not None:
            await session.close()


app = FastAPI(title="Glimpse AAC Server", lifespan=lifespan)
sio = socketio.AsyncServer(async_mode='asgi', cors_allowed_origins='*')
socket_app = socketio.ASGIApp(socketio_server=sio, other_asgi_app=app)


# ============================================================================
# HTTP ROUTES
# ============================================================================

@app.get("/health")
async def health():
    """Health check with service status."""
    return {
        "status": "healthy",
        "classifier_ready": classifier is not None,
        "live_available": live_available(),
        "places_enabled": places_client is not None and places_client.configured,
        "sessions": len(sessions),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/debug/state")
async def debug_state():
    """Debug projection of every live session."""
    return {
        "sessions": [{"sid": sid, **session.debug_snapshot()} for sid, session in sessions.items()],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/api/grid")
async def api_grid(
    context: str = Query(...),
    grid_size: int = Query(9, ge=1, le=24),
    entities: str = Query(""),
):
    """Stateless grid generation for a context."""
    parsed = ContextType.parse(context)
    if parsed is None:
        raise HTTPException(status_code=400, detail=f"Unknown context: {context}")

    entity_list = [e.strip() for e in entities.split(",") if e.strip()]
    grid = generate_grid(parsed, grid_size=grid_size, entities=entity_list)
    return {
        "grid_id": grid.grid_id,
        "context": grid.context.value,
        "grid_size": grid.grid_size,
        "cols": grid.cols,
        "generated_at": grid.generated_at.isoformat(),
        "tiles": [
            {
                "id": gt.tile.id,
                "label": gt.tile.label,
                "tts": gt.tile.tts,
                "emoji": gt.tile.emoji,
                "action": gt.tile.action,
                "is_core": gt.tile.always_show,
                "position": gt.position,
                "row": gt.row,
                "col": gt.col,
                "relevance_score": gt.relevance_score,
            }
            for gt in grid.tiles
        ],
    }


class TTSRequest(BaseModel):
    text: str
    voice: Optional[str] = None


@app.post("/api/tts")
async def api_tts(request: TTSRequest):
    """Text -> raw PCM (24kHz, 16-bit, mono)."""
    text = request.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Text is required")

    service = speech_service or SpeechService(client=None)
    result = await service.speak(text, voice=request.voice)
    if not result.has_audio:
        return JSONResponse(
            status_code=503,
            content={"error": "Speech unavailable", "source": result.source}
        )

    return Response(
        content=result.audio_data,
        media_type="audio/pcm",
        headers={
            "X-Audio-Sample-Rate": str(result.sample_rate),
            "X-Audio-Bit-Depth": "16",
            "X-Audio-Channels": "1",
            "X-Audio-Source": result.source,
        }
    )


class EntityPhrasesRequest(BaseModel):
    entity: str
    context: Optional[str] = None


@app.post("/api/entity-phrases")
async def api_entity_phrases(request: EntityPhrasesRequest):
    """Phrases about one entity (generic fallbacks when Gemini is unavailable)."""
    entity = request.entity.strip()
    if not entity:
        raise HTTPException(status_code=400, detail="Entity is required")

    if classifier is None:
        phrases = fallback_entity_phrases(entity)
    else:
        phrases = await classifier.generate_entity_phrases(entity, ContextType.parse(request.context))
    return {"entity": entity, "phrases": [p.to_dict() for p in phrases]}


# ============================================================================
# WEBSOCKET EVENT HANDLERS
# ============================================================================

def _emitter(sid: str):
    async def emit(event: str, payload: dict):
        if event == 'debug_state':
            await sio.emit('debug_state', {'sid': sid, **payload}, room=DEBUG_ROOM)
        else:
            await sio.emit(event, payload, room=sid)
    return emit


def _payload(data) -> dict:
    return data if isinstance(data, dict) else {}


@sio.event
async def connect(sid, environ):
    logger.info(f"✓ Client connected: {sid}")
    session = AACSession(
        SessionConfig(stabilizer=stabilizer_config()),
        classifier=classifier,
        speech=speech_service,
        places=places_client,
        live_factory=make_live_client if live_available() else None,
        emit=_emitter(sid),
    )
    sessions[sid] = session
    await session.start()
    await sio.emit('aac_state', session.snapshot(), room=sid)

    if live_available():
        sio.start_background_task(session.set_live, True)


@sio.event
async def disconnect(sid):
    logger.info(f"✗ Client disconnected: {sid}")
    session = sessions.pop(sid, None)
    if session is not None:
        await session.close()


@sio.event
async def video_frame(sid, data):
    session = sessions.get(sid)
    frame = _payload(data).get('frame')
    if session is None or not frame:
        return
    try:
        await session.handle_frame(frame)
    except Exception as e:
        logger.error(f"❌ Frame processing failed: {e}", exc_info=True)


@sio.event
async def audio_chunk(sid, data):
    session = sessions.get(sid)
    data = _payload(data)
    pcm = data.get('pcm')
    if session is None or not pcm:
        return
    try:
        if isinstance(pcm, str):
            pcm = base64.b64decode(pcm)
        await session.handle_audio(bytes(pcm), int(data.get('sample_rate') or 16000))
    except (binascii.Error, ValueError, TypeError) as e:
        logger.warning(f"⚠️ Bad audio chunk from {sid}: {e}")
    except Exception as e:
        logger.error(f"❌ Audio forwarding failed: {e}", exc_info=True)


@sio.event
async def toggle_live(sid, data):
    session = sessions.get(sid)
    if session is None:
        return
    enabled = bool(_payload(data).get('enabled'))
    logger.info(f"🔀 {sid} live mode -> {enabled}")
    try:
        await session.set_live(enabled)
    except Exception as e:
        logger.error(f"❌ Live toggle failed: {e}", exc_info=True)


@sio.event
async def lock_context(sid, data=None):
    session = sessions.get(sid)
    if session is not None:
        session.lock(_payload(data).get('context'))


@sio.event
async def unlock_context(sid, data=None):
    session = sessions.get(sid)
    if session is not None:
        session.unlock()


@sio.event
async def switch_context(sid, data=None):
    session = sessions.get(sid)
    if session is not None:
        session.switch_to_background()


@sio.event
async def dismiss_shift(sid, data=None):
    session = sessions.get(sid)
    if session is not None:
        session.dismiss_shift()


@sio.event
async def confirm_context(sid, data):
    session = sessions.get(sid)
    if session is not None:
        session.confirm_context(_payload(data).get('context'))


@sio.event
async def dismiss_affirmation(sid, data=None):
    session = sessions.get(sid)
    if session is not None:
        session.dismiss_affirmation(bool(_payload(data).get('show_alternatives')))


@sio.event
async def select_location(sid, data):
    session = sessions.get(sid)
    if session is not None:
        session.select_location(_payload(data).get('context'))


@sio.event
async def show_location_picker(sid, data=None):
    session = sessions.get(sid)
    if session is not None:
        session.show_location_picker(_payload(data).get('visible', True))


@sio.event
async def gps_location(sid, data):
    session = sessions.get(sid)
    if session is None:
        return
    data = _payload(data)
    try:
        lat = float(data['latitude'])
        lng = float(data['longitude'])
    except (KeyError, TypeError, ValueError):
        session.location_unavailable()
        return
    try:
        await session.update_location(lat, lng)
    except Exception as e:
        logger.error(f"❌ Location update failed: {e}", exc_info=True)


@sio.event
async def gps_unavailable(sid, data=None):
    session = sessions.get(sid)
    if session is not None:
        session.location_unavailable()


@sio.event
async def focus_entity(sid, data):
    session = sessions.get(sid)
    if session is not None:
        session.focus_entity(_payload(data).get('entity'))


@sio.event
async def speak(sid, data):
    session = sessions.get(sid)
    text = (_payload(data).get('text') or '').strip()
    if session is None or not text:
        return
    try:
        result = await session.speak(text)
    except Exception as e:
        logger.error(f"❌ Speak failed: {e}", exc_info=True)
        return
    await sio.emit('speech', {
        'text': text,
        'pcm': result.audio_data or None,
        'sample_rate': result.sample_rate,
        'source': result.source
    }, room=sid)


@sio.event
async def join_debug(sid, data=None):
    await sio.enter_room(sid, DEBUG_ROOM)
    logger.info(f"🔍 {sid} joined debug room")
    for session_sid, session in list(sessions.items()):
        await sio.emit('debug_state', {'sid': session_sid, **session.debug_snapshot()}, room=sid)


def main():
    uvicorn.run(socket_app, host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()
