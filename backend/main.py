"""
RecallAR Backend - FastAPI Server
Main entry point for the AR memory aid backend.

Handles:
- People and conversation records for the caregiver
- Conversation summaries
- WebSocket AR sessions: live recognition and overlay updates
"""

import asyncio
import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Set, Tuple

from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

import database
from ar_session import ARSession
from camera import StreamedFrameSource, WebcamSource
from config import Settings, get_settings
from face_detection import FaceAnalyzer, decode_image
from models import (
    Conversation,
    ConversationCreate,
    Person,
    PersonCreate,
    PersonUpdate,
    Stats,
    SummarizeRequest,
    SummarizeResponse,
    WebSocketMessage,
)
from overlay import LatestValue
from summarizer import check_connection, summarize_async

logger = logging.getLogger(__name__)


# ============================================================================
# Application Lifecycle
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application startup and shutdown handler.
    Opens the database and loads the face models once for all sessions.
    """
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger.info("Starting RecallAR backend...")

    database.configure(settings.database_path)
    database.init_database()
    logger.info("Database has %d people", len(database.get_all_people()))

    analyzer = FaceAnalyzer(
        model_name=settings.face_model_name,
        det_size=settings.face_det_size,
        det_threshold=settings.face_det_threshold,
    )
    logger.info("Initializing face recognition model...")
    if not await asyncio.to_thread(analyzer.load):
        logger.warning("Face model unavailable; recognition and registration are degraded")

    app.state.settings = settings
    app.state.face_analyzer = analyzer
    logger.info("Backend ready!")

    yield

    logger.info("Shutting down...")
    database.close_connection()


# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title="RecallAR API",
    description="AR memory aid backend: people, conversations and live face recognition",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _get_analyzer(request: Request) -> FaceAnalyzer:
    return request.app.state.face_analyzer


# ============================================================================
# WebSocket Connection Manager
# ============================================================================

class ConnectionManager:
    """
    Manages active WebSocket connections.
    Each connection runs its own AR session.
    """

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info("Client connected. Total: %d", len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)
        logger.info("Client disconnected. Total: %d", len(self.active_connections))

    async def send_json(self, websocket: WebSocket, data: dict):
        try:
            await websocket.send_json(data)
        except Exception as e:
            logger.warning("Send error: %s", e)


manager = ConnectionManager()


# ============================================================================
# Helper Functions
# ============================================================================

def split_data_url(image_base64: str) -> Tuple[bytes, str]:
    """
    Decode a base64 photo, with or without a data URL prefix.
    Returns (bytes, content_type).
    """
    content_type = "image/jpeg"
    payload = image_base64
    if image_base64.startswith("data:") and "," in image_base64:
        header, payload = image_base64.split(",", 1)
        content_type = header[5:].split(";", 1)[0] or content_type

    try:
        return base64.b64decode(payload, validate=True), content_type
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid base64 image") from None


def _require_person(person_id: int) -> dict:
    person = database.get_person(person_id)
    if not person:
        raise HTTPException(status_code=404, detail="Person not found")
    return person


async def _send_overlays(websocket: WebSocket, latest: LatestValue, updated: asyncio.Event):
    """Push overlay states to the client, skipping unchanged ones."""
    last_sent: Optional[dict] = None
    while True:
        await updated.wait()
        updated.clear()
        state = latest.get()
        if state is None or state == last_sent:
            continue
        await manager.send_json(websocket, {"type": "overlay", "data": state})
        last_sent = state


# ============================================================================
# WebSocket Endpoint
# ============================================================================

@app.websocket("/ws/ar")
async def ar_websocket(websocket: WebSocket):
    """
    One AR session per connection.

    Protocol:
    - Client sends: {"type": "frame", "data": {"image_base64": "..."}}
    - Server sends: {"type": "overlay", "data": {status, tracking, position, person}}
    """
    await manager.connect(websocket)
    settings: Settings = websocket.app.state.settings

    if settings.camera_device is not None:
        camera = WebcamSource(settings.camera_device, settings.camera_width, settings.camera_height)
    else:
        camera = StreamedFrameSource(max_age=settings.stream_frame_max_age)

    latest = LatestValue(None)
    updated = asyncio.Event()

    def push_overlay(state: dict):
        latest.set(state)
        updated.set()

    session = ARSession(
        settings,
        database.SQLiteIdentityStore(),
        websocket.app.state.face_analyzer,
        camera,
        on_redraw=push_overlay,
    )
    sender = asyncio.create_task(_send_overlays(websocket, latest, updated))

    try:
        await session.start()
        push_overlay(session.snapshot())

        while True:
            raw_message = await websocket.receive_text()

            try:
                message = WebSocketMessage.model_validate_json(raw_message)
            except ValidationError:
                continue

            if message.type == "ping":
                await manager.send_json(websocket, {"type": "pong"})

            elif message.type == "frame":
                image_base64 = (message.data or {}).get("image_base64")
                if image_base64 and isinstance(camera, StreamedFrameSource):
                    camera.push(image_base64)

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("AR session error")
    finally:
        await session.stop()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Overlay sender error: %s", e)
        manager.disconnect(websocket)


# ============================================================================
# REST API Endpoints
# ============================================================================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "RecallAR API"}


@app.get("/health")
async def health(request: Request):
    """Detailed health check."""
    settings = _get_settings(request)
    return {
        "status": "healthy",
        "model_loaded": _get_analyzer(request).is_ready,
        "people_count": len(database.get_all_people()),
        "summarizer_configured": bool(settings.gemini_api_key),
    }


@app.get("/people", response_model=List[Person])
async def list_people():
    """Get all known people."""
    return database.get_all_people()


@app.get("/people/{person_id}", response_model=Person)
async def get_person_by_id(person_id: int):
    """Get a specific person by ID."""
    return _require_person(person_id)


@app.post("/people", response_model=Person, status_code=201)
async def create_person(person: PersonCreate, request: Request):
    """
    Register a new person from a reference photo.
    A photo without a detectable face is stored, but the person
    cannot be recognized in AR until re-registered.
    """
    photo, photo_type = split_data_url(person.image_base64)

    image = decode_image(person.image_base64)
    if image is None:
        raise HTTPException(status_code=400, detail="Could not decode image")

    embedding = await asyncio.to_thread(_get_analyzer(request).extract_embedding, image)
    if embedding is None:
        logger.warning("No face found in photo for %s", person.name)

    person_id = database.add_person(
        name=person.name,
        relation=person.relation,
        photo=photo,
        photo_type=photo_type,
        embedding=embedding,
    )
    return database.get_person(person_id)


@app.patch("/people/{person_id}", response_model=Person)
async def edit_person(person_id: int, update: PersonUpdate):
    """Rename a person or change their relation."""
    _require_person(person_id)
    database.update_person(person_id, name=update.name, relation=update.relation)
    return database.get_person(person_id)


@app.delete("/people/{person_id}")
async def remove_person(person_id: int):
    """Delete a person and their conversations."""
    if not database.delete_person(person_id):
        raise HTTPException(status_code=404, detail="Person not found")
    return {"status": "deleted", "person_id": person_id}


@app.get("/people/{person_id}/photo")
async def get_person_photo(person_id: int):
    photo = database.get_person_photo(person_id)
    if photo is None:
        raise HTTPException(status_code=404, detail="Person not found")
    content, content_type = photo
    return Response(content=content, media_type=content_type)


@app.get("/people/{person_id}/conversations", response_model=List[Conversation])
async def list_conversations(person_id: int):
    """Conversations with a person, newest first."""
    _require_person(person_id)
    return database.get_conversations_for_person(person_id)


@app.post("/people/{person_id}/conversations", response_model=Conversation, status_code=201)
async def create_conversation(person_id: int, conversation: ConversationCreate, request: Request):
    """Log a conversation, summarized by AI or with a manual summary."""
    _require_person(person_id)

    if conversation.use_ai:
        summary = await summarize_async(conversation.raw_text, _get_settings(request))
    else:
        summary = (conversation.summary or "").strip()
        if not summary:
            raise HTTPException(status_code=400, detail="Summary is required without AI")

    conversation_id = database.add_conversation(person_id, conversation.raw_text, summary)
    return database.get_conversation(conversation_id)


@app.delete("/conversations/{conversation_id}")
async def remove_conversation(conversation_id: int):
    if not database.delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"status": "deleted", "conversation_id": conversation_id}


@app.post("/summarize", response_model=SummarizeResponse)
async def summarize_text(body: SummarizeRequest, request: Request):
    """Preview a summary without saving anything."""
    return {"summary": await summarize_async(body.text, _get_settings(request))}


@app.get("/summarizer/status")
async def summarizer_status(request: Request):
    return {"connected": await check_connection(_get_settings(request))}


@app.get("/stats", response_model=Stats)
async def stats():
    """Dashboard totals and recent conversations."""
    return database.get_stats()


# ============================================================================
# Development Server
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
