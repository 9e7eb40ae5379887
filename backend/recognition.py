"""
Recognition state for an AR session.

Decides who is currently shown on the overlay from the stream of
detection results, and keeps the status line the patient sees.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Protocol

import numpy as np

from matching import MATCH_THRESHOLD, EmbeddingSet, Identity, best_match
from overlay import FaceBox, LatestValue, Position

logger = logging.getLogger(__name__)

NO_CONVERSATION_TEXT = "No recent conversations recorded."


class Status:
    """Status labels shown in the AR view."""
    LOADING = "Loading AI..."
    LOADING_MODELS = "Loading AI models..."
    SCANNING = "Scanning..."
    ANALYZING = "Analyzing face..."
    UNKNOWN_FACE = "Unknown face"
    NO_FACES_REGISTERED = "No faces registered"
    AI_FAILED = "AI failed to load"
    AI_ERROR = "Error loading AI"
    CAMERA_DENIED = "Camera access denied"
    CAMERA_ERROR = "Camera error"

    @staticmethod
    def recognized(similarity: float) -> str:
        # Round half up
        return f"Recognized ({math.floor(similarity * 100 + 0.5)}%)"


@dataclass(frozen=True)
class DetectionResult:
    """One poll cycle's face. ``embedding`` is None when landmarks failed."""
    face_box: FaceBox
    embedding: Optional[np.ndarray] = None


@dataclass(frozen=True)
class DisplayedPerson:
    id: int
    name: str
    relation: str
    last_conversation: str


class IdentityStore(Protocol):
    """What an AR session needs from persistence."""

    def list_identities_with_embeddings(self) -> List[Identity]:
        ...

    def get_latest_conversation_summary(self, identity_id: int) -> Optional[str]:
        ...


@dataclass
class RecognitionSession:
    """
    Mutable state of one AR session, created on start and dropped on teardown.

    ``last_matched_id`` is set exactly when ``displayed_person`` is.
    """
    target: LatestValue
    smoothed: Position
    embeddings: EmbeddingSet = field(default_factory=EmbeddingSet)
    roster: Dict[int, Identity] = field(default_factory=dict)
    status: str = Status.LOADING
    tracking: bool = False
    last_matched_id: Optional[int] = None
    displayed_person: Optional[DisplayedPerson] = None
    models_ready: bool = False
    detection_running: bool = False

    @classmethod
    def create(cls, start: Position) -> "RecognitionSession":
        return cls(target=LatestValue(start), smoothed=start)

    def load_roster(self, identities: Iterable[Identity]):
        """Snapshot the registered people for the rest of the session."""
        identities = list(identities)
        self.roster = {identity.id: identity for identity in identities}
        self.embeddings = EmbeddingSet.from_identities(identities)
        logger.info("Loaded %d face embeddings for recognition", len(self.embeddings))


Listener = Callable[[str, Optional[DisplayedPerson]], None]


class RecognitionStateMachine:
    """
    Applies detection results to a RecognitionSession.

    A new identity fetches its latest conversation summary once; repeated
    sightings of the same identity change nothing. A face that matches
    nobody clears the overlay, but a cycle with no face at all does not,
    so a brief occlusion keeps the last person on screen.

    The summary is read in a worker thread before any state changes; if
    the read fails the session is left as it was and the next sighting
    tries again.
    """

    def __init__(
        self,
        session: RecognitionSession,
        store: IdentityStore,
        threshold: float = MATCH_THRESHOLD,
    ):
        self.session = session
        self.store = store
        self.threshold = threshold
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def _notify(self, event: str, person: Optional[DisplayedPerson]):
        for listener in self._listeners:
            try:
                listener(event, person)
            except Exception:
                logger.exception("Recognition listener failed")

    def on_no_face(self):
        self.session.tracking = False
        self.session.status = Status.SCANNING

    async def on_detection(self, result: DetectionResult):
        session = self.session
        session.tracking = True

        if not session.embeddings:
            session.status = Status.NO_FACES_REGISTERED
            return

        if result.embedding is None:
            session.status = Status.ANALYZING
            return

        match = best_match(result.embedding, list(session.embeddings), self.threshold)

        if match is None:
            session.status = Status.UNKNOWN_FACE
            self._clear()
            return

        if match.identity_id != session.last_matched_id:
            await self._show(match.identity_id, match.similarity)

    async def _show(self, identity_id: int, similarity: float):
        session = self.session
        identity = session.roster.get(identity_id)
        if identity is None:
            logger.warning("Matched identity %s is not in the roster", identity_id)
            return

        summary = await asyncio.to_thread(
            self.store.get_latest_conversation_summary, identity_id
        )
        person = DisplayedPerson(
            id=identity.id,
            name=identity.name,
            relation=identity.relation,
            last_conversation=summary or NO_CONVERSATION_TEXT,
        )

        session.last_matched_id = identity_id
        session.displayed_person = person
        session.status = Status.recognized(similarity)
        logger.info("Recognized %s (%s) at %.2f", identity.name, identity_id, similarity)
        self._notify("identity_changed", person)

    def _clear(self):
        session = self.session
        if session.last_matched_id is None:
            return
        logger.info("Lost identity %s", session.last_matched_id)
        session.last_matched_id = None
        session.displayed_person = None
        self._notify("identity_cleared", None)
