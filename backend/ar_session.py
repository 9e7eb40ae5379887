"""
AR session lifecycle.

An ARSession owns everything one AR view needs: the recognition state,
the camera, and two independent loops sharing that state:

- DetectionPoller: slow, self-paced. Grabs a frame, runs the face
  extractor in a worker thread, feeds the state machine, then waits.
- OverlayAnimator: fast, display-rate. Eases the overlay toward the
  latest face position.

Both loops run on the event loop thread, so the shared state needs no locks.
"""

import asyncio
import logging
from typing import Callable, Optional, Protocol

import numpy as np

from camera import CameraAccessError
from config import Settings
from models import OverlayPerson, OverlayPosition, OverlayState
from overlay import OverlayAnimator, Position, clamp_target
from recognition import (
    DetectionResult,
    IdentityStore,
    RecognitionSession,
    RecognitionStateMachine,
    Status,
)

logger = logging.getLogger(__name__)


class Detector(Protocol):
    @property
    def is_ready(self) -> bool:
        ...

    def load(self) -> bool:
        ...

    def detect_once(self, frame: np.ndarray) -> Optional[DetectionResult]:
        ...


class FrameSource(Protocol):
    @property
    def is_ready(self) -> bool:
        ...

    def open(self):
        ...

    def read_frame(self) -> Optional[np.ndarray]:
        ...

    def stop(self):
        ...


class DetectionPoller:
    """
    Serialized detection loop.

    The next attempt is scheduled only after the previous one finished, so
    a slow extractor slows the loop down instead of piling up calls. Clearing
    ``session.detection_running`` ends the loop at its next check; a call
    already in flight is left to finish and its result is dropped.
    wait_closed() returns once the loop has exited.
    """

    def __init__(
        self,
        session: RecognitionSession,
        state_machine: RecognitionStateMachine,
        detector: Detector,
        camera: FrameSource,
        settings: Settings,
    ):
        self.session = session
        self.state_machine = state_machine
        self.detector = detector
        self.camera = camera
        self.settings = settings
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        self.session.detection_running = True
        self._wakeup.clear()
        if self.running:
            return
        logger.info("Starting face recognition loop")
        self._task = asyncio.create_task(self._run(), name="detection-poller")

    def stop(self):
        self.session.detection_running = False
        self._wakeup.set()

    async def wait_closed(self):
        if self._task is not None:
            await self._task

    async def _run(self):
        while self.session.detection_running:
            if not (self.session.models_ready and self.camera.is_ready):
                logger.debug("Waiting for models/camera...")
                await self._pause(self.settings.not_ready_interval)
                continue

            await self.poll_once()
            await self._pause(self.settings.poll_interval)

        logger.info("Face recognition loop stopped")

    async def _pause(self, delay: float):
        """Sleep between attempts; stop() cuts the wait short."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), delay)
        except asyncio.TimeoutError:
            pass

    def _detect(self) -> Optional[DetectionResult]:
        frame = self.camera.read_frame()
        if frame is None:
            return None
        return self.detector.detect_once(frame)

    async def poll_once(self):
        """Run one detection attempt and apply its result."""
        try:
            result = await asyncio.to_thread(self._detect)
        except Exception:
            logger.exception("Face detection error")
            result = None

        if not self.session.detection_running:
            return

        if result is None:
            self.state_machine.on_no_face()
            return

        settings = self.settings
        self.session.target.set(clamp_target(
            result.face_box,
            offset_x=settings.overlay_offset_x,
            offset_y=settings.overlay_offset_y,
            max_x=settings.overlay_max_x,
            min_y=settings.overlay_min_y,
        ))

        try:
            await self.state_machine.on_detection(result)
        except Exception:
            logger.exception("Recognition error")


class ARSession:
    """One mounted AR view: init on start(), full teardown on stop()."""

    def __init__(
        self,
        settings: Settings,
        store: IdentityStore,
        detector: Detector,
        camera: FrameSource,
        on_redraw: Optional[Callable[[dict], None]] = None,
    ):
        self.settings = settings
        self.store = store
        self.detector = detector
        self.camera = camera
        self.on_redraw = on_redraw

        start = Position(settings.overlay_start_x, settings.overlay_start_y)
        self.state = RecognitionSession.create(start)
        self.state_machine = RecognitionStateMachine(
            self.state, store, threshold=settings.match_threshold
        )
        self.poller = DetectionPoller(
            self.state, self.state_machine, detector, camera, settings
        )
        self.animator = OverlayAnimator(
            self.state.target,
            start,
            alpha=settings.smoothing_alpha,
            fps=settings.animation_fps,
            on_redraw=self._redraw,
        )
        self._mounted = False

    async def start(self):
        self._mounted = True
        identities = await asyncio.to_thread(self.store.list_identities_with_embeddings)
        if not self._mounted:
            return
        self.state.load_roster(identities)

        self.state.status = Status.LOADING_MODELS
        try:
            loaded = await asyncio.to_thread(self.detector.load)
        except Exception:
            logger.exception("Initialization error")
            if self._mounted:
                self.state.status = Status.AI_ERROR
            return
        if not self._mounted:
            return

        self.state.models_ready = loaded
        self.state.status = Status.SCANNING if loaded else Status.AI_FAILED

        camera_ok = await self._start_camera()
        if not self._mounted:
            return

        self.animator.start()
        if camera_ok:
            self.poller.start()

    async def _start_camera(self) -> bool:
        try:
            await asyncio.to_thread(self.camera.open)
        except CameraAccessError as e:
            logger.warning("Camera error: %s", e)
            self.state.status = Status.CAMERA_DENIED
            return False
        except Exception as e:
            logger.warning("Camera error: %s", e)
            self.state.status = Status.CAMERA_ERROR
            return False
        return True

    async def stop(self):
        """Stop both loops and release the camera. Safe to call twice."""
        self._mounted = False
        self.poller.stop()
        await self.animator.stop()
        try:
            self.camera.stop()
        except Exception as e:
            logger.warning("Camera stop error: %s", e)
        try:
            await self.poller.wait_closed()
        except Exception:
            logger.exception("Detection loop failed")
        self.state.tracking = False

    def _redraw(self, position: Position):
        self.state.smoothed = position
        if self.on_redraw is not None:
            self.on_redraw(self.snapshot())

    def snapshot(self) -> dict:
        """Overlay state as sent to the client."""
        state = self.state
        person = state.displayed_person
        return OverlayState(
            status=state.status,
            tracking=state.tracking,
            position=OverlayPosition(
                x=round(state.smoothed.x, 2),
                y=round(state.smoothed.y, 2),
            ),
            person=OverlayPerson(
                id=person.id,
                name=person.name,
                relation=person.relation,
                last_conversation=person.last_conversation,
            ) if person else None,
        ).model_dump()
