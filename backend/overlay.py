"""
Overlay animation for the AR view.

The detector reports face positions a few times per second and with some
jitter. The animator runs at display rate and eases the overlay toward the
latest reported position so the label glides instead of jumping.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SMOOTHING_ALPHA = 0.12


@dataclass(frozen=True)
class Position:
    """Overlay anchor, in percent of the frame."""
    x: float
    y: float


@dataclass(frozen=True)
class FaceBox:
    """
    Detected face in percent of the frame.
    x is the right edge of the box and y its top edge.
    """
    x: float
    y: float
    width: float
    height: float


class LatestValue(Generic[T]):
    """
    Single-slot cell shared between a producer and a consumer.
    Writes overwrite; readers always see the most recent value.
    """

    def __init__(self, value: T):
        self._value = value
        self._version = 0

    def set(self, value: T):
        self._value = value
        self._version += 1

    def get(self) -> T:
        return self._value

    @property
    def version(self) -> int:
        return self._version


def clamp_target(
    box: FaceBox,
    offset_x: float = 8.0,
    offset_y: float = 5.0,
    max_x: float = 85.0,
    min_y: float = 10.0,
) -> Position:
    """Place the overlay beside the face while keeping it on screen."""
    return Position(
        x=min(box.x + offset_x, max_x),
        y=max(box.y - offset_y, min_y),
    )


def smooth_step(smoothed: Position, target: Position, alpha: float = SMOOTHING_ALPHA) -> Position:
    """One exponential smoothing step, applied to each axis independently."""
    return Position(
        x=smoothed.x + (target.x - smoothed.x) * alpha,
        y=smoothed.y + (target.y - smoothed.y) * alpha,
    )


class OverlayAnimator:
    """
    Display-rate loop easing ``smoothed`` toward the target cell.

    Never awaits anything but its own frame timer. ``on_redraw`` is called
    synchronously with the new position after every step and must not block.
    """

    def __init__(
        self,
        target: LatestValue[Position],
        start: Position,
        alpha: float = SMOOTHING_ALPHA,
        fps: float = 60.0,
        on_redraw: Optional[Callable[[Position], None]] = None,
    ):
        self.target = target
        self.smoothed = start
        self.alpha = alpha
        self.frame_interval = 1.0 / fps
        self.on_redraw = on_redraw
        self._task: Optional[asyncio.Task] = None

    def step(self) -> Position:
        self.smoothed = smooth_step(self.smoothed, self.target.get(), self.alpha)
        if self.on_redraw is not None:
            try:
                self.on_redraw(self.smoothed)
            except Exception:
                logger.exception("Overlay redraw callback failed")
        return self.smoothed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="overlay-animator")

    async def _run(self):
        while True:
            self.step()
            await asyncio.sleep(self.frame_interval)

    async def stop(self):
        """Cancel the frame loop and wait for it to exit."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
