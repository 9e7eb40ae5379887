"""Tests for overlay smoothing and the animator loop."""

from __future__ import annotations

import asyncio

import pytest

from conftest import wait_for
from overlay import (
    SMOOTHING_ALPHA,
    FaceBox,
    LatestValue,
    OverlayAnimator,
    Position,
    clamp_target,
    smooth_step,
)


class TestSmoothStep:
    def test_single_step_example(self) -> None:
        result = smooth_step(Position(75, 30), Position(80, 20), SMOOTHING_ALPHA)
        assert result.x == pytest.approx(75.6)
        assert result.y == pytest.approx(28.8)

    def test_axes_are_independent(self) -> None:
        result = smooth_step(Position(10, 50), Position(20, 50))
        assert result.y == 50
        assert result.x == pytest.approx(11.2)

    def test_converges_to_fixed_target(self) -> None:
        target = Position(80, 20)
        smoothed = Position(75, 30)
        for _ in range(55):
            smoothed = smooth_step(smoothed, target)
        assert abs(smoothed.x - target.x) < 0.001 * 5
        assert abs(smoothed.y - target.y) < 0.001 * 10

    def test_never_overshoots(self) -> None:
        target = Position(80, 20)
        smoothed = Position(0, 100)
        for _ in range(200):
            smoothed = smooth_step(smoothed, target)
            assert smoothed.x <= target.x
            assert smoothed.y >= target.y


class TestClampTarget:
    def test_offsets_overlay_beside_face(self) -> None:
        target = clamp_target(FaceBox(x=50, y=40, width=20, height=30))
        assert target == Position(58, 35)

    def test_clamps_right_edge(self) -> None:
        assert clamp_target(FaceBox(x=95, y=40, width=20, height=30)).x == 85

    def test_clamps_top_edge(self) -> None:
        assert clamp_target(FaceBox(x=50, y=2, width=20, height=30)).y == 10

    def test_custom_limits(self) -> None:
        target = clamp_target(
            FaceBox(x=50, y=40, width=20, height=30),
            offset_x=0, offset_y=0, max_x=45, min_y=45,
        )
        assert target == Position(45, 45)


class TestLatestValue:
    def test_last_write_wins(self) -> None:
        cell = LatestValue(1)
        cell.set(2)
        cell.set(3)
        assert cell.get() == 3
        assert cell.version == 2


class TestOverlayAnimator:
    async def test_moves_toward_target_and_redraws(self) -> None:
        target = LatestValue(Position(80, 20))
        frames: list[Position] = []
        animator = OverlayAnimator(target, Position(75, 30), fps=500, on_redraw=frames.append)

        animator.start()
        await wait_for(lambda: len(frames) >= 5)
        await animator.stop()

        assert frames[0].x == pytest.approx(75.6)
        assert frames[-1].x > frames[0].x
        assert animator.smoothed == frames[-1]
        assert not animator.running

    async def test_keeps_running_without_target_updates(self) -> None:
        target = LatestValue(Position(75, 30))
        frames: list[Position] = []
        animator = OverlayAnimator(target, Position(75, 30), fps=500, on_redraw=frames.append)

        animator.start()
        await wait_for(lambda: len(frames) >= 3)
        assert animator.running
        await animator.stop()
        assert all(frame == Position(75, 30) for frame in frames)

    async def test_start_twice_keeps_one_loop(self) -> None:
        animator = OverlayAnimator(LatestValue(Position(0, 0)), Position(0, 0), fps=500)
        animator.start()
        first = animator._task
        animator.start()
        assert animator._task is first
        await animator.stop()

    async def test_stop_without_start_is_noop(self) -> None:
        animator = OverlayAnimator(LatestValue(Position(0, 0)), Position(0, 0))
        await animator.stop()
        await asyncio.sleep(0)

    async def test_failing_redraw_does_not_stop_loop(self) -> None:
        calls = []

        def broken(position: Position) -> None:
            calls.append(position)
            raise RuntimeError("render failed")

        animator = OverlayAnimator(LatestValue(Position(1, 1)), Position(0, 0), fps=500, on_redraw=broken)
        animator.start()
        await wait_for(lambda: len(calls) >= 3)
        assert animator.running
        await animator.stop()
