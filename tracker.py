#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Per-frame tracking pipeline.

    frame -> edge map -> board corners -> top-down warp -> occupancy grid
          -> game state machine -> events

The tracker thread is the only one that touches the smoother memory, the
calibration reference and the game position. Other threads (a UI, a
keyboard handler) call submit() and the intent is applied at the start of
the next frame.
"""

import time
from dataclasses import dataclass, field
from queue import Queue, Empty
from typing import Callable, List, Optional, Sequence

import chess
import numpy as np

from common.channel_logger import Logger
from common.errors import ConfigurationError
from common.geometry import Quadrilateral, reorder_points, to_point
from common.logging import get_logger
from game_components.occupancy import format_occupancy, piece_grid, row_col_from_square
from game_components.state_machine import (
    Calibrated, CalibrationLost, DebounceState, GameState, GameStateMachine,
    InvalidBoard, NewGame, RecommendationReady, StartGame,
)
from vision_components.board_localizer import BoardLocalizer, BoardSmoother, locate_and_smooth
from vision_components.config import TrackerConfig, get_config
from vision_components.occupancy_sensor import OccupancySensor, format_metrics
from vision_components.preprocessing import (
    draw_corners, draw_grid, draw_occupancy, draw_squares, edge_map, warp_board,
)

GAME_INTENTS = (StartGame, NewGame)


# =============================================================================
# Tracker intents
# =============================================================================

@dataclass
class SetCorners:
    """Manual board corners in any order; they take precedence over detection."""
    points: Sequence


@dataclass
class ClearCorners:
    pass


@dataclass
class CaptureReference:
    """Store the next warped image as the empty-board reference."""


@dataclass
class ClearReference:
    pass


@dataclass
class ReloadConfig:
    """Re-read the configuration file and apply it from the next frame."""


@dataclass
class FrameReport:
    timestamp: float
    corners: Optional[Quadrilateral] = None
    grid: Optional[np.ndarray] = None
    events: list = field(default_factory=list)
    state: GameState = GameState.IDLE
    debounce: DebounceState = DebounceState.STABLE
    invalid_squares: List[chess.Square] = field(default_factory=list)
    recommendation: Optional[RecommendationReady] = None
    top_down: Optional[np.ndarray] = None


class BoardTracker:
    """
    Runs the vision pipeline on every frame and feeds the state machine.
    """

    def __init__(self, source=None, config: Optional[TrackerConfig] = None,
                 recommender=None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 max_failed_reads: Optional[int] = None):
        """
        Args:
            source: Object with read() -> frame or None (e.g. VideoStream).
            config: TrackerConfig; the global one if None.
            recommender: MoveRecommender handed to the game state machine.
            clock: Monotonic time source.
            sleep: Sleep function used between frames.
            max_failed_reads: Stop run() after this many consecutive failed
                reads (end of a video file); None keeps retrying.
        """
        self.source = source
        self.config = config or get_config()
        self.clock = clock
        self.sleep = sleep
        self.max_failed_reads = max_failed_reads

        self.smoother = BoardSmoother()
        self.state_machine = GameStateMachine(recommender=recommender, clock=clock)
        self.log = Logger("vision", "tracker")
        self._apply_config()

        self.manual_corners: Optional[Quadrilateral] = None
        self.reference: Optional[np.ndarray] = None
        self.calibrated = False
        self.last_report: Optional[FrameReport] = None
        self._capture_pending = False
        self._intents: Queue = Queue()
        self._running = False

    def _apply_config(self) -> None:
        """Push the current configuration into the pipeline components."""
        # read every section first so a rejected value changes nothing
        camera = self.config.get_camera_settings()
        preprocess = self.config.get_preprocess_settings()
        localizer = self.config.get_localizer_settings()
        debounce = self.config.get_debounce_settings()
        sensor = self.config.get_sensor_settings()
        search_depth = self.config.get_search_depth()

        self.preprocess = preprocess
        self.frame_interval = float(camera['frame_interval'])
        self.warp_size = int(self.preprocess['warp_size'])
        self.require_reference = bool(debounce['require_reference'])

        self.localizer = BoardLocalizer(
            min_area_ratio=localizer['min_area_ratio'],
            epsilon_ratio=localizer['epsilon_ratio'],
            diagonal_tolerance=localizer['diagonal_tolerance'],
        )
        # smoother memory survives a reload, only its limits change
        self.smoother.alpha = float(localizer['alpha'])
        self.smoother.max_jump = float(localizer['max_jump'])
        self.smoother.relax_after = int(localizer['relax_after'])
        self.smoother.relax_factor = float(localizer['relax_factor'])
        self.smoother.reset_after = int(localizer['reset_after'])
        self.sensor = OccupancySensor(**sensor)

        self.state_machine.stability_threshold = int(debounce['stability_threshold'])
        self.state_machine.settle_delay = float(debounce['settle_delay'])
        self.state_machine.search_depth = search_depth

    def _reload_config(self) -> None:
        self.config.reload()
        try:
            self._apply_config()
        except ConfigurationError as e:
            self.log.error(f"Reloaded configuration rejected, keeping previous settings: {e}")
            return
        source = "fallback defaults" if self.config.is_using_fallback() else self.config.loaded_from
        self.log.info(f"Configuration reloaded from {source}")

    def submit(self, intent) -> None:
        """Queue a tracker or game intent; safe from any thread."""
        self._intents.put(intent)

    def _drain_intents(self) -> None:
        while True:
            try:
                intent = self._intents.get_nowait()
            except Empty:
                return

            if isinstance(intent, SetCorners):
                if len(intent.points) != 4:
                    self.log.warn(f"Ignoring manual corners: expected 4 points, got {len(intent.points)}")
                    continue
                self.manual_corners = reorder_points([to_point(p) for p in intent.points])
                self.log.info(f"Manual corners set: {[tuple(p) for p in self.manual_corners]}")
            elif isinstance(intent, ClearCorners):
                self.manual_corners = None
                self.smoother.reset()
                self.log.info("Manual corners cleared, using detection")
            elif isinstance(intent, CaptureReference):
                self._capture_pending = True
            elif isinstance(intent, ClearReference):
                self.reference = None
                self.log.info("Empty-board reference cleared")
            elif isinstance(intent, ReloadConfig):
                self._reload_config()
            elif isinstance(intent, GAME_INTENTS):
                self.state_machine.submit(intent)
            else:
                self.log.error(f"Ignoring unknown intent {intent!r}")

    # =========================================================================
    # Per-frame pipeline
    # =========================================================================

    def find_corners(self, frame: np.ndarray) -> Optional[Quadrilateral]:
        if self.manual_corners is not None:
            return self.manual_corners
        edges = edge_map(frame,
                         blur_kernel=int(self.preprocess['blur_kernel']),
                         canny_low=int(self.preprocess['canny_low']),
                         canny_high=int(self.preprocess['canny_high']),
                         dilate_kernel=int(self.preprocess['dilate_kernel']))
        _, corners = locate_and_smooth(self.localizer, self.smoother, edges)
        return corners

    def _usable_reference(self, top_down: np.ndarray) -> Optional[np.ndarray]:
        if self.reference is not None and self.reference.shape == top_down.shape:
            return self.reference
        return None

    def _update_calibration(self, corners_found: bool) -> None:
        calibrated = corners_found and (self.reference is not None or not self.require_reference)
        if calibrated == self.calibrated:
            return
        self.calibrated = calibrated
        self.state_machine.submit(Calibrated() if calibrated else CalibrationLost())
        self.log.info("Board calibrated" if calibrated else "Board calibration lost")

    def process_frame(self, frame: Optional[np.ndarray], now: Optional[float] = None) -> FrameReport:
        """Run the whole pipeline on one frame."""
        if now is None:
            now = self.clock()
        t0 = time.perf_counter()
        self._drain_intents()

        if frame is None:
            self.log.debug("No frame")
            events = self.state_machine.update(None, now)
            return self._report(now, None, None, events, None)

        corners = self.find_corners(frame)
        top_down = grid = brightness = None
        if corners is not None:
            top_down = warp_board(frame, corners, self.warp_size)
            if self._capture_pending:
                self.reference = top_down.copy()
                self._capture_pending = False
                self.log.info("Empty-board reference captured")
            reference = self._usable_reference(top_down)
            if reference is not None:
                grid = self.sensor.scan_diff(top_down, reference)
            else:
                grid = self.sensor.scan(top_down)
            brightness = self.sensor.square_brightness(top_down)
        else:
            self.log.debug("Board not located")

        self._update_calibration(corners is not None)
        events = self.state_machine.update(grid, now, brightness)

        for event in events:
            if isinstance(event, InvalidBoard):
                self.log.warn(f"Invalid board at {event.square_names}\n{format_occupancy(grid)}")
                self._save_invalid_board(frame, corners, top_down, grid, event)

        self.log.perf(f"Frame processed in {(time.perf_counter() - t0) * 1000:.1f}ms")
        return self._report(now, corners, grid, events, top_down)

    def _save_invalid_board(self, frame, corners, top_down, grid, event: InvalidBoard) -> None:
        """Annotated images and position context for an unmatched board."""
        session_logger = get_logger()
        if session_logger is None or top_down is None:
            return

        board_img = draw_grid(top_down.copy())
        draw_occupancy(board_img, grid)
        draw_squares(board_img, [row_col_from_square(sq) for sq in event.squares])
        session_logger.save_error_image("invalid_board", board_img)
        session_logger.save_error_image("invalid_frame", draw_corners(frame.copy(), corners))

        _, metrics = self.sensor.scan_with_metrics(top_down, self._usable_reference(top_down))
        board = self.state_machine.board
        pieces = "\n".join(" ".join(p or "." for p in row) for row in piece_grid(board))
        session_logger.save_error_context("invalid_board", {
            "fen": board.fen(),
            "differing squares": " ".join(event.square_names),
            "expected pieces": "\n" + pieces,
            "observed occupancy": "\n" + format_occupancy(grid),
            "square metrics": "\n" + format_metrics(metrics),
        })

    def _report(self, now, corners, grid, events, top_down) -> FrameReport:
        sm = self.state_machine
        report = FrameReport(
            timestamp=now,
            corners=corners,
            grid=grid,
            events=events,
            state=sm.state,
            debounce=sm.debounce,
            invalid_squares=list(sm.invalid_squares),
            recommendation=sm.recommendation,
            top_down=top_down,
        )
        self.last_report = report
        return report

    # =========================================================================
    # Frame loop
    # =========================================================================

    def run(self, max_frames: Optional[int] = None,
            on_report: Optional[Callable[[FrameReport], None]] = None) -> int:
        """
        Read and process frames until stop(), the frame limit, or the end
        of the source.

        Returns:
            Number of frames processed.
        """
        if self.source is None:
            raise ValueError("BoardTracker.run needs a frame source")

        self._running = True
        iterations = 0
        processed = 0
        failures = 0
        while self._running and (max_frames is None or iterations < max_frames):
            start = self.clock()
            iterations += 1
            frame = self.source.read()
            if frame is None:
                failures += 1
                if self.max_failed_reads is not None and failures >= self.max_failed_reads:
                    self.log.info(f"Source ended after {failures} failed reads")
                    break
                # intents and engine results still need handling without a frame
                report = self.process_frame(None)
                if report.events and on_report is not None:
                    on_report(report)
            else:
                failures = 0
                report = self.process_frame(frame)
                processed += 1
                if on_report is not None:
                    on_report(report)

            remaining = self.frame_interval - (self.clock() - start)
            if remaining > 0:
                self.sleep(remaining)

        self._running = False
        return processed

    def stop(self) -> None:
        """Ask run() to return after the current frame."""
        self._running = False

    def close(self) -> None:
        self.stop()
        recommender = self.state_machine.recommender
        if recommender is not None:
            recommender.stop()
        if self.source is not None and hasattr(self.source, "close"):
            self.source.close()
