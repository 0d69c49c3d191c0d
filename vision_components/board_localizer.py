#!/usr/bin/env python3
"""
Board Localisation Module

Finds the chess board quadrilateral in a binary edge map and keeps its
corners steady across frames.

The detection process:
1. Find external contours in the edge map
2. Drop contours smaller than a fraction of the image
3. Approximate each contour to a polygon, keep 4-vertex results
4. Verify the quadrilateral is near-square (diagonals of similar length)
5. Keep the largest survivor, so the outer frame beats an inner border
"""

from typing import Optional, Tuple

import cv2
import numpy as np

import common.constants as constants
from common.channel_logger import Logger
from common.geometry import Point, Quadrilateral, distance, is_near_square, reorder_points


class BoardLocalizer:
    """
    Detects the board's four corners in an edge image.

    Stateless; smoothing across frames is BoardSmoother's job.
    """

    def __init__(self,
                 min_area_ratio: float = constants.MIN_BOARD_AREA_RATIO,
                 epsilon_ratio: float = constants.APPROX_EPSILON_RATIO,
                 diagonal_tolerance: float = constants.DIAGONAL_TOLERANCE):
        """
        Args:
            min_area_ratio: Minimum contour area as a fraction of the image area.
            epsilon_ratio: Polygon approximation tolerance as a fraction of perimeter.
            diagonal_tolerance: Allowed diagonal length difference (fraction of longer).
        """
        self.min_area_ratio = min_area_ratio
        self.epsilon_ratio = epsilon_ratio
        self.diagonal_tolerance = diagonal_tolerance
        self.log = Logger("vision", "localizer")

    def locate(self, edges: np.ndarray) -> Optional[Quadrilateral]:
        """
        Find the board quadrilateral in a binary edge image.

        Args:
            edges: Single-channel edge map (non-zero = edge).

        Returns:
            Corners ordered TL, TR, BR, BL, or None if no candidate passes.
        """
        if edges is None or edges.size == 0:
            return None

        contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        min_area = edges.shape[0] * edges.shape[1] * self.min_area_ratio

        best_quad = None
        max_area = 0.0
        for contour in contours:
            area = cv2.contourArea(contour)
            if area < min_area:
                continue

            peri = cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, self.epsilon_ratio * peri, True)
            if len(approx) != 4:
                continue

            points = approx.reshape(-1, 2)
            if not is_near_square(points, self.diagonal_tolerance):
                self.log.debug(f"Rejected skewed quadrilateral {points.tolist()}")
                continue

            if area > max_area:
                max_area = area
                best_quad = points

        if best_quad is None:
            return None

        return reorder_points(best_quad)


class BoardSmoother:
    """
    Exponential smoothing of the four board corners.

    A corner that jumps further than `max_jump` pixels in one frame is held at
    its previous value. After `relax_after` frames without a detection the
    jump limit is multiplied by `relax_factor`; after more than `reset_after`
    frames the memory is dropped and the next detection is taken as is.
    """

    def __init__(self,
                 alpha: float = constants.SMOOTHING_ALPHA,
                 max_jump: float = constants.MAX_CORNER_JUMP,
                 relax_after: int = constants.RELAX_AFTER_FRAMES,
                 relax_factor: float = constants.RELAXED_JUMP_FACTOR,
                 reset_after: int = constants.RESET_AFTER_FRAMES):
        """
        Args:
            alpha: Smoothing factor (0.1 = very smooth, 0.9 = very reactive).
            max_jump: Largest accepted per-frame corner movement, in pixels.
            relax_after: Missed frames before the jump limit is relaxed.
            relax_factor: Multiplier applied to max_jump once relaxed.
            reset_after: Missed frames tolerated before memory is cleared.
        """
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        self.alpha = alpha
        self.max_jump = max_jump
        self.relax_after = relax_after
        self.relax_factor = relax_factor
        self.reset_after = reset_after

        self.last_corners: Optional[Quadrilateral] = None
        self.frames_since_detected = 0
        self.log = Logger("vision", "smoother")

    @property
    def current_jump_limit(self) -> float:
        if self.frames_since_detected >= self.relax_after:
            return self.max_jump * self.relax_factor
        return self.max_jump

    def reset(self) -> None:
        """Forget the stable corners."""
        self.last_corners = None
        self.frames_since_detected = 0

    def smooth(self, candidate) -> Optional[Quadrilateral]:
        """
        Blend a new detection into the stable corners.

        Args:
            candidate: Four corners from BoardLocalizer.locate, or None.

        Returns:
            The stable quadrilateral, or None while nothing has been acquired.
        """
        if candidate is None or len(candidate) != 4:
            return self._missed()

        target = reorder_points(candidate)

        if self.last_corners is None:
            self.last_corners = target
            self.frames_since_detected = 0
            self.log.info(f"Board acquired at {[tuple(p) for p in target]}")
            return target

        limit = self.current_jump_limit
        self.frames_since_detected = 0

        smoothed = []
        rejected = 0
        for last, new in zip(self.last_corners, target):
            if distance(last, new) > limit:
                smoothed.append(last)
                rejected += 1
            else:
                smoothed.append(Point(
                    int(round(last.x + (new.x - last.x) * self.alpha)),
                    int(round(last.y + (new.y - last.y) * self.alpha)),
                ))
        if rejected:
            self.log.debug(f"Held {rejected} corner(s) that jumped more than {limit:.0f}px")

        self.last_corners = tuple(smoothed)
        return self.last_corners

    def _missed(self) -> Optional[Quadrilateral]:
        if self.last_corners is None:
            return None

        self.frames_since_detected += 1
        if self.frames_since_detected > self.reset_after:
            self.log.info(f"Board lost for {self.frames_since_detected} frames, re-acquiring")
            self.reset()
            return None
        return self.last_corners


def locate_and_smooth(localizer: BoardLocalizer, smoother: BoardSmoother,
                      edges: np.ndarray) -> Tuple[Optional[Quadrilateral], Optional[Quadrilateral]]:
    """Run detection and smoothing for one frame; returns (raw, smoothed)."""
    raw = localizer.locate(edges)
    return raw, smoother.smooth(raw)
