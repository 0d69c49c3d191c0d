#!/usr/bin/env python3
"""
Occupancy Sensor Module

Turns a warped top-down board image into an 8x8 grid of occupied squares.
Only occupied/empty is sensed; piece type and colour are not.

Two modes:
- Reference-based: compare every square against an image of the empty
  board captured during calibration.
- Reference-free: equalise lighting with CLAHE, then combine greyscale
  variance and edge density per square.

The grid is a pure function of the image (and reference). Debouncing noisy
output is the game state machine's job.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import cv2
import numpy as np

import common.constants as constants
from vision_components.preprocessing import to_grey


@dataclass
class SquareMetrics:
    """Per-square measurements behind a scan, row 0 = rank 8."""
    variance: np.ndarray = field(default_factory=lambda: np.zeros((8, 8)))
    edge_density: np.ndarray = field(default_factory=lambda: np.zeros((8, 8)))
    diff_percent: Optional[np.ndarray] = None


def empty_grid() -> np.ndarray:
    return np.zeros((8, 8), dtype=bool)


class OccupancySensor:
    """
    Per-square occupancy classifier.

    All thresholds are fixed tuning constants; nothing is learnt online.
    """

    def __init__(self,
                 inset_ratio: float = constants.SQUARE_INSET_RATIO,
                 diff_pixel_threshold: int = constants.DIFF_PIXEL_THRESHOLD,
                 diff_percent_cropped: float = constants.DIFF_OCCUPIED_PERCENT_CROPPED,
                 diff_percent_full: float = constants.DIFF_OCCUPIED_PERCENT_FULL,
                 use_center_crop: bool = True,
                 clahe_clip_limit: float = constants.CLAHE_CLIP_LIMIT,
                 clahe_tile_grid: int = constants.CLAHE_TILE_GRID,
                 canny_low: int = constants.CANNY_LOW,
                 canny_high: int = constants.CANNY_HIGH,
                 variance_threshold: float = constants.VARIANCE_THRESHOLD,
                 edge_density_threshold: float = constants.EDGE_DENSITY_THRESHOLD,
                 joint_variance_threshold: float = constants.JOINT_VARIANCE_THRESHOLD,
                 joint_edge_density_threshold: float = constants.JOINT_EDGE_DENSITY_THRESHOLD):
        """
        Args:
            inset_ratio: Fraction of the square cropped from each edge. The
                centre holds the piece base; the border catches bleed from
                tall neighbours under perspective.
            diff_pixel_threshold: Grey-level change counted as "changed".
            diff_percent_cropped: Changed-pixel percentage for occupied (cropped).
            diff_percent_full: Changed-pixel percentage for occupied (full square).
            use_center_crop: Compare only the square centre in diff mode.
            clahe_clip_limit, clahe_tile_grid: Local contrast equalisation.
            canny_low, canny_high: Edge detector thresholds.
            variance_threshold: Variance alone marks a square occupied.
            edge_density_threshold: Edge density alone marks a square occupied.
            joint_variance_threshold, joint_edge_density_threshold: Both
                exceeded together mark a square occupied (dark piece on a
                dark square).
        """
        self.inset_ratio = inset_ratio
        self.diff_pixel_threshold = diff_pixel_threshold
        self.diff_percent_cropped = diff_percent_cropped
        self.diff_percent_full = diff_percent_full
        self.use_center_crop = use_center_crop
        self.clahe_clip_limit = clahe_clip_limit
        self.clahe_tile_grid = clahe_tile_grid
        self.canny_low = canny_low
        self.canny_high = canny_high
        self.variance_threshold = variance_threshold
        self.edge_density_threshold = edge_density_threshold
        self.joint_variance_threshold = joint_variance_threshold
        self.joint_edge_density_threshold = joint_edge_density_threshold

        self._clahe = cv2.createCLAHE(clipLimit=clahe_clip_limit,
                                      tileGridSize=(clahe_tile_grid, clahe_tile_grid))

    # =========================================================================
    # Square geometry
    # =========================================================================

    def square_bounds(self, image: np.ndarray, row: int, col: int,
                      crop: bool = True) -> Tuple[int, int, int, int]:
        """
        Pixel bounds (y0, y1, x0, x1) of a square.

        Args:
            image: Warped board image.
            row: 0 = rank 8.
            col: 0 = file a.
            crop: Return only the centre region.
        """
        height, width = image.shape[:2]
        step_y = height / 8
        step_x = width / 8
        inset_y = int(step_y * self.inset_ratio) if crop else 0
        inset_x = int(step_x * self.inset_ratio) if crop else 0
        y0 = int(row * step_y) + inset_y
        y1 = int((row + 1) * step_y) - inset_y
        x0 = int(col * step_x) + inset_x
        x1 = int((col + 1) * step_x) - inset_x
        return y0, y1, x0, x1

    def get_square(self, image: np.ndarray, row: int, col: int, crop: bool = True) -> np.ndarray:
        y0, y1, x0, x1 = self.square_bounds(image, row, col, crop)
        return image[y0:y1, x0:x1]

    # =========================================================================
    # Reference-free mode
    # =========================================================================

    def classify_square(self, variance: float, edge_density: float) -> bool:
        """Occupied decision from the two reference-free signals."""
        if variance > self.variance_threshold:
            return True
        if edge_density > self.edge_density_threshold:
            return True
        return (variance > self.joint_variance_threshold
                and edge_density > self.joint_edge_density_threshold)

    def equalise(self, image: np.ndarray) -> np.ndarray:
        """Greyscale + CLAHE lighting normalisation."""
        return self._clahe.apply(to_grey(image))

    def measure(self, image: np.ndarray) -> SquareMetrics:
        """Variance and edge density of each square centre."""
        equalised = self.equalise(image)
        edges = cv2.Canny(equalised, self.canny_low, self.canny_high)

        metrics = SquareMetrics()
        for row in range(8):
            for col in range(8):
                y0, y1, x0, x1 = self.square_bounds(equalised, row, col)
                region = equalised[y0:y1, x0:x1]
                if region.size == 0:
                    continue
                metrics.variance[row, col] = float(np.var(region))
                metrics.edge_density[row, col] = (
                    np.count_nonzero(edges[y0:y1, x0:x1]) / region.size)
        return metrics

    def scan(self, top_down: np.ndarray) -> np.ndarray:
        """
        Reference-free occupancy scan.

        Args:
            top_down: Warped board image, rank 8 at the top.

        Returns:
            8x8 bool array.
        """
        grid, _ = self.scan_with_metrics(top_down)
        return grid

    # =========================================================================
    # Reference-based mode
    # =========================================================================

    def diff_percentages(self, top_down: np.ndarray, reference: np.ndarray) -> np.ndarray:
        """Percentage of changed pixels per square against the empty-board reference."""
        if top_down.shape != reference.shape:
            raise ValueError(
                f"Reference shape {reference.shape} does not match image shape {top_down.shape}")

        diff = cv2.absdiff(top_down, reference)
        diff = to_grey(diff)
        _, changed = cv2.threshold(diff, self.diff_pixel_threshold, 255, cv2.THRESH_BINARY)

        percentages = np.zeros((8, 8))
        for row in range(8):
            for col in range(8):
                region = self.get_square(changed, row, col, crop=self.use_center_crop)
                if region.size == 0:
                    continue
                percentages[row, col] = np.count_nonzero(region) / region.size * 100.0
        return percentages

    def scan_diff(self, top_down: np.ndarray, reference: np.ndarray) -> np.ndarray:
        """
        Reference-based occupancy scan.

        Args:
            top_down: Warped live board image.
            reference: Warped image of the empty board, same size.

        Returns:
            8x8 bool array.
        """
        threshold = self.diff_percent_cropped if self.use_center_crop else self.diff_percent_full
        return self.diff_percentages(top_down, reference) > threshold

    # =========================================================================
    # Combined / helpers
    # =========================================================================

    def scan_with_metrics(self, top_down: np.ndarray,
                          reference: Optional[np.ndarray] = None) -> Tuple[np.ndarray, SquareMetrics]:
        """
        Scan in whichever mode applies and return the measurements as well.

        With a reference the decision comes from the diff; variance and
        edge density are still measured for the debug output.
        """
        metrics = self.measure(top_down)
        if reference is not None:
            metrics.diff_percent = self.diff_percentages(top_down, reference)
            threshold = self.diff_percent_cropped if self.use_center_crop else self.diff_percent_full
            return metrics.diff_percent > threshold, metrics

        grid = empty_grid()
        for row in range(8):
            for col in range(8):
                grid[row, col] = self.classify_square(metrics.variance[row, col],
                                                      metrics.edge_density[row, col])
        return grid, metrics

    def square_brightness(self, top_down: np.ndarray) -> np.ndarray:
        """Mean grey level of each square centre (input to move disambiguation)."""
        grey = to_grey(top_down)
        brightness = np.zeros((8, 8))
        for row in range(8):
            for col in range(8):
                region = self.get_square(grey, row, col)
                if region.size:
                    brightness[row, col] = float(np.mean(region))
        return brightness


def format_metrics(metrics: SquareMetrics) -> str:
    """Render per-square metrics as rank-labelled text tables."""
    lines = []
    tables = [("variance", metrics.variance, "{:7.0f}"),
              ("edge density", metrics.edge_density, "{:7.3f}")]
    if metrics.diff_percent is not None:
        tables.append(("diff %", metrics.diff_percent, "{:7.1f}"))

    for title, values, fmt in tables:
        lines.append(f"{title}:")
        lines.append("  " + "".join(f"{f:>7}" for f in "abcdefgh"))
        for row in range(8):
            lines.append(f"{8 - row} " + "".join(fmt.format(v) for v in values[row]))
    return "\n".join(lines) + "\n"
