#!/usr/bin/env python3
"""
Frame preprocessing and perspective warping.

Turns a raw BGR camera frame into the binary edge map used for board
localisation, and maps the located quadrilateral to a flat top-down image
with 100px squares.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import cv2
import numpy as np

import common.constants as constants
from common.geometry import reorder_points


@dataclass
class PreprocessStages:
    """Intermediate images of the edge pipeline, for debug display."""
    grey: np.ndarray
    blurred: np.ndarray
    edges: np.ndarray
    dilated: np.ndarray


def to_grey(image: np.ndarray) -> np.ndarray:
    """Greyscale copy of a BGR (or already single-channel) image."""
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return image.copy()


def preprocess_stages(frame: np.ndarray,
                      blur_kernel: int = constants.BLUR_KERNEL,
                      canny_low: int = constants.CANNY_LOW,
                      canny_high: int = constants.CANNY_HIGH,
                      dilate_kernel: int = constants.DILATE_KERNEL) -> Optional[PreprocessStages]:
    """
    Run grey -> gaussian blur -> canny -> dilate on a frame.

    Args:
        frame: BGR or greyscale image.
        blur_kernel: Odd gaussian kernel size.
        canny_low, canny_high: Canny hysteresis thresholds (lighting dependent).
        dilate_kernel: Size of the rectangular kernel closing small edge gaps.

    Returns:
        The stages, or None for an empty frame.
    """
    if frame is None or frame.size == 0:
        return None

    grey = to_grey(frame)
    blurred = cv2.GaussianBlur(grey, (blur_kernel, blur_kernel), 0)
    edges = cv2.Canny(blurred, canny_low, canny_high)
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (dilate_kernel, dilate_kernel))
    dilated = cv2.dilate(edges, kernel)
    return PreprocessStages(grey=grey, blurred=blurred, edges=edges, dilated=dilated)


def edge_map(frame: np.ndarray, **kwargs) -> Optional[np.ndarray]:
    """The dilated edge map of a frame, or None for an empty frame."""
    stages = preprocess_stages(frame, **kwargs)
    if stages is None:
        return None
    return stages.dilated


def perspective_matrix(corners: Sequence, size: int = constants.WARP_SIZE) -> np.ndarray:
    """Transform from the board quadrilateral to a size x size square."""
    ordered = reorder_points(corners)
    src = np.array(ordered, dtype=np.float32)
    dst = np.array([[0, 0], [size, 0], [size, size], [0, size]], dtype=np.float32)
    return cv2.getPerspectiveTransform(src, dst)


def warp_board(frame: np.ndarray, corners: Sequence, size: int = constants.WARP_SIZE) -> np.ndarray:
    """
    Warp the board region to a flat top-down image.

    Args:
        frame: Camera frame.
        corners: Four board corners in any order.
        size: Side of the output image; squares are size // 8 pixels.

    Returns:
        size x size image with rank 8 at the top and the a-file on the left.
    """
    if len(corners) != 4:
        raise ValueError(f"Expected 4 corners, got {len(corners)}")
    matrix = perspective_matrix(corners, size)
    return cv2.warpPerspective(frame, matrix, (size, size))


# =============================================================================
# Debug overlays
# =============================================================================

def draw_grid(image: np.ndarray, colour=(255, 255, 255)) -> np.ndarray:
    """Draw the 8x8 square grid on a warped board image (in place)."""
    size = image.shape[0]
    step = size // 8
    for i in range(1, 8):
        pos = i * step
        cv2.line(image, (pos, 0), (pos, size), colour, 1)
        cv2.line(image, (0, pos), (size, pos), colour, 1)
    return image


def draw_occupancy(image: np.ndarray, grid: np.ndarray, colour=(0, 200, 0)) -> np.ndarray:
    """Outline occupied squares on a warped board image (in place)."""
    step = image.shape[0] // 8
    margin = max(step // 20, 1)
    for row in range(8):
        for col in range(8):
            if grid[row][col]:
                x, y = col * step, row * step
                cv2.rectangle(image, (x + margin, y + margin),
                              (x + step - margin, y + step - margin), colour, 3)
    return image


def draw_squares(image: np.ndarray, squares, colour=(0, 0, 255)) -> np.ndarray:
    """Fill the given (row, col) squares with a translucent colour (in place)."""
    step = image.shape[0] // 8
    overlay = image.copy()
    for row, col in squares:
        x, y = col * step, row * step
        cv2.rectangle(overlay, (x, y), (x + step, y + step), colour, -1)
    cv2.addWeighted(overlay, 0.4, image, 0.6, 0, dst=image)
    return image


def draw_corners(frame: np.ndarray, corners: Sequence, colour=(255, 255, 255)) -> np.ndarray:
    """Mark board corners on the camera frame (in place)."""
    for pt in corners:
        cv2.circle(frame, (int(pt[0]), int(pt[1])), 8, colour, 2)
    return frame
