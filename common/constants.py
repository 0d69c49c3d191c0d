# -*- coding: utf-8 -*-
"""
Default tuning values for the board tracker.

Every value here can be overridden through the JSON configuration
(vision_components/config.py) or on the command line (main.py).
"""

# --- Engine ---

PATH_TO_STOCKFISH = "stockfish"  # resolved on PATH

# Difficulty 1-10, searched at depth DIFFICULTY * DEPTH_PER_LEVEL
DIFFICULTY = 5
DEPTH_PER_LEVEL = 2
MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 10

# --- Camera ---

CAMERA_DEVICE = 0
FRAME_WIDTH = 640
FRAME_HEIGHT = 480
FRAME_INTERVAL = 0.033  # ~30 fps

# --- Preprocessing ---

BLUR_KERNEL = 5
CANNY_LOW = 50
CANNY_HIGH = 150
DILATE_KERNEL = 3

# Side of the warped top-down board image, 100px per square
WARP_SIZE = 800

# --- Board localisation ---

MIN_BOARD_AREA_RATIO = 0.10   # of the whole image
APPROX_EPSILON_RATIO = 0.02   # of the contour perimeter
DIAGONAL_TOLERANCE = 0.25     # of the longer diagonal

SMOOTHING_ALPHA = 0.3
MAX_CORNER_JUMP = 50.0        # pixels
RELAX_AFTER_FRAMES = 15
RELAXED_JUMP_FACTOR = 3.0
RESET_AFTER_FRAMES = 30

# --- Occupancy sensing ---

SQUARE_INSET_RATIO = 0.20     # cropped from each edge -> inner 60%

DIFF_PIXEL_THRESHOLD = 40
DIFF_OCCUPIED_PERCENT_CROPPED = 8.0
DIFF_OCCUPIED_PERCENT_FULL = 5.0

CLAHE_CLIP_LIMIT = 2.0
CLAHE_TILE_GRID = 8
VARIANCE_THRESHOLD = 400.0
EDGE_DENSITY_THRESHOLD = 0.06
JOINT_VARIANCE_THRESHOLD = 150.0
JOINT_EDGE_DENSITY_THRESHOLD = 0.03

MIN_BRIGHTNESS_CONTRAST = 15.0  # grey levels between light and dark piece references

# --- Debounce ---

STABILITY_THRESHOLD = 5       # identical mismatching frames
SETTLE_DELAY = 2.0            # seconds

# --- Logging ---

LOG_DIRECTORY = "logs"
