"""
Vision components for boardwatch.

Main Components:
    - preprocessing: edge map stages, perspective warp, debug overlays
    - BoardLocalizer / BoardSmoother: find and stabilise the board corners
    - OccupancySensor: 8x8 occupied/empty grid from the warped board
    - VideoStream: camera or video file frame source
    - TrackerConfig: JSON configuration with fallback defaults
"""

from .board_localizer import BoardLocalizer, BoardSmoother
from .occupancy_sensor import OccupancySensor
from .camera import VideoStream
from .config import TrackerConfig, get_config
