"""
Frame source for the tracker: a camera device index or a video file.
"""

from typing import Optional, Union

import cv2
import numpy as np

import common.constants as constants
from common.channel_logger import Logger


class VideoStream:
    """
    Thin wrapper around cv2.VideoCapture.

    read() returns None instead of raising when a frame cannot be grabbed,
    so the frame loop can simply skip it.
    """

    def __init__(self, source: Union[int, str] = constants.CAMERA_DEVICE,
                 width: int = constants.FRAME_WIDTH,
                 height: int = constants.FRAME_HEIGHT):
        self.source = source
        self.log = Logger("vision", "camera")
        self._capture = cv2.VideoCapture(source)

        # Resolution requests only make sense for live devices
        if isinstance(source, int):
            self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)

        if not self._capture.isOpened():
            self.log.warn(f"Could not open video source {source}")
        else:
            actual_w = int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH))
            actual_h = int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
            self.log.info(f"Opened video source {source} at {actual_w}x{actual_h}")

    def is_open(self) -> bool:
        return self._capture is not None and self._capture.isOpened()

    def read(self) -> Optional[np.ndarray]:
        if not self.is_open():
            return None
        ok, frame = self._capture.read()
        if not ok or frame is None:
            self.log.debug("Frame read failed")
            return None
        return frame

    def close(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
