# src/core/video.py

import cv2
import numpy as np
from typing import Iterator, Optional, Tuple, Union

class VideoSource:
    """Reads frames from a video file or a camera device.

    Frames are pulled synchronously, one per call, so the detector sets
    the pace of the processing loop.
    """

    def __init__(self, source: Union[str, int], width: Optional[int] = None,
                 height: Optional[int] = None):
        """Open the video source.

        Args:
            source: Path of a video file, or a camera index
            width: Resize frames to this width, if given
            height: Resize frames to this height, if given
        """
        self.source = source
        self.capture = cv2.VideoCapture(source)
        if not self.capture.isOpened():
            raise IOError(f"Cannot open video source {source!r}")

        native_width = int(self.capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        native_height = int(self.capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.width = width or native_width
        self.height = height or native_height
        self.fps = self.capture.get(cv2.CAP_PROP_FPS) or 30.0
        self.frame_count = 0

    def get_frame(self) -> Optional[np.ndarray]:
        """Read the next frame.

        Returns:
            BGR format numpy array or None at the end of the stream
        """
        ok, frame = self.capture.read()
        if not ok or frame is None:
            return None
        if (frame.shape[1], frame.shape[0]) != (self.width, self.height):
            frame = cv2.resize(frame, (self.width, self.height), interpolation=cv2.INTER_AREA)
        self.frame_count += 1
        return frame

    def frames(self) -> Iterator[np.ndarray]:
        """Iterate over the remaining frames."""
        while True:
            frame = self.get_frame()
            if frame is None:
                return
            yield frame

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def stop(self):
        """Release the capture device."""
        self.capture.release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
