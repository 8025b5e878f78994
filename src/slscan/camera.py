import logging
from pathlib import Path

import cv2
import numpy as np

from .core import to_rgb
from .errors import CameraInitFailed
from .slscan_io import list_images, load_image

logger = logging.getLogger(__name__)


class Camera:
    """
    base class of the frame acquisition back-ends.
    a camera is initialized once, then frames are grabbed between start_capture and end_capture.
    query_frame returns an (cam_h, cam_w, 3) uint8 RGB image, or None if no frame is available.
    """

    name = None

    def __init__(self):
        self.cam_wh = None
        self.capturing = False

    def init(self, params):
        self.cam_wh = params.cam_wh

    def start_capture(self):
        self.capturing = True

    def query_frame(self):
        raise NotImplementedError("Not implemented by Camera")

    def end_capture(self):
        self.capturing = False

    def release(self):
        if self.capturing:
            self.end_capture()

    def __enter__(self):
        self.start_capture()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False

    def _conform(self, frame):
        """converts a frame to uint8 RGB at the configured resolution"""
        frame = to_rgb(np.asarray(frame))
        if frame.dtype != np.uint8:
            frame = np.clip(frame, 0, 255).astype(np.uint8)
        if self.cam_wh is not None and (frame.shape[1], frame.shape[0]) != tuple(self.cam_wh):
            frame = cv2.resize(frame, tuple(self.cam_wh), interpolation=cv2.INTER_AREA)
        return frame


class OpenCVCamera(Camera):
    """a camera accessed through cv2.VideoCapture"""

    name = "opencv"

    def __init__(self):
        super().__init__()
        self.cap = None

    def init(self, params):
        super().init(params)
        device = params.camera_device
        source = int(device) if str(device).isdigit() else device
        self.cap = cv2.VideoCapture(source)
        if not self.cap.isOpened():
            raise CameraInitFailed("could not open camera {}".format(device))
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, params.cam_w)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, params.cam_h)
        logger.info("opened camera %s", device)

    def query_frame(self):
        if self.cap is None:
            raise CameraInitFailed("camera was not initialized")
        ok, frame = self.cap.read()
        if not ok or frame is None:
            return None
        return self._conform(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))

    def release(self):
        super().release()
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class ImageFolderCamera(Camera):
    """
    replays previously captured frames from a folder, in file name order.
    every start_capture rewinds to the first frame.
    """

    name = "folder"

    def __init__(self):
        super().__init__()
        self.paths = []
        self.index = 0

    def init(self, params):
        super().init(params)
        folder = Path(params.camera_device)
        try:
            self.paths = list_images(folder)
        except FileNotFoundError as e:
            raise CameraInitFailed(str(e)) from e
        if not self.paths:
            raise CameraInitFailed("no frames found in {}".format(folder))
        logger.info("replaying %d frames from %s", len(self.paths), folder)

    def start_capture(self):
        super().start_capture()
        self.index = 0

    def query_frame(self):
        if self.index >= len(self.paths):
            return None
        frame = load_image(self.paths[self.index])
        self.index += 1
        return self._conform(frame)


BACKENDS = {
    OpenCVCamera.name: OpenCVCamera,
    ImageFolderCamera.name: ImageFolderCamera,
}


def create_camera(params):
    """
    instantiates and initializes the camera back-end named by params.camera_backend
    :return: an initialized Camera
    """
    backend = params.camera_backend.lower()
    if backend not in BACKENDS:
        raise CameraInitFailed(
            "camera back-end '{}' is not available, choose one of {}".format(
                params.camera_backend, sorted(BACKENDS)
            )
        )
    camera = BACKENDS[backend]()
    camera.init(params)
    return camera
