import logging

import cv2
import numpy as np

logger = logging.getLogger(__name__)

SPLASH_COLOR = (0, 0, 255)  # RGB, shown while the session is idle at startup
IDLE_COLOR = (255, 255, 255)


class ProjectorWindow:
    """
    a borderless full screen OpenCV window on the projector's display.
    the projector display is expected to extend the desktop to the right of the main screen at x = offset_x.
    """

    def __init__(self, proj_wh, offset_x=0, window_name="slscan projector"):
        self.proj_wh = tuple(proj_wh)
        self.offset_x = offset_x
        self.window_name = window_name
        self.is_open = False
        self.current = None

    def open(self):
        cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)
        cv2.moveWindow(self.window_name, self.offset_x, 0)
        cv2.setWindowProperty(self.window_name, cv2.WND_PROP_FULLSCREEN, cv2.WINDOW_FULLSCREEN)
        self.is_open = True
        self.show_color(SPLASH_COLOR)
        logger.info("opened projector window at x=%d", self.offset_x)

    def close(self):
        if self.is_open:
            cv2.destroyWindow(self.window_name)
            self.is_open = False

    def show(self, image, wait_ms=1):
        """
        displays an image on the projector
        :param image: (proj_h, proj_w), (proj_h, proj_w, 1) or (proj_h, proj_w, 3) uint8 RGB image
        :param wait_ms: time given to the window system to draw the image
        """
        image = np.asarray(image)
        if image.ndim == 3 and image.shape[-1] == 1:
            image = image[..., 0]
        if image.ndim == 3:
            image = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
        self.current = image
        cv2.imshow(self.window_name, image)
        cv2.waitKey(max(int(wait_ms), 1))

    def show_color(self, color, wait_ms=1):
        w, h = self.proj_wh
        self.show(np.full((h, w, 3), color, dtype=np.uint8), wait_ms)

    def idle(self):
        self.show_color(IDLE_COLOR)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False
