import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path

import cv2
import numpy as np

from .errors import ConfigMissing

logger = logging.getLogger(__name__)

AXES = ("columns", "rows", "both")


@dataclass(frozen=True)
class ScanParameters:
    """
    immutable parameters of a scanning session.
    distances are in world units (the unit of square_size, usually mm).
    """

    # output
    outdir: str = "./output"
    object_name: str = "object"
    save_frames: bool = False
    # camera
    camera_backend: str = "opencv"
    camera_device: str = "0"
    cam_w: int = 640
    cam_h: int = 480
    frame_delay_ms: int = 100
    frame_retries: int = 3
    # projector
    proj_w: int = 1024
    proj_h: int = 768
    proj_offset_x: int = 1920
    # calibration
    board_cols: int = 8
    board_rows: int = 6
    square_size: float = 30.0
    calibration_views: int = 15
    max_reprojection_error: float = 1.0
    # scanning and reconstruction
    axes: str = "both"
    contrast_threshold: float = 20.0
    brightness_threshold: float = 40.0
    background_threshold: float = 5.0
    z_min: float = 100.0
    z_max: float = 5000.0
    max_plane_distance: float = 5.0
    epipolar_filter: bool = False
    sampson_threshold: float = 2.0

    def __post_init__(self):
        if self.axes not in AXES:
            raise ValueError("axes must be one of {}".format(AXES))
        for name in ("cam_w", "cam_h", "proj_w", "proj_h"):
            if getattr(self, name) < 2:
                raise ValueError("{} must be at least 2".format(name))
        if self.board_cols < 2 or self.board_rows < 2:
            raise ValueError("board must have at least 2x2 inner corners")
        if self.square_size <= 0:
            raise ValueError("square_size must be positive")
        if self.contrast_threshold < 0 or self.brightness_threshold < 0:
            raise ValueError("decoding thresholds must be non negative")
        if self.z_min >= self.z_max:
            raise ValueError("z_min must be smaller than z_max")

    @property
    def cam_wh(self):
        return (self.cam_w, self.cam_h)

    @property
    def proj_wh(self):
        return (self.proj_w, self.proj_h)

    @property
    def board_size(self):
        """inner corners as expected by cv2.findChessboardCorners (columns, rows)"""
        return (self.board_cols, self.board_rows)

    @property
    def scan_columns(self):
        return self.axes in ("columns", "both")

    @property
    def scan_rows(self):
        return self.axes in ("rows", "both")

    def board_points(self):
        """
        returns the inner corners of the board in board coordinates (z=0) as a (Cx*Cy, 3) float32 array,
        ordered the same way cv2.findChessboardCorners orders detected corners.
        """
        objps = np.zeros((self.board_cols * self.board_rows, 3), np.float32)
        objps[:, :2] = self.square_size * np.mgrid[
            0 : self.board_cols, 0 : self.board_rows
        ].T.reshape(-1, 2)
        return objps

    def updated(self, **kwargs):
        return replace(self, **kwargs)


# (section, key in file, attribute)
_LAYOUT = [
    ("output", "output_directory", "outdir"),
    ("output", "object_name", "object_name"),
    ("output", "save_intermediate_results", "save_frames"),
    ("camera", "backend", "camera_backend"),
    ("camera", "device", "camera_device"),
    ("camera", "frame_width", "cam_w"),
    ("camera", "frame_height", "cam_h"),
    ("camera", "frame_delay_ms", "frame_delay_ms"),
    ("camera", "frame_retries", "frame_retries"),
    ("projector", "projector_width", "proj_w"),
    ("projector", "projector_height", "proj_h"),
    ("projector", "window_offset_x", "proj_offset_x"),
    ("calibration", "checkerboard_columns", "board_cols"),
    ("calibration", "checkerboard_rows", "board_rows"),
    ("calibration", "checkerboard_square_size", "square_size"),
    ("calibration", "number_of_views", "calibration_views"),
    ("calibration", "maximum_reprojection_error", "max_reprojection_error"),
    ("scanning", "axes", "axes"),
    ("scanning", "minimum_contrast_threshold", "contrast_threshold"),
    ("scanning", "minimum_brightness_threshold", "brightness_threshold"),
    ("scanning", "minimum_background_distance", "background_threshold"),
    ("scanning", "minimum_distance", "z_min"),
    ("scanning", "maximum_distance", "z_max"),
    ("scanning", "maximum_plane_distance", "max_plane_distance"),
    ("scanning", "epipolar_filter", "epipolar_filter"),
    ("scanning", "sampson_threshold", "sampson_threshold"),
]


def _field_types():
    defaults = ScanParameters()
    return {f.name: type(getattr(defaults, f.name)) for f in fields(ScanParameters)}


def read_configuration(path):
    """
    reads scan parameters from an OpenCV FileStorage xml file.
    keys missing from the file keep their default value.
    :param path: path to config.xml
    :return: ScanParameters
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigMissing("could not open configuration file {}".format(path))
    types = _field_types()
    values = {}
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    try:
        for section, key, attr in _LAYOUT:
            node = fs.getNode(section).getNode(key)
            if node.isNone() or node.empty():
                continue
            if types[attr] is str:
                values[attr] = node.string() if node.isString() else str(int(node.real()))
            elif types[attr] is bool:
                values[attr] = bool(int(node.real()))
            elif types[attr] is int:
                values[attr] = int(node.real())
            else:
                values[attr] = float(node.real())
    finally:
        fs.release()
    logger.info("read configuration from %s", path)
    return ScanParameters(**values)


def write_configuration(path, params):
    """
    writes scan parameters to an OpenCV FileStorage xml file (the inverse of read_configuration)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    try:
        current = None
        for section, key, attr in _LAYOUT:
            if section != current:
                if current is not None:
                    fs.endWriteStruct()
                fs.startWriteStruct(section, cv2.FileNode_MAP)
                current = section
            value = getattr(params, attr)
            if isinstance(value, bool):
                value = int(value)
            fs.write(key, value)
        fs.endWriteStruct()
    finally:
        fs.release()
    logger.info("wrote configuration to %s", path)
