import logging

import cv2
import numpy as np

from .core import normalize, pixel_grid, to_hom
from .errors import CalibrationPrereqMissing

logger = logging.getLogger(__name__)


def undistort_pixels(pixels, K, dist):
    """
    maps pixels to normalized image coordinates, removing lens distortion
    :param pixels: (..., 2) array of (u, v) pixel coordinates
    :param K: 3x3 intrinsics
    :param dist: 5 distortion coefficients
    :return: (..., 2) float64 normalized coordinates (x, y) such that the ray is (x, y, 1)
    """
    shape = pixels.shape
    pts = np.ascontiguousarray(pixels.reshape(-1, 1, 2), dtype=np.float64)
    undistorted = cv2.undistortPoints(pts, K, np.asarray(dist, dtype=np.float64).reshape(-1, 1))
    return undistorted.reshape(shape).astype(np.float64)


def camera_rays(cam_wh, K, dist):
    """
    computes a unit viewing ray (camera frame) for every camera pixel
    :return: (cam_h, cam_w, 3) float64 array
    """
    normalized = undistort_pixels(pixel_grid(cam_wh), K, dist)
    return normalize(to_hom(normalized))


def plane_through(center, d1, d2):
    """
    computes planes (n, d) with n.x + d = 0 passing through center and spanned by directions d1, d2
    :param center: (3,) point on every plane
    :param d1: (n, 3) directions
    :param d2: (n, 3) directions
    :return: (n, 4) planes [a, b, c, d] with a unit normal
    """
    n = normalize(np.cross(d1, d2))
    d = -n @ center
    return np.concatenate((n, d[:, None]), axis=-1)


def projector_planes(proj_wh, K, dist, R_cp, t_cp, axis="columns"):
    """
    computes the plane (camera frame) swept by every projector column or row
    :param proj_wh: projector (width, height)
    :param K: projector intrinsics
    :param dist: projector distortion
    :param R_cp: rotation mapping camera frame points to projector frame
    :param t_cp: translation mapping camera frame points to projector frame
    :param axis: "columns" or "rows"
    :return: (proj_w, 4) or (proj_h, 4) float64 planes [a, b, c, d], ax+by+cz+d=0
    """
    width, height = proj_wh
    if axis == "columns":
        x = np.arange(width, dtype=np.float64)
        p1 = np.stack((x, np.zeros_like(x)), axis=-1)
        p2 = np.stack((x, np.full_like(x, height - 1)), axis=-1)
    elif axis == "rows":
        y = np.arange(height, dtype=np.float64)
        p1 = np.stack((np.zeros_like(y), y), axis=-1)
        p2 = np.stack((np.full_like(y, width - 1), y), axis=-1)
    else:
        raise ValueError("axis must be 'columns' or 'rows'")
    center = -R_cp.T @ t_cp
    # projector frame directions rotated into the camera frame
    d1 = to_hom(undistort_pixels(p1, K, dist)) @ R_cp
    d2 = to_hom(undistort_pixels(p2, K, dist)) @ R_cp
    return plane_through(center, d1, d2)


def intersect_ray_plane(origin, directions, planes):
    """
    intersects rays o + s*d with planes n.x + d = 0
    :param origin: (3,) common origin of the rays
    :param directions: (n, 3) ray directions
    :param planes: (n, 4) planes
    :return: (n, 3) intersection points, nan where the ray is parallel to its plane
    """
    n, d = planes[:, :3], planes[:, 3]
    denom = np.sum(n * directions, axis=-1)
    num = -(n @ origin + d)
    with np.errstate(divide="ignore", invalid="ignore"):
        s = np.where(np.abs(denom) > 1e-12, num / denom, np.nan)
    return origin[None, :] + s[:, None] * directions


class ProCamGeometry:
    """
    per camera pixel rays and per projector column / row planes of a calibrated rig, all in the camera frame.
    """

    def __init__(self, cam_rays, proj_rays, column_planes, row_planes, cam_center, proj_center, version=None):
        self.cam_rays = cam_rays
        self.proj_rays = proj_rays
        self.column_planes = column_planes
        self.row_planes = row_planes
        self.cam_center = cam_center
        self.proj_center = proj_center
        self.version = version


def evaluate_procam_geometry(calibration, cam_wh, proj_wh):
    """
    builds the ray and plane tables from a complete calibration.
    the result depends only on its inputs, calling it twice yields identical tables.
    :param calibration: a Calibration with both intrinsics and the extrinsics set
    :param cam_wh: camera (width, height)
    :param proj_wh: projector (width, height)
    :return: ProCamGeometry
    """
    if not calibration.is_complete:
        raise CalibrationPrereqMissing(
            "camera, projector and extrinsic calibration are required to build the scan geometry"
        )
    R_cp, t_cp = calibration.procam_transform
    Kc, dc = calibration.cam_intrinsic, calibration.cam_distortion
    Kp, dp = calibration.proj_intrinsic, calibration.proj_distortion
    cam_rays = camera_rays(cam_wh, Kc, dc)
    # projector rays are tabulated over the camera pixel grid
    proj_rays = normalize(to_hom(undistort_pixels(pixel_grid(cam_wh), Kp, dp)) @ R_cp)
    column_planes = projector_planes(proj_wh, Kp, dp, R_cp, t_cp, "columns")
    row_planes = projector_planes(proj_wh, Kp, dp, R_cp, t_cp, "rows")
    logger.debug(
        "evaluated procam geometry: %d rays, %d column planes, %d row planes",
        cam_rays.shape[0] * cam_rays.shape[1],
        len(column_planes),
        len(row_planes),
    )
    return ProCamGeometry(
        cam_rays,
        proj_rays,
        column_planes,
        row_planes,
        calibration.cam_center,
        -R_cp.T @ t_cp,
        calibration.version,
    )
