import logging

import cv2
import numpy as np
from scipy import ndimage

from .calibration import rt_to_extrinsic
from .core import color_to_gray
from .errors import (
    CalibrationPrereqMissing,
    CornerDetectionInsufficient,
    DecodeAllInvalid,
    ReprojectionErrorTooLarge,
    SolverNonConvergent,
)
from .graycode import GrayCode

logger = logging.getLogger(__name__)

MIN_VIEWS = 3
MIN_CORNERS_PER_VIEW = 6


class IntrinsicCalibrationResult:
    """
    result of a planar (Zhang) calibration of a single device
    """

    def __init__(self, intrinsic, distortion, rms, per_view_errors, rvecs, tvecs):
        self.intrinsic = intrinsic
        self.distortion = distortion
        self.rms = rms
        self.per_view_errors = per_view_errors
        self.rvecs = rvecs
        self.tvecs = tvecs

    @property
    def mean_error(self):
        return float(np.mean(self.per_view_errors))


class ProjectorCalibrationResult:
    """
    result of calibrate_projector. camera is None unless the camera was re-estimated jointly.
    """

    def __init__(self, projector, camera=None, stereo_rms=None, R_cp=None, t_cp=None):
        self.projector = projector
        self.camera = camera
        self.stereo_rms = stereo_rms
        self.R_cp = R_cp
        self.t_cp = t_cp


class ExtrinsicCalibrationResult:
    def __init__(self, cam_extrinsic, proj_extrinsic, cam_error, proj_error):
        self.cam_extrinsic = cam_extrinsic
        self.proj_extrinsic = proj_extrinsic
        self.cam_error = cam_error
        self.proj_error = proj_error


def detect_board_corners(image, board_size, subpix_window=(5, 5)):
    """
    finds the inner corners of a chessboard to sub-pixel accuracy
    :param image: (h, w) or (h, w, c) image
    :param board_size: inner corners (columns, rows)
    :param subpix_window: half size of the cornerSubPix search window
    :return: (n, 1, 2) float32 corners, or None if the board was not found
    """
    gray = np.clip(color_to_gray(np.asarray(image)), 0, 255).astype(np.uint8)
    found, corners = cv2.findChessboardCorners(
        gray,
        board_size,
        flags=cv2.CALIB_CB_ADAPTIVE_THRESH + cv2.CALIB_CB_NORMALIZE_IMAGE,
    )
    if not found:
        return None
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 50, 1e-3)
    corners = cv2.cornerSubPix(gray, corners, subpix_window, (-1, -1), criteria)
    return corners.reshape(-1, 1, 2).astype(np.float32)


def corners_to_projector(cam_corners, corr, window=1, patch=None):
    """
    maps camera image corners into the projector image using the decoded correspondences.
    the column and row codes of the (2*window+1)^2 pixels around each corner are fit with a bilinear
    function (a + b*dx + c*dy + e*dx*dy) which is then evaluated at the sub-pixel corner location.
    a corner is discarded if any pixel of its neighbourhood is not reliably decoded.
    where the larger (2*patch+1)^2 patch around a corner is reliable too, the estimate is replaced by
    a local homography fit over the patch, which averages out the integer quantization of the codes.
    :param cam_corners: (n, 1, 2) camera corners
    :param corr: CorrespondenceMap coded on both axes
    :param window: half size of the neighbourhood
    :param patch: half size of the homography patch, defaults to 1/180 of the camera width
    :return: (m, 1, 2) float32 projector corners and a (n,) boolean mask of the corners that were kept
    """
    if corr.axes != "both":
        raise ValueError("mapping corners to the projector requires both axes to be coded")
    pts = cam_corners.reshape(-1, 2).astype(np.float64)
    h, w = corr.col_code.shape
    size = 2 * window + 1
    full = ndimage.binary_erosion(
        corr.reliable, structure=np.ones((size, size), dtype=bool), border_value=0
    )
    centers = np.round(pts).astype(np.int64)
    inside = (
        (centers[:, 0] >= 0) & (centers[:, 0] < w) & (centers[:, 1] >= 0) & (centers[:, 1] < h)
    )
    keep = np.zeros(len(pts), dtype=bool)
    keep[inside] = full[centers[inside, 1], centers[inside, 0]]
    if not keep.any():
        return np.zeros((0, 1, 2), dtype=np.float32), keep
    dy, dx = np.mgrid[-window : window + 1, -window : window + 1]
    dx, dy = dx.ravel(), dy.ravel()
    A = np.stack((np.ones_like(dx), dx, dy, dx * dy), axis=-1).astype(np.float64)
    solver = np.linalg.pinv(A)  # (4, size^2)
    cx, cy = centers[keep, 0], centers[keep, 1]
    xs = cx[:, None] + dx[None, :]
    ys = cy[:, None] + dy[None, :]
    col_coef = corr.col_code[ys, xs].astype(np.float64) @ solver.T
    row_coef = corr.row_code[ys, xs].astype(np.float64) @ solver.T
    fx = pts[keep, 0] - cx
    fy = pts[keep, 1] - cy
    basis = np.stack((np.ones_like(fx), fx, fy, fx * fy), axis=-1)
    proj = np.stack(
        (np.sum(col_coef * basis, axis=-1), np.sum(row_coef * basis, axis=-1)), axis=-1
    )
    if patch is None:
        patch = int(np.ceil(w / 180))
    if patch > window:
        proj = _fit_local_homographies(pts, proj, keep, corr, patch)
    return proj[:, None, :].astype(np.float32), keep


def _fit_local_homographies(pts, proj, keep, corr, half):
    size = 2 * half + 1
    full = ndimage.binary_erosion(
        corr.reliable, structure=np.ones((size, size), dtype=bool), border_value=0
    )
    dy, dx = np.mgrid[-half : half + 1, -half : half + 1]
    dx, dy = dx.ravel(), dy.ravel()
    refined = proj.copy()
    for i, j in enumerate(np.flatnonzero(keep)):
        cx, cy = np.round(pts[j]).astype(np.int64)
        if not full[cy, cx]:
            continue
        xs, ys = cx + dx, cy + dy
        src = np.stack((xs, ys), axis=-1).astype(np.float64)
        dst = np.stack((corr.col_code[ys, xs], corr.row_code[ys, xs]), axis=-1).astype(np.float64)
        H, _ = cv2.findHomography(src, dst)
        if H is None:
            logger.debug("no local homography around corner (%d, %d)", cx, cy)
            continue
        p = H @ np.array([pts[j, 0], pts[j, 1], 1.0])
        refined[i] = p[:2] / p[2]
    return refined


def reprojection_errors(object_points, image_points, rvec, tvec, K, dist):
    """returns the per point distance (pixels) between image_points and the projection of object_points"""
    projected, _ = cv2.projectPoints(object_points, rvec, tvec, K, dist)
    return np.linalg.norm(projected.reshape(-1, 2) - image_points.reshape(-1, 2), axis=-1)


def _run_zhang(object_points, image_points, image_wh, K_init=None, dist_init=None, flags=0):
    try:
        rms, K, dist, rvecs, tvecs = cv2.calibrateCamera(
            object_points, image_points, image_wh, K_init, dist_init, flags=flags
        )
    except cv2.error as e:
        raise SolverNonConvergent("calibration solver failed: {}".format(e)) from e
    if not (np.isfinite(rms) and np.isfinite(K).all() and np.isfinite(dist).all()):
        raise SolverNonConvergent("calibration solver did not converge")
    if K[0, 0] <= 0 or K[1, 1] <= 0:
        raise SolverNonConvergent("calibration solver returned non positive focal lengths")
    per_view = np.array(
        [
            reprojection_errors(o, i, r, t, K, dist).mean()
            for o, i, r, t in zip(object_points, image_points, rvecs, tvecs)
        ]
    )
    return IntrinsicCalibrationResult(
        K.astype(np.float64),
        dist.reshape(-1)[:5].astype(np.float64),
        float(rms),
        per_view,
        rvecs,
        tvecs,
    )


def calibrate_camera(images, params, flags=0):
    """
    intrinsic camera calibration from views of a chessboard
    :param images: iterable of camera images, one per board pose
    :param params: ScanParameters (board geometry and camera resolution)
    :param flags: cv2.calibrateCamera flags
    :return: IntrinsicCalibrationResult
    """
    objps = params.board_points()
    object_points, image_points = [], []
    for i, image in enumerate(images):
        corners = detect_board_corners(image, params.board_size)
        if corners is None:
            logger.warning("chessboard was not found in view %d, skipping", i)
            continue
        object_points.append(objps)
        image_points.append(corners)
    if len(image_points) < MIN_VIEWS:
        raise CornerDetectionInsufficient(
            "chessboard found in {} views, at least {} are required".format(
                len(image_points), MIN_VIEWS
            )
        )
    result = _run_zhang(object_points, image_points, params.cam_wh, flags=flags)
    logger.info("camera calibration intrinsic parameters: %s", result.intrinsic.tolist())
    logger.info("camera calibration distortion parameters: %s", result.distortion.tolist())
    logger.info(
        "camera calibration reprojection error: rms %.4f px, mean %.4f px",
        result.rms,
        result.mean_error,
    )
    for i, e in enumerate(result.per_view_errors):
        logger.debug("view %d reprojection error: %.4f px", i, e)
    return result


def _initial_projector_intrinsics(proj_wh, projector_orientation):
    # tabletop projectors usually have their principal point in the lower half of the image,
    # ceiling mounted projectors in the upper half
    if projector_orientation == "none":
        cy_correction = 0
    elif projector_orientation == "lower_half":
        cy_correction = proj_wh[1] / 4
    elif projector_orientation == "upper_half":
        cy_correction = -proj_wh[1] / 4
    else:
        raise ValueError("invalid projector_orientation")
    return np.array(
        [
            [np.mean(proj_wh), 0, proj_wh[0] / 2],
            [0, np.mean(proj_wh), cy_correction + proj_wh[1] / 2],
            [0, 0, 1],
        ]
    )


def calibrate_projector(
    sequences,
    params,
    simultaneous=False,
    projector_orientation="none",
    flags=cv2.CALIB_USE_INTRINSIC_GUESS
    + cv2.CALIB_FIX_ASPECT_RATIO
    + cv2.CALIB_ZERO_TANGENT_DIST
    + cv2.CALIB_FIX_K3,
):
    """
    intrinsic projector calibration. the projector is treated as an inverse camera: for every board pose
    the full gray code sequence is decoded, the board corners found in the camera image are mapped into
    the projector image and the projector is calibrated from those.
    :param sequences: iterable of captured gray code sequences (both axes coded), one per board pose
    :param params: ScanParameters
    :param simultaneous: if True, the camera is calibrated on the same poses and both devices are refined jointly
    :param projector_orientation: "none", "lower_half" or "upper_half", affects the initial principal point
    :param flags: cv2.calibrateCamera flags for the projector
    :return: ProjectorCalibrationResult
    """
    graycode = GrayCode()
    objps = params.board_points()
    cam_objps_list, cam_corners_list = [], []
    proj_objps_list, proj_corners_list, cam_corners_kept_list = [], [], []
    for i, frames in enumerate(sequences):
        try:
            corr = graycode.decode(
                frames,
                params.proj_wh,
                axes="both",
                contrast_threshold=params.contrast_threshold,
                brightness_threshold=params.brightness_threshold,
            )
        except DecodeAllInvalid:
            logger.warning("nothing was decoded in view %d, skipping", i)
            continue
        cam_corners = detect_board_corners(corr.light_image, params.board_size)
        if cam_corners is None:
            logger.warning("chessboard was not found in view %d, skipping", i)
            continue
        proj_corners, keep = corners_to_projector(cam_corners, corr)
        logger.debug("view %d: %d / %d corners mapped to the projector", i, keep.sum(), len(keep))
        cam_objps_list.append(objps)
        cam_corners_list.append(cam_corners)
        if keep.sum() < MIN_CORNERS_PER_VIEW:
            logger.warning(
                "too few corners could be mapped to the projector in view %d (check your images and thresholds), skipping",
                i,
            )
            continue
        proj_objps_list.append(objps[keep])
        proj_corners_list.append(proj_corners)
        cam_corners_kept_list.append(cam_corners[keep])
    if len(proj_corners_list) < MIN_VIEWS:
        raise CornerDetectionInsufficient(
            "projector corners found in {} views, at least {} are required".format(
                len(proj_corners_list), MIN_VIEWS
            )
        )
    logger.info(
        "total correspondence points: %d", sum([len(x) for x in proj_corners_list])
    )
    K_init = _initial_projector_intrinsics(params.proj_wh, projector_orientation)
    projector = _run_zhang(
        proj_objps_list,
        proj_corners_list,
        params.proj_wh,
        K_init,
        np.zeros((5, 1)),
        flags=flags,
    )
    logger.info("projector calibration intrinsic parameters: %s", projector.intrinsic.tolist())
    logger.info("projector calibration distortion parameters: %s", projector.distortion.tolist())
    logger.info(
        "projector calibration reprojection error: rms %.4f px, mean %.4f px",
        projector.rms,
        projector.mean_error,
    )
    if not simultaneous:
        return ProjectorCalibrationResult(projector)

    camera = _run_zhang(cam_objps_list, cam_corners_list, params.cam_wh)
    try:
        (
            stereo_rms,
            cam_int,
            cam_dist,
            proj_int,
            proj_dist,
            R_cp,
            t_cp,
            _,
            _,
        ) = cv2.stereoCalibrate(
            proj_objps_list,
            cam_corners_kept_list,
            proj_corners_list,
            camera.intrinsic.copy(),
            camera.distortion.reshape(-1, 1).copy(),
            projector.intrinsic.copy(),
            projector.distortion.reshape(-1, 1).copy(),
            params.cam_wh,
            flags=cv2.CALIB_USE_INTRINSIC_GUESS + cv2.CALIB_FIX_ASPECT_RATIO,
        )
    except cv2.error as e:
        raise SolverNonConvergent("joint calibration failed: {}".format(e)) from e
    if not (np.isfinite(stereo_rms) and np.isfinite(cam_int).all() and np.isfinite(proj_int).all()):
        raise SolverNonConvergent("joint calibration did not converge")
    camera.intrinsic, camera.distortion = cam_int, cam_dist.reshape(-1)[:5]
    projector.intrinsic, projector.distortion = proj_int, proj_dist.reshape(-1)[:5]
    logger.info("joint calibration reprojection error: %.4f px", stereo_rms)
    logger.info("joint camera intrinsic parameters: %s", cam_int.tolist())
    logger.info("joint projector intrinsic parameters: %s", proj_int.tolist())
    return ProjectorCalibrationResult(
        projector, camera, float(stereo_rms), R_cp, t_cp.reshape(3)
    )


def calibrate_extrinsics(frames, calibration, params):
    """
    projector-camera extrinsic calibration from a single board pose.
    the board pose is recovered in the camera and in the projector (perspective-n-point),
    the result is rejected if either reprojection error exceeds params.max_reprojection_error.
    :param frames: captured gray code sequence (both axes coded) of the board
    :param calibration: Calibration with both intrinsics set
    :param params: ScanParameters
    :return: ExtrinsicCalibrationResult
    """
    if not (calibration.cam_intrinsic_calib and calibration.proj_intrinsic_calib):
        raise CalibrationPrereqMissing(
            "camera and projector must be intrinsically calibrated first"
        )
    corr = GrayCode().decode(
        frames,
        params.proj_wh,
        axes="both",
        contrast_threshold=params.contrast_threshold,
        brightness_threshold=params.brightness_threshold,
    )
    cam_corners = detect_board_corners(corr.light_image, params.board_size)
    if cam_corners is None:
        raise CornerDetectionInsufficient("chessboard was not found in the camera image")
    proj_corners, keep = corners_to_projector(cam_corners, corr)
    if keep.sum() < MIN_CORNERS_PER_VIEW:
        raise CornerDetectionInsufficient(
            "only {} corners could be mapped to the projector".format(keep.sum())
        )
    objps = params.board_points()
    Kc, dc = calibration.cam_intrinsic, calibration.cam_distortion
    Kp, dp = calibration.proj_intrinsic, calibration.proj_distortion
    ok_c, rvec_c, tvec_c = cv2.solvePnP(objps, cam_corners, Kc, dc)
    ok_p, rvec_p, tvec_p = cv2.solvePnP(objps[keep], proj_corners, Kp, dp)
    if not (ok_c and ok_p):
        raise SolverNonConvergent("perspective-n-point solver failed")
    cam_error = float(reprojection_errors(objps, cam_corners, rvec_c, tvec_c, Kc, dc).mean())
    proj_error = float(
        reprojection_errors(objps[keep], proj_corners, rvec_p, tvec_p, Kp, dp).mean()
    )
    logger.info(
        "extrinsic calibration reprojection error: camera %.4f px, projector %.4f px",
        cam_error,
        proj_error,
    )
    bound = params.max_reprojection_error
    if cam_error > bound:
        raise ReprojectionErrorTooLarge("camera", cam_error, bound)
    if proj_error > bound:
        raise ReprojectionErrorTooLarge("projector", proj_error, bound)
    Rc, _ = cv2.Rodrigues(rvec_c)
    Rp, _ = cv2.Rodrigues(rvec_p)
    return ExtrinsicCalibrationResult(
        rt_to_extrinsic(Rc, tvec_c.reshape(3)),
        rt_to_extrinsic(Rp, tvec_p.reshape(3)),
        cam_error,
        proj_error,
    )
