import cv2
import numpy as np

from .core import invert_rigid
from .errors import CalibrationPrereqMissing
from .fundamental import FundamentalMatrix


def _check_intrinsics(K, dist):
    K = np.asarray(K, dtype=np.float64)
    dist = np.asarray(dist, dtype=np.float64).reshape(-1)
    if K.shape != (3, 3):
        raise ValueError("intrinsic matrix must be 3x3")
    if dist.shape != (5,):
        raise ValueError("distortion must have 5 coefficients (k1, k2, p1, p2, k3)")
    if not (np.isfinite(K).all() and np.isfinite(dist).all()):
        raise ValueError("calibration matrices must be finite")
    if K[0, 0] <= 0 or K[1, 1] <= 0:
        raise ValueError("focal lengths must be positive")
    return K, dist


def _check_extrinsic(ext):
    ext = np.asarray(ext, dtype=np.float64)
    if ext.shape != (2, 3):
        raise ValueError("extrinsic must be 2x3 (rotation vector, translation)")
    if not np.isfinite(ext).all():
        raise ValueError("calibration matrices must be finite")
    return ext


def extrinsic_to_rt(ext):
    """converts a 2x3 (rotation vector; translation) extrinsic to a rotation matrix and a translation"""
    R, _ = cv2.Rodrigues(ext[0].reshape(3, 1))
    return R, ext[1].copy()


def rt_to_extrinsic(R, t):
    rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
    return np.stack((rvec.reshape(3), np.asarray(t, dtype=np.float64).reshape(3)), axis=0)


class Calibration:
    """
    calibration state of a projector-camera pair.
    holds three independently settable parts (camera intrinsics, projector intrinsics, procam extrinsics),
    each with a validity flag. setters validate everything before assigning, so a failed update leaves the state untouched.
    any change of the matrices drops the fundamental matrix, which is derived from them.
    extrinsics are stored as the pose of a calibration board in the camera and in the projector (2x3: rotation vector; translation),
    from which the camera -> projector transform x_p = R_cp @ x_c + t_cp is derived.
    """

    def __init__(self):
        self.cam_intrinsic = np.eye(3)
        self.cam_distortion = np.zeros(5)
        self.proj_intrinsic = np.eye(3)
        self.proj_distortion = np.zeros(5)
        self.cam_extrinsic = np.zeros((2, 3))
        self.proj_extrinsic = np.zeros((2, 3))
        self.cam_intrinsic_calib = False
        self.proj_intrinsic_calib = False
        self.procam_extrinsic_calib = False
        self.fundamental = FundamentalMatrix()
        # bumped on every change so derived tables know when to rebuild
        self.version = 0

    def set_camera_intrinsics(self, K, dist):
        K, dist = _check_intrinsics(K, dist)
        self.cam_intrinsic, self.cam_distortion = K, dist
        self.cam_intrinsic_calib = True
        self.fundamental.reset()
        self.version += 1

    def set_projector_intrinsics(self, K, dist):
        K, dist = _check_intrinsics(K, dist)
        self.proj_intrinsic, self.proj_distortion = K, dist
        self.proj_intrinsic_calib = True
        self.fundamental.reset()
        self.version += 1

    def set_extrinsics(self, cam_extrinsic, proj_extrinsic):
        """
        sets the board pose as seen by the camera and by the projector
        """
        if not (self.cam_intrinsic_calib and self.proj_intrinsic_calib):
            raise CalibrationPrereqMissing(
                "camera and projector must be intrinsically calibrated before setting extrinsics"
            )
        cam_extrinsic = _check_extrinsic(cam_extrinsic)
        proj_extrinsic = _check_extrinsic(proj_extrinsic)
        R, _ = self._relative(cam_extrinsic, proj_extrinsic)
        if abs(np.linalg.det(R) - 1.0) > 1e-6:
            raise ValueError("camera to projector rotation must have a determinant of +1")
        self.cam_extrinsic, self.proj_extrinsic = cam_extrinsic, proj_extrinsic
        self.procam_extrinsic_calib = True
        self.fundamental.reset()
        self.version += 1

    def set_procam_transform(self, R_cp, t_cp):
        """
        sets the extrinsics directly from a camera -> projector transform (the board frame is taken to be the camera frame)
        """
        self.set_extrinsics(np.zeros((2, 3)), rt_to_extrinsic(R_cp, t_cp))

    def reset_extrinsics(self):
        self.cam_extrinsic = np.zeros((2, 3))
        self.proj_extrinsic = np.zeros((2, 3))
        self.procam_extrinsic_calib = False
        self.fundamental.reset()
        self.version += 1

    @staticmethod
    def _relative(cam_extrinsic, proj_extrinsic):
        Rc, tc = extrinsic_to_rt(cam_extrinsic)
        Rp, tp = extrinsic_to_rt(proj_extrinsic)
        Rc_inv, tc_inv = invert_rigid(Rc, tc)
        return Rp @ Rc_inv, Rp @ tc_inv + tp

    @property
    def procam_transform(self):
        """(R_cp, t_cp) mapping camera frame points into the projector frame"""
        if not self.procam_extrinsic_calib:
            raise CalibrationPrereqMissing("projector-camera system is not extrinsically calibrated")
        return self._relative(self.cam_extrinsic, self.proj_extrinsic)

    @property
    def cam_center(self):
        return np.zeros(3)

    @property
    def proj_center(self):
        return invert_rigid(*self.procam_transform)[1]

    @property
    def is_complete(self):
        return self.cam_intrinsic_calib and self.proj_intrinsic_calib and self.procam_extrinsic_calib
