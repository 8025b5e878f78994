"""
Fundamental matrix between the camera and projector images, estimated with the
normalized 8-point algorithm, and the Sampson-distance epipolar filter built on it.
"""

import logging

import numpy as np

from .core import to_hom, vec2skew

logger = logging.getLogger(__name__)


def normalize_points(pts):
    """
    centers 2D points and scales them so that their mean distance from the origin is sqrt(2)
    :param pts: (n, 2) points
    :return: (n, 2) normalized points and the (3, 3) transform mapping pts to them
    """
    mean = np.mean(pts, axis=0)
    centered = pts - mean
    scale = np.sqrt(2.0) / np.mean(np.linalg.norm(centered, axis=1))
    if not np.isfinite(scale) or scale == 0:
        scale = 1.0
    T = np.array(
        [
            [scale, 0, -scale * mean[0]],
            [0, scale, -scale * mean[1]],
            [0, 0, 1],
        ],
        dtype=np.float64,
    )
    normalized_pts = (T @ to_hom(pts).T).T[:, :2]
    return normalized_pts, T


def constrain_F(F):
    """zeroes the smallest singular value of F"""
    U, S, Vt = np.linalg.svd(F)
    S[2] = 0
    return U @ np.diag(S) @ Vt


def estimate_fundamental_matrix(cam_pts, proj_pts):
    """
    estimates F such that proj^T F cam = 0 using the normalized 8-point algorithm
    :param cam_pts: (n, 2) camera image points
    :param proj_pts: (n, 2) projector image points, n >= 8
    :return: rank 2 (3, 3) fundamental matrix with unit frobenius norm
    """
    if len(cam_pts) != len(proj_pts):
        raise ValueError("cam_pts and proj_pts must have the same length")
    if len(cam_pts) < 8:
        raise ValueError(
            "at least 8 point correspondences are needed, got {}".format(len(cam_pts))
        )
    pts1_norm, T1 = normalize_points(np.asarray(cam_pts, dtype=np.float64))
    pts2_norm, T2 = normalize_points(np.asarray(proj_pts, dtype=np.float64))
    x1, y1 = pts1_norm[:, 0], pts1_norm[:, 1]
    x2, y2 = pts2_norm[:, 0], pts2_norm[:, 1]
    ones = np.ones_like(x1)
    A = np.stack(
        [x2 * x1, x2 * y1, x2, y2 * x1, y2 * y1, y2, x1, y1, ones], axis=-1
    )
    # right singular vector of the smallest singular value
    _, _, Vt = np.linalg.svd(A, full_matrices=False)
    F = constrain_F(Vt[-1].reshape(3, 3))
    F = T2.T @ F @ T1
    # again, against round off of the denormalization
    F = constrain_F(F)
    return F / np.linalg.norm(F)


def sampson_distance(F, cam_pts, proj_pts):
    """
    first order geometric error of the epipolar constraint proj^T F cam = 0
    :param F: (3, 3) fundamental matrix
    :param cam_pts: (n, 2) camera image points
    :param proj_pts: (n, 2) projector image points
    :return: (n,) distances in pixels
    """
    x1 = to_hom(np.asarray(cam_pts, dtype=np.float64))
    x2 = to_hom(np.asarray(proj_pts, dtype=np.float64))
    Fx1 = x1 @ F.T
    Ftx2 = x2 @ F
    num = np.sum(x2 * Fx1, axis=-1) ** 2
    denom = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2
    return np.sqrt(num / np.maximum(denom, 1e-300))


class FundamentalMatrix:
    """
    a 3x3 fundamental matrix relating camera pixels (xc) to projector pixels (xp) by xp^T F xc = 0,
    plus a flag telling whether it was populated.
    """

    def __init__(self, matrix=None):
        self.matrix = np.zeros((3, 3))
        self.populated = False
        if matrix is not None:
            self.set_matrix(matrix)

    def set_matrix(self, matrix):
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (3, 3):
            raise ValueError("fundamental matrix must be 3x3")
        if not np.isfinite(matrix).all():
            raise ValueError("fundamental matrix must be finite")
        self.matrix = matrix
        self.populated = True

    def reset(self):
        self.matrix = np.zeros((3, 3))
        self.populated = False

    def fit(self, cam_pts, proj_pts, max_points=5000, seed=0):
        """
        estimates the matrix from point correspondences.
        at most max_points correspondences (a fixed random subset) are used.
        """
        cam_pts = np.asarray(cam_pts, dtype=np.float64)
        proj_pts = np.asarray(proj_pts, dtype=np.float64)
        if len(cam_pts) > max_points:
            rng = np.random.default_rng(seed)
            idx = rng.choice(len(cam_pts), size=max_points, replace=False)
            cam_pts, proj_pts = cam_pts[idx], proj_pts[idx]
        self.set_matrix(estimate_fundamental_matrix(cam_pts, proj_pts))
        residual = sampson_distance(self.matrix, cam_pts, proj_pts)
        logger.info(
            "fundamental matrix fitted on %d correspondences (mean sampson distance %.4f px)",
            len(cam_pts),
            residual.mean(),
        )
        return self

    @classmethod
    def from_calibration(cls, cam_int, proj_int, R_cp, t_cp):
        """
        F = Kp^-T [t]x R Kc^-1 for a rig where projector points are x_p = R @ x_c + t
        """
        E = vec2skew(t_cp) @ R_cp
        F = np.linalg.inv(proj_int).T @ E @ np.linalg.inv(cam_int)
        return cls(F / np.linalg.norm(F))

    def distances(self, cam_pts, proj_pts):
        if not self.populated:
            raise ValueError("fundamental matrix was not populated")
        return sampson_distance(self.matrix, cam_pts, proj_pts)

    def filter(self, corr, threshold):
        """
        marks every reliable correspondence of corr whose sampson distance exceeds threshold as invalid
        :param corr: a CorrespondenceMap coded on both axes
        :param threshold: maximal sampson distance (pixels)
        :return: a new CorrespondenceMap
        """
        cam_pts, proj_pts = corr.correspondences()
        if len(cam_pts) == 0:
            return corr
        d = self.distances(cam_pts, proj_pts)
        reject = np.zeros(corr.col_code.shape, dtype=bool)
        bad = d > threshold
        u = cam_pts[bad, 0].astype(np.int64)
        v = cam_pts[bad, 1].astype(np.int64)
        reject[v, u] = True
        logger.debug(
            "epipolar filter rejected %d / %d correspondences", int(bad.sum()), len(d)
        )
        return corr.invalidate(reject)
