import cv2
import numpy as np
import pytest

import slscan
from procam_sim import ProCamRig


@pytest.fixture(scope="module")
def rig():
    return ProCamRig()


@pytest.fixture(scope="module")
def geometry(rig):
    return slscan.evaluate_procam_geometry(rig.calibration(), rig.cam_wh, rig.proj_wh)


def test_camera_rays(rig, geometry):
    w, h = rig.cam_wh
    assert geometry.cam_rays.shape == (h, w, 3)
    assert np.allclose(np.linalg.norm(geometry.cam_rays, axis=-1), 1)
    # the ray through the principal point is the optical axis
    cx, cy = int(rig.Kc[0, 2]), int(rig.Kc[1, 2])
    assert np.allclose(geometry.cam_rays[cy, cx], [0, 0, 1])
    # rays project back onto their pixel
    uv = rig.project_to_camera(geometry.cam_rays[::37, ::41])
    u, v = np.meshgrid(np.arange(w)[::41], np.arange(h)[::37])
    assert np.allclose(uv, np.stack((u, v), axis=-1), atol=1e-6)


def test_tables_shapes(rig, geometry):
    assert geometry.column_planes.shape == (rig.proj_wh[0], 4)
    assert geometry.row_planes.shape == (rig.proj_wh[1], 4)
    # projector rays are tabulated over the camera pixel grid
    assert geometry.proj_rays.shape == (rig.cam_wh[1], rig.cam_wh[0], 3)
    assert np.allclose(geometry.proj_center, rig.proj_center)
    assert np.allclose(geometry.cam_center, 0)


def test_planes_contain_projector_center(rig, geometry):
    for planes in (geometry.column_planes, geometry.row_planes):
        assert np.allclose(np.linalg.norm(planes[:, :3], axis=-1), 1)
        assert np.allclose(planes[:, :3] @ rig.proj_center + planes[:, 3], 0, atol=1e-8)


def test_plane_consistency(rig, geometry):
    rng = np.random.default_rng(0)
    x = rng.integers(0, rig.proj_wh[0], size=500)
    y = rng.integers(0, rig.proj_wh[1], size=500)
    depth = rng.uniform(300, 900, size=500)
    # points seen by projector pixel (x, y) at the given projector depth
    proj_dirs = np.stack((x, y, np.ones_like(x)), axis=-1) @ np.linalg.inv(rig.Kp).T
    points = (proj_dirs * depth[:, None] - rig.t_cp) @ rig.R_cp
    rays = slscan.normalize(points)
    p_col = slscan.intersect_ray_plane(np.zeros(3), rays, geometry.column_planes[x])
    p_row = slscan.intersect_ray_plane(np.zeros(3), rays, geometry.row_planes[y])
    scale = 500.0
    assert np.all(np.linalg.norm(p_col - p_row, axis=-1) <= 1e-3 * scale)
    assert np.allclose(p_col, points, atol=1e-6 * scale)
    assert np.allclose(p_row, points, atol=1e-6 * scale)


def test_projector_rays(rig, geometry):
    # the ray tabulated at (u, v) leaves the projector through projector pixel (u, v)
    v, u = 240, 320
    point = rig.proj_center + 600 * geometry.proj_rays[v, u]
    uv, depth = rig.project(point)
    assert depth > 0
    assert np.allclose(uv, [u, v], atol=1e-6)


def test_evaluate_is_idempotent(rig):
    calibration = rig.calibration()
    first = slscan.evaluate_procam_geometry(calibration, rig.cam_wh, rig.proj_wh)
    second = slscan.evaluate_procam_geometry(calibration, rig.cam_wh, rig.proj_wh)
    for name in ("cam_rays", "proj_rays", "column_planes", "row_planes", "proj_center"):
        assert np.array_equal(getattr(first, name), getattr(second, name))
    assert first.version == second.version == calibration.version


def test_evaluate_requires_complete_calibration(rig):
    calibration = slscan.Calibration()
    calibration.set_camera_intrinsics(rig.Kc, np.zeros(5))
    calibration.set_projector_intrinsics(rig.Kp, np.zeros(5))
    with pytest.raises(slscan.CalibrationPrereqMissing):
        slscan.evaluate_procam_geometry(calibration, rig.cam_wh, rig.proj_wh)


def test_intersect_ray_plane_parallel():
    planes = np.array([[0, 0, 1, -100.0], [1, 0, 0, -5.0]])
    rays = np.array([[0, 0, 1.0], [0, 0, 1.0]])
    points = slscan.intersect_ray_plane(np.zeros(3), rays, planes)
    assert np.allclose(points[0], [0, 0, 100])
    assert np.all(np.isnan(points[1]))


def test_undistort_pixels_inverts_projection():
    K = np.array([[700.0, 0, 310], [0, 705.0, 250], [0, 0, 1]])
    dist = np.array([-0.2, 0.05, 0.001, -0.002, 0.0])
    rng = np.random.default_rng(1)
    normalized = rng.uniform(-0.3, 0.3, size=(50, 2))
    pixels, _ = cv2.projectPoints(
        slscan.to_hom(normalized)[:, None, :], np.zeros(3), np.zeros(3), K, dist
    )
    recovered = slscan.undistort_pixels(pixels.reshape(-1, 2), K, dist)
    assert np.allclose(recovered, normalized, atol=1e-4)


def test_projector_planes_follow_distortion():
    K = np.array([[1000.0, 0, 512], [0, 1000.0, 384], [0, 0, 1]])
    dist = np.array([0.1, 0.0, 0.0, 0.0, 0.0])
    planes = slscan.projector_planes((1024, 768), K, dist, np.eye(3), np.zeros(3), "columns")
    straight = slscan.projector_planes((1024, 768), K, np.zeros(5), np.eye(3), np.zeros(3), "columns")
    # the central column is unaffected by radial distortion, the border ones are not
    assert np.allclose(np.abs(planes[512, :3]), np.abs(straight[512, :3]), atol=1e-9)
    assert not np.allclose(np.abs(planes[0, :3]), np.abs(straight[0, :3]), atol=1e-4)
    with pytest.raises(ValueError):
        slscan.projector_planes((1024, 768), K, dist, np.eye(3), np.zeros(3), "diagonal")


class TestCalibration:
    def setup_method(self):
        self.calibration = slscan.Calibration()
        self.K = np.array([[800.0, 0, 320], [0, 800.0, 240], [0, 0, 1]])

    def test_initial_state(self):
        assert not self.calibration.cam_intrinsic_calib
        assert not self.calibration.proj_intrinsic_calib
        assert not self.calibration.procam_extrinsic_calib
        assert not self.calibration.is_complete
        with pytest.raises(slscan.CalibrationPrereqMissing):
            self.calibration.procam_transform

    def test_setters_are_atomic(self):
        bad = self.K.copy()
        bad[0, 0] = np.nan
        with pytest.raises(ValueError):
            self.calibration.set_camera_intrinsics(bad, np.zeros(5))
        with pytest.raises(ValueError):
            self.calibration.set_camera_intrinsics(self.K, np.zeros(4))
        assert not self.calibration.cam_intrinsic_calib
        assert np.array_equal(self.calibration.cam_intrinsic, np.eye(3))
        assert self.calibration.version == 0

    def test_extrinsics_need_intrinsics(self):
        self.calibration.set_camera_intrinsics(self.K, np.zeros(5))
        with pytest.raises(slscan.CalibrationPrereqMissing):
            self.calibration.set_procam_transform(np.eye(3), np.array([100.0, 0, 0]))
        assert not self.calibration.procam_extrinsic_calib

    def test_procam_transform(self):
        self.calibration.set_camera_intrinsics(self.K, np.zeros(5))
        self.calibration.set_projector_intrinsics(self.K, np.zeros(5))
        version = self.calibration.version
        R, _ = cv2.Rodrigues(np.array([0.1, -0.2, 0.05]))
        t = np.array([-120.0, 30.0, 15.0])
        self.calibration.set_procam_transform(R, t)
        assert self.calibration.is_complete
        assert self.calibration.version > version
        R_cp, t_cp = self.calibration.procam_transform
        assert np.allclose(R_cp, R)
        assert np.allclose(t_cp, t)
        assert np.isclose(np.linalg.det(R_cp), 1)
        assert np.allclose(self.calibration.proj_center, -R.T @ t)
        self.calibration.reset_extrinsics()
        assert not self.calibration.is_complete

    def test_matrix_changes_drop_fundamental(self):
        self.calibration.set_camera_intrinsics(self.K, np.zeros(5))
        self.calibration.set_projector_intrinsics(self.K, np.zeros(5))
        t = np.array([-120.0, 30.0, 15.0])
        self.calibration.set_procam_transform(np.eye(3), t)
        for update in (
            lambda: self.calibration.set_camera_intrinsics(2 * self.K, np.zeros(5)),
            lambda: self.calibration.set_projector_intrinsics(2 * self.K, np.zeros(5)),
            lambda: self.calibration.set_procam_transform(np.eye(3), t),
            self.calibration.reset_extrinsics,
        ):
            self.calibration.fundamental.set_matrix(np.eye(3))
            update()
            assert not self.calibration.fundamental.populated

    def test_board_poses_give_relative_transform(self):
        self.calibration.set_camera_intrinsics(self.K, np.zeros(5))
        self.calibration.set_projector_intrinsics(self.K, np.zeros(5))
        Rc, _ = cv2.Rodrigues(np.array([0.3, 0.1, 0.0]))
        tc = np.array([10.0, -20.0, 600.0])
        R, _ = cv2.Rodrigues(np.array([0.0, -0.25, 0.05]))
        t = np.array([-150.0, 150.0, 20.0])
        # the board pose in the projector follows from the camera pose and the procam transform
        Rp, tp = R @ Rc, R @ tc + t
        self.calibration.set_extrinsics(
            slscan.rt_to_extrinsic(Rc, tc), slscan.rt_to_extrinsic(Rp, tp)
        )
        R_cp, t_cp = self.calibration.procam_transform
        assert np.allclose(R_cp, R)
        assert np.allclose(t_cp, t)
