import numpy as np
import pytest

import slscan
from procam_sim import ProCamRig, cube_renderer, plane_renderer


def scan(renderer, params, axes="both", **kwargs):
    gc = slscan.GrayCode()
    frames = renderer.render_sequence(gc.encode(params.proj_wh, axes), **kwargs)
    return gc.decode(
        frames,
        params.proj_wh,
        axes=axes,
        contrast_threshold=params.contrast_threshold,
        brightness_threshold=params.brightness_threshold,
    )


def plane_rms(points):
    centered = points - points.mean(axis=0)
    _, s, _ = np.linalg.svd(centered, full_matrices=False)
    return s[-1] / np.sqrt(len(points))


@pytest.fixture(scope="module")
def rig():
    return ProCamRig()


@pytest.fixture(scope="module")
def params(rig):
    return rig.params(background_threshold=5.0)


@pytest.fixture(scope="module")
def geometry(rig):
    return slscan.evaluate_procam_geometry(rig.calibration(), rig.cam_wh, rig.proj_wh)


@pytest.fixture(scope="module")
def plane(rig, params):
    renderer = plane_renderer(rig, 500.0)
    return renderer, scan(renderer, params)


def test_flat_plane(plane, geometry, params):
    renderer, corr = plane
    cloud = slscan.reconstruct_pointcloud(corr, geometry, params)
    in_frustum = renderer.lit
    produced = np.zeros_like(in_frustum)
    produced[cloud.pixels[:, 1], cloud.pixels[:, 0]] = True
    assert (produced & in_frustum).sum() >= 0.95 * in_frustum.sum()
    assert plane_rms(cloud.points) < 0.5
    assert np.abs(cloud.points[:, 2] - 500).max() < 2.0
    assert np.all(cloud.reliable)
    assert cloud.colors.shape == (len(cloud), 3)
    assert cloud.colors.dtype == np.uint8


def test_points_are_ordered_by_pixel(plane, geometry, params):
    _, corr = plane
    cloud = slscan.reconstruct_pointcloud(corr, geometry, params)
    index = cloud.pixels[:, 1] * corr.cam_wh[0] + cloud.pixels[:, 0]
    assert np.all(np.diff(index) > 0)


def test_no_point_at_invalid_pixels(plane, geometry, params):
    _, corr = plane
    mask = np.zeros(corr.col_code.shape, dtype=bool)
    mask[100:200, 200:400] = True
    cloud = slscan.reconstruct_pointcloud(corr.invalidate(mask), geometry, params)
    assert not mask[cloud.pixels[:, 1], cloud.pixels[:, 0]].any()
    assert corr.valid[cloud.pixels[:, 1], cloud.pixels[:, 0]].all()


def test_single_axis_fallback_is_unreliable(plane, geometry, params):
    _, corr = plane
    row_valid = corr.row_valid.copy()
    row_valid[:, :300] = False
    row_code = np.where(row_valid, corr.row_code, -1)
    degraded = slscan.CorrespondenceMap(
        corr.col_code, row_code, corr.col_valid, row_valid, "both", corr.light_image
    )
    cloud = slscan.reconstruct_pointcloud(degraded, geometry, params)
    left = cloud.pixels[:, 0] < 300
    assert left.any()
    assert not cloud.reliable[left].any()
    assert cloud.reliable[~left].all()
    assert np.abs(cloud.points[left, 2] - 500).max() < 2.0


def test_inconsistent_planes_are_rejected(plane, geometry, params):
    _, corr = plane
    row_code = corr.row_code.copy()
    shifted = np.zeros(row_code.shape, dtype=bool)
    shifted[200:260, 300:360] = True
    shifted &= corr.row_valid & (row_code < 700)
    row_code[shifted] += 60
    broken = slscan.CorrespondenceMap(
        corr.col_code, row_code, corr.col_valid, corr.row_valid, "both", corr.light_image
    )
    cloud = slscan.reconstruct_pointcloud(broken, geometry, params)
    assert shifted.any()
    assert not shifted[cloud.pixels[:, 1], cloud.pixels[:, 0]].any()


def test_depth_range(plane, geometry, params):
    _, corr = plane
    cloud = slscan.reconstruct_pointcloud(corr, geometry, params.updated(z_min=100.0, z_max=450.0))
    assert len(cloud) == 0
    assert cloud.points.shape == (0, 3)


def test_columns_only(rig, geometry):
    params = rig.params(axes="columns")
    renderer = plane_renderer(rig, 500.0)
    corr = scan(renderer, params, axes="columns")
    cloud = slscan.reconstruct_pointcloud(corr, geometry, params)
    assert len(cloud) >= 0.95 * renderer.lit.sum()
    assert np.all(cloud.reliable)
    assert plane_rms(cloud.points) < 0.5


def test_background_subtraction(rig, geometry, params):
    background_scene = cube_renderer(rig, with_cube=False)
    first = scan(background_scene, params)
    background = slscan.capture_background(first, geometry, params)
    assert background.populated
    assert np.all(np.isfinite(background.depth[background.mask]))
    assert np.all(np.isinf(background.depth[~background.mask]))
    # the empty scene scanned again is entirely background
    second = scan(background_scene, params)
    cloud = slscan.reconstruct_pointcloud(second, geometry, params, background=background)
    assert len(cloud) == 0

    cube_scene = cube_renderer(rig)
    corr = scan(cube_scene, params)
    cloud = slscan.reconstruct_pointcloud(corr, geometry, params, background=background)
    on_cube = np.abs(cloud.points[:, 2] - 450) < 5
    assert on_cube.mean() > 0.98
    visible_face = cube_scene.lit & (cube_scene.surface == 1)
    assert on_cube.sum() >= 0.95 * visible_face.sum()

    background.reset()
    assert not background.populated
    cloud = slscan.reconstruct_pointcloud(corr, geometry, params, background=background)
    assert (np.abs(cloud.points[:, 2] - 600) < 5).sum() > 0


def test_ambiguous_bits(rig, geometry):
    params = rig.params(axes="columns", contrast_threshold=20.0, brightness_threshold=40.0)
    renderer = plane_renderer(rig, 500.0)
    rng = np.random.default_rng(0)
    delta = params.contrast_threshold

    def noise(i, frame):
        # every other bit frame (the direct ones)
        if i >= 2 and i % 2 == 0:
            return frame + rng.uniform(-2 * delta, 2 * delta, size=frame.shape)
        return frame

    corr = scan(renderer, params, axes="columns", ambient=40.0, gain=40.0, noise=noise)
    lit = renderer.lit
    assert (~corr.valid[lit]).mean() >= 0.5
    cloud = slscan.reconstruct_pointcloud(corr, geometry, params)
    assert len(cloud) > 0
    assert corr.valid[cloud.pixels[:, 1], cloud.pixels[:, 0]].all()
    assert np.abs(cloud.points[:, 2] - 500).max() < 2.0


def test_point_cloud_depth_map():
    cloud = slscan.PointCloud(
        np.array([[0, 0, 10.0], [1, 1, 20.0]]),
        np.zeros((2, 3), dtype=np.uint8),
        np.array([[1, 0], [2, 1]]),
        np.array([True, False]),
    )
    depth = cloud.to_depth_map((3, 2))
    assert depth[0, 1] == 10.0
    assert depth[1, 2] == 20.0
    assert np.isinf(depth).sum() == 4
    assert len(slscan.PointCloud.empty()) == 0


def test_kinect_mapping():
    assert slscan.is_depth_valid(np.array([0, 0x7FF, 500])).tolist() == [False, False, True]
    assert np.isclose(slscan.depth_value_to_z(500), 100.0 / (-0.00307 * 500 + 3.33))
    z = slscan.depth_value_to_z(600)
    x, y, wz = slscan.depth_to_world(320, 240, z)
    assert x == 0 and y == 0
    assert np.isclose(wz, 200 - z)
    x, y, _ = slscan.depth_to_world(420, 140, z)
    assert np.isclose(x, 100 * (z - 10) * 0.0021)
    assert np.isclose(y, -100 * (z - 10) * 0.0021)
    u, v = slscan.world_to_rgb(np.array([1e6, -1e6]), np.array([0.0, 0.0]), np.array([wz, wz]))
    assert u.tolist() == [640, 0]
    depth = np.zeros((480, 640), dtype=np.uint16)
    depth[100:110, 200:220] = 600
    depth[0, 0] = 0x7FF
    cloud = slscan.kinect_pointcloud(depth, np.full((480, 640, 3), 7, dtype=np.uint8))
    assert len(cloud) == 200
    assert np.all(cloud.colors == 7)
    assert np.allclose(cloud.points[:, 2], 200 - z)
