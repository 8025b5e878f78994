import logging

import numpy as np

from .geometry import intersect_ray_plane
from .slscan_io import save_pointcloud

logger = logging.getLogger(__name__)


class PointCloud:
    """
    a sparse point cloud in the camera frame, ordered row-major by the camera pixel each point came from.
    :param points: (n, 3) float64 positions
    :param colors: (n, 3) uint8 colors
    :param pixels: (n, 2) int64 camera pixels (u, v)
    :param reliable: (n,) bool, False where only one of two coded axes was available
    """

    def __init__(self, points, colors, pixels, reliable):
        self.points = points
        self.colors = colors
        self.pixels = pixels
        self.reliable = reliable

    def __len__(self):
        return len(self.points)

    @classmethod
    def empty(cls):
        return cls(
            np.zeros((0, 3)),
            np.zeros((0, 3), dtype=np.uint8),
            np.zeros((0, 2), dtype=np.int64),
            np.zeros((0,), dtype=bool),
        )

    def to_depth_map(self, cam_wh):
        """returns a (cam_h, cam_w) image of point z values, inf where there is no point"""
        depth = np.full((cam_wh[1], cam_wh[0]), np.inf)
        depth[self.pixels[:, 1], self.pixels[:, 0]] = self.points[:, 2]
        return depth

    def save(self, path):
        save_pointcloud(self.points, path, vertex_colors=self.colors)


class BackgroundModel:
    """
    depth of an empty scene, used to remove the background from later scans.
    a fresh (or reset) model holds infinite depth everywhere and removes nothing.
    """

    def __init__(self, cam_wh):
        self.cam_wh = tuple(cam_wh)
        self.reset()

    def reset(self):
        w, h = self.cam_wh
        self.depth = np.full((h, w), np.inf)
        self.image = np.zeros((h, w, 3), dtype=np.uint8)
        self.mask = np.ones((h, w), dtype=bool)
        self.populated = False

    def background_mask(self, pixels, z, threshold):
        """
        tells which points lie on the background
        :param pixels: (n, 2) camera pixels (u, v)
        :param z: (n,) depth of the points
        :param threshold: points closer than this to the background depth are background
        :return: (n,) bool
        """
        if not self.populated:
            return np.zeros(len(z), dtype=bool)
        z_bg = self.depth[pixels[:, 1], pixels[:, 0]]
        with np.errstate(invalid="ignore"):
            return np.isfinite(z_bg) & (np.abs(z - z_bg) <= threshold)


def triangulate(corr, geometry, max_plane_distance):
    """
    intersects the ray of every decoded camera pixel with the projector plane(s) of its code(s).
    when both axes are decoded the midpoint of the two intersections is returned and pixels whose intersections
    are further apart than max_plane_distance are dropped. when a single axis is available its intersection is used.
    :param corr: CorrespondenceMap
    :param geometry: ProCamGeometry of the rig that captured corr
    :param max_plane_distance: maximal distance between the column and row intersections
    :return: (n, 3) points, (n, 2) camera pixels (u, v), (n,) reliability
    """
    v, u = np.nonzero(corr.valid)
    rays = geometry.cam_rays[v, u]
    origin = np.asarray(geometry.cam_center, dtype=np.float64)
    use_cols = corr.axes in ("columns", "both")
    use_rows = corr.axes in ("rows", "both")
    has_col = corr.col_valid[v, u] if use_cols else np.zeros(len(u), dtype=bool)
    has_row = corr.row_valid[v, u] if use_rows else np.zeros(len(u), dtype=bool)
    p_col = np.full((len(u), 3), np.nan)
    p_row = np.full((len(u), 3), np.nan)
    if has_col.any():
        planes = geometry.column_planes[corr.col_code[v[has_col], u[has_col]]]
        p_col[has_col] = intersect_ray_plane(origin, rays[has_col], planes)
    if has_row.any():
        planes = geometry.row_planes[corr.row_code[v[has_row], u[has_row]]]
        p_row[has_row] = intersect_ray_plane(origin, rays[has_row], planes)
    both = has_col & has_row
    points = np.where(has_col[:, None], p_col, p_row)
    points[both] = 0.5 * (p_col[both] + p_row[both])
    keep = np.ones(len(u), dtype=bool)
    if both.any():
        gap = np.linalg.norm(p_col[both] - p_row[both], axis=-1)
        with np.errstate(invalid="ignore"):
            keep[both] = gap <= max_plane_distance
        logger.debug(
            "%d / %d points rejected by the plane consistency check",
            int((~keep[both]).sum()),
            int(both.sum()),
        )
    reliable = both if corr.axes == "both" else np.ones(len(u), dtype=bool)
    pixels = np.stack((u, v), axis=-1).astype(np.int64)
    return points[keep], pixels[keep], reliable[keep]


def reconstruct_pointcloud(corr, geometry, params, light_image=None, background=None):
    """
    reconstructs a colored point cloud (camera frame) from a correspondence map.
    points that are non-finite, behind the camera, outside [z_min, z_max]
    or within background_threshold of a populated background model are dropped.
    :param corr: CorrespondenceMap
    :param geometry: ProCamGeometry
    :param params: ScanParameters (depth range, plane and background thresholds)
    :param light_image: (h, w, 3) uint8 image used for point colors, defaults to the light frame of corr
    :param background: optional BackgroundModel
    :return: PointCloud
    """
    points, pixels, reliable = triangulate(corr, geometry, params.max_plane_distance)
    origin = np.asarray(geometry.cam_center, dtype=np.float64)
    keep = np.isfinite(points).all(axis=-1)
    z = points[:, 2]
    with np.errstate(invalid="ignore"):
        front = np.sum((points - origin) * geometry.cam_rays[pixels[:, 1], pixels[:, 0]], axis=-1) > 0
        keep &= front & (z >= params.z_min) & (z <= params.z_max)
    n_triangulated = int(keep.sum())
    if background is not None and background.populated:
        keep &= ~background.background_mask(pixels, z, params.background_threshold)
        logger.debug(
            "%d points removed as background", n_triangulated - int(keep.sum())
        )
    points, pixels, reliable = points[keep], pixels[keep], reliable[keep]
    if light_image is None:
        light_image = corr.light_image
    if light_image is None:
        colors = np.full((len(points), 3), 255, dtype=np.uint8)
    else:
        colors = np.asarray(light_image)[pixels[:, 1], pixels[:, 0], :3].astype(np.uint8)
    logger.info(
        "reconstructed %d points (%d unreliable) from %d decoded pixels",
        len(points),
        int((~reliable).sum()),
        int(corr.valid.sum()),
    )
    return PointCloud(points, colors, pixels, reliable)


def capture_background(corr, geometry, params):
    """
    builds a background model from a scan of the empty scene
    :return: a populated BackgroundModel, pixels without a point keep an infinite depth
    """
    cloud = reconstruct_pointcloud(corr, geometry, params)
    background = BackgroundModel(corr.cam_wh)
    background.depth = cloud.to_depth_map(corr.cam_wh)
    if corr.light_image is not None:
        background.image = np.asarray(corr.light_image)[..., :3].astype(np.uint8)
    background.mask = np.isfinite(background.depth)
    background.populated = True
    logger.info("background model holds %d points", len(cloud))
    return background
