"""
fixed depth <-> world <-> color mapping of a first generation Kinect.
the constants are a known factory-like calibration, world units are centimeters.
"""

import numpy as np

from .reconstruct import PointCloud

MIN_DISTANCE = -10.0
DEPTH_SCALE_FACTOR = 0.0021
COLOR_SCALE_FACTOR = 0.0023
RGB_X_OFFSET = -1.8
RGB_Y_OFFSET = -2.4
INVALID_DEPTH = 0x07FF
DEPTH_WH = (640, 480)


def is_depth_valid(depth):
    """raw 11 bit readings of 0 and 0x7ff mean no measurement"""
    depth = np.asarray(depth)
    return (depth > 0) & (depth != INVALID_DEPTH)


def depth_value_to_z(depth):
    """converts raw 11 bit disparity readings to distance"""
    return 100.0 / (-0.00307 * np.asarray(depth, dtype=np.float64) + 3.33)


def depth_to_world(x, y, z):
    """
    maps depth image pixels (x, y) with distance z to world coordinates
    :return: world (x, y, z) arrays
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    z = np.asarray(z, dtype=np.float64)
    scale = (z + MIN_DISTANCE) * DEPTH_SCALE_FACTOR
    wx = (x - DEPTH_WH[0] / 2) * scale
    wy = (y - DEPTH_WH[1] / 2) * scale
    wz = -(z - 200.0)
    return wx, wy, wz


def world_to_rgb(x, y, z):
    """
    maps world coordinates to color image pixels, clamped to the color image
    :return: (u, v) float arrays
    """
    z = -np.asarray(z, dtype=np.float64) + 200.0
    denom = COLOR_SCALE_FACTOR * (z + MIN_DISTANCE)
    u = (np.asarray(x, dtype=np.float64) + RGB_X_OFFSET) / denom + DEPTH_WH[0] / 2
    v = (np.asarray(y, dtype=np.float64) + RGB_Y_OFFSET) / denom + DEPTH_WH[1] / 2
    return np.clip(u, 0, DEPTH_WH[0]), np.clip(v, 0, DEPTH_WH[1])


def kinect_pointcloud(depth_image, rgb_image=None):
    """
    converts a raw (480, 640) Kinect depth image to a point cloud
    :param depth_image: raw 11 bit depth readings
    :param rgb_image: optional (480, 640, 3) uint8 color image registered with world_to_rgb
    :return: PointCloud in world coordinates
    """
    depth_image = np.asarray(depth_image)
    v, u = np.nonzero(is_depth_valid(depth_image))
    z = depth_value_to_z(depth_image[v, u])
    x, y, z = depth_to_world(u, v, z)
    points = np.stack((x, y, z), axis=-1)
    if rgb_image is None:
        colors = np.full((len(points), 3), 255, dtype=np.uint8)
    else:
        rgb_image = np.asarray(rgb_image)
        cu, cv = world_to_rgb(x, y, z)
        h, w = rgb_image.shape[:2]
        cu = np.clip(np.round(cu).astype(np.int64), 0, w - 1)
        cv = np.clip(np.round(cv).astype(np.int64), 0, h - 1)
        colors = rgb_image[cv, cu, :3].astype(np.uint8)
    pixels = np.stack((u, v), axis=-1).astype(np.int64)
    return PointCloud(points, colors, pixels, np.ones(len(points), dtype=bool))
