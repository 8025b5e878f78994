import numpy as np


def to_hom(x):
    """Converts a vector to homogeneous coordinates.

    Concatenates 1 along the last dimension.

    Args:
        x: Numpy array of shape (..., c).

    Returns:
        Numpy array of shape (..., c+1).
    """
    if x.ndim == 1:
        return np.concatenate((x, np.array([1], dtype=x.dtype)))
    return np.concatenate((x, np.ones((*x.shape[:-1], 1), dtype=x.dtype)), axis=-1)


def homogenize(x, keepdim=False):
    """Normalizes a homogeneous vector by dividing by the last coordinate.

    Args:
        x: Homogeneous vector array.
        keepdim: If True, keeps the homogeneous dimension. Defaults to False.

    Returns:
        Normalized vector array.
    """
    x = x / x[..., -1:]
    if not keepdim:
        x = x[..., :-1]
    return x


def normalize(x, eps=1e-12):
    """Normalizes a vector by dividing by its norm.

    Args:
        x: Numpy array of shape (..., c).
        eps: Small epsilon value to avoid division by zero.

    Returns:
        Normalized array along the last dimension.
    """
    return x / (np.linalg.norm(x, axis=-1, keepdims=True) + eps)


def to_8b(x, clip=True):
    """Converts an array to 8-bit format.

    Args:
        x: Input array (float, double, bool, or uint8).
        clip: If True, clips float values to [0,1]. Defaults to True.

    Returns:
        8-bit array.

    Raises:
        ValueError: If unsupported dtype.
    """
    if np.issubdtype(x.dtype, np.floating):
        if clip:
            x = np.clip(x, 0, 1)
        return (255 * x).round().astype(np.uint8)
    elif x.dtype == bool:
        return x.astype(np.uint8) * 255
    elif x.dtype == np.uint8:
        return x
    else:
        raise ValueError("unsupported dtype")


def color_to_gray(x):
    """Converts an image (or a batch of images) to grayscale by averaging over channels.

    Args:
        x: Numpy array of shape (h, w), (h, w, c) or (n, h, w, c).

    Returns:
        float32 array with the channel dimension removed, i.e. (h, w) or (n, h, w).

    Raises:
        ValueError: If ndim of x is not 2, 3 or 4.
    """
    if x.ndim == 2:
        return x.astype(np.float32)
    if x.ndim not in (3, 4):
        raise ValueError("ndim of x must be 2 (h, w), 3 (h, w, c) or 4 (n, h, w, c)")
    return x.astype(np.float32).mean(axis=-1)


def to_rgb(x):
    """Converts a (h, w) or (h, w, 1) image to a 3 channel image, other images are returned as is."""
    if x.ndim == 2:
        x = x[..., None]
    if x.shape[-1] == 1:
        x = np.repeat(x, 3, axis=-1)
    return x


def invert_rigid(R, t):
    """
    inverts a rigid transformation x' = R @ x + t
    :param R: (3, 3) rotation
    :param t: (3,) translation
    :return: (R^T, -R^T @ t)
    """
    Rinv = R.T
    return Rinv, -Rinv @ np.asarray(t).reshape(3)


def vec2skew(v):
    """
    converts a vector to a skew symmetric (cross product) matrix
    :param v: (3,) vector
    :return: (3, 3) matrix such that vec2skew(a) @ b = a x b
    """
    v = np.asarray(v).reshape(3)
    return np.array(
        [
            [0, -v[2], v[1]],
            [v[2], 0, -v[0]],
            [-v[1], v[0], 0],
        ]
    )


def rotation_angle(R):
    """
    returns the rotation angle (degrees) of a rotation matrix
    """
    cos = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    return np.degrees(np.arccos(cos))


def pixel_grid(wh):
    """
    returns the (u, v) pixel coordinates of an image of size wh as a (h, w, 2) float64 array
    """
    w, h = wh
    u, v = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    return np.stack((u, v), axis=-1)
