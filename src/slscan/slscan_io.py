import logging
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from .core import to_8b
from .errors import PersistenceFailed

logger = logging.getLogger(__name__)

CAM_MATRICES = ("cam_intrinsic", "cam_distortion")
PROJ_MATRICES = ("proj_intrinsic", "proj_distortion")
EXTRINSIC_MATRICES = ("cam_extrinsic", "proj_extrinsic")
FUNDAMENTAL_MATRIX = "fundamental_matrix"


def save_image(image, dst):
    """
    saves single image as png
    :param image: (H x W x C) or (H x W) array
    :param dst: path to save image to (full path to destination, suffix not neccessary but allowed)
    """
    if image.ndim == 2:
        image = image[..., None]
    if image.ndim != 3:
        raise ValueError("Image must be 2 or 3 dimensional")
    dst = Path(dst)
    save_images(image[None, ...], dst.parent, [dst.name])


def save_images(images, dst, file_names: list = []):
    """
    saves images as png
    :param images: (b x H x W x C) np array, or list of (H X W X C)
    :param dst: path to save images to (will create folder if it does not exist)
    :param file_names: if provided, saves images with these names (list of length b)
    """
    images = np.asarray(images)
    if images.dtype in (np.float32, np.float64, bool):
        images = to_8b(images)
    if images.dtype != np.uint8:
        raise ValueError(
            "Images must be of type uint8 (or float32/64/bool, which will be converted to uint8)"
        )
    if images.ndim == 3:
        images = images[..., None]
    if images.ndim != 4:
        raise ValueError("Images must be of shape (b x H x W x C)")
    if file_names:
        if images.shape[0] != len(file_names):
            raise ValueError("Number of images and length of file names list must match")
        file_names = [Path(x).stem for x in file_names]  # remove suffix
    dst = Path(dst)
    dst.mkdir(parents=True, exist_ok=True)
    for i, image in enumerate(images):
        if images.shape[-1] == 1:
            pil_image = Image.fromarray(image[..., 0])
        else:
            pil_image = Image.fromarray(image)
        if file_names:
            cur_dst = Path(dst, "{}.png".format(file_names[i]))
        else:
            cur_dst = Path(dst, "{:05d}.png".format(i))
        pil_image.save(str(cur_dst))


def list_images(path):
    """returns the image files of a folder, sorted by name"""
    supported_suffixes = [".png", ".jpg", ".jpeg", ".bmp", ".tiff"]
    path = Path(path)
    if not path.is_dir():
        raise FileNotFoundError("Path must be a folder: {}".format(path))
    return [p for p in sorted(path.iterdir()) if p.suffix.lower() in supported_suffixes]


def load_image(path):
    """
    loads an image from a single file
    :param path: path to file
    :return: (H x W x 3) uint8 RGB array
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError("Path does not exist: {}".format(path))
    im = Image.open(str(path))
    if im.mode != "RGB":
        im = im.convert("RGB")
    return np.array(im)


def load_images(source):
    """
    loads images from a folder or a list of paths
    :param source: path to folder with images / list of paths
    :return: (b x H x W x 3) uint8 array
    """
    if isinstance(source, (list, tuple)):
        paths = [Path(p) for p in source]
    else:
        paths = list_images(source)
    if not paths:
        raise FileNotFoundError("no images found in {}".format(source))
    return np.stack([load_image(p) for p in paths], axis=0)


def save_pointcloud(vertices, path, vertex_colors=None):
    """
    saves a point cloud as an ascii ply file
    :param vertices: (n, 3) float32/float64 array
    :param path: path to save ply file to
    :param vertex_colors: optional (n, 3) uint8 array
    """
    path = Path(path)
    if path.suffix != ".ply":
        raise ValueError("Path must have suffix .ply")
    vertices = np.asarray(vertices)
    if vertices.ndim != 2 or vertices.shape[1] != 3:
        raise ValueError("Vertices must be of shape (n, 3)")
    if not np.isfinite(vertices).all():
        raise ValueError("Vertices must be finite")
    if vertex_colors is not None:
        if vertex_colors.dtype != np.uint8:
            raise ValueError("Vertex colors must be of type uint8")
        if vertex_colors.shape != vertices.shape:
            raise ValueError("Vertex colors must have same shape as vertices")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(str(path), "w") as file:
        file.write("ply\n")
        file.write("format ascii 1.0\n")
        file.write("comment generated by slscan\n")
        file.write("element vertex {}\n".format(len(vertices)))
        file.write("property float x\n")
        file.write("property float y\n")
        file.write("property float z\n")
        if vertex_colors is not None:
            file.write("property uchar red\n")
            file.write("property uchar green\n")
            file.write("property uchar blue\n")
        file.write("end_header\n")
        if len(vertices) == 0:
            return
        if vertex_colors is None:
            np.savetxt(file, vertices, fmt="%.6f %.6f %.6f")
        else:
            data = np.concatenate((vertices, vertex_colors.astype(np.float64)), axis=-1)
            np.savetxt(file, data, fmt="%.6f %.6f %.6f %d %d %d")


def load_pointcloud(path):
    """
    loads an ascii ply point cloud written by save_pointcloud
    :param path: path to ply file
    :return: (n, 3) float64 vertices and (n, 3) uint8 colors (or None if the file has no colors)
    """
    path = Path(path)
    if path.suffix != ".ply":
        raise ValueError("Only .ply is supported")
    if not path.is_file():
        raise FileNotFoundError("Path does not exist: {}".format(path))
    n_vertices = 0
    properties = []
    header_lines = 0
    with open(str(path), "r") as file:
        for line in file:
            header_lines += 1
            tokens = line.split()
            if not tokens:
                continue
            if tokens[0] == "format" and tokens[1] != "ascii":
                raise ValueError("only ascii ply files are supported")
            if tokens[:2] == ["element", "vertex"]:
                n_vertices = int(tokens[2])
            elif tokens[0] == "property":
                properties.append(tokens[-1])
            elif tokens[0] == "end_header":
                break
    if n_vertices == 0:
        return np.zeros((0, 3)), None
    data = np.loadtxt(str(path), skiprows=header_lines, max_rows=n_vertices, ndmin=2)
    vertices = data[:, :3]
    colors = None
    if "red" in properties:
        i = properties.index("red")
        colors = data[:, i : i + 3].astype(np.uint8)
    return vertices, colors


def save_matrix(mat, path):
    """
    writes a single matrix to an OpenCV FileStorage xml file, the node is named after the file stem
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    except (OSError, cv2.error) as e:
        raise PersistenceFailed("could not write {}: {}".format(path, e)) from e
    if not fs.isOpened():
        raise PersistenceFailed("could not open {} for writing".format(path))
    try:
        fs.write(path.stem, np.asarray(mat, dtype=np.float64))
    finally:
        fs.release()


def load_matrix(path):
    """
    reads a matrix written by save_matrix
    :return: the matrix as float64, or None if the file is missing or holds no matrix
    """
    path = Path(path)
    if not path.is_file():
        return None
    try:
        fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    except cv2.error:
        logger.warning("could not parse %s", path)
        return None
    try:
        node = fs.getNode(path.stem)
        if node.isNone() or node.empty():
            return None
        mat = node.mat()
    finally:
        fs.release()
    if mat is None:
        return None
    return mat.astype(np.float64)


def calibration_paths(outdir):
    """returns the xml path of every persisted calibration matrix"""
    cam_dir = Path(outdir, "calib", "cam")
    proj_dir = Path(outdir, "calib", "proj")
    paths = {name: Path(cam_dir, name + ".xml") for name in CAM_MATRICES}
    for name in PROJ_MATRICES + EXTRINSIC_MATRICES + (FUNDAMENTAL_MATRIX,):
        paths[name] = Path(proj_dir, name + ".xml")
    return paths


def save_calibration(calibration, outdir):
    """
    writes every valid part of a Calibration under outdir/calib/{cam,proj}/
    """
    paths = calibration_paths(outdir)
    if calibration.cam_intrinsic_calib:
        save_matrix(calibration.cam_intrinsic, paths["cam_intrinsic"])
        save_matrix(calibration.cam_distortion, paths["cam_distortion"])
    if calibration.proj_intrinsic_calib:
        save_matrix(calibration.proj_intrinsic, paths["proj_intrinsic"])
        save_matrix(calibration.proj_distortion, paths["proj_distortion"])
    if calibration.procam_extrinsic_calib:
        save_matrix(calibration.cam_extrinsic, paths["cam_extrinsic"])
        save_matrix(calibration.proj_extrinsic, paths["proj_extrinsic"])
    if calibration.fundamental.populated:
        save_matrix(calibration.fundamental.matrix, paths[FUNDAMENTAL_MATRIX])


def _apply(setter, description, *mats):
    """calls setter on the loaded matrices, a matrix that does not validate is skipped with a warning"""
    if any(m is None for m in mats):
        logger.info("%s has not been calibrated", description)
        return
    try:
        setter(*mats)
    except ValueError as e:
        logger.warning("ignoring saved %s calibration: %s", description, e)
        return
    logger.info("loaded previous %s calibration", description)


def load_calibration(outdir):
    """
    probes outdir/calib for previously saved matrices.
    every group that loads and validates is marked valid; extrinsics load only if both intrinsics did,
    the fundamental matrix only on top of a complete calibration.
    :return: a Calibration
    """
    from .calibration import Calibration

    paths = calibration_paths(outdir)
    mats = {name: load_matrix(p) for name, p in paths.items()}
    calibration = Calibration()
    _apply(
        calibration.set_camera_intrinsics,
        "intrinsic camera",
        mats["cam_intrinsic"],
        mats["cam_distortion"],
    )
    _apply(
        calibration.set_projector_intrinsics,
        "intrinsic projector",
        mats["proj_intrinsic"],
        mats["proj_distortion"],
    )
    if calibration.cam_intrinsic_calib and calibration.proj_intrinsic_calib:
        _apply(
            calibration.set_extrinsics,
            "extrinsic projector-camera",
            mats["cam_extrinsic"],
            mats["proj_extrinsic"],
        )
    if calibration.is_complete:
        _apply(calibration.fundamental.set_matrix, "fundamental matrix", mats[FUNDAMENTAL_MATRIX])
    return calibration


def scan_directory(outdir, object_name, scan_index):
    """returns outdir/object_name/v<scan_index>"""
    return Path(outdir, object_name, "v{}".format(scan_index))
