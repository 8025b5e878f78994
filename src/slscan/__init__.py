__version__ = "0.1.0"

from .core import (
    to_hom,
    homogenize,
    normalize,
    to_8b,
    color_to_gray,
    to_rgb,
    invert_rigid,
    vec2skew,
    rotation_angle,
    pixel_grid,
)

from .errors import (
    SLScanError,
    ConfigMissing,
    CameraInitFailed,
    FrameUnavailable,
    CornerDetectionInsufficient,
    SolverNonConvergent,
    ReprojectionErrorTooLarge,
    CalibrationPrereqMissing,
    DecodeAllInvalid,
    PersistenceFailed,
)

from .config import (
    AXES,
    ScanParameters,
    read_configuration,
    write_configuration,
)

from .slscan_io import (
    save_image,
    save_images,
    list_images,
    load_image,
    load_images,
    save_pointcloud,
    load_pointcloud,
    save_matrix,
    load_matrix,
    calibration_paths,
    save_calibration,
    load_calibration,
    scan_directory,
)

from .graycode import (
    CorrespondenceMap,
    GrayCode,
)

from .fundamental import (
    normalize_points,
    constrain_F,
    estimate_fundamental_matrix,
    sampson_distance,
    FundamentalMatrix,
)

from .calibration import (
    Calibration,
    extrinsic_to_rt,
    rt_to_extrinsic,
)

from .geometry import (
    undistort_pixels,
    camera_rays,
    plane_through,
    projector_planes,
    intersect_ray_plane,
    ProCamGeometry,
    evaluate_procam_geometry,
)

from .calibrate import (
    IntrinsicCalibrationResult,
    ProjectorCalibrationResult,
    ExtrinsicCalibrationResult,
    detect_board_corners,
    corners_to_projector,
    reprojection_errors,
    calibrate_camera,
    calibrate_projector,
    calibrate_extrinsics,
)

from .reconstruct import (
    PointCloud,
    BackgroundModel,
    triangulate,
    reconstruct_pointcloud,
    capture_background,
)

from .kinect import (
    is_depth_valid,
    depth_value_to_z,
    depth_to_world,
    world_to_rgb,
    kinect_pointcloud,
)

from .camera import (
    Camera,
    OpenCVCamera,
    ImageFolderCamera,
    create_camera,
)

from .projector import ProjectorWindow

from .session import ScanSession
