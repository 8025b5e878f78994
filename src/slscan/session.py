import copy
import logging
from pathlib import Path

from .calibrate import calibrate_camera, calibrate_extrinsics, calibrate_projector
from .camera import create_camera
from .errors import FrameUnavailable, PersistenceFailed, SLScanError
from .fundamental import FundamentalMatrix
from .geometry import evaluate_procam_geometry
from .graycode import GrayCode
from .projector import ProjectorWindow
from .reconstruct import BackgroundModel, capture_background, reconstruct_pointcloud
from .slscan_io import load_calibration, save_calibration, save_images, scan_directory

logger = logging.getLogger(__name__)


def _log_prompt(message):
    logger.info(message)


class ScanSession:
    """
    owns the state of a scanner: parameters, calibration, background model, camera and projector.
    every command either completes and updates the state, or raises and leaves it untouched.
    :param params: ScanParameters
    :param camera: an initialized Camera
    :param projector: an open projector (anything with show(image, wait_ms), idle() and close())
    :param calibration: initial Calibration, loaded from params.outdir if None
    :param prompt: called with a message whenever the user should reposition the calibration board
    """

    def __init__(self, params, camera, projector, calibration=None, prompt=None):
        self.params = params
        self.camera = camera
        self.projector = projector
        self.calibration = (
            calibration if calibration is not None else load_calibration(params.outdir)
        )
        self.background = BackgroundModel(params.cam_wh)
        self.prompt = prompt if prompt is not None else _log_prompt
        self.graycode = GrayCode()
        self._geometry = None
        self.scan_index = self._next_scan_index()

    @classmethod
    def open(cls, params, prompt=None):
        """
        creates the camera and projector window named by params and checks that the camera delivers frames
        """
        camera = create_camera(params)
        projector = ProjectorWindow(params.proj_wh, params.proj_offset_x)
        try:
            projector.open()
            camera.start_capture()
            if camera.query_frame() is None:
                raise FrameUnavailable("camera did not return a frame")
        except Exception:
            camera.release()
            projector.close()
            raise
        return cls(params, camera, projector, prompt=prompt)

    def close(self):
        try:
            self.camera.release()
        finally:
            self.projector.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    def _next_scan_index(self):
        index = 1
        while scan_directory(self.params.outdir, self.params.object_name, index).exists():
            index += 1
        return index

    @property
    def geometry(self):
        """rays and planes of the current calibration, rebuilt whenever the calibration changes"""
        if self._geometry is None or self._geometry.version != self.calibration.version:
            self._geometry = evaluate_procam_geometry(
                self.calibration, self.params.cam_wh, self.params.proj_wh
            )
        return self._geometry

    def grab_frame(self):
        """returns the next camera frame, retrying params.frame_retries times"""
        for attempt in range(self.params.frame_retries + 1):
            frame = self.camera.query_frame()
            if frame is not None:
                return frame
            logger.warning("camera returned no frame (attempt %d)", attempt + 1)
        raise FrameUnavailable(
            "camera returned no frame after {} attempts".format(self.params.frame_retries + 1)
        )

    def capture_sequence(self, patterns):
        """
        projects every pattern in order and captures one frame per pattern
        :param patterns: (n, proj_h, proj_w, 1) uint8 patterns
        :return: list of n frames
        """
        frames = []
        for pattern in patterns:
            self.projector.show(pattern, wait_ms=self.params.frame_delay_ms)
            frames.append(self.grab_frame())
        self.projector.idle()
        return frames

    def capture_gray_sequence(self, axes=None):
        axes = self.params.axes if axes is None else axes
        return self.capture_sequence(self.graycode.encode(self.params.proj_wh, axes))

    def _save_calibration(self):
        try:
            save_calibration(self.calibration, self.params.outdir)
        except PersistenceFailed as e:
            logger.warning("calibration was not saved: %s", e)

    def _decode(self, frames, output_dir=None):
        return self.graycode.decode(
            frames,
            self.params.proj_wh,
            axes=self.params.axes,
            contrast_threshold=self.params.contrast_threshold,
            brightness_threshold=self.params.brightness_threshold,
            output_dir=output_dir,
            debug=output_dir is not None,
        )

    def run_scanner(self):
        """
        scans the object in front of the rig and saves the point cloud to <outdir>/<object>/v<N>/cloud.ply
        :return: the PointCloud
        """
        geometry = self.geometry
        frames = self.capture_gray_sequence()
        scan_dir = scan_directory(self.params.outdir, self.params.object_name, self.scan_index)
        corr = self._decode(frames, scan_dir if self.params.save_frames else None)
        if self.params.epipolar_filter:
            if self.calibration.fundamental.populated and corr.axes == "both":
                corr = self.calibration.fundamental.filter(corr, self.params.sampson_threshold)
            else:
                logger.warning("epipolar filter requires a fundamental matrix and both axes, skipping it")
        cloud = reconstruct_pointcloud(corr, geometry, self.params, background=self.background)
        try:
            cloud.save(Path(scan_dir, "cloud.ply"))
            if self.params.save_frames:
                save_images(frames, Path(scan_dir, "frames"))
        except OSError as e:
            logger.warning("scan was not saved: %s", e)
        else:
            logger.info("saved %d points to %s", len(cloud), scan_dir)
        self.scan_index += 1
        return cloud

    def scan_background(self):
        geometry = self.geometry
        corr = self._decode(self.capture_gray_sequence())
        self.background = capture_background(corr, geometry, self.params)
        return self.background

    def reset_background(self):
        self.background.reset()
        logger.info("background model was reset")

    def _capture_views(self, count, sequences):
        for i in range(count):
            self.prompt(
                "position the calibration board for view {} / {}".format(i + 1, count)
            )
            if sequences:
                yield self.capture_gray_sequence(axes="both")
            else:
                self.projector.idle()
                yield self.grab_frame()

    def _commit(self, updated):
        """swaps in an updated calibration, recomposing the fundamental matrix when it is complete"""
        if updated.is_complete:
            R_cp, t_cp = updated.procam_transform
            updated.fundamental = FundamentalMatrix.from_calibration(
                updated.cam_intrinsic, updated.proj_intrinsic, R_cp, t_cp
            )
        self.calibration = updated
        self._save_calibration()

    def calibrate_camera(self):
        images = list(self._capture_views(self.params.calibration_views, sequences=False))
        result = calibrate_camera(images, self.params)
        updated = copy.deepcopy(self.calibration)
        updated.set_camera_intrinsics(result.intrinsic, result.distortion)
        self._commit(updated)
        return result

    def calibrate_projector(self, simultaneous=False):
        """
        calibrates the projector intrinsics. in simultaneous mode the camera intrinsics
        and the projector-camera transform found by the joint solver are applied as well.
        """
        sequences = self._capture_views(self.params.calibration_views, sequences=True)
        result = calibrate_projector(sequences, self.params, simultaneous=simultaneous)
        updated = copy.deepcopy(self.calibration)
        if result.camera is not None:
            updated.set_camera_intrinsics(result.camera.intrinsic, result.camera.distortion)
        updated.set_projector_intrinsics(result.projector.intrinsic, result.projector.distortion)
        if result.R_cp is not None:
            updated.set_procam_transform(result.R_cp, result.t_cp)
        self._commit(updated)
        return result

    def calibrate_extrinsics(self):
        self.prompt("position the calibration board for the extrinsic calibration")
        frames = self.capture_gray_sequence(axes="both")
        result = calibrate_extrinsics(frames, self.calibration, self.params)
        updated = copy.deepcopy(self.calibration)
        updated.set_extrinsics(result.cam_extrinsic, result.proj_extrinsic)
        self._commit(updated)
        return result

    def execute(self, command):
        """
        runs a command, recoverable errors are logged and reported by returning False
        :param command: callable taking no arguments
        """
        try:
            command()
        except SLScanError as e:
            if e.fatal:
                raise
            logger.error("%s: %s", type(e).__name__, e)
            return False
        return True
