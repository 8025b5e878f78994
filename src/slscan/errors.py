class SLScanError(Exception):
    """
    base class of every error raised by the scanner.
    fatal errors abort the session, all others are reported and the command loop continues.
    """

    fatal = False


class ConfigMissing(SLScanError, FileNotFoundError):
    fatal = True


class CameraInitFailed(SLScanError, RuntimeError):
    fatal = True


class FrameUnavailable(SLScanError, RuntimeError):
    """raised when the camera returns no frame. fatal at session start, retried mid-session."""


class CornerDetectionInsufficient(SLScanError, RuntimeError):
    pass


class SolverNonConvergent(SLScanError, RuntimeError):
    pass


class ReprojectionErrorTooLarge(SolverNonConvergent):
    def __init__(self, device, error, bound):
        super().__init__(
            "{} reprojection error {:.3f}px exceeds the bound of {:.3f}px".format(
                device, error, bound
            )
        )
        self.device = device
        self.error = error
        self.bound = bound


class CalibrationPrereqMissing(SLScanError, RuntimeError):
    pass


class DecodeAllInvalid(SLScanError, RuntimeError):
    pass


class PersistenceFailed(SLScanError, OSError):
    pass
