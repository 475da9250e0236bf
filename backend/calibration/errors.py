class DistanceError(Exception):
    """Base class for recoverable calibration/measurement failures."""

    code = "distance_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


class InvalidInput(DistanceError):
    """Invalid calibration or measurement parameters."""

    code = "invalid_input"


class NoObjectDetected(DistanceError):
    """No reference object found in the image."""

    code = "no_object_detected"


class AmbiguousDetection(DistanceError):
    """More than one candidate reference object found in the image."""

    code = "ambiguous_detection"


class NotCalibrated(DistanceError):
    """Camera has not been calibrated for this session."""

    code = "not_calibrated"


class DetectionTimeout(DistanceError):
    """Object detection did not finish in time."""

    code = "detection_timeout"


class TransportError(DistanceError):
    """Object detection service could not be reached."""

    code = "transport_error"
