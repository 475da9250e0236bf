import logging
import math
from concurrent.futures import Executor

import numpy as np

from calibration.errors import InvalidInput, NotCalibrated
from calibration.geometry import distance_from_width
from calibration.models import MeasurementResult
from calibration.store import DEFAULT_SESSION, ProfileStore
from objectdetection.service import ObjectLocator, locate, select_single

logger = logging.getLogger(__name__)


class Estimator:
    def __init__(
        self,
        locator: ObjectLocator,
        store: ProfileStore,
        executor: Executor,
        *,
        confidence_threshold: float = 0.5,
        expected_label: str | None = None,
        timeout_s: float | None = None,
        max_dim: int | None = None,
    ):
        self.locator = locator
        self.store = store
        self.executor = executor
        self.confidence_threshold = confidence_threshold
        self.expected_label = expected_label
        self.timeout_s = timeout_s
        self.max_dim = max_dim

    def measure(
        self,
        image: np.ndarray,
        focal_length_px: float | None = None,
        session_id: str = DEFAULT_SESSION,
    ) -> MeasurementResult:
        """
        Estimate the camera-object distance from the object's apparent width.

        The reference width always comes from the session's stored calibration;
        ``focal_length_px``, when given, is the client's copy of the calibrated
        focal length and takes precedence over the stored one.
        """
        profile = self.store.get(session_id)
        if profile is None:
            raise NotCalibrated("Camera is not calibrated. Please calibrate first.")
        if focal_length_px is None:
            focal_length_px = profile.focal_length_px
        elif not math.isfinite(float(focal_length_px)):
            raise InvalidInput(f"focal_length must be finite, got {focal_length_px}")
        elif not float(focal_length_px) > 0:
            raise NotCalibrated(f"focal_length must be positive, got {focal_length_px}")

        detections = locate(
            self.locator,
            image,
            executor=self.executor,
            timeout_s=self.timeout_s,
            max_dim=self.max_dim,
        )
        target = select_single(detections, self.confidence_threshold, self.expected_label)
        distance_cm = distance_from_width(focal_length_px, profile.known_object_width_cm, target.box.width)
        logger.debug("Session %s: width=%.1fpx -> %.2fcm", session_id, target.box.width, distance_cm)
        return MeasurementResult(
            distance_cm=distance_cm,
            focal_length_px=float(focal_length_px),
            known_object_width_cm=profile.known_object_width_cm,
            detection=target,
        )
