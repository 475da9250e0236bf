import logging
from concurrent.futures import Executor, ThreadPoolExecutor

import numpy as np

from calibration.errors import NotCalibrated
from calibration.geometry import focal_length_from_width, require_positive
from calibration.models import CalibrationProfile, DetectionResult, MeasurementResult
from calibration.store import DEFAULT_SESSION, ProfileStore
from measure.service import Estimator
from objectdetection.service import ObjectLocator, locate, select_single

logger = logging.getLogger(__name__)


class Calibrator:
    """Derives a focal length from a reference object at a known distance."""

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

    def calibrate(
        self,
        image: np.ndarray,
        known_distance_cm: float,
        known_width_cm: float,
        session_id: str = DEFAULT_SESSION,
    ) -> CalibrationProfile:
        known_distance_cm = require_positive("known_distance", known_distance_cm)
        known_width_cm = require_positive("known_width", known_width_cm)

        detections = locate(
            self.locator,
            image,
            executor=self.executor,
            timeout_s=self.timeout_s,
            max_dim=self.max_dim,
        )
        reference = select_single(detections, self.confidence_threshold, self.expected_label)
        width_px = reference.box.width
        profile = CalibrationProfile(
            known_object_width_cm=known_width_cm,
            known_distance_cm=known_distance_cm,
            focal_length_px=focal_length_from_width(width_px, known_distance_cm, known_width_cm),
            apparent_width_px=float(width_px),
            reference=reference,
        )
        self.store.put(profile, session_id)
        logger.info(
            "Calibrated session %s: focal_length=%.2fpx (width=%.1fpx at %.1fcm, object %.2fcm)",
            session_id, profile.focal_length_px, width_px, known_distance_cm, known_width_cm,
        )
        return profile


class DistanceService:
    """Calibration, measurement and reset for all sessions of one process."""

    def __init__(
        self,
        locator: ObjectLocator,
        *,
        store: ProfileStore | None = None,
        executor: Executor | None = None,
        confidence_threshold: float = 0.5,
        expected_label: str | None = None,
        timeout_s: float | None = None,
        max_dim: int | None = None,
        workers: int = 4,
    ):
        self.locator = locator
        self.timeout_s = timeout_s
        self.max_dim = max_dim
        self.store = store or ProfileStore()
        self.executor = executor or ThreadPoolExecutor(max_workers=workers, thread_name_prefix="detect")
        policy = dict(
            confidence_threshold=confidence_threshold,
            expected_label=expected_label,
            timeout_s=timeout_s,
            max_dim=max_dim,
        )
        self.calibrator = Calibrator(locator, self.store, self.executor, **policy)
        self.estimator = Estimator(locator, self.store, self.executor, **policy)

    @classmethod
    def from_settings(cls, settings, locator: ObjectLocator) -> "DistanceService":
        return cls(
            locator,
            confidence_threshold=settings.CONFIDENCE_THRESHOLD,
            expected_label=settings.EXPECTED_LABEL,
            timeout_s=settings.DETECTION_TIMEOUT_S,
            max_dim=settings.MAX_IMAGE_DIM,
            workers=settings.DETECTION_WORKERS,
        )

    def calibrate(self, image, known_distance_cm, known_width_cm, session_id=DEFAULT_SESSION) -> CalibrationProfile:
        return self.calibrator.calibrate(image, known_distance_cm, known_width_cm, session_id)

    def measure(self, image, focal_length_px=None, session_id=DEFAULT_SESSION) -> MeasurementResult:
        return self.estimator.measure(image, focal_length_px, session_id)

    def detect(self, image) -> list[DetectionResult]:
        return locate(self.locator, image, executor=self.executor, timeout_s=self.timeout_s, max_dim=self.max_dim)

    def get_profile(self, session_id=DEFAULT_SESSION) -> CalibrationProfile:
        profile = self.store.get(session_id)
        if profile is None:
            raise NotCalibrated()
        return profile

    def reset(self, session_id=DEFAULT_SESSION) -> bool:
        removed = self.store.reset(session_id)
        if removed:
            logger.info("Reset calibration for session %s", session_id)
        return removed

    def shutdown(self):
        self.executor.shutdown(wait=False, cancel_futures=True)
