import pytest

from calibration.errors import (
    AmbiguousDetection,
    DetectionTimeout,
    InvalidInput,
    NoObjectDetected,
    NotCalibrated,
    TransportError,
)
from calibration.service import DistanceService
from conftest import FakeLocator


def test_calibrate_computes_focal_length(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    profile = service.calibrate(frame, known_distance_cm=30, known_width_cm=8.5)
    assert profile.focal_length_px == 200 * 30 / 8.5
    assert profile.focal_length_px == pytest.approx(705.9, abs=0.05)
    assert profile.known_object_width_cm == 8.5
    assert profile.known_distance_cm == 30
    assert profile.apparent_width_px == 200
    assert profile.reference.box.width == 200


def test_calibrate_then_measure_example(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    fake_locator.push(detection(100))
    service.calibrate(frame, 30, 8.5)
    result = service.measure(frame)
    assert result.distance_cm == pytest.approx(60.0)
    assert result.known_object_width_cm == 8.5


def test_measure_same_width_returns_calibration_distance(service, fake_locator, frame, detection):
    fake_locator.push(detection(157.3))
    service.calibrate(frame, 42.0, 5.4)
    assert service.measure(frame).distance_cm == pytest.approx(42.0)


def test_measure_uses_client_focal_length(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    service.calibrate(frame, 30, 8.5)
    result = service.measure(frame, focal_length_px=1000.0)
    assert result.focal_length_px == 1000.0
    assert result.distance_cm == pytest.approx(1000.0 * 8.5 / 200)


def test_measure_before_calibrate(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    with pytest.raises(NotCalibrated):
        service.measure(frame)
    with pytest.raises(NotCalibrated):
        service.measure(frame, focal_length_px=700.0)
    assert fake_locator.calls == 0


def test_measure_rejects_non_positive_focal_length(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    service.calibrate(frame, 30, 8.5)
    with pytest.raises(NotCalibrated):
        service.measure(frame, focal_length_px=0)


@pytest.mark.parametrize("distance,width", [(0, 8.5), (-5, 8.5), (30, 0), (30, -1)])
def test_calibrate_invalid_input(service, fake_locator, frame, detection, distance, width):
    fake_locator.push(detection(200))
    with pytest.raises(InvalidInput):
        service.calibrate(frame, distance, width)
    assert fake_locator.calls == 0


def test_calibrate_no_detection(service, frame):
    with pytest.raises(NoObjectDetected):
        service.calibrate(frame, 30, 8.5)


def test_calibrate_low_confidence_is_not_detected(service, fake_locator, frame, detection):
    fake_locator.push(detection(200, confidence=0.3))
    with pytest.raises(NoObjectDetected):
        service.calibrate(frame, 30, 8.5)


def test_calibrate_multiple_candidates_is_ambiguous(service, fake_locator, frame, detection):
    fake_locator.push(detection(200), detection(150, x=300))
    with pytest.raises(AmbiguousDetection):
        service.calibrate(frame, 30, 8.5)


def test_low_confidence_extras_do_not_make_ambiguous(service, fake_locator, frame, detection):
    fake_locator.push(detection(200), detection(40, confidence=0.1, x=300))
    assert service.calibrate(frame, 30, 8.5).apparent_width_px == 200


def test_measure_applies_detection_policy(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    fake_locator.push(detection(120), detection(80, x=400))
    service.calibrate(frame, 30, 8.5)
    with pytest.raises(AmbiguousDetection):
        service.measure(frame)


def test_expected_label_filters_candidates(executor, frame, detection):
    locator = FakeLocator([detection(200, label="book"), detection(90, label="cigarette_box", x=300)])
    service = DistanceService(locator, executor=executor, expected_label="cigarette_box")
    assert service.calibrate(frame, 30, 5.4).apparent_width_px == 90


def test_failed_calibration_keeps_previous_profile(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    fake_locator.push()
    first = service.calibrate(frame, 30, 8.5)
    with pytest.raises(NoObjectDetected):
        service.calibrate(frame, 60, 8.5)
    assert service.get_profile() is first


def test_recalibration_overwrites_profile(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    fake_locator.push(detection(100))
    service.calibrate(frame, 30, 8.5)
    second = service.calibrate(frame, 30, 5.4)
    assert service.get_profile() is second
    assert second.focal_length_px == pytest.approx(100 * 30 / 5.4)


def test_reset_returns_to_uncalibrated(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    service.calibrate(frame, 30, 8.5)
    assert service.reset() is True
    assert service.reset() is False
    with pytest.raises(NotCalibrated):
        service.get_profile()
    with pytest.raises(NotCalibrated):
        service.measure(frame)


def test_sessions_are_independent(service, fake_locator, frame, detection):
    fake_locator.push(detection(200))
    fake_locator.push(detection(100))
    service.calibrate(frame, 30, 8.5, session_id="alice")
    with pytest.raises(NotCalibrated):
        service.measure(frame, session_id="bob")
    assert service.measure(frame, session_id="alice").distance_cm == pytest.approx(60.0)


def test_detection_timeout(executor, frame, detection):
    locator = FakeLocator([detection(200)], delay=5.0)
    service = DistanceService(locator, executor=executor, timeout_s=0.05)
    try:
        with pytest.raises(DetectionTimeout):
            service.calibrate(frame, 30, 8.5)
        with pytest.raises(NotCalibrated):
            service.get_profile()
    finally:
        locator.release.set()


def test_transport_error_propagates(service, fake_locator, frame):
    fake_locator.fail(TransportError("detector unreachable"))
    with pytest.raises(TransportError):
        service.calibrate(frame, 30, 8.5)


def test_large_frames_report_widths_in_original_pixels(executor, detection):
    import numpy as np

    seen = []

    class RecordingLocator:
        def detect(self, image):
            seen.append(image.shape)
            return [detection(100)]

    big = np.zeros((1000, 2000, 3), dtype=np.uint8)
    service = DistanceService(RecordingLocator(), executor=executor, max_dim=1000)
    profile = service.calibrate(big, 30, 5.0)
    assert seen == [(500, 1000, 3)]
    assert profile.apparent_width_px == pytest.approx(200.0)


@pytest.mark.parametrize("distance,width", [(float("inf"), 8.5), (30, float("inf")), (float("nan"), 8.5), (30, 1e-320)])
def test_calibrate_rejects_non_finite_results(service, fake_locator, frame, detection, distance, width):
    fake_locator.push(detection(200))
    with pytest.raises(InvalidInput):
        service.calibrate(frame, distance, width)
    with pytest.raises(NotCalibrated):
        service.get_profile()


@pytest.mark.parametrize("focal", [float("inf"), float("nan")])
def test_measure_rejects_non_finite_focal_length(service, fake_locator, frame, detection, focal):
    fake_locator.push(detection(200))
    service.calibrate(frame, 30, 8.5)
    with pytest.raises(InvalidInput):
        service.measure(frame, focal_length_px=focal)
