"""Pytest configuration and shared fixtures for the distance estimation backend."""

import os
import sys
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import cv2
import numpy as np
import pytest

# Add backend directory to path for imports
backend_path = Path(__file__).parent.parent / "backend"
sys.path.insert(0, str(backend_path))

# Annotated images from API tests land in a throwaway static dir
os.environ.setdefault("STATIC_DIR", tempfile.mkdtemp(prefix="distance-static-"))


class FakeLocator:
    """Locator returning queued detection lists, one list per call."""

    def __init__(self, *results, delay=None):
        self.results = [r if isinstance(r, Exception) else list(r) for r in results]
        self.delay = delay
        self.calls = 0
        self.release = threading.Event()

    def push(self, *detections):
        self.results.append(list(detections))

    def fail(self, exc):
        self.results.append(exc)

    def detect(self, image):
        self.calls += 1
        if self.delay is not None:
            self.release.wait(self.delay)
        if not self.results:
            return []
        # the last queued result repeats
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return list(result)


def make_detection(width, confidence=0.9, label=None, x=10.0, y=20.0, height=None):
    from calibration.models import BoundingBox, DetectionResult

    return DetectionResult(
        box=BoundingBox(x, y, float(width), float(height if height is not None else width / 2)),
        confidence=confidence,
        label=label,
    )


@pytest.fixture
def detection():
    return make_detection


@pytest.fixture
def fake_locator():
    return FakeLocator()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)


@pytest.fixture
def frame():
    """Black 640x480 frame with one white 200x100 box."""
    img = np.zeros((480, 640, 3), dtype=np.uint8)
    cv2.rectangle(img, (220, 190), (419, 289), (255, 255, 255), thickness=-1)
    return img


@pytest.fixture
def jpeg_bytes(frame):
    ok, buf = cv2.imencode(".jpg", frame)
    assert ok
    return buf.tobytes()


@pytest.fixture
def service(fake_locator, executor):
    from calibration.service import DistanceService

    return DistanceService(fake_locator, executor=executor, confidence_threshold=0.5, timeout_s=2.0)
