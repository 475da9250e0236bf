from __future__ import annotations

import logging
import math
import os
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import replace
from pathlib import Path
from typing import Iterable, List, Protocol, Sequence, Tuple

import cv2
import numpy as np
import requests

from calibration.errors import (
    AmbiguousDetection,
    DetectionTimeout,
    NoObjectDetected,
    TransportError,
)
from calibration.models import BoundingBox, DetectionResult

logger = logging.getLogger(__name__)

IMG_EXTS = (".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff", ".webp")


class ObjectLocator(Protocol):
    def detect(self, image: np.ndarray) -> List[DetectionResult]:
        ...


def ensure_dir(path: str | Path):
    Path(path).mkdir(parents=True, exist_ok=True)


def decode_image(data: bytes) -> np.ndarray:
    arr = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR) if arr.size else None
    if img is None:
        raise ValueError("Failed to decode image buffer")
    return img


def downscale(image: np.ndarray, max_dim: int | None) -> Tuple[np.ndarray, float]:
    """Shrink so the longest side is at most max_dim; returns (image, scale)."""
    h, w = image.shape[:2]
    if not max_dim or max(h, w) <= max_dim:
        return image, 1.0
    s = max_dim / float(max(h, w))
    small = cv2.resize(image, (int(round(w * s)), int(round(h * s))), interpolation=cv2.INTER_AREA)
    return small, s


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


# ----------------------------- #
# Edge-contour locator          #
# ----------------------------- #

class ContourLocator:
    """Finds box-like objects as closed external edge contours.

    Every contour whose bounding rectangle covers at least ``min_area_fraction``
    of the frame is a candidate. Confidence is the contour's rectangularity
    (filled contour area over bounding-rectangle area), so a box seen face-on
    scores close to 1 and stray edge fragments score low.
    """

    def __init__(self, *, min_area_fraction: float = 0.01, low: float = 50.0, high: float = 150.0):
        self.min_area_fraction = float(min_area_fraction)
        self.low = low
        self.high = high

    def detect(self, image: np.ndarray) -> List[DetectionResult]:
        gray = _to_gray(image)
        H, W = gray.shape[:2]
        blur = cv2.GaussianBlur(gray, (5, 5), 0)
        edges = cv2.Canny(blur, self.low, self.high)
        # close single-pixel gaps along the outline
        edges = cv2.dilate(edges, np.ones((3, 3), np.uint8), iterations=1)
        contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        min_area = self.min_area_fraction * float(H * W)
        found = []
        for contour in contours:
            x, y, w, h = cv2.boundingRect(contour)
            rect_area = float(w * h)
            if w <= 0 or rect_area < min_area:
                continue
            rectangularity = min(1.0, cv2.contourArea(contour) / rect_area)
            found.append(
                DetectionResult(
                    box=BoundingBox(float(x), float(y), float(w), float(h)),
                    confidence=float(rectangularity),
                )
            )
        found.sort(key=lambda d: d.box.width * d.box.height, reverse=True)
        return found


# ----------------------------- #
# Template-matching locator     #
# ----------------------------- #

def linspace_list(start: float, stop: float, steps: int) -> List[float]:
    if steps <= 1:
        return [float(start)]
    return np.linspace(start, stop, steps).tolist()


def rotate_keep_all(img: np.ndarray, angle: float) -> np.ndarray:
    if abs(angle) < 1e-6:
        return img
    h, w = img.shape[:2]
    M = cv2.getRotationMatrix2D((w / 2.0, h / 2.0), angle, 1.0)
    cos = abs(M[0, 0])
    sin = abs(M[0, 1])
    nW = int((h * sin) + (w * cos))
    nH = int((h * cos) + (w * sin))
    M[0, 2] += (nW / 2) - w / 2
    M[1, 2] += (nH / 2) - h / 2
    return cv2.warpAffine(img, M, (nW, nH), flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)


def _normalize_scales(scales: Iterable[float] | None) -> List[float]:
    if not scales:
        return linspace_list(0.6, 1.3, 15)
    vals = [float(s) for s in scales if s is not None]
    return [s for s in vals if s > 0]


def _match_best(
    scene_gray: np.ndarray,
    template_gray: np.ndarray,
    scales: Sequence[float],
    angles: Sequence[float],
    method: int,
) -> dict | None:
    best = None
    H, W = scene_gray.shape[:2]
    tpl = cv2.GaussianBlur(template_gray, (3, 3), 0)
    img = cv2.GaussianBlur(scene_gray, (3, 3), 0)
    for angle in angles:
        tpl_rot = rotate_keep_all(tpl, angle)
        for scale in scales:
            tw = max(8, int(round(tpl_rot.shape[1] * scale)))
            th = max(8, int(round(tpl_rot.shape[0] * scale)))
            if tw >= W or th >= H:
                continue
            tpl_scaled = cv2.resize(
                tpl_rot,
                (tw, th),
                interpolation=cv2.INTER_AREA if scale < 1.0 else cv2.INTER_CUBIC,
            )
            result = cv2.matchTemplate(img, tpl_scaled, method)
            _, max_val, _, max_loc = cv2.minMaxLoc(result)
            if (best is None) or (max_val > best["score"]):
                best = {
                    "score": float(max_val),
                    "top_left": (int(max_loc[0]), int(max_loc[1])),
                    "size": (int(tw), int(th)),
                }
    return best


def load_template_library(root: str | Path) -> List[Path]:
    root_path = Path(root)
    if not root_path.exists():
        return []
    return sorted(p for p in root_path.rglob("*") if p.suffix.lower() in IMG_EXTS and p.is_file())


class TemplateLocator:
    """Multi-scale normalized cross-correlation against reference templates.

    Each template contributes at most one candidate: its best match over all
    scales (and 0/180 degree orientations when ``allow_flip`` is set), labelled
    with the template name.
    """

    def __init__(
        self,
        templates: Sequence[Tuple[str, np.ndarray]],
        *,
        scales: Iterable[float] | None = None,
        allow_flip: bool = True,
        method: int = cv2.TM_CCOEFF_NORMED,
    ):
        self.templates = [(name, _to_gray(tpl)) for name, tpl in templates]
        self.scales = _normalize_scales(scales)
        self.angles = [0.0, 180.0] if allow_flip else [0.0]
        self.method = method

    @classmethod
    def from_directory(cls, root: str | Path, **kwargs) -> "TemplateLocator":
        templates = []
        for path in load_template_library(root):
            tpl = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
            if tpl is None:
                logger.warning("Skipping unreadable template %s", path)
                continue
            templates.append((path.stem, tpl))
        if not templates:
            logger.warning("No reference templates found under %s", root)
        return cls(templates, **kwargs)

    def detect(self, image: np.ndarray) -> List[DetectionResult]:
        scene_gray = _to_gray(image)
        found = []
        for name, tpl in self.templates:
            best = _match_best(scene_gray, tpl, self.scales, self.angles, self.method)
            if best is None:
                logger.debug("Template %s larger than scene at all scales", name)
                continue
            x, y = best["top_left"]
            w, h = best["size"]
            found.append(
                DetectionResult(
                    box=BoundingBox(float(x), float(y), float(w), float(h)),
                    confidence=float(np.clip(best["score"], 0.0, 1.0)),
                    label=name,
                )
            )
        return found


# ----------------------------- #
# Remote detection service      #
# ----------------------------- #

class RemoteLocator:
    """Posts the frame to an HTTP detector answering in coco-ssd shape.

    Expected reply: ``{"detections": [{"bbox": [x, y, w, h], "score": s, "class": c}]}``.
    """

    def __init__(self, url: str, *, timeout_s: float = 3.0, session: requests.Session | None = None):
        self.url = url
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def detect(self, image: np.ndarray) -> List[DetectionResult]:
        ok, buf = cv2.imencode(".jpg", image)
        if not ok:
            raise RuntimeError("Failed to encode frame for remote detection.")
        try:
            resp = self.session.post(
                self.url,
                files={"file": ("frame.jpg", buf.tobytes(), "image/jpeg")},
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.Timeout as exc:
            raise DetectionTimeout(f"Detector at {self.url} timed out after {self.timeout_s:.1f}s") from exc
        except (requests.RequestException, ValueError) as exc:
            raise TransportError(f"Detector at {self.url} failed: {exc}") from exc
        items = payload.get("detections", []) if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise TransportError(f"Detector at {self.url} returned an unexpected payload")

        found = []
        for item in items:
            try:
                x, y, w, h = (float(v) for v in item["bbox"])
                score = float(item.get("score", 0.0))
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.warning("Ignoring malformed detection from %s: %r", self.url, item)
                continue
            if not all(math.isfinite(v) for v in (x, y, w, h, score)):
                logger.warning("Ignoring non-finite detection from %s: %r", self.url, item)
                continue
            if w <= 0:
                continue
            found.append(
                DetectionResult(
                    box=BoundingBox(x, y, w, h),
                    confidence=float(np.clip(score, 0.0, 1.0)),
                    label=item.get("class"),
                )
            )
        return found


def build_locator(settings) -> ObjectLocator:
    name = (settings.LOCATOR or "contour").lower()
    if name == "template":
        return TemplateLocator.from_directory(settings.TEMPLATE_DIR)
    if name == "remote":
        if not settings.REMOTE_LOCATOR_URL:
            raise ValueError("REMOTE_LOCATOR_URL is required when LOCATOR=remote")
        return RemoteLocator(settings.REMOTE_LOCATOR_URL, timeout_s=settings.REMOTE_LOCATOR_TIMEOUT_S)
    if name == "contour":
        return ContourLocator(min_area_fraction=settings.MIN_AREA_FRACTION)
    raise ValueError(f"Unknown locator: {settings.LOCATOR!r}")


# ----------------------------- #
# Detection policy              #
# ----------------------------- #

def detect_with_timeout(
    locator: ObjectLocator,
    image: np.ndarray,
    timeout_s: float | None,
    executor: Executor,
) -> List[DetectionResult]:
    future = executor.submit(locator.detect, image)
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeout as exc:
        future.cancel()
        raise DetectionTimeout(f"Object detection did not finish within {timeout_s:.1f}s") from exc


def locate(
    locator: ObjectLocator,
    image: np.ndarray,
    *,
    executor: Executor,
    timeout_s: float | None = None,
    max_dim: int | None = None,
) -> List[DetectionResult]:
    """Run the locator on a downscaled copy, boxes returned in original pixels."""
    small, scale = downscale(image, max_dim)
    detections = detect_with_timeout(locator, small, timeout_s, executor)
    if scale != 1.0:
        detections = [replace(d, box=d.box.scaled(1.0 / scale)) for d in detections]
    return detections


def select_single(
    detections: Sequence[DetectionResult],
    threshold: float,
    label: str | None = None,
) -> DetectionResult:
    candidates = [
        d for d in detections
        if d.confidence >= threshold and (label is None or d.label == label)
    ]
    if not candidates:
        raise NoObjectDetected(
            "Reference object not detected. Please ensure the box is within the frame."
        )
    if len(candidates) > 1:
        raise AmbiguousDetection(
            f"{len(candidates)} candidate objects detected. Keep only the reference object in the frame."
        )
    return candidates[0]


def annotate(
    image: np.ndarray,
    detections: Sequence[DetectionResult],
    out_dir: str | Path,
    stem: str,
    captions: Sequence[str] | None = None,
) -> str:
    annot = image.copy()
    for idx, det in enumerate(detections):
        b = det.box
        p1 = (int(round(b.x)), int(round(b.y)))
        p2 = (int(round(b.x + b.width)), int(round(b.y + b.height)))
        cv2.rectangle(annot, p1, p2, (0, 255, 0), 2, lineType=cv2.LINE_AA)
        if captions is not None:
            label = captions[idx]
        else:
            label = f"{det.label or 'object'} {det.confidence:.2f}"
        cv2.putText(annot, label, (p1[0], max(15, p1[1] - 8)), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 0), 2, cv2.LINE_AA)

    ensure_dir(out_dir)
    out_path = os.path.join(out_dir, f"{stem}.jpg")
    cv2.imwrite(out_path, annot)
    return out_path
