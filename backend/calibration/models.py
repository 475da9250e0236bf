from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    def scaled(self, factor: float) -> "BoundingBox":
        return BoundingBox(self.x * factor, self.y * factor, self.width * factor, self.height * factor)


@dataclass(frozen=True)
class DetectionResult:
    box: BoundingBox
    confidence: float
    label: str | None = None

    def __post_init__(self):
        if not self.box.width > 0:
            raise ValueError(f"Detection width must be positive, got {self.box.width}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Detection confidence must be in [0, 1], got {self.confidence}")

    def to_dict(self) -> dict:
        return {
            "box": asdict(self.box),
            "confidence": float(self.confidence),
            "label": self.label,
        }


@dataclass(frozen=True)
class CalibrationProfile:
    known_object_width_cm: float
    known_distance_cm: float
    focal_length_px: float
    apparent_width_px: float
    reference: DetectionResult | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "known_object_width_cm": self.known_object_width_cm,
            "known_distance_cm": self.known_distance_cm,
            "focal_length_px": self.focal_length_px,
            "apparent_width_px": self.apparent_width_px,
            "reference": self.reference.to_dict() if self.reference else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class MeasurementResult:
    distance_cm: float
    focal_length_px: float
    known_object_width_cm: float
    detection: DetectionResult
