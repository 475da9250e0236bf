from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PORT: int = 8000
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    CORS_ORIGIN_REGEX: str | None = None
    STATIC_DIR: Path = Path("static")
    ANNOTATE: bool = True
    LOG_LEVEL: str = "INFO"

    # "contour" | "template" | "remote"
    LOCATOR: str = "contour"
    CONFIDENCE_THRESHOLD: float = 0.5
    EXPECTED_LABEL: str | None = None
    DETECTION_TIMEOUT_S: float = 5.0
    DETECTION_WORKERS: int = 4
    MAX_IMAGE_DIM: int = 1280

    # Reference object defaults: a cigarette box held 30 cm from the camera.
    DEFAULT_KNOWN_DISTANCE_CM: float = 30.0
    DEFAULT_OBJECT_WIDTH_CM: float = 5.4

    TEMPLATE_DIR: Path = Path("objectdetection/templates")
    MIN_AREA_FRACTION: float = 0.01
    REMOTE_LOCATOR_URL: str | None = None
    REMOTE_LOCATOR_TIMEOUT_S: float = 3.0

    model_config = {"env_prefix": ""}


settings = Settings()
