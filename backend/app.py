import logging
import os
import threading
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from calibration.errors import DistanceError, NotCalibrated, TransportError
from calibration.service import DistanceService
from calibration.store import DEFAULT_SESSION
from config import settings
from objectdetection.service import annotate, build_locator, decode_image

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_service: DistanceService | None = None
_service_lock = threading.Lock()


def get_service() -> DistanceService:
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = DistanceService.from_settings(settings, build_locator(settings))
                logger.info("Using %s locator", settings.LOCATOR)
    return _service


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _service is not None:
        _service.shutdown()


app = FastAPI(title="Distance Estimation Backend", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
os.makedirs(settings.STATIC_DIR, exist_ok=True)

app.mount("/static", StaticFiles(directory=settings.STATIC_DIR), name="static")


def _read_image(f: UploadFile):
    try:
        return decode_image(f.file.read())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid image file")


def _static_url(path: str):
    rel = os.path.relpath(path, settings.STATIC_DIR)
    return f"/static/{rel.replace(os.sep, '/')}"


def _annotated_url(image, detections, subdir, captions=None):
    if not settings.ANNOTATE:
        return None
    out_dir = os.path.join(settings.STATIC_DIR, subdir)
    path = annotate(image, detections, out_dir, uuid.uuid4().hex, captions=captions)
    return _static_url(path)


def _failure(exc: DistanceError, session_id: str):
    logger.warning("Session %s: %s [%s]", session_id, exc.message, exc.code)
    # only upstream transport failures leave the 200 + success=false contract
    status = 502 if isinstance(exc, TransportError) else 200
    return JSONResponse(
        {"success": False, "error": exc.code, "message": exc.message},
        status_code=status,
    )


@app.get("/healthz", response_class=PlainTextResponse)
def health():
    return "ok"


@app.post("/api/calibrate")
def api_calibrate(
    file: UploadFile = File(...),
    known_distance: float = Form(settings.DEFAULT_KNOWN_DISTANCE_CM),
    known_width: float = Form(settings.DEFAULT_OBJECT_WIDTH_CM),
    session_id: str = Header(DEFAULT_SESSION, alias="X-Session-Id"),
    service: DistanceService = Depends(get_service),
):
    image = _read_image(file)
    try:
        profile = service.calibrate(image, known_distance, known_width, session_id)
    except DistanceError as exc:
        return _failure(exc, session_id)

    res = {
        "success": True,
        "focal_length": profile.focal_length_px,
        "profile": profile.to_dict(),
        "detection": profile.reference.to_dict(),
    }
    res["annotated_url"] = _annotated_url(
        image,
        [profile.reference],
        "calibrate",
        captions=[f"f = {profile.focal_length_px:.1f}px @ {profile.known_distance_cm:.1f} cm"],
    )
    return JSONResponse(res)


@app.post("/api/measure")
def api_measure(
    file: UploadFile = File(...),
    focal_length: float | None = Form(None),
    session_id: str = Header(DEFAULT_SESSION, alias="X-Session-Id"),
    service: DistanceService = Depends(get_service),
):
    image = _read_image(file)
    try:
        result = service.measure(image, focal_length, session_id)
    except DistanceError as exc:
        return _failure(exc, session_id)

    res = {
        "success": True,
        "distance": result.distance_cm,
        "focal_length": result.focal_length_px,
        "known_width": result.known_object_width_cm,
        "detection": result.detection.to_dict(),
    }
    res["annotated_url"] = _annotated_url(
        image,
        [result.detection],
        "measure",
        captions=[f"Distance: {result.distance_cm:.2f} cm"],
    )
    return JSONResponse(res)


@app.post("/api/detect")
def api_detect(
    file: UploadFile = File(...),
    service: DistanceService = Depends(get_service),
):
    image = _read_image(file)
    try:
        detections = service.detect(image)
    except DistanceError as exc:
        return _failure(exc, DEFAULT_SESSION)

    return JSONResponse({
        "success": True,
        "detections": [d.to_dict() for d in detections],
        "annotated_url": _annotated_url(image, detections, "detect"),
    })


@app.get("/api/calibration")
def api_calibration(
    session_id: str = Header(DEFAULT_SESSION, alias="X-Session-Id"),
    service: DistanceService = Depends(get_service),
):
    try:
        profile = service.get_profile(session_id)
    except NotCalibrated:
        return JSONResponse({"success": True, "calibrated": False})
    return JSONResponse({"success": True, "calibrated": True, "profile": profile.to_dict()})


@app.post("/api/reset")
def api_reset(
    session_id: str = Header(DEFAULT_SESSION, alias="X-Session-Id"),
    service: DistanceService = Depends(get_service),
):
    removed = service.reset(session_id)
    return JSONResponse({"success": True, "was_calibrated": removed})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
