"""Face detection adapters and per-face match results."""

import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, ClassVar, Protocol

import numpy as np
from loguru import logger
from PIL import Image, ImageOps

from photo_renamer.face_store import FaceSnapshot
from photo_renamer.matching import Ambiguous, Confident, MatchOutcome

MODEL_CACHE_DIR = Path(
    os.getenv("MODEL_CACHE_DIR", str(Path.home() / ".cache" / "photo-renamer")),
).expanduser()
CROP_PADDING = 0.3
CROP_JPEG_QUALITY = 80


@dataclass(frozen=True)
class BoundingBox:
    """Face rectangle in normalized (0-1) image coordinates, origin top-left."""

    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height


@dataclass(frozen=True)
class RawFace:
    """What a detector reports for one face, before any matching."""

    bounding_box: BoundingBox
    crop_bytes: bytes
    feature_vector: np.ndarray


@dataclass
class DetectedFace:
    """One face found during a scan, with its match state."""

    bounding_box: BoundingBox
    crop_bytes: bytes
    feature_vector: np.ndarray
    matched_name: str | None = None
    match_distance: float | None = None
    is_ambiguous: bool = False
    ambiguous_candidates: list[str] = field(default_factory=list)

    @classmethod
    def from_match(cls, raw: RawFace, outcome: MatchOutcome) -> "DetectedFace":
        face = cls(raw.bounding_box, raw.crop_bytes, raw.feature_vector)
        if isinstance(outcome, Confident):
            face.matched_name = outcome.name
            face.match_distance = outcome.distance
        elif isinstance(outcome, Ambiguous):
            face.is_ambiguous = True
            face.ambiguous_candidates = outcome.names
            face.match_distance = outcome.best_distance
        return face

    def assign(self, name: str) -> None:
        """Record a user-confirmed identity for this face."""
        self.matched_name = name
        self.is_ambiguous = False


class FaceDetector(Protocol):
    """Given image bytes, find faces and compute a fixed-length feature vector for each."""

    def detect(self, image_bytes: bytes) -> list[RawFace]: ...


class NullFaceDetector:
    """Detector that never finds faces; used when face recognition is turned off."""

    def detect(self, image_bytes: bytes) -> list[RawFace]:  # noqa: ARG002
        return []


def _crop_jpeg(img: Image.Image, box: tuple[float, float, float, float]) -> bytes:
    """Crop a pixel box padded by CROP_PADDING on every side and encode it as JPEG."""
    x1, y1, x2, y2 = box
    pad_x = (x2 - x1) * CROP_PADDING
    pad_y = (y2 - y1) * CROP_PADDING
    left = max(0, int(x1 - pad_x))
    top = max(0, int(y1 - pad_y))
    right = min(img.width, int(x2 + pad_x))
    bottom = min(img.height, int(y2 + pad_y))
    buf = BytesIO()
    img.crop((left, top, right, bottom)).save(buf, format="JPEG", quality=CROP_JPEG_QUALITY)
    return buf.getvalue()


class InsightFaceDetector:
    """
    Face detection and 512-d embeddings using InsightFace buffalo_l.

    The model is loaded once per process on first use. Embeddings are L2-normalized,
    so Euclidean distances fall in [0, 2].

    Requires: insightface, onnxruntime  (pip install 'photo-renamer[faces]')
    """

    _app: ClassVar[Any] = None
    _load_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, det_size: int = 640) -> None:
        self.det_size = det_size

    def _load_model(self) -> Any:  # noqa: ANN401
        if InsightFaceDetector._app is not None:
            return InsightFaceDetector._app
        with InsightFaceDetector._load_lock:
            if InsightFaceDetector._app is None:
                InsightFaceDetector._app = self._build_model()
        return InsightFaceDetector._app

    def _build_model(self) -> Any:  # noqa: ANN401
        try:
            from insightface.app import FaceAnalysis  # noqa: PLC0415
        except ImportError as exc:
            msg = "insightface is required for face detection:\n  pip install 'photo-renamer[faces]'"
            raise ImportError(msg) from exc

        root = MODEL_CACHE_DIR / "insightface"
        root.mkdir(parents=True, exist_ok=True)
        logger.info("loading_face_model", model="buffalo_l", root=str(root))
        app = FaceAnalysis(name="buffalo_l", root=str(root), providers=["CPUExecutionProvider"])
        app.prepare(ctx_id=-1, det_size=(self.det_size, self.det_size))
        return app

    def detect(self, image_bytes: bytes) -> list[RawFace]:
        app = self._load_model()
        with Image.open(BytesIO(image_bytes)) as raw:
            # Boxes and crops are in display orientation
            img = ImageOps.exif_transpose(raw).convert("RGB")
        # InsightFace expects BGR
        bgr = np.asarray(img, dtype=np.uint8)[:, :, ::-1].copy()

        found: list[RawFace] = []
        for face in app.get(bgr):
            x1, y1, x2, y2 = (float(v) for v in face.bbox)
            x1, y1 = max(0.0, x1), max(0.0, y1)
            x2, y2 = min(float(img.width), x2), min(float(img.height), y2)
            if x2 <= x1 or y2 <= y1 or face.normed_embedding is None:
                continue
            box = BoundingBox(
                x=x1 / img.width,
                y=y1 / img.height,
                width=(x2 - x1) / img.width,
                height=(y2 - y1) / img.height,
            )
            found.append(
                RawFace(
                    bounding_box=box,
                    crop_bytes=_crop_jpeg(img, (x1, y1, x2, y2)),
                    feature_vector=np.asarray(face.normed_embedding, dtype=np.float32),
                ),
            )
        return found


def detect_and_match(
    detector: FaceDetector,
    image_bytes: bytes,
    snapshot: FaceSnapshot,
    photo_date: datetime | None = None,
) -> list[DetectedFace]:
    """
    Detect faces in an image and look each one up in a store snapshot.

    Blocking and CPU-bound; the pipeline runs it on a dedicated executor.
    """
    faces = [
        DetectedFace.from_match(raw, snapshot.match(raw.feature_vector, photo_date))
        for raw in detector.detect(image_bytes)
    ]
    logger.debug(
        "faces_detected",
        faces=len(faces),
        matched=sum(1 for f in faces if f.matched_name),
        ambiguous=sum(1 for f in faces if f.is_ambiguous),
    )
    return faces
