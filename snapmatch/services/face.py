# snapmatch/services/face.py
"""Face detection and embeddings on top of InsightFace.

The model is heavy and optional (the ``face`` extra), so it is imported on
first use and shared by every caller in the process.
"""
import logging

import cv2
import numpy as np

logger = logging.getLogger("snapmatch.face")

MODEL_NAME = "buffalo_l"
DETECTION_SIZE = (640, 640)


class FaceEngine:
    """Process-wide handle on the detection and recognition model."""
    app = None
    loaded = False

    @classmethod
    def load(cls):
        if cls.loaded:
            return
        try:
            from insightface.app import FaceAnalysis
        except ImportError as e:
            logger.error(f"InsightFace is not installed: {e}")
            return
        logger.info(f"Preparing face model {MODEL_NAME} on CPU")
        try:
            app = FaceAnalysis(name=MODEL_NAME, providers=["CPUExecutionProvider"])
            app.prepare(ctx_id=0, det_size=DETECTION_SIZE)
        except Exception as e:
            logger.error(f"Face model {MODEL_NAME} could not be prepared: {e}")
            return
        cls.app, cls.loaded = app, True


def decode_image(image_bytes: bytes):
    frame = cv2.imdecode(np.frombuffer(image_bytes, np.uint8), cv2.IMREAD_COLOR)
    if frame is None:
        logger.warning(f"Undecodable image ({len(image_bytes)} bytes)")
    return frame


def extract_face_embeddings(image_bytes: bytes) -> list[tuple[np.ndarray, list[int]]]:
    """Every face found in ``image_bytes`` as ``(embedding, [x, y, w, h])``.

    Raises RuntimeError when no model is available; an image that does not
    decode simply has no faces.
    """
    FaceEngine.load()
    if FaceEngine.app is None:
        raise RuntimeError("face model is not available")

    frame = decode_image(image_bytes)
    if frame is None:
        return []

    found = []
    for face in FaceEngine.app.get(frame):
        left, top, right, bottom = (int(v) for v in face.bbox)
        box = [left, top, max(0, right - left), max(0, bottom - top)]
        found.append((np.asarray(face.normed_embedding, dtype="float32"), box))
    logger.debug(f"{len(found)} face(s) detected")
    return found


def largest_face(faces: list[tuple[np.ndarray, list[int]]]) -> np.ndarray | None:
    """Embedding of the face with the biggest box; a selfie has one that matters."""
    if not faces:
        return None
    return max(faces, key=lambda face: max(1, face[1][2]) * max(1, face[1][3]))[0]
