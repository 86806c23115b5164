# snapmatch/services/face_search.py
import logging
import threading
from typing import Callable

import numpy as np

from snapmatch.config import Settings
from snapmatch.exceptions import ExternalServiceError
from snapmatch.schemas import FaceMatch, IndexReport
from snapmatch.services import index as face_index
from snapmatch.services.face import extract_face_embeddings, largest_face
from snapmatch.services.storage import BlobStore, event_images_prefix

logger = logging.getLogger("snapmatch.face_search")

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png")


class FaceSearchService:
    """Face collections per event, searched with a probe image.

    ``extract`` maps image bytes to ``[(embedding, bbox), ...]``; it defaults
    to the InsightFace engine.
    """

    def __init__(
        self,
        blobs: BlobStore,
        settings: Settings,
        extract: Callable[[bytes], list] = extract_face_embeddings,
    ):
        self.blobs = blobs
        self.settings = settings
        self.extract = extract
        self._lock = threading.Lock()

    def _load_or_create(self, collection: str):
        return face_index.load_or_create_index(
            self.settings.MEDIA_ROOT, collection, self.blobs, metric=self.settings.FAISS_METRIC
        )

    def index_faces(self, event_id: str, image_keys: list[str]) -> IndexReport:
        """Adds the faces of the given stored images to the event's collection."""
        collection = face_index.collection_id(event_id)
        report = IndexReport()
        with self._lock:
            index, keys, images = self._load_or_create(collection)
            known = set(images)
            new_embs, new_keys = [], []
            for key in image_keys:
                if key in known:
                    report.skipped.append(key)
                    continue
                data = self.blobs.download(key)
                if data is None:
                    report.failed[key] = "image not found in blob storage"
                    continue
                try:
                    faces = self.extract(data)
                except RuntimeError as e:
                    report.failed[key] = str(e)
                    continue
                for emb, _ in faces:
                    if emb is not None and emb.size > 0:
                        new_embs.append(np.asarray(emb, dtype="float32"))
                        new_keys.append(key)
                known.add(key)
                images.append(key)
                report.successful.append(key)
                logger.info(f"[OK] {key} -> {len(faces)} face(s) indexed")
            if new_embs:
                index, keys = face_index.add_embeddings(
                    index, keys, np.vstack(new_embs), new_keys, metric=self.settings.FAISS_METRIC
                )
            if report.successful:
                if not face_index.persist_index(index, keys, images, self.settings.MEDIA_ROOT, collection, self.blobs):
                    logger.warning(f"Index for '{collection}' saved locally but not mirrored to blob storage")
        return report

    def index_all_event_images(self, event_id: str) -> IndexReport:
        items = self.blobs.list_all(event_images_prefix(event_id))
        if items is None:
            raise ExternalServiceError("blob store", f"listing images of event {event_id} failed")
        keys = [key for key, _ in items if key.lower().endswith(IMAGE_SUFFIXES)]
        logger.info(f"Indexing {len(keys)} stored images of event {event_id}")
        return self.index_faces(event_id, keys)

    def search(self, probe_key: str, collection_id: str) -> list[FaceMatch]:
        data = self.blobs.download(probe_key)
        if data is None:
            raise ExternalServiceError("blob store", f"probe image {probe_key} is not readable")
        try:
            probe = largest_face(self.extract(data))
        except RuntimeError as e:
            raise ExternalServiceError("face search", str(e)) from e
        if probe is None:
            logger.warning(f"No face detected in probe image {probe_key}")
            return []

        with self._lock:
            loaded = face_index.load_index(self.settings.MEDIA_ROOT, collection_id, self.blobs)
        if loaded is None:
            # Collection never built; build it from what the event has stored
            event_id = face_index.event_id_of(collection_id)
            report = self.index_all_event_images(event_id)
            if not report.successful:
                raise ExternalServiceError("face search", "No images were successfully indexed for this event.")
            with self._lock:
                loaded = self._load_or_create(collection_id)
        index, keys, _ = loaded
        if index.ntotal == 0:
            return []

        sims, idxs = face_index.search(index, probe, top_k=self.settings.TOP_K, metric=self.settings.FAISS_METRIC)
        matches = face_index.best_per_key(sims, idxs, keys)
        logger.info(f"Probe {probe_key} against '{collection_id}': {len(matches)} candidate images")
        return matches

    def remove_images(self, event_id: str, image_keys: list[str]) -> int:
        """Takes deleted images out of the collection; returns faces removed."""
        collection = face_index.collection_id(event_id)
        drop = set(image_keys)
        with self._lock:
            loaded = face_index.load_index(self.settings.MEDIA_ROOT, collection, self.blobs)
            if loaded is None:
                return 0
            index, keys, images = loaded
            before = index.ntotal
            index, keys = face_index.remove_keys(index, keys, drop)
            removed = before - index.ntotal
            remaining = [image for image in images if image not in drop]
            if removed or len(remaining) != len(images):
                face_index.persist_index(index, keys, remaining, self.settings.MEDIA_ROOT, collection, self.blobs)
        return removed

    def delete_collection(self, event_id: str) -> bool:
        with self._lock:
            return face_index.delete_index(self.settings.MEDIA_ROOT, face_index.collection_id(event_id), self.blobs)
