# snapmatch/services/index.py
"""One FAISS index per event face collection.

Each vector is one detected face; ``keys[i]`` is the blob key of the image
vector ``i`` came from. ``images`` lists every image already processed,
including those with no face, so they are never downloaded twice. The
vectors and the manifest live in the local cache under MEDIA_ROOT/indices
and are mirrored to the index container.
"""
import json
import logging
import os

import faiss
import numpy as np

from snapmatch.schemas import FaceMatch
from snapmatch.services.storage import BlobStore

logger = logging.getLogger("snapmatch.index")

COLLECTION_PREFIX = "event-"
EMBEDDING_DIM = 512


def collection_id(event_id: str) -> str:
    return f"{COLLECTION_PREFIX}{event_id}"


def event_id_of(collection: str) -> str:
    return collection[len(COLLECTION_PREFIX):] if collection.startswith(COLLECTION_PREFIX) else collection


def _idx(media_root: str, collection: str) -> str:
    return os.path.join(media_root, "indices", f"{collection}.faiss")


def _keys(media_root: str, collection: str) -> str:
    return os.path.join(media_root, "indices", f"{collection}.keys.json")


def create_index(dim: int = EMBEDDING_DIM, metric: str = "cosine"):
    return faiss.IndexFlatIP(dim) if metric == "cosine" else faiss.IndexFlatL2(dim)


def load_index(media_root: str, collection: str, blobs: BlobStore | None = None):
    """(index, keys, images) from the local cache or the index container, else None."""
    index_path, keys_path = _idx(media_root, collection), _keys(media_root, collection)

    # 1. Check if files exist locally (as a cache)
    if os.path.exists(index_path) and os.path.exists(keys_path):
        logger.debug(f"Loading index for '{collection}' from local cache.")
        return _read(index_path, keys_path)

    # 2. If not, try to download from blob storage
    if blobs is not None:
        index_downloaded = blobs.download_to_file(os.path.basename(index_path), index_path)
        keys_downloaded = blobs.download_to_file(os.path.basename(keys_path), keys_path)
        if index_downloaded and keys_downloaded:
            logger.info(f"Downloaded index for '{collection}' from blob storage.")
            return _read(index_path, keys_path)

    return None


def load_or_create_index(
    media_root: str, collection: str, blobs: BlobStore | None = None, dim: int = EMBEDDING_DIM, metric: str = "cosine"
):
    loaded = load_index(media_root, collection, blobs)
    if loaded is not None:
        return loaded
    logger.info(f"No index found for '{collection}'. Creating a new, empty index.")
    return create_index(dim, metric), [], []


def _read(index_path: str, keys_path: str):
    with open(keys_path, "r", encoding="utf-8") as handle:
        manifest = json.load(handle)
    if isinstance(manifest, list):
        # Older manifests only listed face keys
        keys, images = manifest, list(dict.fromkeys(manifest))
    else:
        keys, images = manifest["keys"], manifest["images"]
    return faiss.read_index(index_path), keys, images


def persist_index(
    index, keys: list[str], images: list[str], media_root: str, collection: str, blobs: BlobStore | None = None
) -> bool:
    """Saves the index locally and mirrors it to the index container.

    Each file is written beside its target and renamed over it, so readers
    see either the previous file or the new one.
    """
    index_path, keys_path = _idx(media_root, collection), _keys(media_root, collection)
    os.makedirs(os.path.dirname(index_path), exist_ok=True)
    faiss.write_index(index, f"{index_path}.tmp")
    with open(f"{keys_path}.tmp", "w", encoding="utf-8") as handle:
        json.dump({"keys": keys, "images": images}, handle)
    os.replace(f"{index_path}.tmp", index_path)
    os.replace(f"{keys_path}.tmp", keys_path)
    logger.info(f"Persisted index for '{collection}' ({index.ntotal} faces, {len(images)} images) to local cache.")
    if blobs is None:
        return True
    return blobs.upload_file(index_path, os.path.basename(index_path)) and blobs.upload_file(
        keys_path, os.path.basename(keys_path)
    )


def delete_index(media_root: str, collection: str, blobs: BlobStore | None = None) -> bool:
    ok = True
    for path in (_idx(media_root, collection), _keys(media_root, collection)):
        if os.path.exists(path):
            os.remove(path)
        if blobs is not None:
            ok = blobs.delete_index_blob(os.path.basename(path)) and ok
    return ok


def add_embeddings(index, keys: list[str], embs: np.ndarray, new_keys: list[str], metric: str = "cosine"):
    embs = np.ascontiguousarray(embs, dtype=np.float32)
    if metric == "cosine":
        faiss.normalize_L2(embs)
    index.add(embs)
    return index, [*keys, *new_keys]


def remove_keys(index, keys: list[str], drop: set[str]):
    """Drops every face vector of the given images; flat indexes keep order."""
    positions = [i for i, key in enumerate(keys) if key in drop]
    if positions:
        index.remove_ids(np.asarray(positions, dtype="int64"))
    return index, [key for key in keys if key not in drop]


def search(index, q: np.ndarray, top_k: int = 50, metric: str = "cosine"):
    q = np.ascontiguousarray(q, dtype=np.float32).reshape(1, -1)
    if metric == "cosine":
        faiss.normalize_L2(q)
    distances, indices = index.search(q, min(top_k, max(1, index.ntotal)))

    # For cosine similarity (IndexFlatIP), higher scores (closer to 1) are better.
    if metric == "cosine":
        return distances[0], indices[0]
    # L2 distance, converted to a pseudo-similarity where higher is better.
    return (1 / (1 + distances[0])), indices[0]


def to_percent(score: float) -> float:
    return float(min(100.0, max(0.0, round(score * 100, 2))))


def best_per_key(sims, idxs, keys: list[str]) -> list[FaceMatch]:
    """Collapses face hits to the best similarity per image, best first."""
    best: dict[str, float] = {}
    for sim, i in zip(np.asarray(sims).tolist(), np.asarray(idxs).tolist()):
        if i < 0 or i >= len(keys):
            continue
        similarity = to_percent(sim)
        key = keys[i]
        if similarity > best.get(key, -1.0):
            best[key] = similarity
    ranked = sorted(best.items(), key=lambda kv: kv[1], reverse=True)
    return [FaceMatch(image_key=key, similarity=similarity) for key, similarity in ranked]
