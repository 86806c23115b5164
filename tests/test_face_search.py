"""
FAISS collections with synthetic embeddings in place of InsightFace.
"""
import json
import os

import numpy as np
import pytest

from snapmatch.exceptions import ExternalServiceError
from snapmatch.services import index as face_index
from snapmatch.services import face
from snapmatch.services.face import largest_face
from snapmatch.services.face_search import FaceSearchService
from snapmatch.services.index import EMBEDDING_DIM
from snapmatch.services.matching import filter_matches
from snapmatch.services.storage import event_images_prefix


def unit(i, j=None, weight=0.0):
    v = np.zeros(EMBEDDING_DIM, dtype="float32")
    v[i] = 1.0
    if j is not None:
        v[j] = weight
    return v


# Image bytes name the faces in them: b"0,3" holds persons 0 and 3
def fake_extract(data: bytes):
    if data == b"noface":
        return []
    faces = []
    for n, token in enumerate(data.decode().split(",")):
        person = int(token)
        faces.append((unit(person), [0, 0, 10 + n, 10 + n]))
    return faces


@pytest.fixture
def service(blobs, test_settings):
    return FaceSearchService(blobs, test_settings, extract=fake_extract)


def put(blobs, event_id, name, data):
    key = f"{event_images_prefix(event_id)}{name}"
    blobs.upload(key, data)
    return key


def test_best_per_key_collapses_faces():
    sims = np.array([0.91, 0.5, 0.88, -0.2], dtype="float32")
    idxs = np.array([0, 1, 2, -1])
    found = face_index.best_per_key(sims, idxs, ["a", "b", "a"])
    assert [(m.image_key, m.similarity) for m in found] == [("a", 91.0), ("b", 50.0)]


def test_to_percent_is_clipped():
    assert face_index.to_percent(1.2) == 100.0
    assert face_index.to_percent(-0.3) == 0.0


def test_remove_keys_drops_all_faces_of_an_image():
    index = face_index.create_index(EMBEDDING_DIM)
    index, keys = face_index.add_embeddings(index, [], np.vstack([unit(0), unit(1), unit(2)]), ["a", "b", "a"])
    index, keys = face_index.remove_keys(index, keys, {"a"})
    assert index.ntotal == 1 and keys == ["b"]


def test_largest_face_picks_biggest_box():
    faces = [(unit(0), [0, 0, 5, 5]), (unit(1), [0, 0, 50, 40]), (unit(2), [0, 0, 10, 10])]
    assert np.array_equal(largest_face(faces), unit(1))
    assert largest_face([]) is None


def test_index_then_search(service, blobs):
    a = put(blobs, "100001", "1-a.jpg", b"0,3")
    b = put(blobs, "100001", "2-b.jpg", b"1")
    selfie = "users/alice/selfies/selfie-1-me.jpg"
    blobs.upload(selfie, b"3")

    report = service.index_faces("100001", [a, b])
    assert report.successful == [a, b]

    found = service.search(selfie, "event-100001")
    assert found[0].image_key == a and found[0].similarity == 100.0
    assert all(m.image_key != a for m in found[1:])
    assert service.index_faces("100001", [a]).skipped == [a]


def test_search_builds_missing_collection(service, blobs):
    a = put(blobs, "100002", "1-a.jpg", b"5")
    blobs.upload("users/u/selfies/s.jpg", b"5")

    found = service.search("users/u/selfies/s.jpg", "event-100002")

    assert [m.image_key for m in found] == [a]
    assert "event-100002.faiss" in blobs.index_blobs


def test_search_without_indexable_images_fails(service, blobs):
    blobs.upload("users/u/selfies/s.jpg", b"5")
    with pytest.raises(ExternalServiceError):
        service.search("users/u/selfies/s.jpg", "event-100003")


def test_search_with_faceless_probe_returns_nothing(service, blobs):
    blobs.upload("users/u/selfies/s.jpg", b"noface")
    assert service.search("users/u/selfies/s.jpg", "event-100001") == []


def test_unreadable_probe(service):
    with pytest.raises(ExternalServiceError):
        service.search("users/u/selfies/missing.jpg", "event-100001")


def test_remove_images_and_delete_collection(service, blobs, test_settings):
    a = put(blobs, "100004", "1-a.jpg", b"0,1")
    b = put(blobs, "100004", "2-b.jpg", b"2")
    service.index_faces("100004", [a, b])

    assert service.remove_images("100004", [a]) == 2
    index, keys, images = face_index.load_index(test_settings.MEDIA_ROOT, "event-100004")
    assert keys == [b] and images == [b] and index.ntotal == 1

    assert service.delete_collection("100004")
    assert face_index.load_index(test_settings.MEDIA_ROOT, "event-100004", blobs) is None


def test_to_percent_keeps_two_decimals():
    assert face_index.to_percent(0.6951) == 69.51
    assert face_index.to_percent(0.69996) == 70.0
    found = face_index.best_per_key(np.array([0.6951, 0.7]), np.array([0, 1]), ["near", "at"])
    assert [m.image_key for m in filter_matches(found, 70.0)] == ["at"]


def counting_downloads(blobs, monkeypatch):
    fetched = []
    real_download = blobs.download

    def download(key):
        fetched.append(key)
        return real_download(key)

    monkeypatch.setattr(blobs, "download", download)
    return fetched


def test_faceless_images_are_processed_once(service, blobs, monkeypatch):
    crowd = [put(blobs, "100005", f"{n}-empty.jpg", b"noface") for n in range(3)]
    blobs.upload("users/u/selfies/s.jpg", b"5")
    fetched = counting_downloads(blobs, monkeypatch)

    assert service.search("users/u/selfies/s.jpg", "event-100005") == []
    assert service.search("users/u/selfies/s.jpg", "event-100005") == []

    assert sorted(k for k in fetched if k in crowd) == sorted(crowd)
    assert service.index_faces("100005", crowd).skipped == crowd


def test_faceless_images_survive_later_indexing(service, blobs, monkeypatch):
    empty = put(blobs, "100006", "1-empty.jpg", b"noface")
    service.index_faces("100006", [empty])
    face = put(blobs, "100006", "2-face.jpg", b"4")
    fetched = counting_downloads(blobs, monkeypatch)

    report = service.index_all_event_images("100006")

    assert report.skipped == [empty] and report.successful == [face]
    assert fetched == [face]


def test_search_reads_collection_under_the_lock(service, blobs, monkeypatch):
    a = put(blobs, "100007", "1-a.jpg", b"2")
    blobs.upload("users/u/selfies/s.jpg", b"2")
    service.index_faces("100007", [a])
    held = []
    real_load = face_index.load_index

    def load_index(*args, **kwargs):
        held.append(service._lock.locked())
        return real_load(*args, **kwargs)

    monkeypatch.setattr(face_index, "load_index", load_index)

    assert [m.image_key for m in service.search("users/u/selfies/s.jpg", "event-100007")] == [a]
    assert held == [True]


def test_persist_replaces_files_whole(service, blobs, test_settings):
    a = put(blobs, "100008", "1-a.jpg", b"1")
    b = put(blobs, "100008", "2-b.jpg", b"2")
    service.index_faces("100008", [a])
    service.index_faces("100008", [b])

    folder = os.path.join(test_settings.MEDIA_ROOT, "indices")
    assert sorted(os.listdir(folder)) == ["event-100008.faiss", "event-100008.keys.json"]
    index, keys, images = face_index.load_index(test_settings.MEDIA_ROOT, "event-100008")
    assert index.ntotal == 2 and keys == [a, b] and images == [a, b]


def test_legacy_key_list_manifest(test_settings):
    index = face_index.create_index(EMBEDDING_DIM)
    index, keys = face_index.add_embeddings(index, [], np.vstack([unit(0), unit(1)]), ["a", "a"])
    face_index.persist_index(index, keys, ["a"], test_settings.MEDIA_ROOT, "event-legacy")
    with open(os.path.join(test_settings.MEDIA_ROOT, "indices", "event-legacy.keys.json"), "w") as handle:
        json.dump(keys, handle)

    _, keys, images = face_index.load_index(test_settings.MEDIA_ROOT, "event-legacy")
    assert keys == ["a", "a"] and images == ["a"]


class FakeDetection:
    def __init__(self, person, bbox):
        self.normed_embedding = unit(person)
        self.bbox = bbox


class FakeModel:
    def get(self, frame):
        return [FakeDetection(1, [2.0, 3.0, 12.0, 23.0])]


def test_extract_reports_boxes_as_width_and_height(monkeypatch):
    monkeypatch.setattr(face.FaceEngine, "loaded", True)
    monkeypatch.setattr(face.FaceEngine, "app", FakeModel())
    monkeypatch.setattr(face, "decode_image", lambda data: np.zeros((4, 4, 3), dtype=np.uint8))

    [(emb, box)] = face.extract_face_embeddings(b"jpeg")

    assert box == [2, 3, 10, 20]
    assert np.array_equal(emb, unit(1))


def test_extract_without_model_raises(monkeypatch):
    monkeypatch.setattr(face.FaceEngine, "loaded", True)
    monkeypatch.setattr(face.FaceEngine, "app", None)
    with pytest.raises(RuntimeError):
        face.extract_face_embeddings(b"jpeg")


def test_undecodable_bytes_have_no_frame():
    assert face.decode_image(b"not an image") is None
