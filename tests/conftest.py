"""
Shared fixtures: a file-backed SQLite database per test, an in-memory stand-in
for the blob containers and a scripted face search.
"""
import os
import shutil

import pytest

from snapmatch.config import Settings
from snapmatch.context import AppContext
from snapmatch.db import Base, make_engine, make_session_factory
from snapmatch.schemas import FaceMatch, IndexReport


class InMemoryBlobStore:
    """Same surface as BlobStore, backed by dicts."""

    base_url = "https://testaccount.blob.core.windows.net/photos/"

    def __init__(self):
        self.blobs: dict[str, tuple[bytes, str]] = {}
        self.index_blobs: dict[str, bytes] = {}
        self.fail_uploads = False
        self.fail_deletes: set[str] = set()
        self.fail_listing = False

    def url_for(self, key):
        return f"{self.base_url}{key}"

    def key_from_url(self, url):
        return url[len(self.base_url):] if url.startswith(self.base_url) else None

    def list_page(self, prefix, page_size, continuation_token=None):
        if self.fail_listing:
            return None
        keys = sorted(k for k in self.blobs if k.startswith(prefix))
        start = int(continuation_token or 0)
        page = keys[start:start + page_size]
        end = start + page_size
        token = str(end) if end < len(keys) else None
        return [(k, len(self.blobs[k][0])) for k in page], token

    def list_all(self, prefix, page_size=1000):
        items, token = [], None
        while True:
            result = self.list_page(prefix, page_size, token)
            if result is None:
                return None
            page, token = result
            items.extend(page)
            if not token:
                return items

    def get_size(self, key):
        blob = self.blobs.get(key)
        return len(blob[0]) if blob else None

    def upload(self, key, data, content_type="image/jpeg"):
        if self.fail_uploads:
            return None
        self.blobs[key] = (data, content_type)
        return self.url_for(key)

    def download(self, key):
        blob = self.blobs.get(key)
        return blob[0] if blob else None

    def delete(self, key):
        if key in self.fail_deletes:
            return False
        self.blobs.pop(key, None)
        return True

    def delete_prefix(self, prefix):
        items = self.list_all(prefix)
        if items is None:
            return None
        deleted, failed = 0, []
        for key, _ in items:
            if self.delete(key):
                deleted += 1
            else:
                failed.append(key)
        return deleted, failed

    def upload_file(self, local_path, name):
        with open(local_path, "rb") as f:
            self.index_blobs[name] = f.read()
        return True

    def download_to_file(self, name, local_path):
        if name not in self.index_blobs:
            return False
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, "wb") as f:
            f.write(self.index_blobs[name])
        return True

    def delete_index_blob(self, name):
        self.index_blobs.pop(name, None)
        return True


class FakeFaceSearch:
    """Returns scripted candidates and records what it was asked."""

    def __init__(self):
        self.candidates: list[FaceMatch] = []
        self.error: Exception | None = None
        self.searches: list[tuple[str, str]] = []
        self.indexed: dict[str, list[str]] = {}
        self.removed: dict[str, list[str]] = {}
        self.deleted: list[str] = []

    def search(self, probe_key, collection_id):
        self.searches.append((probe_key, collection_id))
        if self.error is not None:
            raise self.error
        return list(self.candidates)

    def index_faces(self, event_id, image_keys):
        self.indexed.setdefault(event_id, []).extend(image_keys)
        return IndexReport(successful=list(image_keys))

    def remove_images(self, event_id, image_keys):
        self.removed.setdefault(event_id, []).extend(image_keys)
        return len(image_keys)

    def delete_collection(self, event_id):
        self.deleted.append(event_id)
        return True


@pytest.fixture
def test_settings(tmp_path):
    media_root = tmp_path / "media"
    os.makedirs(media_root / "indices", exist_ok=True)
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        MEDIA_ROOT=str(media_root),
        STORAGE_ACCOUNT_NAME="testaccount",
        IMAGES_PER_PAGE=3,
    )


@pytest.fixture
def session_factory(test_settings):
    engine = make_engine(test_settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def face_search():
    return FakeFaceSearch()


@pytest.fixture
def ctx(test_settings, session_factory, blobs, face_search):
    yield AppContext(
        settings=test_settings,
        session_factory=session_factory,
        blobs=blobs,
        face_search=face_search,
    )
    shutil.rmtree(test_settings.MEDIA_ROOT, ignore_errors=True)
