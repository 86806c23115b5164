# snapmatch/context.py
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import sessionmaker

from snapmatch.config import Settings
from snapmatch.schemas import FaceMatch, IndexReport
from snapmatch.services.storage import BlobStore


class FaceSearch(Protocol):
    def search(self, probe_key: str, collection_id: str) -> list[FaceMatch]: ...

    def index_faces(self, event_id: str, image_keys: list[str]) -> IndexReport: ...

    def remove_images(self, event_id: str, image_keys: list[str]) -> int: ...

    def delete_collection(self, event_id: str) -> bool: ...


@dataclass
class AppContext:
    """Client handles built once at process start and passed to every service."""

    settings: Settings
    session_factory: sessionmaker
    blobs: BlobStore
    face_search: FaceSearch
