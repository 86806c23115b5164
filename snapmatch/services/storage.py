# snapmatch/services/storage.py
import logging
import os

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContainerClient, ContentSettings

from snapmatch.config import Settings
from snapmatch.exceptions import ValidationError

logger = logging.getLogger("snapmatch.storage")


def event_prefix(event_id: str) -> str:
    return f"events/shared/{event_id}/"


def event_images_prefix(event_id: str) -> str:
    return f"events/shared/{event_id}/images/"


def event_cover_key(event_id: str) -> str:
    return f"events/shared/{event_id}/cover.jpg"


def selfie_prefix(user_id: str) -> str:
    return f"users/{user_id}/selfies/"


def logo_prefix(user_id: str) -> str:
    return f"users/{user_id}/logo/"


class BlobStore:
    """Photo and index containers of one storage account.

    Built once at process start and handed to every service. Client failures
    are logged and come back as ``None``/``False``; callers decide what a
    missing result means.
    """

    def __init__(
        self,
        photos: ContainerClient,
        indexes: ContainerClient,
        account_name: str,
        max_concurrency: int = 4,
    ):
        self.photos = photos
        self.indexes = indexes
        self.account_name = account_name
        self.max_concurrency = max_concurrency

    @classmethod
    def from_settings(cls, settings: Settings) -> "BlobStore":
        if not settings.AZURE_STORAGE_CONNECTION_STRING:
            raise RuntimeError("Azure Storage Connection String not set in .env file.")
        if not settings.STORAGE_ACCOUNT_NAME:
            raise RuntimeError("Storage Account Name not set in .env file.")
        service = BlobServiceClient.from_connection_string(
            settings.AZURE_STORAGE_CONNECTION_STRING,
            max_single_put_size=settings.UPLOAD_BLOCK_SIZE,
            max_block_size=settings.UPLOAD_BLOCK_SIZE,
        )
        return cls(
            photos=service.get_container_client(settings.AZURE_PHOTO_CONTAINER),
            indexes=service.get_container_client(settings.AZURE_INDEX_CONTAINER),
            account_name=settings.STORAGE_ACCOUNT_NAME,
            max_concurrency=settings.UPLOAD_MAX_CONCURRENCY,
        )

    # --- addressing ---

    @property
    def base_url(self) -> str:
        return f"https://{self.account_name}.blob.core.windows.net/{self.photos.container_name}/"

    def url_for(self, key: str) -> str:
        return f"{self.base_url}{key}"

    def key_from_url(self, url: str) -> str | None:
        """Blob key behind an absolute photo URL, or None for foreign URLs."""
        if url.startswith(self.base_url):
            return url[len(self.base_url):]
        return None

    # --- listing ---

    def list_page(
        self, prefix: str, page_size: int, continuation_token: str | None = None
    ) -> tuple[list[tuple[str, int]], str | None] | None:
        """One page of ``(key, size)`` under ``prefix`` plus the next token."""
        try:
            pager = self.photos.list_blobs(
                name_starts_with=prefix, results_per_page=page_size
            ).by_page(continuation_token=continuation_token)
            page = next(pager, None)
            if page is None:
                return [], None
            items = [(blob.name, blob.size) for blob in page]
            return items, pager.continuation_token or None
        except AzureError as e:
            logger.error(f"Listing '{prefix}' failed: {e}")
            return None

    def list_all(self, prefix: str, page_size: int = 1000) -> list[tuple[str, int]] | None:
        items: list[tuple[str, int]] = []
        token = None
        while True:
            result = self.list_page(prefix, page_size, token)
            if result is None:
                return None
            page, token = result
            items.extend(page)
            if not token:
                return items

    # --- single blobs ---

    def get_size(self, key: str) -> int | None:
        try:
            return self.photos.get_blob_client(key).get_blob_properties().size
        except ResourceNotFoundError:
            logger.warning(f"Blob '{key}' does not exist.")
            return None
        except AzureError as e:
            logger.error(f"Reading properties of '{key}' failed: {e}")
            return None

    def upload(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str | None:
        """Uploads bytes in parallel blocks and returns the public URL."""
        if not key:
            raise ValidationError("blob key is required")
        try:
            blob_client = self.photos.get_blob_client(key)
            blob_client.upload_blob(
                data,
                overwrite=True,
                max_concurrency=self.max_concurrency,
                content_settings=ContentSettings(content_type=content_type),
            )
        except AzureError as e:
            logger.error(f"Upload of '{key}' failed: {e}")
            return None
        return self.url_for(key)

    def download(self, key: str) -> bytes | None:
        try:
            return self.photos.get_blob_client(key).download_blob().readall()
        except AzureError as e:
            logger.error(f"Download of '{key}' failed: {e}")
            return None

    def delete(self, key: str) -> bool:
        try:
            self.photos.delete_blob(key)
            return True
        except ResourceNotFoundError:
            logger.warning(f"Blob '{key}' was already gone.")
            return True
        except AzureError as e:
            logger.error(f"Delete of '{key}' failed: {e}")
            return False

    def delete_prefix(self, prefix: str) -> tuple[int, list[str]] | None:
        """Deletes every blob under ``prefix``; returns (deleted, failed keys)."""
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

    # --- face index files ---

    def upload_file(self, local_path: str, name: str) -> bool:
        """Uploads a local file to the index container."""
        try:
            with open(local_path, "rb") as data:
                self.indexes.get_blob_client(name).upload_blob(data, overwrite=True, timeout=300)
        except AzureError as e:
            logger.error(f"Uploading {local_path} as '{name}' failed: {e}")
            return False
        logger.info(f"Uploaded {local_path} to the index container as {name}")
        return True

    def download_to_file(self, name: str, local_path: str) -> bool:
        """Downloads an index blob to a local file path. Returns True on success."""
        try:
            data = self.indexes.get_blob_client(name).download_blob().readall()
        except AzureError as e:
            # Expected for a collection that was never built
            logger.info(f"Could not download '{name}' from the index container: {e}")
            return False
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, "wb") as download_file:
            download_file.write(data)
        return True

    def delete_index_blob(self, name: str) -> bool:
        try:
            self.indexes.delete_blob(name)
            return True
        except ResourceNotFoundError:
            return True
        except AzureError as e:
            logger.error(f"Delete of index blob '{name}' failed: {e}")
            return False
