"""
Blob storage for snapshot artifacts.

A narrow interface (upload, download, list, delete) with a Google Cloud
Storage implementation for deployments, a directory-backed one for local
exports and an in-memory one for tests.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from google.cloud import storage
from google.cloud.exceptions import NotFound

from .errors import BlobNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class BlobEntry:
    name: str
    size: Optional[int] = None


class BlobStore(ABC):
    """Opaque blob store addressed by slash-separated paths."""

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str = 'application/json'):
        ...

    @abstractmethod
    def download(self, path: str) -> bytes:
        """Raises BlobNotFoundError when the path does not exist."""

    @abstractmethod
    def list(self, prefix: str) -> List[BlobEntry]:
        ...

    @abstractmethod
    def delete(self, path: str) -> bool:
        """Delete a blob; returns False if it did not exist."""

    def exists(self, path: str) -> bool:
        try:
            self.download(path)
            return True
        except BlobNotFoundError:
            return False

    def close(self):
        pass


class GCSBlobStore(BlobStore):
    """Blob store backed by a Google Cloud Storage bucket."""

    def __init__(self, bucket_name: str, project_id: Optional[str] = None, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name
        self.client = client or storage.Client(project=project_id)
        self.bucket = self.client.bucket(bucket_name)
        logger.info(f"GCS blob store initialized for bucket: {bucket_name}")

    def upload(self, path: str, data: bytes, content_type: str = 'application/json'):
        blob = self.bucket.blob(path)
        blob.upload_from_string(data, content_type=content_type)

    def download(self, path: str) -> bytes:
        try:
            return self.bucket.blob(path).download_as_bytes()
        except NotFound:
            raise BlobNotFoundError(path)

    def list(self, prefix: str) -> List[BlobEntry]:
        return [
            BlobEntry(name=blob.name, size=blob.size)
            for blob in self.client.list_blobs(self.bucket_name, prefix=prefix)
        ]

    def delete(self, path: str) -> bool:
        try:
            self.bucket.blob(path).delete()
            return True
        except NotFound:
            return False

    def exists(self, path: str) -> bool:
        return self.bucket.blob(path).exists()

    def close(self):
        self.client.close()


class LocalBlobStore(BlobStore):
    """Blob store rooted at a local directory."""

    def __init__(self, root_dir: str):
        self.root_dir = os.path.abspath(root_dir)
        os.makedirs(self.root_dir, exist_ok=True)

    def _full_path(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root_dir, path.lstrip('/')))
        if not full.startswith(self.root_dir + os.sep) and full != self.root_dir:
            raise ValueError(f"Path escapes storage root: {path}")
        return full

    def upload(self, path: str, data: bytes, content_type: str = 'application/json'):
        full = self._full_path(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        tmp = full + '.tmp'
        with open(tmp, 'wb') as f:
            f.write(data)
        os.replace(tmp, full)

    def download(self, path: str) -> bytes:
        try:
            with open(self._full_path(path), 'rb') as f:
                return f.read()
        except FileNotFoundError:
            raise BlobNotFoundError(path)

    def list(self, prefix: str) -> List[BlobEntry]:
        entries = []
        for dirpath, _, filenames in os.walk(self.root_dir):
            for filename in filenames:
                full = os.path.join(dirpath, filename)
                name = os.path.relpath(full, self.root_dir).replace(os.sep, '/')
                if name.startswith(prefix):
                    entries.append(BlobEntry(name=name, size=os.path.getsize(full)))
        return sorted(entries, key=lambda e: e.name)

    def delete(self, path: str) -> bool:
        try:
            os.remove(self._full_path(path))
            return True
        except FileNotFoundError:
            return False


class InMemoryBlobStore(BlobStore):
    """Thread-safe dict-backed blob store."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.download_count = 0

    def upload(self, path: str, data: bytes, content_type: str = 'application/json'):
        with self._lock:
            self._blobs[path] = bytes(data)

    def download(self, path: str) -> bytes:
        with self._lock:
            self.download_count += 1
            if path not in self._blobs:
                raise BlobNotFoundError(path)
            return self._blobs[path]

    def list(self, prefix: str) -> List[BlobEntry]:
        with self._lock:
            return [
                BlobEntry(name=name, size=len(data))
                for name, data in sorted(self._blobs.items())
                if name.startswith(prefix)
            ]

    def delete(self, path: str) -> bool:
        with self._lock:
            return self._blobs.pop(path, None) is not None

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._blobs


def create_blob_store(config) -> BlobStore:
    """Build the blob store selected by ``config.storage_backend``."""
    if config.storage_backend == 'gcs':
        return GCSBlobStore(config.gcs_bucket, project_id=config.bq_project_id)
    if config.storage_backend == 'local':
        return LocalBlobStore(config.local_storage_dir)
    return InMemoryBlobStore()
