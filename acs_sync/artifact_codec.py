"""
Chunked artifact codec.

Per-template datasets are stored either as a direct JSON array at
``{snapshot_id}/{sanitized_template_id}.json`` or, above the chunk size, as a
manifest at that same path referencing sibling chunk files:

    {
        "template_id": "...",
        "snapshot_id": "...",
        "totalEntries": 12000,
        "totalChunks": 3,
        "chunks": [{"index": 0, "path": ".../x.chunk-0000.json", "entryCount": 5000}, ...]
    }

Decoding also accepts the older shapes found in existing buckets:
``{storagePath, contractCount, chunkIndex}`` descriptors, a bare
``chunk_paths`` list, relative chunk paths, ``{metadata, data}`` wrappers and
``{contracts: [...]}`` objects.
"""

import json
import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .blob_store import BlobStore
from .concurrency import BoundedScheduler
from .errors import BlobNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5000


def sanitize_template_id(template_id: str) -> str:
    return re.sub(r'[:.]', '_', template_id or 'unknown')


def artifact_path(snapshot_id: str, template_id: str) -> str:
    return f"{snapshot_id}/{sanitize_template_id(template_id)}.json"


def chunk_path(snapshot_id: str, template_id: str, index: int) -> str:
    return f"{snapshot_id}/{sanitize_template_id(template_id)}.chunk-{index:04d}.json"


def _dumps(data: Any) -> bytes:
    return json.dumps(data, separators=(',', ':'), default=str).encode('utf-8')


@dataclass
class ChunkDescriptor:
    index: int
    path: str
    entry_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'index': self.index, 'path': self.path, 'entryCount': self.entry_count}


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def is_manifest(body: Any) -> bool:
    return isinstance(body, dict) and ('chunks' in body or 'chunk_paths' in body)


def _resolve(path: str, manifest_path: str) -> str:
    """Chunk paths without a directory are relative to the manifest's directory."""
    path = path.strip()
    if path.startswith('./'):
        path = path[2:]
    if '/' in path:
        return path.lstrip('/')
    base = posixpath.dirname(manifest_path)
    return f"{base}/{path}" if base else path


def normalize_chunk_descriptors(manifest: Dict[str, Any], manifest_path: str) -> List[ChunkDescriptor]:
    """
    Merge every chunk reference in a manifest into one ordered, de-duplicated list.

    Descriptors lacking a usable path are dropped with a warning.
    """
    raw: List[Any] = []
    if isinstance(manifest.get('chunks'), list):
        raw.extend(manifest['chunks'])
    if isinstance(manifest.get('chunk_paths'), list):
        raw.extend(manifest['chunk_paths'])

    by_path: Dict[str, ChunkDescriptor] = {}
    for position, item in enumerate(raw):
        if isinstance(item, str):
            path, count, index = item, None, position
        elif isinstance(item, dict):
            path = item.get('path') or item.get('storagePath')
            count = item.get('entryCount', item.get('contractCount', item.get('count')))
            index = item.get('index', item.get('chunkIndex', position))
        else:
            path = None
        if not path or not isinstance(path, str):
            logger.warning(f"Skipping chunk descriptor without path in {manifest_path}: {item!r}")
            continue

        resolved = _resolve(path, manifest_path)
        if resolved in by_path:
            existing = by_path[resolved]
            if existing.entry_count is None and count is not None:
                existing.entry_count = _as_int(count)
            continue
        index = _as_int(index)
        if index is None:
            index = position
        by_path[resolved] = ChunkDescriptor(
            index=index,
            path=resolved,
            entry_count=_as_int(count),
        )

    return sorted(by_path.values(), key=lambda d: d.index)


def _records_from_body(body: Any, path: str) -> List[Dict[str, Any]]:
    """Entries of a direct-array artifact or chunk, in any of the historical shapes."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in ('data', 'contracts', 'entries'):
            if isinstance(body.get(key), list):
                return body[key]
    logger.warning(f"Unrecognized artifact shape at {path}; treating as empty")
    return []


class ArtifactCodec:
    """Reads and writes per-template artifacts in a blob store."""

    def __init__(
        self,
        blob_store: BlobStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        scheduler: Optional[BoundedScheduler] = None
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.blob_store = blob_store
        self.chunk_size = chunk_size
        self.scheduler = scheduler or BoundedScheduler()

    # ========== Encoding ==========

    def encode(
        self,
        datasets_by_template: Dict[str, List[Dict[str, Any]]],
        snapshot_id: str
    ) -> Dict[str, str]:
        """Write every dataset; returns template_id -> artifact path."""
        return {
            template_id: self.write_dataset(snapshot_id, template_id, records)
            for template_id, records in datasets_by_template.items()
        }

    def write_dataset(self, snapshot_id: str, template_id: str, records: List[Dict[str, Any]]) -> str:
        writer = ChunkedArtifactWriter(self.blob_store, snapshot_id, template_id, self.chunk_size)
        writer.extend(records)
        return writer.finalize()

    # ========== Decoding ==========

    def read_body(self, path: str) -> Any:
        """Download and parse one JSON blob; None if missing or unparseable."""
        try:
            data = self.blob_store.download(path)
        except BlobNotFoundError:
            logger.warning(f"Artifact not found: {path}")
            return None
        try:
            return json.loads(data)
        except ValueError as e:
            logger.warning(f"Could not parse artifact {path}: {e}")
            return None

    def _load_chunk(self, descriptor: ChunkDescriptor) -> List[Dict[str, Any]]:
        body = self.read_body(descriptor.path)
        if body is None:
            return []
        records = _records_from_body(body, descriptor.path)
        if descriptor.entry_count is not None and len(records) != descriptor.entry_count:
            logger.warning(
                f"Chunk {descriptor.index} at {descriptor.path} has {len(records)} entries "
                f"(manifest says {descriptor.entry_count})"
            )
        return records

    def iter_chunks(self, path: str, start_chunk: int = 0) -> Iterator[List[Dict[str, Any]]]:
        """
        Yield the artifact's entries one chunk at a time.

        A direct array is a single chunk. Manifest chunks are downloaded with
        bounded concurrency and yielded in manifest order; at most
        ``max_concurrency`` chunks are held in memory at once. Iteration can be
        restarted from any chunk index with ``start_chunk``.
        """
        body = self.read_body(path)
        if body is None:
            return
        if not is_manifest(body):
            if start_chunk == 0:
                yield _records_from_body(body, path)
            return

        descriptors = normalize_chunk_descriptors(body, path)
        declared = _as_int(body.get('totalEntries', body.get('entry_count')))
        if declared is None and descriptors and all(d.entry_count is not None for d in descriptors):
            declared = sum(d.entry_count for d in descriptors)

        total = 0
        for records in self.scheduler.imap(self._load_chunk, descriptors[start_chunk:], ordered=True):
            total += len(records)
            yield records

        if start_chunk == 0 and declared is not None and total != declared:
            logger.warning(f"Manifest {path} declares {declared} entries but chunks held {total}")

    def decode(self, path: str, start_chunk: int = 0) -> Iterator[Dict[str, Any]]:
        """Lazily yield every entry of the artifact at ``path``."""
        for records in self.iter_chunks(path, start_chunk=start_chunk):
            yield from records

    def load(self, path: str) -> List[Dict[str, Any]]:
        return list(self.decode(path))

    def chunk_count(self, path: str) -> int:
        body = self.read_body(path)
        if body is None:
            return 0
        return len(normalize_chunk_descriptors(body, path)) if is_manifest(body) else 1

    def delete_artifact(self, path: str) -> int:
        """Delete an artifact and any chunks its manifest references."""
        deleted = 0
        body = self.read_body(path)
        if is_manifest(body):
            for descriptor in normalize_chunk_descriptors(body, path):
                deleted += int(self.blob_store.delete(descriptor.path))
        deleted += int(self.blob_store.delete(path))
        return deleted


class ChunkedArtifactWriter:
    """
    Incremental writer for one template's artifact.

    Full chunks are uploaded as soon as they fill. ``checkpoint()`` also
    uploads the partial buffer and rewrites the manifest, so everything
    appended so far is durable and listed. ``finalize()`` writes a direct
    array when nothing was ever chunked and the data fits in one chunk.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        snapshot_id: str,
        template_id: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunks: Optional[List[ChunkDescriptor]] = None
    ):
        self.blob_store = blob_store
        self.snapshot_id = snapshot_id
        self.template_id = template_id
        self.chunk_size = chunk_size
        self.path = artifact_path(snapshot_id, template_id)
        self.chunks: List[ChunkDescriptor] = list(chunks or [])
        self.buffer: List[Dict[str, Any]] = []

    @classmethod
    def resume(
        cls,
        blob_store: BlobStore,
        snapshot_id: str,
        template_id: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> 'ChunkedArtifactWriter':
        """
        Reopen a checkpointed artifact.

        Only chunks listed in the manifest are kept; chunk files written after
        the last checkpoint are overwritten as the writer continues.
        """
        chunks: List[ChunkDescriptor] = []
        path = artifact_path(snapshot_id, template_id)
        try:
            body = json.loads(blob_store.download(path))
        except BlobNotFoundError:
            body = None
        except ValueError as e:
            logger.warning(f"Discarding unreadable manifest {path}: {e}")
            body = None
        if is_manifest(body):
            chunks = normalize_chunk_descriptors(body, path)
        return cls(blob_store, snapshot_id, template_id, chunk_size, chunks=chunks)

    @property
    def total_entries(self) -> int:
        return sum(c.entry_count or 0 for c in self.chunks) + len(self.buffer)

    def append(self, record: Dict[str, Any]):
        # a dataset of exactly chunk_size entries still fits a direct array
        if len(self.buffer) >= self.chunk_size:
            self._flush_chunk()
        self.buffer.append(record)

    def extend(self, records: Iterable[Dict[str, Any]]):
        for record in records:
            self.append(record)

    def _flush_chunk(self):
        if not self.buffer:
            return
        index = len(self.chunks)
        path = chunk_path(self.snapshot_id, self.template_id, index)
        self.blob_store.upload(path, _dumps(self.buffer))
        self.chunks.append(ChunkDescriptor(index=index, path=path, entry_count=len(self.buffer)))
        self.buffer = []

    def _write_manifest(self):
        manifest = {
            'template_id': self.template_id,
            'snapshot_id': self.snapshot_id,
            'totalEntries': sum(c.entry_count or 0 for c in self.chunks),
            'totalChunks': len(self.chunks),
            'chunks': [c.to_dict() for c in self.chunks],
        }
        self.blob_store.upload(self.path, _dumps(manifest))

    def checkpoint(self):
        self._flush_chunk()
        self._write_manifest()

    def finalize(self) -> str:
        """Write the final artifact and return its path."""
        if not self.chunks and len(self.buffer) <= self.chunk_size:
            self.blob_store.upload(self.path, _dumps(self.buffer))
            logger.debug(f"Wrote {len(self.buffer)} entries to {self.path}")
            self.buffer = []
            return self.path
        self.checkpoint()
        logger.debug(f"Wrote manifest {self.path} ({len(self.chunks)} chunks)")
        return self.path
