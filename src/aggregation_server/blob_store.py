"""
Content-addressed blob storage for model weights
"""
import asyncio
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Dict

import aiofiles

from .errors import BlobNotFoundError
from ..common.interfaces import BlobStore, ModelWeights

logger = logging.getLogger(__name__)

CID_PREFIX = "sha256-"


def content_id(data: bytes) -> str:
    """Content identifier of a byte string"""
    return CID_PREFIX + hashlib.sha256(data).hexdigest()


def serialize_weights(weights: ModelWeights) -> bytes:
    return json.dumps(weights.to_dict(), separators=(',', ':')).encode('utf-8')


def deserialize_weights(data: bytes) -> ModelWeights:
    return ModelWeights.from_dict(json.loads(data.decode('utf-8')))


class InMemoryBlobStore(BlobStore):
    """Blob store backed by a dict"""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    async def put(self, data: bytes) -> str:
        cid = content_id(data)
        self._blobs[cid] = bytes(data)
        return cid

    async def get(self, cid: str) -> bytes:
        try:
            return self._blobs[cid]
        except KeyError:
            raise BlobNotFoundError(cid)


class FileBlobStore(BlobStore):
    """Blob store writing one file per content id"""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, cid: str) -> Path:
        if not cid.startswith(CID_PREFIX) or not all(c in '0123456789abcdef' for c in cid[len(CID_PREFIX):]):
            raise BlobNotFoundError(cid)
        return self.directory / cid

    async def put(self, data: bytes) -> str:
        cid = content_id(data)
        path = self._path(cid)

        if path.exists():
            return cid

        temp_path = path.with_suffix('.tmp')
        async with aiofiles.open(temp_path, 'wb') as f:
            await f.write(data)
        await asyncio.to_thread(os.replace, temp_path, path)

        logger.debug(f"Stored blob {cid} ({len(data)} bytes)")
        return cid

    async def get(self, cid: str) -> bytes:
        path = self._path(cid)
        if not path.exists():
            raise BlobNotFoundError(cid)

        async with aiofiles.open(path, 'rb') as f:
            return await f.read()


def create_blob_store(storage_config):
    """Build the blob store selected by the storage config section, or None"""
    backend = storage_config.blob_backend.lower()

    if backend == 'none':
        return None
    if backend == 'memory':
        return InMemoryBlobStore()
    if backend == 'file':
        return FileBlobStore(storage_config.blob_directory)

    raise ValueError(f"Unknown blob backend: {storage_config.blob_backend}")
