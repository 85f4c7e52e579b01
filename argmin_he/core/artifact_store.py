"""
Artifact Store
==============
Named-blob persistence used to exchange cryptographic objects between the
publisher and the worker.

Contract:
- put(name, payload): write once; a second put to the same name is a
  protocol-logic error (ArtifactOverwrite)
- get(name): payload, or ArtifactMissing
- writes are atomic: a failed write never leaves a record under its final key
- records carry their declared type and a SHA-256 checksum; anything that
  does not decode, does not match its checksum, or has another declared type
  is ArtifactCorrupt

Backends:
- MemoryArtifactStore: in-process dict
- DirectoryArtifactStore: one file per artifact (serialized files side by side, as OpenFHE writes them)
- HttpArtifactStore: httpx client for the artifact server in argmin_he.server
"""

import base64
import binascii
import hashlib
import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from .engine import ArtifactKind
from .errors import (
    ArtifactCorrupt,
    ArtifactMissing,
    ArtifactOverwrite,
    ConfigurationError,
    StoreUnavailable,
)
from .parameters import ArtifactNames
from .security_logger import DataType


RECORD_FORMAT_VERSION = 1

# Audit classification of each artifact type
DATA_TYPES = {
    ArtifactKind.CRYPTO_CONTEXT: DataType.PUBLIC_KEY,
    ArtifactKind.PUBLIC_KEY: DataType.PUBLIC_KEY,
    ArtifactKind.MULT_KEY: DataType.PUBLIC_KEY,
    ArtifactKind.ROTATION_KEY: DataType.PUBLIC_KEY,
    ArtifactKind.SWITCH_KEY: DataType.PUBLIC_KEY,
    ArtifactKind.COMPARISON_CONTEXT: DataType.PUBLIC_KEY,
    ArtifactKind.REFRESH_KEY: DataType.PUBLIC_KEY,
    ArtifactKind.KEY_SWITCH_KEY: DataType.PUBLIC_KEY,
    ArtifactKind.CIPHERTEXT: DataType.CIPHERTEXT,
}


def _checksum(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


@dataclass
class ArtifactRecord:
    """
    A named, persisted cryptographic object.

    The payload is the engine's binary serialization; metadata carries what
    the protocol needs to check before handing the payload to the engine
    (baseG of a bundle, slot count and scheme of a ciphertext, key id).
    """
    name: str
    kind: ArtifactKind
    payload: bytes
    metadata: Dict[str, object] = field(default_factory=dict)
    checksum: str = ""
    created_at: str = ""

    def __post_init__(self):
        if not self.checksum:
            self.checksum = _checksum(self.payload)
        if not self.created_at:
            self.created_at = datetime.now().isoformat()

    def verify_checksum(self) -> bool:
        return _checksum(self.payload) == self.checksum

    def get_size_kb(self) -> float:
        return len(self.payload) / 1024

    def to_dict(self) -> dict:
        """Serialize to dictionary for transmission"""
        return {
            'version': RECORD_FORMAT_VERSION,
            'name': self.name,
            'kind': self.kind.value,
            'payload': base64.b64encode(self.payload).decode('utf-8'),
            'metadata': self.metadata,
            'checksum': self.checksum,
            'created_at': self.created_at
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ArtifactRecord':
        return cls(
            name=data['name'],
            kind=ArtifactKind(data['kind']),
            payload=base64.b64decode(data['payload'], validate=True),
            metadata=data.get('metadata', {}),
            checksum=data['checksum'],
            created_at=data.get('created_at', '')
        )

    def encode(self) -> bytes:
        return json.dumps(self.to_dict()).encode('utf-8')

    @classmethod
    def decode(cls, blob: bytes, name: str) -> 'ArtifactRecord':
        """
        Decode a stored blob.

        Raises:
            ArtifactCorrupt: If the blob is not a well-formed record or its
                checksum does not match the payload
        """
        try:
            data = json.loads(blob.decode('utf-8'))
            if data.get('version') != RECORD_FORMAT_VERSION:
                raise ValueError(f"unsupported record version {data.get('version')!r}")
            record = cls.from_dict(data)
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError,
                AttributeError, binascii.Error, ValueError) as e:
            raise ArtifactCorrupt(f"Cannot decode artifact record: {e}", artifact=name) from e

        if not record.verify_checksum():
            raise ArtifactCorrupt("Artifact checksum mismatch", artifact=name)
        if record.name != name:
            raise ArtifactCorrupt(
                f"Record stored under '{name}' declares name '{record.name}'",
                artifact=name
            )
        return record


class ArtifactStore(ABC):
    """
    Base class for artifact stores.

    Callers use logical names; the ArtifactNames mapping passed at startup
    resolves them to backend keys.
    """

    def __init__(self, names: Optional[ArtifactNames] = None):
        self.names = names or ArtifactNames()

    # ==================== BACKEND HOOKS ====================

    @abstractmethod
    def _write(self, key: str, data: bytes):
        """Atomically write data under key (key is known not to exist)"""

    @abstractmethod
    def _read(self, key: str) -> Optional[bytes]:
        """Return data for key, or None if absent"""

    @abstractmethod
    def _exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def _delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def _keys(self) -> List[str]:
        ...

    # ==================== RAW BLOBS ====================

    def put(self, name: str, payload: bytes):
        """
        Write a blob under a logical name.

        Raises:
            ArtifactOverwrite: If the name was already written
            StoreUnavailable: If the backend write failed
        """
        key = self.names.store_key(name)
        if self._exists(key):
            raise ArtifactOverwrite(f"Artifact '{name}' was already published", artifact=name)
        self._write(key, payload)

    def get(self, name: str) -> bytes:
        """
        Read a blob by logical name.

        Raises:
            ArtifactMissing: If nothing was written under the name
        """
        data = self._read(self.names.store_key(name))
        if data is None:
            raise ArtifactMissing(f"Artifact '{name}' not found in store", artifact=name)
        return data

    def exists(self, name: str) -> bool:
        return self._exists(self.names.store_key(name))

    def delete(self, name: str) -> bool:
        """Remove an artifact; returns False if it was absent"""
        return self._delete(self.names.store_key(name))

    def names_present(self) -> List[str]:
        """Logical names of every stored artifact"""
        return sorted(self.names.logical_name(k) for k in self._keys())

    def clear(self):
        """Discard every artifact (after protocol completion)"""
        for key in self._keys():
            self._delete(key)

    # ==================== RECORDS ====================

    def put_record(self, record: ArtifactRecord):
        self.put(record.name, record.encode())

    def get_record(self, name: str, kind: ArtifactKind) -> ArtifactRecord:
        """
        Read and validate a record.

        Raises:
            ArtifactMissing: If the name is absent
            ArtifactCorrupt: If the record does not decode or has another type
        """
        record = ArtifactRecord.decode(self.get(name), name)
        if record.kind != kind:
            raise ArtifactCorrupt(
                f"Artifact '{name}' declares type {record.kind.value}, expected {kind.value}",
                artifact=name
            )
        return record


class MemoryArtifactStore(ArtifactStore):
    """In-process store; payloads are stored only once fully materialised"""

    def __init__(self, names: Optional[ArtifactNames] = None):
        super().__init__(names)
        self._blobs: Dict[str, bytes] = {}

    def _write(self, key: str, data: bytes):
        self._blobs[key] = bytes(data)

    def _read(self, key: str) -> Optional[bytes]:
        return self._blobs.get(key)

    def _exists(self, key: str) -> bool:
        return key in self._blobs

    def _delete(self, key: str) -> bool:
        return self._blobs.pop(key, None) is not None

    def _keys(self) -> List[str]:
        return list(self._blobs)


class DirectoryArtifactStore(ArtifactStore):
    """
    One file per artifact inside a directory.

    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so a crashed write never shows up under its key.
    """

    SUFFIX = ".bin"

    def __init__(self, directory: str, names: Optional[ArtifactNames] = None):
        super().__init__(names)
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create store directory {self.directory}: {e}") from e

    def _path(self, key: str) -> Path:
        if not key or '/' in key or '\\' in key or key.startswith('.'):
            raise ConfigurationError(f"Invalid store key: {key!r}")
        return self.directory / f"{key}{self.SUFFIX}"

    def _write(self, key: str, data: bytes):
        path = self._path(key)
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(dir=self.directory, prefix=".tmp-",
                                             delete=False) as tmp:
                tmp_name = tmp.name
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StoreUnavailable(f"Failed to write {path}: {e}",
                                   artifact=self.names.logical_name(key)) from e

    def _read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreUnavailable(f"Failed to read {path}: {e}",
                                   artifact=self.names.logical_name(key)) from e

    def _exists(self, key: str) -> bool:
        return self._path(key).exists()

    def _delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def _keys(self) -> List[str]:
        return [p.name[:-len(self.SUFFIX)] for p in self.directory.glob(f"*{self.SUFFIX}")
                if not p.name.startswith('.')]


class HttpArtifactStore(ArtifactStore):
    """
    Client for the artifact server (argmin_he.server.artifact_server).

    Each call is a blocking request; the worker only starts loading once the
    publisher's PUTs have all returned.
    """

    def __init__(self,
                 base_url: str = "http://127.0.0.1:8800",
                 names: Optional[ArtifactNames] = None,
                 timeout: float = 30.0,
                 client: Optional[httpx.Client] = None):
        """
        Args:
            base_url: Root URL of the artifact server
            names: Logical name -> store key mapping
            timeout: Request timeout in seconds
            client: Pre-built httpx client (e.g. a FastAPI TestClient)
        """
        super().__init__(names)
        self.base_url = base_url.rstrip('/')
        self.client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def _request(self, method: str, key: Optional[str] = None, **kwargs) -> httpx.Response:
        url = "/artifacts" if key is None else f"/artifacts/{key}"
        try:
            return self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            artifact = self.names.logical_name(key) if key else None
            raise StoreUnavailable(f"{method} {url} failed: {e}", artifact=artifact) from e

    def _write(self, key: str, data: bytes):
        response = self._request("PUT", key, content=data,
                                 headers={'Content-Type': 'application/octet-stream'})
        if response.status_code == 409:
            name = self.names.logical_name(key)
            raise ArtifactOverwrite(f"Artifact '{name}' was already published", artifact=name)
        if response.status_code not in (200, 201):
            raise StoreUnavailable(
                f"PUT /artifacts/{key} returned {response.status_code}",
                artifact=self.names.logical_name(key)
            )

    def _read(self, key: str) -> Optional[bytes]:
        response = self._request("GET", key)
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise StoreUnavailable(
                f"GET /artifacts/{key} returned {response.status_code}",
                artifact=self.names.logical_name(key)
            )
        return response.content

    def _exists(self, key: str) -> bool:
        return self._request("HEAD", key).status_code == 200

    def _delete(self, key: str) -> bool:
        return self._request("DELETE", key).status_code == 200

    def _keys(self) -> List[str]:
        response = self._request("GET")
        if response.status_code != 200:
            raise StoreUnavailable(f"GET /artifacts returned {response.status_code}")
        return list(response.json()['keys'])

    def close(self):
        self.client.close()
