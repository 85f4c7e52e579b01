"""
FastAPI Artifact Server
=======================
Blob service that lets the publisher and the worker exchange artifacts
over HTTP (the HttpArtifactStore is its client).

Endpoints:
- PUT /artifacts/{key} - Store a blob (201; 409 if the key already exists)
- GET /artifacts/{key} - Fetch a blob (404 if missing)
- HEAD /artifacts/{key} - Existence check
- DELETE /artifacts/{key} - Remove a blob
- GET /artifacts - List stored keys
- GET /status - Server status

The server treats payloads as opaque bytes; record decoding and checksum
checks happen in the clients.
"""

import hashlib
import threading
from datetime import datetime
from typing import Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from pydantic import BaseModel

from ..core.artifact_store import ArtifactStore, DirectoryArtifactStore, MemoryArtifactStore
from ..core.errors import ArtifactOverwrite, ConfigurationError, StoreUnavailable


class ArtifactReceipt(BaseModel):
    """Response for a stored artifact"""
    key: str
    size_bytes: int
    sha256: str
    stored_at: str


class ArtifactList(BaseModel):
    keys: List[str]


class ServerStatus(BaseModel):
    """Server status"""
    backend: str
    artifact_count: int
    started_at: str
    requests: Dict[str, int]


class ArtifactServer:
    """
    Holds the backing store and request counters.

    Every backend key is used verbatim: the server's store has an empty
    name mapping, clients resolve logical names themselves.
    """

    def __init__(self, store: Optional[ArtifactStore] = None):
        self.store = store or MemoryArtifactStore()
        self.started_at = datetime.now().isoformat()
        self.requests = {'put': 0, 'get': 0, 'head': 0, 'delete': 0, 'list': 0}
        # FastAPI runs sync endpoints in a thread pool
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> ArtifactReceipt:
        with self._lock:
            self.requests['put'] += 1
            self.store.put(key, data)
        return ArtifactReceipt(
            key=key,
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            stored_at=datetime.now().isoformat()
        )

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            self.requests['get'] += 1
            if not self.store.exists(key):
                return None
            return self.store.get(key)

    def exists(self, key: str) -> bool:
        with self._lock:
            self.requests['head'] += 1
            return self.store.exists(key)

    def delete(self, key: str) -> bool:
        with self._lock:
            self.requests['delete'] += 1
            return self.store.delete(key)

    def keys(self) -> List[str]:
        with self._lock:
            self.requests['list'] += 1
            return self.store.names_present()

    def get_status(self) -> ServerStatus:
        with self._lock:
            return ServerStatus(
                backend=type(self.store).__name__,
                artifact_count=len(self.store.names_present()),
                started_at=self.started_at,
                requests=dict(self.requests)
            )


async def read_body(request: Request) -> bytes:
    """Request body, read on the event loop before the endpoint runs"""
    return await request.body()


def create_app(store: Optional[ArtifactStore] = None) -> FastAPI:
    """
    Build the FastAPI app around a backing store.

    Args:
        store: Backing store; defaults to an in-memory store
    """
    server = ArtifactServer(store)

    app = FastAPI(
        title="Argmin HE Artifact Server",
        description="Blob exchange for published homomorphic encryption artifacts",
        version="1.0.0"
    )
    app.state.server = server

    def _bad_key(e: ConfigurationError):
        raise HTTPException(status_code=400, detail=e.message)

    def _unavailable(e: StoreUnavailable):
        raise HTTPException(status_code=503, detail=e.message)

    @app.get("/status", response_model=ServerStatus)
    def get_status():
        """Get server status"""
        return server.get_status()

    @app.get("/artifacts", response_model=ArtifactList)
    def list_artifacts():
        """List stored keys"""
        return ArtifactList(keys=server.keys())

    @app.put("/artifacts/{key}", status_code=201, response_model=ArtifactReceipt)
    def put_artifact(key: str, data: bytes = Depends(read_body)):
        """Store a blob; a key can only be written once"""
        try:
            return server.put(key, data)
        except ArtifactOverwrite as e:
            raise HTTPException(status_code=409, detail=e.message)
        except ConfigurationError as e:
            _bad_key(e)
        except StoreUnavailable as e:
            _unavailable(e)

    @app.get("/artifacts/{key}")
    def get_artifact(key: str):
        """Fetch a blob"""
        try:
            data = server.get(key)
        except ConfigurationError as e:
            _bad_key(e)
        except StoreUnavailable as e:
            _unavailable(e)
        if data is None:
            raise HTTPException(status_code=404, detail=f"Artifact '{key}' not found")
        return Response(content=data, media_type="application/octet-stream")

    @app.head("/artifacts/{key}")
    def head_artifact(key: str):
        """Existence check"""
        try:
            found = server.exists(key)
        except ConfigurationError as e:
            _bad_key(e)
        except StoreUnavailable as e:
            _unavailable(e)
        return Response(status_code=200 if found else 404)

    @app.delete("/artifacts/{key}")
    def delete_artifact(key: str):
        """Remove a blob"""
        try:
            deleted = server.delete(key)
        except ConfigurationError as e:
            _bad_key(e)
        except StoreUnavailable as e:
            _unavailable(e)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"Artifact '{key}' not found")
        return {"deleted": key}

    return app


def run_server(host: str = "127.0.0.1", port: int = 8800, directory: Optional[str] = None):
    """Run the artifact server, backed by a directory if one is given"""
    store = DirectoryArtifactStore(directory) if directory else MemoryArtifactStore()
    uvicorn.run(create_app(store), host=host, port=port)


if __name__ == "__main__":
    run_server()
