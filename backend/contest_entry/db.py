from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import StorageUnavailable


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:3000"
    PUBLIC_BASE_URL: str = "http://localhost:3000"

    STORAGE_BACKEND: Literal["memory", "file", "azure"] = "file"
    DATA_DIR: str = "data"
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "contest-entries"

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    ENTRY_FEE_CENTS: int = 500
    ENTRY_CURRENCY: str = "usd"
    ENTRY_PRODUCT_NAME: str = "Contest Entry"

    TRIVIA_CONTEST_NAME: str = "Trivia Contest"
    TRIVIA_EXPOSE_ANSWERS: bool = False
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 15.0
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

ENTRIES_KEY = "entries.json"
UPLOADS_KEY = "uploads.json"
TRIVIA_KEY = "trivia-contest.json"
UPLOADS_PREFIX = "uploads/"

logger = structlog.get_logger().bind(component="blob_store")


def dump_document(collection: Any) -> bytes:
    return json.dumps(collection, indent=2, ensure_ascii=False).encode("utf-8")


def parse_document(key: str, raw: bytes) -> Any:
    """Decode a stored document, treating unreadable content as empty."""

    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.warning("document_malformed", key=key)
        return []


async def run_blocking(func: Callable[..., Any], *args: Any, timeout: float | None = None, **kwargs: Any) -> Any:
    """Run a blocking call in a worker thread, bounded by the external call timeout."""

    if timeout is None:
        timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
    return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)


class InMemoryBlobStore:
    """Blob store kept in process memory. Used by tests and local runs."""

    def __init__(self):
        self._documents: Dict[str, bytes] = {}
        self.files: Dict[str, tuple[bytes, Optional[str]]] = {}

    async def load(self, key: str) -> Any:
        raw = self._documents.get(key)
        if raw is None:
            return []
        return parse_document(key, raw)

    async def save(self, key: str, collection: Any) -> None:
        self._documents[key] = dump_document(collection)

    async def put_file(self, name: str, content: bytes, content_type: str | None = None) -> str:
        path = f"{UPLOADS_PREFIX}{name}"
        self.files[path] = (content, content_type)
        return path

    async def file_url(self, name: str) -> str:
        return f"{UPLOADS_PREFIX}{name}"


class FileBlobStore:
    """Blob store backed by a directory on the local filesystem."""

    def __init__(self, root: str | os.PathLike[str]):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / key

    def _read(self, key: str) -> Optional[bytes]:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    async def load(self, key: str) -> Any:
        try:
            raw = await run_blocking(self._read, key)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.error("document_load_failed", key=key, error=str(exc))
            raise StorageUnavailable(f"Could not read {key}") from exc
        if raw is None:
            return []
        return parse_document(key, raw)

    async def save(self, key: str, collection: Any) -> None:
        try:
            await run_blocking(self._write, self._path(key), dump_document(collection))
        except (OSError, asyncio.TimeoutError) as exc:
            logger.error("document_save_failed", key=key, error=str(exc))
            raise StorageUnavailable(f"Could not write {key}") from exc

    async def put_file(self, name: str, content: bytes, content_type: str | None = None) -> str:
        path = self._path(f"{UPLOADS_PREFIX}{name}")
        try:
            await run_blocking(self._write, path, content)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.error("file_store_failed", name=name, error=str(exc))
            raise StorageUnavailable("Upload failed") from exc
        return str(path)

    async def file_url(self, name: str) -> str:
        return str(self._path(f"{UPLOADS_PREFIX}{name}"))


class JsonCollection:
    """A JSON array document whose read-modify-write cycles are serialised."""

    def __init__(self, store: Any, key: str):
        self.store = store
        self.key = key
        self._lock = asyncio.Lock()

    async def _load_list(self) -> List[Dict[str, Any]]:
        doc = await self.store.load(self.key)
        if not isinstance(doc, list):
            logger.warning("document_not_a_list", key=self.key)
            return []
        return doc

    async def read(self) -> List[Dict[str, Any]]:
        async with self._lock:
            return copy.deepcopy(await self._load_list())

    async def update(self, mutate: Callable[[List[Dict[str, Any]]], Awaitable[Any] | Any]) -> Any:
        """Load the collection, apply ``mutate`` in place and save it.

        ``mutate`` returns a result for the caller; returning ``False``
        skips the write.
        """

        async with self._lock:
            docs = await self._load_list()
            result = mutate(docs)
            if asyncio.iscoroutine(result):
                result = await result
            if result is not False:
                await self.store.save(self.key, docs)
            return result
