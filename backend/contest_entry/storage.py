from __future__ import annotations

import asyncio
import mimetypes
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from .db import (
    UPLOADS_PREFIX,
    FileBlobStore,
    InMemoryBlobStore,
    dump_document,
    parse_document,
    run_blocking,
    settings,
)
from .errors import StorageUnavailable

logger = structlog.get_logger().bind(component="azure_blob_store")

_blob_service_client: BlobServiceClient | None = None


def _get_blob_service() -> BlobServiceClient:
    global _blob_service_client
    if _blob_service_client is None:
        if not settings.AZURE_STORAGE_CONNECTION_STRING:
            raise RuntimeError("Azure Blob Storage is not configured")
        _blob_service_client = BlobServiceClient.from_connection_string(
            settings.AZURE_STORAGE_CONNECTION_STRING
        )
    return _blob_service_client


class AzureBlobStore:
    """JSON documents and uploaded files kept in one private Azure container."""

    def __init__(self, container_name: str | None = None):
        self.container_name = container_name or settings.AZURE_STORAGE_CONTAINER
        self._container_initialised = False

    def _container(self):
        return _get_blob_service().get_container_client(self.container_name)

    async def _ensure_container(self, container_client) -> None:
        if self._container_initialised:
            return
        try:
            await run_blocking(container_client.create_container)
        except ResourceExistsError:
            pass
        self._container_initialised = True

    async def load(self, key: str) -> Any:
        blob_client = self._container().get_blob_client(key)
        try:
            downloader = await run_blocking(blob_client.download_blob)
            raw = await run_blocking(downloader.readall)
        except ResourceNotFoundError:
            return []
        except (AzureError, asyncio.TimeoutError) as exc:
            logger.error("document_load_failed", key=key, error=str(exc))
            raise StorageUnavailable(f"Could not read {key}") from exc
        return parse_document(key, raw)

    async def save(self, key: str, collection: Any) -> None:
        await self._upload(key, dump_document(collection), "application/json")

    async def put_file(self, name: str, content: bytes, content_type: str | None = None) -> str:
        guessed_type = content_type or mimetypes.guess_type(name)[0]
        return await self._upload(f"{UPLOADS_PREFIX}{name}", content, guessed_type)

    async def _upload(self, blob_name: str, content: bytes, content_type: str | None) -> str:
        container_client = self._container()
        settings_kwargs = {}
        if content_type:
            settings_kwargs["content_settings"] = ContentSettings(content_type=content_type)
        try:
            await self._ensure_container(container_client)
            blob_client = container_client.get_blob_client(blob_name)
            await run_blocking(blob_client.upload_blob, content, overwrite=True, **settings_kwargs)
        except (AzureError, asyncio.TimeoutError) as exc:
            logger.error("blob_upload_failed", blob=blob_name, error=str(exc))
            raise StorageUnavailable(f"Could not write {blob_name}") from exc
        return blob_client.url

    async def file_url(self, name: str) -> str:
        service = _get_blob_service()
        blob_name = f"{UPLOADS_PREFIX}{name}"
        blob_client = service.get_container_client(self.container_name).get_blob_client(blob_name)
        return await _build_private_blob_url(service, self.container_name, blob_name, blob_client.url)


async def _build_private_blob_url(
    service: BlobServiceClient, container_name: str, blob_name: str, base_url: str
) -> str:
    now = datetime.now(timezone.utc)
    expiry = now + timedelta(minutes=15)
    permissions = BlobSasPermissions(read=True)

    credential = getattr(service, "credential", None)

    if isinstance(credential, TokenCredential):
        try:
            delegation_key = await run_blocking(service.get_user_delegation_key, now, expiry)
        except (AzureError, asyncio.TimeoutError) as exc:
            logger.error("delegation_key_failed", blob=blob_name, error=str(exc))
            raise StorageUnavailable(f"Could not sign {blob_name}") from exc
        sas_token = generate_blob_sas(
            account_name=service.account_name,
            container_name=container_name,
            blob_name=blob_name,
            user_delegation_key=delegation_key,
            permission=permissions,
            expiry=expiry,
        )
    elif credential is not None:
        sas_token = generate_blob_sas(
            account_name=service.account_name,
            container_name=container_name,
            blob_name=blob_name,
            account_key=getattr(credential, "account_key", credential),
            permission=permissions,
            expiry=expiry,
        )
    else:
        raise RuntimeError("Azure Blob Storage credential is required for SAS generation")

    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{sas_token}"


def build_blob_store():
    if settings.STORAGE_BACKEND == "azure":
        return AzureBlobStore()
    if settings.STORAGE_BACKEND == "memory":
        return InMemoryBlobStore()
    return FileBlobStore(settings.DATA_DIR)


blob_store: Any = build_blob_store()
