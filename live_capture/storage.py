"""Object storage backends for captured screenshots."""

from __future__ import annotations

import logging
import re
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional, Protocol
from urllib.parse import quote

import httpx

from .config import ObjectStorageConfig

LOGGER = logging.getLogger(__name__)

_BEARER_RE = re.compile(r"(Bearer\s+)[^\s'\"]+")


class StorageWriteError(RuntimeError):
    """Raised when an object cannot be uploaded or removed."""


def _mask_secret(text: str) -> str:
    return _BEARER_RE.sub(r"\1<redacted>", text)


class ObjectStorage(Protocol):
    def upload(self, path: str, data: bytes, content_type: str = "image/png") -> str:
        ...

    def remove(self, paths: Iterable[str]) -> int:
        ...

    def close(self) -> None:
        ...


def _relative_object_path(path: str) -> PurePosixPath:
    relative = PurePosixPath(path.lstrip("/"))
    if not relative.parts or ".." in relative.parts:
        raise StorageWriteError(f"Invalid object path {path!r}")
    return relative


class LocalObjectStorage:
    """Store objects as files under a volume root."""

    def __init__(self, root: Path, public_base_url: Optional[str] = None) -> None:
        self._root = root
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _target(self, path: str) -> Path:
        return self._root.joinpath(*_relative_object_path(path).parts)

    def public_url(self, path: str) -> str:
        relative = _relative_object_path(path).as_posix()
        if self._public_base_url:
            return f"{self._public_base_url}/{quote(relative)}"
        return self._target(path).resolve().as_uri()

    def upload(self, path: str, data: bytes, content_type: str = "image/png") -> str:
        target = self._target(path)
        if target.exists():
            raise StorageWriteError(f"Object {path} already exists")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageWriteError(f"Failed to write {path}: {exc}") from exc
        LOGGER.debug("Stored %d bytes at %s", len(data), target)
        return self.public_url(path)

    def remove(self, paths: Iterable[str]) -> int:
        removed = 0
        for path in paths:
            target = self._target(path)
            try:
                target.unlink()
            except FileNotFoundError:
                LOGGER.debug("Object %s already absent", path)
                continue
            except OSError as exc:
                raise StorageWriteError(f"Failed to remove {path}: {exc}") from exc
            removed += 1
        return removed

    def close(self) -> None:
        return None


class SupabaseObjectStorage:
    """Upload objects to a Supabase Storage bucket through its REST API."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str = "screenshots",
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._bucket = bucket
        self._client = client or httpx.Client(
            timeout=timeout,
            headers={"Authorization": f"Bearer {service_key}", "apikey": service_key},
        )
        self._owns_client = client is None

    def _object_url(self, path: str) -> str:
        relative = quote(_relative_object_path(path).as_posix())
        return f"{self._base_url}/storage/v1/object/{self._bucket}/{relative}"

    def public_url(self, path: str) -> str:
        relative = quote(_relative_object_path(path).as_posix())
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{relative}"

    def upload(self, path: str, data: bytes, content_type: str = "image/png") -> str:
        try:
            response = self._client.post(
                self._object_url(path),
                content=data,
                headers={"Content-Type": content_type, "x-upsert": "false"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise StorageWriteError(f"Upload of {path} failed: {_mask_secret(str(exc))}") from exc
        public_url = self.public_url(path)
        LOGGER.info("Upload successful: %s", public_url)
        return public_url

    def remove(self, paths: Iterable[str]) -> int:
        prefixes = [_relative_object_path(path).as_posix() for path in paths]
        if not prefixes:
            return 0
        try:
            response = self._client.request(
                "DELETE",
                f"{self._base_url}/storage/v1/object/{self._bucket}",
                json={"prefixes": prefixes},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise StorageWriteError(f"Removal of {len(prefixes)} objects failed: {_mask_secret(str(exc))}") from exc
        return len(prefixes)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def build_object_storage(config: ObjectStorageConfig) -> ObjectStorage:
    if config.backend == "supabase":
        if not config.supabase_url or not config.supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the supabase backend")
        return SupabaseObjectStorage(
            config.supabase_url,
            config.supabase_key,
            config.bucket,
            timeout=config.timeout,
        )
    if config.backend == "local":
        return LocalObjectStorage(config.root, config.public_base_url)
    raise ValueError(f"Unsupported object storage backend {config.backend!r}")


__all__ = [
    "LocalObjectStorage",
    "ObjectStorage",
    "StorageWriteError",
    "SupabaseObjectStorage",
    "build_object_storage",
]
