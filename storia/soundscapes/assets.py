# soundscapes/assets.py
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import requests

from storia.errors import ResourceNotFoundError, RetryExhaustedError, StorageFailureError
from storia.retry import RetryPolicy, call_with_retry
from storia.storage.models import SourceType

logger = logging.getLogger(__name__)

_CONTENT_TYPES = {
    "mp3":  "audio/mpeg",
    "wav":  "audio/wav",
    "ogg":  "audio/ogg",
    "m4a":  "audio/mp4",
    "aac":  "audio/aac",
    "flac": "audio/flac",
    "webm": "audio/webm",
}

# Un fallo de almacenamiento se reintenta una sola vez
_STORAGE_RETRY = RetryPolicy(max_attempts=2, base_delay=0.5, jitter=0.0)


def asset_key(source_type: SourceType, scene_id: int | str, extension: str = "mp3") -> str:
    """Esquema estable de claves: audio/{curated|generated}/{scene_id}.{ext}"""
    return f"audio/{source_type.value}/{scene_id}.{extension.lstrip('.').lower()}"


def content_type_for(key: str) -> str:
    extension = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    return _CONTENT_TYPES.get(extension, "application/octet-stream")


class AssetStorage(ABC):
    """
    Almacenamiento durable de audio.
    put/get/delete reintentan una vez ante StorageFailureError y luego lo propagan.
    Un asset inexistente es ResourceNotFoundError y no se reintenta.
    """

    retry_policy: RetryPolicy = _STORAGE_RETRY

    def put(self, data: bytes, key: str) -> str:
        """Sube los bytes y devuelve la URL pública bajo nuestro namespace."""
        self._with_retry(lambda: self._put(data, key), f"put {key}")
        logger.info("Asset subido: %s (%d bytes)", key, len(data))
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        return self._with_retry(lambda: self._get(key), f"get {key}")

    def delete(self, key: str) -> None:
        self._with_retry(lambda: self._delete(key), f"delete {key}")
        logger.info("Asset borrado: %s", key)

    @abstractmethod
    def url_for(self, key: str) -> str:
        ...

    @abstractmethod
    def key_for_url(self, url: str) -> Optional[str]:
        """Inverso de url_for. None si la URL no es de este almacenamiento."""
        ...

    def owns(self, url: str) -> bool:
        return self.key_for_url(url) is not None

    @abstractmethod
    def _put(self, data: bytes, key: str) -> None: ...

    @abstractmethod
    def _get(self, key: str) -> bytes: ...

    @abstractmethod
    def _delete(self, key: str) -> None: ...

    def _with_retry(self, func, label: str):
        try:
            return call_with_retry(
                func,
                policy   = self.retry_policy,
                retry_on = (StorageFailureError,),
                label    = label,
            )
        except RetryExhaustedError as e:
            raise StorageFailureError(f"{label}: {e.last_error}") from e.last_error


# ------------------------------------------------------------------
# Sistema de archivos local
# ------------------------------------------------------------------

class LocalAssetStorage(AssetStorage):
    """
    Guarda los assets bajo root. Si hay public_base_url las URLs salen
    de ahí (ej. un servidor estático); si no, son file:// absolutas.
    """

    def __init__(self, root: str | Path, public_base_url: Optional[str] = None):
        self._root = Path(root).expanduser().resolve()
        self._base = public_base_url.rstrip("/") if public_base_url else None

    def url_for(self, key: str) -> str:
        if self._base:
            return f"{self._base}/{key}"
        return (self._root / key).as_uri()

    def key_for_url(self, url: str) -> Optional[str]:
        prefix = f"{self._base}/" if self._base else self._root.as_uri() + "/"
        if url.startswith(prefix):
            return url[len(prefix):]
        return None

    def _put(self, data: bytes, key: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageFailureError(f"No se pudo escribir {path}: {e}") from e

    def _get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise ResourceNotFoundError(f"Asset inexistente: {key}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageFailureError(f"No se pudo leer {path}: {e}") from e

    def _delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageFailureError(f"No se pudo borrar {path}: {e}") from e

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise StorageFailureError(f"Clave fuera del almacenamiento: {key}")
        return path


# ------------------------------------------------------------------
# Supabase Storage (API REST)
# ------------------------------------------------------------------

class SupabaseAssetStorage(AssetStorage):

    def __init__(
        self,
        url:              str,
        service_role_key: str,
        bucket:           str   = "storia-storage",
        timeout_seconds:  float = 60.0,
        session:          Optional[requests.Session] = None,
    ):
        if not url or not service_role_key:
            raise ValueError("Supabase necesita url y service_role_key")
        self._url     = url.rstrip("/")
        self._bucket  = bucket
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._headers = {
            "Authorization": f"Bearer {service_role_key}",
            "apikey":        service_role_key,
        }

    def url_for(self, key: str) -> str:
        return f"{self._url}/storage/v1/object/public/{self._bucket}/{key}"

    def key_for_url(self, url: str) -> Optional[str]:
        prefix = f"{self._url}/storage/v1/object/public/{self._bucket}/"
        if url.startswith(prefix):
            return url[len(prefix):]
        return None

    def _put(self, data: bytes, key: str) -> None:
        headers = {
            **self._headers,
            "Content-Type": content_type_for(key),
            "x-upsert":     "true",
        }
        response = self._request("post", key, headers=headers, data=data)
        if response.status_code not in (200, 201):
            raise StorageFailureError(
                f"Supabase rechazó la subida de {key}: {response.status_code} {response.text}"
            )

    def _get(self, key: str) -> bytes:
        response = self._request("get", key, headers=self._headers)
        if response.status_code in (400, 404):
            raise ResourceNotFoundError(f"Asset inexistente en Supabase: {key}")
        if response.status_code != 200:
            raise StorageFailureError(
                f"Supabase falló al descargar {key}: {response.status_code}"
            )
        return response.content

    def _delete(self, key: str) -> None:
        response = self._request("delete", key, headers=self._headers)
        if response.status_code not in (200, 204, 404):
            raise StorageFailureError(
                f"Supabase falló al borrar {key}: {response.status_code} {response.text}"
            )

    def _request(self, method: str, key: str, **kwargs) -> requests.Response:
        endpoint = f"{self._url}/storage/v1/object/{self._bucket}/{key}"
        try:
            return self._session.request(method, endpoint, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            raise StorageFailureError(f"Supabase {method.upper()} {key}: {e}") from e
