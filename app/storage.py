import asyncio
import functools
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote

from dotenv import load_dotenv

from app.errors import UpstreamError

load_dotenv()

LOG = logging.getLogger(__name__)

EXTERNAL_CALL_TIMEOUT_SEC = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SEC", "30"))


@dataclass(frozen=True)
class NamedBlob:
    """An uploaded file, tagged with the form field it arrived under."""
    field_name: str
    filename: str
    content_type: str
    data: bytes


class ImageStore(Protocol):
    def upload(self, data: bytes, filename: str, content_type: str, user_id: str) -> str: ...

    def delete(self, url: str, user_id: str) -> bool: ...


def _extension(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in (filename or "") else ""
    ext = "".join(c for c in ext if c.isalnum())
    return ext or "jpg"


def _object_path(filename: str, user_id: str) -> str:
    return f"{user_id}/{uuid.uuid4()}.{_extension(filename)}"


def _owned_object(url: str, prefix: str, user_id: str) -> str | None:
    """<user_id>/<file> for a URL this store issued to user_id, else None."""
    if not url or not url.startswith(prefix):
        return None
    rel = unquote(url[len(prefix):].split("?", 1)[0].split("#", 1)[0])
    parts = rel.split("/")
    if len(parts) != 2 or parts[0] != user_id or parts[1] in ("", ".", ".."):
        return None
    return rel


class LocalImageStore:
    """Blobs on local disk, served by the app under /uploads."""

    def __init__(self, root: str | Path, base_url: str):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def upload(self, data: bytes, filename: str, content_type: str, user_id: str) -> str:
        rel = _object_path(filename, user_id)
        target = self.root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return f"{self.base_url}/uploads/{rel}"

    @property
    def url_prefix(self) -> str:
        return f"{self.base_url}/uploads/"

    def delete(self, url: str, user_id: str) -> bool:
        rel = _owned_object(url, self.url_prefix, user_id)
        if not rel:
            LOG.warning("refusing to delete image not owned by user %s: %s", user_id, url)
            return False
        target = (self.root / rel).resolve()
        if self.root not in target.parents:
            LOG.warning("refusing to delete image outside upload root: %s", url)
            return False
        try:
            target.unlink()
        except FileNotFoundError:
            LOG.warning("image already gone: %s", url)
            return False
        except OSError as e:
            LOG.warning("error deleting image %s: %s", url, e)
            return False
        return True

    def resolve_link(self, uri: str, rel: str | None = None) -> str:
        """xhtml2pdf link_callback: serve our own upload URLs from disk."""
        prefix = self.url_prefix
        if uri.startswith(prefix):
            target = (self.root / uri[len(prefix):]).resolve()
            if self.root in target.parents and target.is_file():
                return str(target)
        return uri


class GcsImageStore:
    """Blobs in a Cloud Storage bucket, made public on upload."""

    def __init__(self, bucket_name: str | None = None):
        # Lazy import
        from google.cloud import storage

        bucket_name = bucket_name or os.getenv("GCS_BUCKET")
        if not bucket_name:
            raise RuntimeError("GCS_BUCKET env var is required when using the gcs storage backend")
        self.client = storage.Client()
        self.bucket = self.client.bucket(bucket_name)

    def upload(self, data: bytes, filename: str, content_type: str, user_id: str) -> str:
        blob = self.bucket.blob(_object_path(filename, user_id))
        blob.upload_from_string(
            data,
            content_type=content_type or f"image/{_extension(filename)}",
            timeout=EXTERNAL_CALL_TIMEOUT_SEC,
        )
        blob.make_public(timeout=EXTERNAL_CALL_TIMEOUT_SEC)
        return blob.public_url

    @property
    def url_prefix(self) -> str:
        return f"https://storage.googleapis.com/{self.bucket.name}/"

    def delete(self, url: str, user_id: str) -> bool:
        from google.api_core import exceptions as gexc

        name = _owned_object(url, self.url_prefix, user_id)
        if not name:
            LOG.warning("refusing to delete image not owned by user %s: %s", user_id, url)
            return False
        try:
            self.bucket.blob(name).delete(timeout=EXTERNAL_CALL_TIMEOUT_SEC)
        except gexc.GoogleAPIError as e:
            LOG.warning("error deleting image %s: %s", url, e)
            return False
        return True


@functools.lru_cache(maxsize=1)
def _gcs_store() -> GcsImageStore:
    return GcsImageStore()


def get_image_store() -> ImageStore:
    backend = os.getenv("STORAGE_BACKEND", "local").lower()
    if backend == "gcs":
        return _gcs_store()
    return LocalImageStore(
        os.getenv("UPLOAD_DIR", os.path.join("data", "uploads")),
        os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
    )


async def upload_image(store: ImageStore, blob: NamedBlob, user_id: str, timeout: float | None = None) -> str:
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(store.upload, blob.data, blob.filename, blob.content_type, user_id),
            timeout or EXTERNAL_CALL_TIMEOUT_SEC,
        )
    except asyncio.TimeoutError as e:
        raise UpstreamError("Error uploading image: timed out", origin="storage") from e
    except UpstreamError:
        raise
    except Exception as e:
        LOG.exception("image upload failed for field %s", blob.field_name)
        raise UpstreamError(f"Error uploading image: {e}", origin="storage") from e


async def delete_image(store: ImageStore, url: str | None, user_id: str, timeout: float | None = None) -> bool:
    """Best-effort removal of one of user_id's images; failures are logged, never raised."""
    if not url:
        return True
    try:
        return await asyncio.wait_for(asyncio.to_thread(store.delete, url, user_id), timeout or EXTERNAL_CALL_TIMEOUT_SEC)
    except Exception as e:
        LOG.warning("image cleanup failed for %s: %s", url, e)
        return False
