import logging
import mimetypes
import uuid
from pathlib import Path
from typing import NamedTuple, Optional

import httpx

from common import config
from common.errors import UploadError

# ------------------------------------------------------------------------------
# CONDITIONAL IMPORTS
# Only the SDK of the configured backend has to be importable; the helpers
# below raise a clear error when a backend is selected without its library.
# ------------------------------------------------------------------------------

try:
    from google.cloud import storage as gcs
except ImportError:
    gcs = None

try:
    from azure.storage.blob import BlobServiceClient
except ImportError:
    BlobServiceClient = None

logger = logging.getLogger(__name__)

OBJECT_PREFIX = "orders/"  # Folder for uploaded order photos


class UploadResult(NamedTuple):
    object_key: str
    public_url: str


def make_object_key(file_path: str) -> str:
    """orders/<uuid><ext>, keeping the extension of the local file."""
    return f"{OBJECT_PREFIX}{uuid.uuid4()}{Path(file_path).suffix}"


def _content_type(key: str) -> str:
    mime, _ = mimetypes.guess_type(key)
    return mime or "image/jpeg"


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM
# ------------------------------------------------------------------------------

def _upload_local(content: bytes, key: str) -> UploadResult:
    dest = config.LOCAL_OUTPUT_DIR / key
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(content)
    if config.PUBLIC_BASE_URL:
        url = f"{config.PUBLIC_BASE_URL.rstrip('/')}/{key}"
    else:
        url = dest.resolve().as_uri()
    return UploadResult(key, url)


# ------------------------------------------------------------------------------
# GOOGLE CLOUD STORAGE (GCS)
# ------------------------------------------------------------------------------

def _get_gcs_client():
    """Returns an authenticated GCS client."""
    if not gcs:
        raise RuntimeError("google-cloud-storage library is not installed.")
    return gcs.Client()


def _upload_gcs(content: bytes, key: str) -> UploadResult:
    if not config.GCS_BUCKET:
        raise ValueError("GCS_BUCKET env var is required for GCP backend")
    bucket = _get_gcs_client().bucket(config.GCS_BUCKET)
    blob = bucket.blob(key)
    blob.upload_from_string(content, content_type=_content_type(key))
    return UploadResult(key, blob.public_url)


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE
# ------------------------------------------------------------------------------

def _get_azure_client():
    """Creates a BlobServiceClient using the connection string."""
    if not BlobServiceClient:
        raise RuntimeError("azure-storage-blob library is not installed.")
    if not config.AZURE_CONN_STR:
        raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return BlobServiceClient.from_connection_string(config.AZURE_CONN_STR)


def _upload_azure(content: bytes, key: str) -> UploadResult:
    if not config.AZURE_CONTAINER:
        raise ValueError("AZURE_CONTAINER env var is required for Azure backend")
    container_client = _get_azure_client().get_container_client(config.AZURE_CONTAINER)
    blob_client = container_client.get_blob_client(key)
    blob_client.upload_blob(content, overwrite=True)
    return UploadResult(key, blob_client.url)


# ------------------------------------------------------------------------------
# SUPABASE STORAGE (REST)
# ------------------------------------------------------------------------------

def _upload_supabase(content: bytes, key: str, client: Optional[httpx.Client] = None) -> UploadResult:
    if not config.SUPABASE_URL or not config.SUPABASE_ANON_KEY:
        raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY are required for Supabase backend")
    base = config.SUPABASE_URL.rstrip("/")
    bucket = config.SUPABASE_BUCKET
    headers = {
        "apikey": config.SUPABASE_ANON_KEY,
        "Authorization": f"Bearer {config.SUPABASE_ANON_KEY}",
        "Content-Type": _content_type(key),
    }
    owns_client = client is None
    client = client or httpx.Client(timeout=30)
    try:
        response = client.post(f"{base}/storage/v1/object/{bucket}/{key}", content=content, headers=headers)
        response.raise_for_status()
    finally:
        if owns_client:
            client.close()
    return UploadResult(key, f"{base}/storage/v1/object/public/{bucket}/{key}")


# ------------------------------------------------------------------------------
# PUBLIC API
# ------------------------------------------------------------------------------

_BACKENDS = {
    "local": _upload_local,
    "gcp": _upload_gcs,
    "azure": _upload_azure,
    "supabase": _upload_supabase,
}


def upload_bytes(content: bytes, suggested_key: str) -> UploadResult:
    """
    Store `content` under `suggested_key` in the configured backend and
    return the object key together with its public URL.

    Any backend failure is raised as UploadError.
    """
    backend = _BACKENDS.get(config.STORAGE_BACKEND)
    if backend is None:
        raise UploadError(f"Unsupported STORAGE_BACKEND: {config.STORAGE_BACKEND}")
    try:
        return backend(content, suggested_key)
    except UploadError:
        raise
    except Exception as e:
        logger.error("%s upload of %s failed: %s", config.STORAGE_BACKEND, suggested_key, e)
        raise UploadError(f"Upload of {suggested_key} failed: {e}") from e
