from __future__ import annotations

import io
import json
import os
import logging
from urllib.parse import quote

import dotenv
from google.cloud import storage
from google.cloud.exceptions import Conflict
from google.oauth2 import service_account


dotenv.load_dotenv()
logger = logging.getLogger(__name__)


def _get_storage_client() -> storage.Client:
    credentials_raw: str = os.getenv("GCP_CREDENTIALS", "")
    if not credentials_raw:
        return storage.Client()
    credentials_info = json.loads(credentials_raw)
    credentials = service_account.Credentials.from_service_account_info(
        credentials_info
    )
    return storage.Client(
        credentials=credentials, project=credentials_info.get("project_id")
    )


def _get_bucket(bucket_name: str) -> storage.Bucket:
    storage_client = _get_storage_client()
    return storage_client.bucket(bucket_name)


def init_bucket(bucket_name: str) -> bool:
    try:
        storage_client = _get_storage_client()
        bucket = storage_client.bucket(bucket_name)
        bucket.storage_class = "STANDARD"

        storage_client.create_bucket(bucket)
        return True
    except Conflict:
        return True
    except Exception:
        logger.exception("Error creating bucket %s", bucket_name)
        return False


def upload_file(
    bucket_name: str,
    contents: bytes,
    destination_blob_name: str,
    content_type: str | None = None,
) -> dict:
    try:
        bucket = _get_bucket(bucket_name)
        blob = bucket.blob(destination_blob_name)
        blob.upload_from_file(io.BytesIO(contents), content_type=content_type)
        blob.reload()

        return {
            "path": blob.name,
            "content_type": blob.content_type,
            "size": blob.size,
        }
    except Exception:
        logger.exception(
            "Error uploading file to bucket %s at %s",
            bucket_name,
            destination_blob_name,
        )
        return {}


def get_public_url(bucket_name: str, blob_name: str) -> str:
    base_url = os.getenv("STORAGE_PUBLIC_BASE_URL", "https://storage.googleapis.com")
    return f"{base_url.rstrip('/')}/{bucket_name}/{quote(blob_name.lstrip('/'))}"
