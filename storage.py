"""
Issue screenshot storage.

Screenshots live in a hosted object-storage bucket (default ``issue-images``)
under ``<user_id>/<uuid>.<ext>``. Issues store the object's public URL.
"""
from __future__ import annotations

import logging
import mimetypes
import re
import uuid
from typing import Iterable, List, Optional
from urllib.parse import quote, unquote

import httpx

from errors import BackendError

logger = logging.getLogger(__name__)

ISSUE_IMAGES_BUCKET = "issue-images"


def build_file_name(filename: str = "", content_type: str = "") -> str:
    ext_from_name = filename.rsplit(".", 1)[-1] if filename and "." in filename else ""
    ext_from_type = content_type.rsplit("/", 1)[-1] if content_type and "/" in content_type else ""
    ext = (ext_from_name or ext_from_type or "").lower()
    base = str(uuid.uuid4())
    return f"{base}.{ext}" if ext else base


def raise_for_backend(resp: httpx.Response, what: str) -> None:
    """Turn a failed hosted-service response into a BackendError with the service's message."""
    if resp.is_success:
        return
    message = ""
    try:
        body = resp.json()
        if isinstance(body, dict):
            message = str(body.get("msg") or body.get("error_description") or body.get("message") or body.get("error") or "")
    except ValueError:
        message = resp.text
    message = message or resp.reason_phrase
    raise BackendError(f"{what} failed ({resp.status_code}): {message}", status_code=resp.status_code)


class StorageClient:
    def __init__(self, base_url: str, api_key: str, bucket: str = ISSUE_IMAGES_BUCKET,
                 timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {"apikey": api_key, "Authorization": f"Bearer {api_key}"}

    # ---------- URLs ----------

    @property
    def public_prefix(self) -> str:
        return f"/storage/v1/object/public/{self.bucket}/"

    @property
    def signed_prefix(self) -> str:
        return f"/storage/v1/object/sign/{self.bucket}/"

    def public_url(self, path: str) -> str:
        return f"{self.base_url}{self.public_prefix}{quote(path)}"

    def path_from_url(self, url: Optional[str]) -> Optional[str]:
        """Object path inside the bucket for one of our public URLs, else None."""
        if not url:
            return None
        idx = url.find(self.public_prefix)
        if idx == -1:
            return None
        path = url[idx + len(self.public_prefix):].split("?")[0]
        if not path:
            return None
        return unquote(path)

    def resolve_image_url(self, value) -> Optional[str]:
        """Normalise whatever an issue row carries in image_url into a displayable URL."""
        if not value:
            return None
        trimmed = str(value).strip()
        if not trimmed or trimmed in ("null", "undefined"):
            return None

        if self.signed_prefix in trimmed:
            path = trimmed.split(self.signed_prefix, 1)[1].split("?")[0]
            return self.public_url(unquote(path)) if path else None

        if re.match(r"^https?://", trimmed, re.IGNORECASE):
            return trimmed

        bucket_prefix = f"{self.bucket}/"
        path = trimmed[len(bucket_prefix):] if trimmed.startswith(bucket_prefix) else trimmed
        return self.public_url(path)

    # ---------- API calls ----------

    def upload(self, user_id: int, data: bytes, filename: str = "", content_type: str = "") -> dict:
        """Upload a screenshot; returns {"path", "public_url"}."""
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        path = f"{user_id}/{build_file_name(filename, content_type)}"
        try:
            resp = self._client.post(
                f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(path)}",
                content=data,
                headers={**self._headers, "Content-Type": content_type, "x-upsert": "false"},
            )
        except httpx.HTTPError as e:
            raise BackendError(f"Image upload failed: {e}") from e
        raise_for_backend(resp, "Image upload")
        logger.info("Uploaded %s (%d bytes) to bucket %s", path, len(data), self.bucket)
        return {"path": path, "public_url": self.public_url(path)}

    def remove(self, paths: Iterable[str]) -> List[str]:
        paths = [p for p in paths if p]
        if not paths:
            return []
        try:
            resp = self._client.request(
                "DELETE",
                f"{self.base_url}/storage/v1/object/{self.bucket}",
                json={"prefixes": paths},
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            raise BackendError(f"Image delete failed: {e}") from e
        raise_for_backend(resp, "Image delete")
        logger.info("Removed %s from bucket %s", paths, self.bucket)
        return paths

    def delete_by_url(self, url: Optional[str]) -> bool:
        """False when the URL is not one of ours (nothing to delete)."""
        path = self.path_from_url(url)
        if not path:
            return False
        self.remove([path])
        return True

    def close(self) -> None:
        self._client.close()
