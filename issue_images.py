"""
Screenshot lifecycle around issue writes.

An uploaded screenshot lives in the storage bucket only as long as an issue
row points at it: a failed insert/update removes the fresh upload again, and
deleting an issue or swapping its screenshot removes the old object. URLs
outside the bucket are never touched. Removal is best effort; a failed
DELETE is logged and the object stays behind.
"""
from __future__ import annotations

import logging
from typing import NamedTuple, Optional

from sqlalchemy.engine import Engine

from errors import BackendError
from forum_store import create_issue, delete_issue, get_issue, update_issue
from statafix_engine import IssueDraft
from storage import StorageClient

logger = logging.getLogger(__name__)


class Upload(NamedTuple):
    data: bytes
    filename: str = ""
    content_type: str = ""


def discard_image(storage: Optional[StorageClient], url: Optional[str]) -> bool:
    """True when an object in our bucket was removed."""
    if storage is None or not url:
        return False
    try:
        return storage.delete_by_url(url)
    except BackendError as e:
        logger.warning("Could not remove stored image %s: %s", url, e)
        return False


def _stage(storage: Optional[StorageClient], user: dict, draft: IssueDraft, upload: Optional[Upload]) -> Optional[str]:
    if upload is None:
        return None
    if storage is None:
        raise BackendError("Screenshot upload is not configured.")
    res = storage.upload(user["id"], upload.data, upload.filename, upload.content_type)
    draft.image_url = res["public_url"]
    return res["public_url"]


def create_issue_with_image(engine: Engine, storage: Optional[StorageClient], user: dict,
                            draft: IssueDraft, upload: Optional[Upload] = None) -> dict:
    staged = _stage(storage, user, draft, upload)
    try:
        return create_issue(engine, user, draft)
    except Exception:
        discard_image(storage, staged)
        raise


def update_issue_with_image(engine: Engine, storage: Optional[StorageClient], user: dict, issue_id: int,
                            draft: IssueDraft, upload: Optional[Upload] = None) -> dict:
    previous = get_issue(engine, issue_id).get("image_url")
    staged = _stage(storage, user, draft, upload)
    try:
        updated = update_issue(engine, user, issue_id, draft)
    except Exception:
        discard_image(storage, staged)
        raise
    if previous and previous != updated.get("image_url"):
        discard_image(storage, previous)
    return updated


def delete_issue_with_image(engine: Engine, storage: Optional[StorageClient], user: dict, issue_id: int) -> dict:
    deleted = delete_issue(engine, user, issue_id)
    discard_image(storage, deleted.get("image_url"))
    return deleted
