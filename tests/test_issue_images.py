import json

import httpx
import pytest

from errors import BackendError, PermissionDenied, ValidationError
from forum_store import get_issue, list_issues
from issue_images import (
    Upload,
    create_issue_with_image,
    delete_issue_with_image,
    discard_image,
    update_issue_with_image,
)
from storage import StorageClient

BASE = "https://proj.example.co"
PUBLIC = f"{BASE}/storage/v1/object/public/issue-images/"


@pytest.fixture
def bucket():
    """StorageClient over a mock transport; records uploads and deletes."""
    calls = {"uploads": [], "deletes": [], "fail_delete": False}

    def handler(request: httpx.Request):
        if request.method == "POST":
            calls["uploads"].append(request.url.path)
            return httpx.Response(200, json={"Key": request.url.path})
        if request.method == "DELETE":
            calls["deletes"].extend(json.loads(request.content)["prefixes"])
            if calls["fail_delete"]:
                return httpx.Response(500, json={"message": "storage unavailable"})
            return httpx.Response(200, json=[])
        return httpx.Response(404)

    client = StorageClient(BASE, "anon-key", client=httpx.Client(transport=httpx.MockTransport(handler)))
    return client, calls


def _png():
    return Upload(b"\x89PNG", "shot.png", "image/png")


def test_create_with_upload_stores_public_url(engine, alice, draft, bucket):
    storage, calls = bucket
    issue = create_issue_with_image(engine, storage, alice, draft, _png())

    assert len(calls["uploads"]) == 1
    assert issue["image_url"].startswith(f"{PUBLIC}{alice['id']}/")
    assert calls["deletes"] == []


def test_failed_create_removes_fresh_upload(engine, alice, draft, bucket):
    storage, calls = bucket
    draft.description = "   "

    with pytest.raises(ValidationError):
        create_issue_with_image(engine, storage, alice, draft, _png())

    assert len(calls["uploads"]) == 1
    assert len(calls["deletes"]) == 1
    assert calls["deletes"][0].startswith(f"{alice['id']}/")
    assert list_issues(engine).empty


def test_upload_without_storage_is_rejected(engine, alice, draft):
    with pytest.raises(BackendError, match="not configured"):
        create_issue_with_image(engine, None, alice, draft, _png())
    assert list_issues(engine).empty


def test_delete_removes_stored_object(engine, alice, draft, bucket):
    storage, calls = bucket
    issue = create_issue_with_image(engine, storage, alice, draft, _png())
    path = issue["image_url"][len(PUBLIC):]

    delete_issue_with_image(engine, storage, alice, issue["id"])
    assert calls["deletes"] == [path]


def test_delete_leaves_external_url_alone(engine, alice, draft, bucket):
    storage, calls = bucket
    draft.image_url = "https://imgur.com/abc.png"
    issue = create_issue_with_image(engine, storage, alice, draft)

    delete_issue_with_image(engine, storage, alice, issue["id"])
    assert calls["deletes"] == []


def test_delete_by_non_author_keeps_object(engine, alice, bob, draft, bucket):
    storage, calls = bucket
    issue = create_issue_with_image(engine, storage, alice, draft, _png())

    with pytest.raises(PermissionDenied):
        delete_issue_with_image(engine, storage, bob, issue["id"])
    assert calls["deletes"] == []


def test_replacing_screenshot_removes_old_object(engine, alice, draft, bucket):
    storage, calls = bucket
    issue = create_issue_with_image(engine, storage, alice, draft, _png())
    old_path = issue["image_url"][len(PUBLIC):]

    updated = update_issue_with_image(engine, storage, alice, issue["id"], draft, _png())

    assert len(calls["uploads"]) == 2
    assert updated["image_url"] != issue["image_url"]
    assert calls["deletes"] == [old_path]


def test_switching_to_external_url_removes_old_object(engine, alice, draft, bucket):
    storage, calls = bucket
    issue = create_issue_with_image(engine, storage, alice, draft, _png())
    old_path = issue["image_url"][len(PUBLIC):]

    draft.image_url = "https://imgur.com/abc.png"
    update_issue_with_image(engine, storage, alice, issue["id"], draft)
    assert calls["deletes"] == [old_path]


def test_edit_keeping_screenshot_deletes_nothing(engine, alice, draft, bucket):
    storage, calls = bucket
    issue = create_issue_with_image(engine, storage, alice, draft, _png())

    draft.title = "merge fails on duplicate key"
    updated = update_issue_with_image(engine, storage, alice, issue["id"], draft)
    assert updated["image_url"] == issue["image_url"]
    assert calls["deletes"] == []


def test_replacing_external_url_deletes_nothing(engine, alice, draft, bucket):
    storage, calls = bucket
    draft.image_url = "https://imgur.com/abc.png"
    issue = create_issue_with_image(engine, storage, alice, draft)

    draft.image_url = "https://imgur.com/def.png"
    update_issue_with_image(engine, storage, alice, issue["id"], draft)
    assert calls["deletes"] == []


def test_failed_update_removes_new_upload_and_keeps_old(engine, alice, bob, draft, bucket):
    storage, calls = bucket
    issue = create_issue_with_image(engine, storage, alice, draft, _png())

    with pytest.raises(PermissionDenied):
        update_issue_with_image(engine, storage, bob, issue["id"], draft, _png())

    assert len(calls["deletes"]) == 1
    assert calls["deletes"][0].startswith(f"{bob['id']}/")
    assert get_issue(engine, issue["id"])["image_url"] == issue["image_url"]


def test_discard_failure_is_logged_not_raised(bucket, caplog):
    storage, calls = bucket
    calls["fail_delete"] = True

    assert discard_image(storage, f"{PUBLIC}7/a.png") is False
    assert calls["deletes"] == ["7/a.png"]
    assert "Could not remove stored image" in caplog.text


def test_discard_without_storage_or_url():
    assert discard_image(None, f"{PUBLIC}7/a.png") is False
    assert discard_image(None, None) is False
