from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from datastore import PROJECT_FILES, Datastore, bearer_token
from exceptions import AuthError, DatastoreError, StorageError
from storage import ObjectStorage, parse_storage_url

BASE_URL = "https://proj.supabase.co"


@pytest.fixture
def client():
    return MagicMock()


def query_returning(client, data):
    query = client.table.return_value
    for method in ("select", "insert", "update", "delete", "eq", "like", "order", "limit"):
        getattr(query, method).return_value = query
    query.execute.return_value = SimpleNamespace(data=data)
    return query


# --- Datastore ---
@pytest.mark.parametrize("header, expected", [
    ("Bearer abc.def", "abc.def"),
    ("bearer   xyz ", "xyz"),
    ("raw-token", "raw-token"),
    (None, ""),
])
def test_bearer_token(header, expected):
    assert bearer_token(header) == expected


def test_select_builds_filters_and_ordering(client):
    query = query_returning(client, [{"path": "a.js"}])

    rows = Datastore(client).select(PROJECT_FILES, "path", filters={"project_id": "p1"}, like={"path": "src/%"},
                                    order_by="path", descending=True, limit=5)

    assert rows == [{"path": "a.js"}]
    client.table.assert_called_with(PROJECT_FILES)
    query.eq.assert_called_once_with("project_id", "p1")
    query.like.assert_called_once_with("path", "src/%")
    query.order.assert_called_once_with("path", desc=True)
    query.limit.assert_called_once_with(5)


def test_select_one_returns_none_when_empty(client):
    query_returning(client, [])
    assert Datastore(client).select_one(PROJECT_FILES, filters={"id": "x"}) is None


def test_insert_returns_the_stored_row(client):
    query_returning(client, [{"id": "f1", "path": "a.js"}])
    assert Datastore(client).insert(PROJECT_FILES, {"path": "a.js"}) == {"id": "f1", "path": "a.js"}


def test_api_errors_keep_their_code(client):
    query = query_returning(client, None)
    query.execute.side_effect = APIError({"message": "duplicate key value", "code": "23505", "hint": None, "details": None})
    with pytest.raises(DatastoreError) as raised:
        Datastore(client).insert(PROJECT_FILES, {"path": "a.js"})
    assert raised.value.is_unique_violation


def test_transport_errors_become_datastore_errors(client):
    query = query_returning(client, None)
    query.execute.side_effect = httpx.ConnectError("refused")
    with pytest.raises(DatastoreError, match="refused"):
        Datastore(client).delete(PROJECT_FILES, {"id": "f1"})


def test_current_user_comes_from_the_token(client):
    client.auth.get_user.return_value = SimpleNamespace(user=SimpleNamespace(id="user-42"))
    assert Datastore(client, "jwt").current_user_id() == "user-42"
    client.auth.get_user.assert_called_once_with("jwt")


def test_current_user_requires_a_token(client):
    with pytest.raises(AuthError):
        Datastore(client, "").current_user_id()


def test_rejected_token_is_an_auth_error(client):
    client.auth.get_user.side_effect = RuntimeError("invalid JWT")
    with pytest.raises(AuthError, match="invalid JWT"):
        Datastore(client, "jwt").current_user_id()


# --- Object storage ---
def test_storage_urls_are_parsed_only_for_the_own_host():
    assert parse_storage_url(f"{BASE_URL}/storage/v1/object/sign/user-files/a%20b.png?token=t", BASE_URL) == ("user-files", "a b.png")
    assert parse_storage_url(f"{BASE_URL}/storage/v1/object/user-files/x.pdf", BASE_URL) == ("user-files", "x.pdf")
    assert parse_storage_url("https://cdn.example/storage/v1/object/public/b/x.png", BASE_URL) is None
    assert parse_storage_url(f"{BASE_URL}/rest/v1/projects", BASE_URL) is None


def test_upload_with_urls_prefers_the_signed_url(client):
    bucket = client.storage.from_.return_value
    bucket.create_signed_url.return_value = {"signedURL": f"{BASE_URL}/signed"}
    bucket.get_public_url.return_value = f"{BASE_URL}/public?"

    urls = ObjectStorage(client, BASE_URL).upload_with_urls("user-files", "a.png", b"data", "image/png")

    assert urls == {"path": "a.png", "url": f"{BASE_URL}/signed", "signed_url": f"{BASE_URL}/signed", "public_url": f"{BASE_URL}/public"}
    bucket.upload.assert_called_once_with("a.png", b"data", {"content-type": "image/png", "upsert": "true"})


def test_signing_failure_falls_back_to_the_public_url(client):
    bucket = client.storage.from_.return_value
    bucket.create_signed_url.return_value = {}
    bucket.get_public_url.return_value = f"{BASE_URL}/public"
    urls = ObjectStorage(client, BASE_URL).upload_with_urls("user-files", "a.png", b"data", "image/png")
    assert urls["url"] == f"{BASE_URL}/public"
    assert urls["signed_url"] is None


def test_failed_upload_raises(client):
    client.storage.from_.return_value.upload.side_effect = RuntimeError("bucket not found")
    with pytest.raises(StorageError, match="bucket not found"):
        ObjectStorage(client, BASE_URL).upload("nope", "a.png", b"", "image/png")
