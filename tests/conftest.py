import itertools
import re
from collections import defaultdict
from types import SimpleNamespace

import pytest

from audit_logger import audit_log
from data_models import Mode, ModelTurn
from datastore import CANVAS_FILES, PROJECT_FILES
from exceptions import AuthError, DatastoreError, ModelCallError, StorageError
from storage import ObjectStorage
from tool_agent import ToolContext

BASE_URL = "https://proj.supabase.co"

# Returned by ScriptedModelClient.stream to simulate a provider that yields no chunks.
EMPTY_STREAM = object()


class FakeDatastore:
    """
    An in-memory stand-in for the Datastore with the same method surface.
    Unique constraints mirror the real schema for file tables.
    """
    UNIQUE_KEYS = {PROJECT_FILES: ("project_id", "path"), CANVAS_FILES: ("chat_id", "path")}

    def __init__(self, user_id="user-1"):
        self.tables = defaultdict(list)
        self.user_id = user_id
        self.failures = {}
        self._seq = itertools.count(1)

    def fail(self, table, operation, error=None):
        """Makes every `operation` on `table` raise from now on."""
        self.failures[(table, operation)] = error or DatastoreError(f"{operation} on {table} failed", code="XX000")

    def _check(self, table, operation):
        error = self.failures.get((table, operation))
        if error is not None:
            raise error

    @staticmethod
    def _like(value, pattern):
        regex = "^" + re.escape(pattern).replace("%", ".*").replace("_", ".") + "$"
        return re.match(regex, str(value or ""), re.DOTALL) is not None

    def _rows(self, table, filters=None, like=None):
        for row in self.tables[table]:
            if all(row.get(k) == v for k, v in (filters or {}).items()) and all(
                self._like(row.get(k), p) for k, p in (like or {}).items()
            ):
                yield row

    def select(self, table, columns="*", filters=None, like=None, order_by=None, descending=False, limit=None):
        self._check(table, "select")
        rows = list(self._rows(table, filters, like))
        if order_by:
            rows.sort(key=lambda r: (str(r.get(order_by) or ""), r["_seq"]), reverse=descending)
        if limit:
            rows = rows[:limit]
        return [{k: v for k, v in row.items() if k != "_seq"} for row in rows]

    def select_one(self, table, columns="*", filters=None):
        rows = self.select(table, columns, filters=filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table, row):
        self._check(table, "insert")
        keys = self.UNIQUE_KEYS.get(table)
        if keys and any(all(existing.get(k) == row.get(k) for k in keys) for existing in self.tables[table]):
            raise DatastoreError("duplicate key value violates unique constraint", code=DatastoreError.UNIQUE_VIOLATION)
        seq = next(self._seq)
        stored = {"id": f"{table}-{seq}", **row, "_seq": seq}
        self.tables[table].append(stored)
        return {k: v for k, v in stored.items() if k != "_seq"}

    def update(self, table, values, filters):
        self._check(table, "update")
        updated = []
        for row in self._rows(table, filters):
            row.update(values)
            updated.append({k: v for k, v in row.items() if k != "_seq"})
        return updated

    def delete(self, table, filters):
        self._check(table, "delete")
        doomed = list(self._rows(table, filters))
        self.tables[table] = [row for row in self.tables[table] if row not in doomed]
        return [{k: v for k, v in row.items() if k != "_seq"} for row in doomed]

    def current_user_id(self):
        if not self.user_id:
            raise AuthError("Not authenticated")
        return self.user_id

    def rows(self, table):
        return self.select(table)


class FakeStorage(ObjectStorage):
    """ObjectStorage with the supabase calls replaced by an in-memory bucket map."""

    def __init__(self):
        super().__init__(client=None, base_url=BASE_URL)
        self.objects = {}
        self.fail_uploads = False
        self.fail_signing = False

    def upload(self, bucket, path, data, content_type):
        if self.fail_uploads:
            raise StorageError("upload refused")
        self.objects[(bucket, path)] = (data, content_type)
        return path

    def signed_url(self, bucket, path, expires_in=3600):
        if self.fail_signing:
            raise StorageError("signing refused")
        return f"{BASE_URL}/storage/v1/object/sign/{bucket}/{path}?token=signed"

    def public_url(self, bucket, path):
        return f"{BASE_URL}/storage/v1/object/public/{bucket}/{path}"

    def download(self, bucket, path):
        if (bucket, path) not in self.objects:
            raise StorageError(f"{bucket}/{path} not found")
        return self.objects[(bucket, path)][0]


class ScriptedModelClient:
    """
    Replays a fixed script of model turns.

    Script items are ModelTurn objects, exceptions to raise, or EMPTY_STREAM.
    Calls for a model listed in `failing_models` raise ModelCallError without
    consuming the script.
    """

    def __init__(self, turns=None, failing_models=()):
        self.turns = list(turns or [])
        self.failing_models = set(failing_models)
        self.calls = []
        self.content_calls = []
        self.content_responses = []
        self.image = (b"\x89PNG", "image/png", "an image")
        self.image_calls = []
        self.uploads = []

    def _next(self, model, contents, system_instruction, streamed):
        self.calls.append(SimpleNamespace(
            model=model, contents=list(contents), system_instruction=system_instruction, streamed=streamed,
        ))
        if model in self.failing_models:
            raise ModelCallError(f"{model} is unavailable")
        item = self.turns.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def generate(self, model, contents, declarations=None, system_instruction=None, include_thoughts=False):
        item = self._next(model, contents, system_instruction, streamed=False)
        assert item is not EMPTY_STREAM
        return item

    def stream(self, model, contents, declarations=None, system_instruction=None, include_thoughts=False):
        item = self._next(model, contents, system_instruction, streamed=True)
        if item is EMPTY_STREAM:
            return
        if item.thoughts:
            yield ModelTurn(thoughts=item.thoughts)
        half = len(item.text) // 2
        for piece in (item.text[:half], item.text[half:]):
            if piece:
                yield ModelTurn(text=piece)
        if item.function_calls:
            yield ModelTurn(function_calls=item.function_calls)

    def generate_content(self, model, parts, config=None):
        self.content_calls.append(SimpleNamespace(model=model, parts=list(parts)))
        if self.content_responses:
            item = self.content_responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return "analysis text"

    def generate_image(self, model, parts):
        self.image_calls.append(SimpleNamespace(model=model, parts=list(parts)))
        return self.image

    def upload_file(self, data, mime_type, display_name=None):
        self.uploads.append((data, mime_type, display_name))
        return SimpleNamespace(name=f"files/{len(self.uploads)}", uri=f"https://files.example/{len(self.uploads)}", mime_type=mime_type, state=None)

    def wait_until_active(self, file, timeout=60.0, poll_interval=2.0):
        return file


@pytest.fixture(autouse=True)
def audit_to_tmp(tmp_path, monkeypatch):
    """Keeps the CSV audit trail out of the working tree."""
    monkeypatch.setattr(audit_log, "filepath", str(tmp_path / "audit_trail.csv"))
    return tmp_path / "audit_trail.csv"


@pytest.fixture
def datastore():
    return FakeDatastore()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def model_client():
    return ScriptedModelClient()


@pytest.fixture
def make_context(datastore, storage, model_client):
    """Builds a ToolContext for a mode, scoped to a project or a chat."""
    def factory(mode=Mode.BUILD, **overrides):
        values = {
            "mode": mode,
            "datastore": datastore,
            "storage": storage,
            "model_client": model_client,
            "access_token": "caller-token",
            "project_id": None if mode == Mode.PLAYGROUND else "proj-1",
            "chat_id": "chat-1" if mode == Mode.PLAYGROUND else None,
            "loop_id": "loop-1",
        }
        values.update(overrides)
        return ToolContext(**values)
    return factory
