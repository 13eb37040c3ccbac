"""
Provides the action execution layer for the agent.

This module is the "hands" of the agent: the only place where a model-issued
tool call touches the datastore, object storage or a nested model call. It is
designed around a declarative, strategy-based pattern: the orchestrator hands
over a ToolCall, and this module dispatches it to the matching handler via
TOOL_REGISTRY.

Every handler receives the explicit per-request ToolContext, performs exactly
the side effect its declaration promises, and returns a ToolResult. Failures
never escape as exceptions; they come back as `{"status": "error"}` results
the model can read and recover from.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from google.genai import types
from pydantic import ValidationError

from attachments import decode_base64, fetch_bytes, guess_mime_type, resolve_best_url, resolve_sources
from audit_logger import audit_log
from config import (
    ANALYSIS_MODEL,
    ANALYSIS_MODEL_STRONG,
    DEFAULT_MODEL,
    GENERATED_BUCKET,
    GENERATED_FOLDER,
    IMAGE_MODEL,
    MAX_ANALYZE_BYTES,
    MAX_CARD_LIST_ITEMS,
    SEARCH_DEFAULT_MAX_PER_FILE,
    SEARCH_MAX_PER_FILE_CEILING,
)
from data_models import Attachment, FileEdit, Mode, ToolCall, ToolResult
from datastore import CANVAS_FILE_VERSIONS, CANVAS_FILES, PLAYGROUND_ARTIFACTS, PROJECT_FILES, Datastore
from exceptions import AttachmentFetchError, DatastoreError, ModelCallError, ModelTimeout, RegistryMismatchError
from lint import lint_text
from model_client import ModelClient
from storage import ObjectStorage
from tool_declarations import DECLARATIONS_BY_NAME, tool_names, toolset_for, validate_args
from tracer import trace
from utils import now_iso, now_millis, sanitize_file_name

CANVAS_PREVIEW_TYPES = {"html", "htm", "js", "jsx", "ts", "tsx", "css", "svg"}


# A data class to neatly pass request-scoped objects to tool handlers.
@dataclass
class ToolContext:
    """
    Everything one request's tool handlers may touch, plus the state they
    accumulate while the loop runs.
    """
    mode: Mode
    datastore: Datastore
    storage: Optional[ObjectStorage] = None
    service_storage: Optional[ObjectStorage] = None
    model_client: Optional[ModelClient] = None
    access_token: str = ""
    project_id: Optional[str] = None
    chat_id: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    preferred_model: str = DEFAULT_MODEL
    loop_id: Optional[str] = None
    # Accumulated during the run.
    file_edits: list[FileEdit] = field(default_factory=list)
    artifact_ids: list[str] = field(default_factory=list)
    bumped_paths: set[str] = field(default_factory=set)
    files_analyzed: list[str] = field(default_factory=list)

    def begin_attempt(self):
        """
        Clears the per-attempt audit trail before a (re)run of the loop.

        Version checkpoints and touched artifacts belong to the request, not
        the attempt, so they survive a retry.
        """
        self.file_edits.clear()
        self.files_analyzed.clear()

    def record_edit(self, operation: str, path: str, old_content: str = "", new_content: str = ""):
        self.file_edits.append(FileEdit(operation=operation, path=path, old_content=old_content, new_content=new_content))

    def touch_artifact(self, artifact_id: Optional[str]):
        if artifact_id and artifact_id not in self.artifact_ids:
            self.artifact_ids.append(artifact_id)


# --- Low-Level Helpers ---
def _clamp(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _truncate_bytes(content: str, max_bytes: Any) -> tuple[str, bool]:
    """Cuts `content` to at most `max_bytes` UTF-8 bytes without splitting a character."""
    try:
        limit = int(max_bytes)
    except (TypeError, ValueError):
        return content, False
    encoded = content.encode("utf-8")
    if limit <= 0 or len(encoded) <= limit:
        return content, False
    return encoded[:limit].decode("utf-8", errors="ignore"), True


def _search_rows(rows: list[dict], query: str, max_per_file: int) -> list[dict]:
    """Case-insensitive substring search returning 1-based line matches per file."""
    needle = query.lower()
    results = []
    for row in rows:
        matches = []
        for line_no, line in enumerate(str(row.get("content") or "").split("\n"), start=1):
            if needle in line.lower():
                matches.append({"line": line_no, "text": line.strip()})
                if len(matches) >= max_per_file:
                    break
        if matches:
            results.append({"path": row.get("path"), "matches": matches})
    return results


def _missing_scope(context: ToolContext, scope: str) -> Optional[ToolResult]:
    if scope == "project" and not context.project_id:
        return ToolResult.error("No project is associated with this request.")
    if scope == "chat" and not context.chat_id:
        return ToolResult.error("No chat is associated with this request.")
    return None


def _project_file(context: ToolContext, path: str) -> Optional[dict]:
    return context.datastore.select_one(
        PROJECT_FILES, "path, content", filters={"project_id": context.project_id, "path": path}
    )


def _canvas_file(context: ToolContext, path: str) -> Optional[dict]:
    return context.datastore.select_one(
        CANVAS_FILES, "id, path, content, version_number", filters={"chat_id": context.chat_id, "path": path}
    )


def _canvas_paths(context: ToolContext) -> list[str]:
    rows = context.datastore.select(CANVAS_FILES, "path", filters={"chat_id": context.chat_id}, order_by="path")
    return [row["path"] for row in rows]


def _canvas_metadata(path: str) -> dict[str, Any]:
    extension = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return {"type": extension or "text", "canvas_eligible": extension in CANVAS_PREVIEW_TYPES}


def _load_source_text(context: ToolContext, params: dict) -> tuple[Optional[str], Optional[str]]:
    """Returns (path, content) for review tools: inline content wins over a stored file."""
    path = str(params.get("path") or "").strip() or None
    if params.get("content") is not None:
        return path, str(params["content"])
    if not path:
        return None, None
    if context.mode == Mode.PLAYGROUND:
        row = _canvas_file(context, path) if context.chat_id else None
    else:
        row = _project_file(context, path) if context.project_id else None
    return path, (str(row.get("content") or "") if row else None)


def _chat_artifact(context: ToolContext, artifact_id: str) -> Optional[dict]:
    row = context.datastore.select_one(
        PLAYGROUND_ARTIFACTS, "id, artifact_type, key, data, chat_id, last_modified", filters={"id": artifact_id}
    )
    if not row or row.get("chat_id") != context.chat_id:
        return None
    return row


def _insert_artifact(context: ToolContext, artifact_type: str, data: dict) -> str:
    row = context.datastore.insert(
        PLAYGROUND_ARTIFACTS,
        {"chat_id": context.chat_id, "artifact_type": artifact_type, "data": data, "last_modified": now_iso()},
    )
    artifact_id = str(row.get("id") or "")
    context.touch_artifact(artifact_id)
    return artifact_id


@trace
def _check_tasks(context: ToolContext, artifact_id: str, task_ids: list[str]) -> ToolResult:
    """
    Marks the given task ids done in a todo_list artifact of the current chat.

    Ids that match nothing are not an error; when none match, nothing is written.
    """
    row = _chat_artifact(context, artifact_id)
    if not row or row.get("artifact_type") != "todo_list":
        return ToolResult.error("Artifact not found or not a todo_list for this chat.", artifact_id=artifact_id)
    todo = dict(row.get("data") or {})
    tasks = [dict(task) for task in todo.get("tasks") or [] if isinstance(task, dict)]
    wanted = {str(task_id) for task_id in task_ids}
    checked = []
    for task in tasks:
        if str(task.get("id")) in wanted:
            task["done"] = True
            checked.append(str(task.get("id")))
    if not checked:
        return ToolResult.success("No matching task ids; the todo list is unchanged.", artifact_id=artifact_id, todo=todo, checked=[])
    todo["tasks"] = tasks
    context.datastore.update(PLAYGROUND_ARTIFACTS, {"data": todo, "last_modified": now_iso()}, {"id": artifact_id})
    context.touch_artifact(artifact_id)
    return ToolResult.success(f"Marked {len(checked)} task(s) done.", artifact_id=artifact_id, todo=todo, checked=checked)


def _store_image(context: ToolContext, image: bytes, mime_type: str, folder: str, file_name: str, caption: Optional[str]) -> ToolResult:
    path = f"{folder.strip('/') or GENERATED_FOLDER}/{sanitize_file_name(file_name, 'image.png')}"
    urls = context.storage.upload_with_urls(GENERATED_BUCKET, path, image, mime_type)
    return ToolResult.success(
        f"Image stored at {GENERATED_BUCKET}/{path}.",
        bucket=GENERATED_BUCKET,
        path=urls["path"],
        url=urls["url"],
        signed_url=urls["signed_url"],
        public_url=urls["public_url"],
        caption=caption,
    )


# --- Project File Handlers ---
@trace
def _handle_create_file(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'create_file' action."""
    if error := _missing_scope(context, "project"):
        return error
    path = str(params["path"]).strip()
    content = str(params.get("content") or "")
    try:
        context.datastore.insert(PROJECT_FILES, {"project_id": context.project_id, "path": path, "content": content})
    except DatastoreError as e:
        if e.is_unique_violation:
            return ToolResult.error(f"A file already exists at '{path}': {e.message}", code=e.code)
        raise
    context.record_edit("create", path, "", content)
    return ToolResult.success(f"Created {path}", path=path)


@trace
def _handle_update_file_content(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'update_file_content' action."""
    if error := _missing_scope(context, "project"):
        return error
    path = str(params["path"]).strip()
    existing = _project_file(context, path)
    if existing is None:
        return ToolResult.error(f"File not found: {path}")
    old_content = str(existing.get("content") or "")
    new_content = str(params.get("new_content") or "")
    context.datastore.update(PROJECT_FILES, {"content": new_content}, {"project_id": context.project_id, "path": path})
    context.record_edit("update", path, old_content, new_content)
    return ToolResult.success(f"Updated {path}", path=path)


@trace
def _handle_delete_file(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'delete_file' action."""
    if error := _missing_scope(context, "project"):
        return error
    path = str(params["path"]).strip()
    existing = _project_file(context, path)
    if existing is None:
        return ToolResult.error(f"File not found: {path}")
    context.datastore.delete(PROJECT_FILES, {"project_id": context.project_id, "path": path})
    context.record_edit("delete", path, str(existing.get("content") or ""), "")
    return ToolResult.success(f"Deleted {path}", path=path)


@trace
def _handle_read_file(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'read_file' action."""
    if error := _missing_scope(context, "project"):
        return error
    path = str(params["path"]).strip()
    existing = _project_file(context, path)
    if existing is None:
        return ToolResult.error(f"File not found: {path}")
    content = str(existing.get("content") or "")
    context.record_edit("read", path, content, content)
    returned, truncated = _truncate_bytes(content, params.get("max_bytes"))
    return ToolResult.success(path=path, content=returned, truncated=truncated or None)


@trace
def _handle_search(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'search' action over the project's files."""
    if error := _missing_scope(context, "project"):
        return error
    query = str(params.get("query") or "")
    if not query.strip():
        return ToolResult.error("query must not be empty.")
    limit = _clamp(params.get("max_results_per_file"), SEARCH_DEFAULT_MAX_PER_FILE, 1, SEARCH_MAX_PER_FILE_CEILING)
    rows = context.datastore.select(PROJECT_FILES, "path, content", filters={"project_id": context.project_id}, order_by="path")
    return ToolResult.success(query=query, results=_search_rows(rows, query, limit))


# --- Canvas Handlers ---
@trace
def _handle_canvas_create_file(params: dict, context: ToolContext) -> ToolResult:
    """
    Handles the 'canvas_create_file' action.

    A chat holds at most one canvas file. When one exists, creation fails and
    the error lists the existing path(s) so the model switches to an update.
    """
    if error := _missing_scope(context, "chat"):
        return error
    path = str(params["path"]).strip()
    content = str(params.get("content") or "")
    existing = _canvas_paths(context)
    if existing:
        return ToolResult.error(
            f"This chat already has a canvas file ({', '.join(existing)}). "
            "Use canvas_update_file_content on it instead of creating another file.",
            existing_paths=existing,
        )
    try:
        row = context.datastore.insert(
            CANVAS_FILES,
            {
                "chat_id": context.chat_id,
                "path": path,
                "content": content,
                "version_number": 1,
                "metadata": _canvas_metadata(path),
                "last_modified": now_iso(),
            },
        )
    except DatastoreError as e:
        if e.is_unique_violation:
            return ToolResult.error(f"A canvas file already exists at '{path}': {e.message}", code=e.code)
        raise
    context.datastore.insert(
        CANVAS_FILE_VERSIONS,
        {"canvas_file_id": row.get("id"), "chat_id": context.chat_id, "path": path, "version_number": 1, "content": content},
    )
    context.bumped_paths.add(path)
    context.record_edit("create", path, "", content)
    return ToolResult.success(f"Created canvas file {path}", path=path, id=row.get("id"), version_number=1)


@trace
def _handle_canvas_update_file_content(params: dict, context: ToolContext) -> ToolResult:
    """
    Handles the 'canvas_update_file_content' action.

    Only the first content-changing edit of a path within one request opens a
    new version; later edits in the same request overwrite that version unless
    `new_version` is passed.
    """
    if error := _missing_scope(context, "chat"):
        return error
    path = str(params["path"]).strip()
    existing = _canvas_file(context, path)
    if existing is None:
        return ToolResult.error(f"Canvas file not found: {path}", existing_paths=_canvas_paths(context))
    old_content = str(existing.get("content") or "")
    new_content = str(params.get("new_content") or "")
    version = int(existing.get("version_number") or 1)
    changed = new_content != old_content
    bump = params.get("new_version") is True or (changed and path not in context.bumped_paths)
    if not changed and not bump:
        return ToolResult.success(f"{path} already has this content.", path=path, version_number=version, version_bumped=False)

    values: dict[str, Any] = {"content": new_content, "last_modified": now_iso()}
    if bump:
        version += 1
        values["version_number"] = version
    context.datastore.update(CANVAS_FILES, values, {"chat_id": context.chat_id, "path": path})
    if bump:
        context.datastore.insert(
            CANVAS_FILE_VERSIONS,
            {"canvas_file_id": existing.get("id"), "chat_id": context.chat_id, "path": path, "version_number": version, "content": new_content},
        )
        context.bumped_paths.add(path)
    context.record_edit("update", path, old_content, new_content)
    return ToolResult.success(f"Updated canvas file {path}", path=path, version_number=version, version_bumped=bump)


@trace
def _handle_canvas_delete_file(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'canvas_delete_file' action."""
    if error := _missing_scope(context, "chat"):
        return error
    path = str(params["path"]).strip()
    existing = _canvas_file(context, path)
    if existing is None:
        return ToolResult.error(f"Canvas file not found: {path}")
    context.datastore.delete(CANVAS_FILES, {"chat_id": context.chat_id, "path": path})
    context.bumped_paths.discard(path)
    context.record_edit("delete", path, str(existing.get("content") or ""), "")
    return ToolResult.success(f"Deleted canvas file {path}", path=path)


@trace
def _handle_canvas_read_file(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'canvas_read_file' action."""
    if error := _missing_scope(context, "chat"):
        return error
    path = str(params["path"]).strip()
    existing = _canvas_file(context, path)
    if existing is None:
        return ToolResult.error(f"Canvas file not found: {path}", existing_paths=_canvas_paths(context))
    content = str(existing.get("content") or "")
    context.record_edit("read", path, content, content)
    returned, truncated = _truncate_bytes(content, params.get("max_bytes"))
    return ToolResult.success(path=path, content=returned, version_number=existing.get("version_number"), truncated=truncated or None)


@trace
def _handle_canvas_read_file_by_id(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'canvas_read_file_by_id' action."""
    if error := _missing_scope(context, "chat"):
        return error
    file_id = str(params["id"]).strip()
    row = context.datastore.select_one(CANVAS_FILES, "id, path, content, chat_id", filters={"id": file_id})
    if not row or row.get("chat_id") != context.chat_id:
        return ToolResult.error("Not found for this chat.", id=file_id)
    content = str(row.get("content") or "")
    context.record_edit("read", row["path"], content, content)
    returned, truncated = _truncate_bytes(content, params.get("max_bytes"))
    return ToolResult.success(id=row["id"], path=row["path"], content=returned, truncated=truncated or None)


@trace
def _handle_canvas_search(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'canvas_search' action over the chat's canvas files."""
    if error := _missing_scope(context, "chat"):
        return error
    query = str(params.get("query") or "")
    if not query.strip():
        return ToolResult.error("query must not be empty.")
    limit = _clamp(params.get("max_results_per_file"), SEARCH_DEFAULT_MAX_PER_FILE, 1, SEARCH_MAX_PER_FILE_CEILING)
    rows = context.datastore.select(CANVAS_FILES, "path, content", filters={"chat_id": context.chat_id}, order_by="path")
    return ToolResult.success(query=query, results=_search_rows(rows, query, limit))


# --- Artifact Handlers ---
@trace
def _handle_project_card_preview(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'project_card_preview' action."""
    if error := _missing_scope(context, "chat"):
        return error
    card = {
        "name": str(params.get("name") or ""),
        "summary": str(params.get("summary") or ""),
        "stack": [str(item) for item in (params.get("stack") or [])][:MAX_CARD_LIST_ITEMS],
        "key_features": [str(item) for item in (params.get("key_features") or [])][:MAX_CARD_LIST_ITEMS],
        "can_implement_in_canvas": bool(params.get("can_implement_in_canvas", False)),
    }
    try:
        artifact_id = _insert_artifact(context, "project_card_preview", card)
    except DatastoreError as e:
        return ToolResult.error(e.message, card=card)
    return ToolResult.success(card=card, artifact_id=artifact_id)


@trace
def _handle_todo_list_create(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'todo_list_create' action."""
    if error := _missing_scope(context, "chat"):
        return error
    items = []
    for index, task in enumerate(params.get("tasks") or [], start=1):
        task = task if isinstance(task, dict) else {"title": str(task)}
        item = {
            "id": str(task.get("id") or index),
            "title": str(task.get("title") or f"Task {index}"),
            "done": bool(task.get("done", False)),
        }
        if isinstance(task.get("notes"), str):
            item["notes"] = task["notes"]
        items.append(item)
    todo = {"title": str(params.get("title") or "Todo"), "tasks": items}
    try:
        artifact_id = _insert_artifact(context, "todo_list", todo)
    except DatastoreError as e:
        return ToolResult.error(e.message, todo=todo)
    return ToolResult.success(todo=todo, artifact_id=artifact_id)


@trace
def _handle_todo_list_check(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'todo_list_check' action."""
    if error := _missing_scope(context, "chat"):
        return error
    artifact_id = str(params["artifact_id"]).strip()
    result = _check_tasks(context, artifact_id, [str(x) for x in params.get("completed_task_ids") or []])
    notes = params.get("context")
    if result.ok and isinstance(notes, str) and notes:
        result = result.model_copy(update={"notes": f"Context considered: {notes[:200]}"})
    return result


@trace
def _handle_artifact_read(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'artifact_read' action."""
    if error := _missing_scope(context, "chat"):
        return error
    artifact_id = str(params["id"]).strip()
    row = _chat_artifact(context, artifact_id)
    if row is None:
        return ToolResult.error("Not found for this chat.", id=artifact_id)
    return ToolResult.success(
        id=row["id"],
        artifact_type=row.get("artifact_type"),
        key=row.get("key"),
        data=row.get("data"),
        last_modified=row.get("last_modified"),
    )


# --- Composite Handlers ---
@trace
def _handle_create_file_from_template(params: dict, context: ToolContext) -> ToolResult:
    """Renders a template artifact and creates the canvas file under the single-file policy."""
    if error := _missing_scope(context, "chat"):
        return error
    artifact_id = str(params["artifact_id"]).strip()
    row = _chat_artifact(context, artifact_id)
    if row is None:
        return ToolResult.error("Artifact not found for this chat.", artifact_id=artifact_id)
    template = (row.get("data") or {}).get("template")
    if not isinstance(template, str) or not template:
        return ToolResult.error("Artifact does not contain a 'template' string.", artifact_id=artifact_id)
    for key, value in (params.get("substitutions") or {}).items():
        template = template.replace(f"{{{{{key}}}}}", str(value))
    result = _handle_canvas_create_file({"path": params["path"], "content": template}, context)
    return result.model_copy(update={"template_artifact_id": artifact_id})


@trace
def _handle_implement_feature_and_update_todo(params: dict, context: ToolContext) -> ToolResult:
    """
    Updates a canvas file, then marks a todo task done.

    The two writes are sequential, not transactional. If the todo step fails
    after the file was written, the file change stays and the result names the
    failed step and the completed ones.
    """
    if error := _missing_scope(context, "chat"):
        return error
    path = str(params["path"]).strip()
    artifact_id = str(params["artifact_id"]).strip()
    task_id = str(params["task_id"]).strip()

    update = _handle_canvas_update_file_content({"path": path, "new_content": params.get("new_content")}, context)
    if not update.ok:
        return ToolResult.error(update.message or "Canvas update failed.", failed_step="canvas_update_file_content", completed_steps=[])

    try:
        check = _check_tasks(context, artifact_id, [task_id])
    except DatastoreError as e:
        logging.error(f"Todo update failed after canvas update of '{path}': {e}")
        check = ToolResult.error(e.message)
    if not check.ok:
        return ToolResult.error(
            f"The canvas file was updated, but the todo list was not: {check.message}",
            failed_step="todo_list_check",
            completed_steps=["canvas_update_file_content"],
            path=path,
            version_number=getattr(update, "version_number", None),
        )
    return ToolResult.success(
        check.message,
        path=path,
        artifact_id=artifact_id,
        task_id=task_id,
        task_updated=bool(getattr(check, "checked", [])),
        version_number=getattr(update, "version_number", None),
    )


# --- Analysis Handlers ---
def _upload_for_model(context: ToolContext, data: bytes, mime_type: str, name: str) -> types.Part:
    """Uploads a document to the provider's file store and waits until it can be referenced."""
    uploaded = context.model_client.upload_file(data, mime_type, display_name=name)
    ready = context.model_client.wait_until_active(uploaded)
    return types.Part.from_uri(file_uri=ready.uri, mime_type=ready.mime_type or mime_type)


@trace
def _handle_analyze_document(params: dict, context: ToolContext) -> ToolResult:
    """
    Handles the 'analyze_document' action.

    Images go to the model as URL parts, falling back to inline bytes if the
    model cannot fetch the URL. Other documents are uploaded to the provider's
    file store, polled until ready, and referenced by URI.
    """
    if context.model_client is None:
        return ToolResult.error("No model client is available for document analysis.")
    instruction = str(params["instruction"])

    if params.get("base64"):
        mime_type = str(params.get("mime_type") or "application/pdf")
        name = str(params.get("file_name") or "inline")
        data = decode_base64(str(params["base64"]))
        if mime_type.startswith("image/"):
            part = types.Part.from_bytes(data=data, mime_type=mime_type)
        else:
            part = _upload_for_model(context, data, mime_type, name)
        text = context.model_client.generate_content(context.preferred_model, [types.Part.from_text(text=instruction), part])
        context.files_analyzed.append(name)
        return ToolResult.success(text=text, sources=[{"file_name": name, "provenance": "inline"}])

    sources = resolve_sources(params, context.attachments, context.storage)
    resolved = [source for source in sources if source.url]
    if not resolved:
        return ToolResult.error(
            "No resolvable document source. Reference an attachment by its listed URL or file name.",
            available=[a.file_name for a in context.attachments],
        )

    images, parts, names = [], [], []
    for source in resolved:
        attachment = source.attachment
        name = attachment.file_name if attachment else source.url.rsplit("/", 1)[-1].split("?")[0]
        if attachment and attachment.mime_type != "application/octet-stream":
            mime_type = attachment.mime_type
        elif len(resolved) == 1 and params.get("mime_type"):
            mime_type = str(params["mime_type"])
        else:
            mime_type = guess_mime_type(name, "application/pdf")
        names.append(name)
        if mime_type.startswith("image/"):
            images.append((len(parts), source.url, mime_type))
            parts.append(types.Part.from_uri(file_uri=source.url, mime_type=mime_type))
        else:
            data, _ = fetch_bytes(source.url, context.access_token, context.service_storage)
            parts.append(_upload_for_model(context, data, mime_type, name))

    prompt = [types.Part.from_text(text=instruction)]
    try:
        text = context.model_client.generate_content(context.preferred_model, prompt + parts)
    except ModelTimeout:
        raise
    except ModelCallError as e:
        if not images:
            raise
        logging.warning(f"Model could not use image URLs directly, retrying with inline bytes: {e}")
        for index, url, mime_type in images:
            data, _ = fetch_bytes(url, context.access_token, context.service_storage)
            parts[index] = types.Part.from_bytes(data=data, mime_type=mime_type)
        text = context.model_client.generate_content(context.preferred_model, prompt + parts)

    context.files_analyzed.extend(names)
    unresolved = len(sources) - len(resolved)
    return ToolResult.success(
        text=text,
        sources=[{"file_name": n, "url": s.url, "provenance": s.provenance} for n, s in zip(names, resolved)],
        unresolved_count=unresolved or None,
    )


@trace
def _handle_generate_image(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'generate_image' action."""
    if context.model_client is None or context.storage is None:
        return ToolResult.error("Image generation is not available for this request.")
    prompt = str(params["prompt"])
    image, mime_type, caption = context.model_client.generate_image(IMAGE_MODEL, [types.Part.from_text(text=prompt)])
    if not image:
        return ToolResult.error("No image returned", caption=caption)
    file_name = str(params.get("file_name") or f"gen_{now_millis()}.png")
    return _store_image(context, image, mime_type or "image/png", str(params.get("folder") or GENERATED_FOLDER), file_name, caption)


@trace
def _handle_enhance_image(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'enhance_image' action."""
    if context.model_client is None or context.storage is None:
        return ToolResult.error("Image enhancement is not available for this request.")
    instruction = str(params["instruction"])
    if params.get("base64"):
        source_bytes = decode_base64(str(params["base64"]))
        source_mime = str(params.get("mime_type") or "image/png")
    else:
        source = resolve_best_url(params, context.attachments, context.storage)
        if not source.url:
            return ToolResult.error("No source image could be resolved. Reference an attachment by its listed URL or file name.")
        source_bytes, fetched_type = fetch_bytes(source.url, context.access_token, context.service_storage)
        source_mime = (source.attachment.mime_type if source.attachment else None) or fetched_type or "image/png"
    image, mime_type, caption = context.model_client.generate_image(
        IMAGE_MODEL,
        [types.Part.from_text(text=instruction), types.Part.from_bytes(data=source_bytes, mime_type=source_mime)],
    )
    if not image:
        return ToolResult.error("No image returned", caption=caption)
    file_name = str(params.get("output_file_name") or f"enh_{now_millis()}.png")
    return _store_image(context, image, mime_type or "image/png", str(params.get("folder") or GENERATED_FOLDER), file_name, caption)


# --- Review Handlers ---
@trace
def _handle_lint_check(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'lint_check' action. Purely local; never calls the model."""
    path, content = _load_source_text(context, params)
    if content is None:
        return ToolResult.error(f"File not found: {path}" if path else "Provide either a path or inline content.")
    issues, truncated = lint_text(content, path)
    return ToolResult.success(
        "No issues found." if not issues else f"Found {len(issues)} issue(s).",
        path=path,
        issues=issues,
        issue_count=len(issues),
        truncated=truncated or None,
    )


@trace
def _handle_analyze_code(params: dict, context: ToolContext) -> ToolResult:
    """Handles the 'analyze_code' action on a byte-capped slice of the code."""
    if context.model_client is None:
        return ToolResult.error("No model client is available for code analysis.")
    path, content = _load_source_text(context, params)
    if content is None:
        return ToolResult.error(f"File not found: {path}" if path else "Provide either a path or inline content.")
    excerpt, truncated = _truncate_bytes(content, MAX_ANALYZE_BYTES)
    issue = str(params.get("issue") or "").strip()
    model = ANALYSIS_MODEL_STRONG if issue else ANALYSIS_MODEL
    if issue:
        instruction = f"Diagnose the following issue in this code and propose a concrete fix.\nIssue: {issue}"
    else:
        instruction = "Review this code. List bugs, risky constructs and readability problems, most important first."
    header = f"File: {path}\n" if path else ""
    note = "\n(The code was truncated for analysis.)" if truncated else ""
    analysis = context.model_client.generate_content(
        model, [types.Part.from_text(text=f"{instruction}\n\n{header}```\n{excerpt}\n```{note}")]
    )
    return ToolResult.success(path=path, model=model, analysis=analysis, truncated=truncated or None)


# --- Tool Registry (Strategy Pattern) ---
# A dictionary mapping tool names to their handler functions. Its key set must
# equal the declaration catalog's; verify_registry enforces that at import.
TOOL_REGISTRY: Dict[str, Callable[[Dict, ToolContext], ToolResult]] = {
    "create_file": _handle_create_file,
    "update_file_content": _handle_update_file_content,
    "delete_file": _handle_delete_file,
    "read_file": _handle_read_file,
    "search": _handle_search,
    "lint_check": _handle_lint_check,
    "analyze_code": _handle_analyze_code,
    "project_card_preview": _handle_project_card_preview,
    "todo_list_create": _handle_todo_list_create,
    "todo_list_check": _handle_todo_list_check,
    "analyze_document": _handle_analyze_document,
    "generate_image": _handle_generate_image,
    "enhance_image": _handle_enhance_image,
    "canvas_create_file": _handle_canvas_create_file,
    "canvas_update_file_content": _handle_canvas_update_file_content,
    "canvas_delete_file": _handle_canvas_delete_file,
    "canvas_read_file": _handle_canvas_read_file,
    "canvas_search": _handle_canvas_search,
    "canvas_read_file_by_id": _handle_canvas_read_file_by_id,
    "artifact_read": _handle_artifact_read,
    "create_file_from_template": _handle_create_file_from_template,
    "implement_feature_and_update_todo": _handle_implement_feature_and_update_todo,
}


def verify_registry():
    """
    Raises:
        RegistryMismatchError: If a declared tool has no handler or a handler
            has no declaration.
    """
    declared, handled = set(DECLARATIONS_BY_NAME), set(TOOL_REGISTRY)
    if declared != handled:
        raise RegistryMismatchError(
            f"Declared without handler: {sorted(declared - handled)}; handler without declaration: {sorted(handled - declared)}"
        )


verify_registry()


# --- Core Execution Logic ---
@trace
def execute_tool_command(call: ToolCall, context: ToolContext) -> ToolResult:
    """
    Executes one model-issued tool call.

    This is the single entry point for all tool executions. Names outside the
    mode's toolset are rejected as unknown, arguments are checked against the
    declaration, and anything a handler raises or returns malformed is turned
    into an error result.
    """
    name = call.name
    handler = TOOL_REGISTRY.get(name)
    if handler is None or name not in tool_names(toolset_for(context.mode)):
        return ToolResult.error(f"Unknown tool: {name}")

    problems = validate_args(name, call.args)
    if problems:
        return ToolResult.error(" ".join(problems))

    try:
        result = handler(call.args, context)
        if not isinstance(result, ToolResult):
            result = ToolResult.model_validate(result)
    except ValidationError as e:
        logging.error(f"Tool '{name}' returned a malformed result: {e}")
        result = ToolResult.error(f"Tool '{name}' returned a malformed result.")
    except (AttachmentFetchError, DatastoreError) as e:
        logging.error(f"Tool '{name}' failed upstream: {e}")
        result = ToolResult.error(str(e))
    except Exception as e:
        logging.error(f"Error in execute_tool_command dispatch for tool '{name}': {e}", exc_info=True)
        result = ToolResult.error(f"An internal error occurred during tool execution: {e}")

    audit_log.log_event(
        event="Tool Executed",
        chat_id=context.chat_id,
        project_id=context.project_id,
        loop_id=context.loop_id,
        source="Orchestrator",
        destination=name,
        details={"args": sorted(call.args), "status": result.status, "message": result.message},
    )
    return result
