"""
Assembles the system instruction for each model call.

The instruction is rebuilt on every loop iteration from the datastore, so
files and artifacts created by a tool call earlier in the same run are visible
to the very next model call. Context lookups are best effort: a failed lookup
leaves its section out instead of failing the request.
"""
import logging
from typing import Any, Optional

from config import ARTIFACT_MANIFEST_LIMIT
from data_models import Artifact, Attachment, Mode
from datastore import CANVAS_FILES, PLAYGROUND_ARTIFACTS, PLAYGROUND_CHATS, PROJECT_FILES, PROJECTS, Datastore
from exceptions import DatastoreError
from tool_agent import ToolContext
from tool_declarations import tool_names
from tracer import trace

PERSONA = (
    "You are Robin, an expert AI software development assistant working inside a multi-pane IDE. "
    "Always identify yourself as Robin."
)

MODE_RULES = {
    Mode.ASK: (
        "You are in Ask mode. Provide analysis, suggestions and code review. "
        "You must NOT modify files or suggest that you changed files. "
        "You only read code through your tools and reason about it."
    ),
    Mode.BUILD: (
        "You are in Build mode. Make the changes the user asks for with the file tools. "
        "Read a file before rewriting it, and always send the complete new content of a file when updating it."
    ),
    Mode.PLAYGROUND: (
        "You are in Playground mode.\n"
        "- Prefer web-first solutions (React or HTML/CSS/JS) unless the user asks for another stack or web is unsuitable.\n"
        "- When a feature can run in a single file, build it as a self-contained canvas file suitable for live preview. "
        "A chat has a single canvas file: update it instead of creating another.\n"
        "- Do not dump large JSON inline unless asked. Store structured outputs as artifacts when appropriate."
    ),
}

GUIDANCE = (
    "Use tools when needed instead of fabricating results. "
    "Do not start a reply with a speaker label such as \"Robin:\" or \"Assistant:\"; just answer."
)

URL_RULE = (
    "When a tool needs one of these files, pass its URL or file name exactly as listed. "
    "Use URLs verbatim: never retype, shorten or invent a URL."
)


def _safe(label: str, fn, default):
    try:
        return fn()
    except DatastoreError as e:
        logging.warning(f"Could not load {label} for the system instruction: {e}")
        return default


@trace
def load_project(datastore: Datastore, project_id: str) -> Optional[dict[str, Any]]:
    return _safe("project", lambda: datastore.select_one(PROJECTS, "name, description, stack", filters={"id": project_id}), None)


def list_project_files(datastore: Datastore, project_id: str) -> list[str]:
    rows = _safe("project files", lambda: datastore.select(PROJECT_FILES, "path", filters={"project_id": project_id}, order_by="path"), [])
    return [row["path"] for row in rows]


def list_canvas_files(datastore: Datastore, chat_id: str) -> list[str]:
    rows = _safe("canvas files", lambda: datastore.select(CANVAS_FILES, "path", filters={"chat_id": chat_id}, order_by="path"), [])
    return [row["path"] for row in rows]


@trace
def list_artifacts(datastore: Datastore, chat_id: str, limit: int = ARTIFACT_MANIFEST_LIMIT) -> list[Artifact]:
    """The chat's artifacts, most recently modified first."""
    rows = _safe(
        "artifacts",
        lambda: datastore.select(
            PLAYGROUND_ARTIFACTS,
            "id, artifact_type, data, last_modified",
            filters={"chat_id": chat_id},
            order_by="last_modified",
            descending=True,
            limit=limit,
        ),
        [],
    )
    return [
        Artifact(id=str(row["id"]), artifact_type=str(row.get("artifact_type") or ""), data=row.get("data") or {},
                 last_modified=row.get("last_modified"))
        for row in rows
    ]


def artifact_manifest(artifacts: list[Artifact]) -> str:
    if not artifacts:
        return ""
    lines = [f"- {artifact.id}: {artifact.title} [{artifact.artifact_type}]" for artifact in artifacts]
    return "Available artifacts (id: title [type]):\n" + "\n".join(lines)


def attachment_manifest(attachments: list[Attachment]) -> str:
    """
    Lists attachments with their URLs.

    IDE attachments (path plus line count, no URL) are listed by path only;
    their text is not repeated here.
    """
    if not attachments:
        return ""
    lines = []
    for attachment in attachments:
        if attachment.line_count is not None and not attachment.best_url:
            lines.append(f"- {attachment.path or attachment.file_name} ({attachment.line_count} lines)")
            continue
        target = attachment.best_url or attachment.path or "unavailable"
        lines.append(f"- {attachment.file_name} ({attachment.mime_type}) -> {target}")
    return f"Attached files ({len(attachments)}):\n" + "\n".join(lines)


def _project_section(project: Optional[dict[str, Any]], file_paths: list[str]) -> str:
    project = project or {}
    stack = project.get("stack") or []
    if isinstance(stack, str):
        stack = [stack]
    lines = [
        f"Current project: {project.get('name') or 'Project'}.",
        f"Project description: {project.get('description') or 'No description provided'}.",
    ]
    if stack:
        lines.append("Stack for the project:\n" + "\n".join(f"- {item}" for item in stack))
    lines.append(f"Project files ({len(file_paths)}):\n" + "\n".join(f"- {path}" for path in file_paths))
    return "\n".join(lines)


def _chat_section(chat: Optional[dict[str, Any]], canvas_paths: list[str]) -> str:
    title = (chat or {}).get("title") or "Playground chat"
    if canvas_paths:
        files = "Canvas file: " + ", ".join(canvas_paths)
    else:
        files = "This chat has no canvas file yet."
    return f"Current chat: {title}.\n{files}"


@trace
def build_system_instruction(context: ToolContext, toolset: list[dict[str, Any]]) -> str:
    """
    Builds the system instruction for one model call.

    Sections, in order: persona, mode rules, project or chat context,
    attachment manifest, artifact manifest, tool guidance.

    Args:
        context: The request's tool context (mode, scope ids, datastore, attachments).
        toolset: The declarations offered to the model in this call.
    """
    sections = [PERSONA, MODE_RULES[context.mode]]
    datastore = context.datastore

    if context.mode == Mode.PLAYGROUND:
        if context.chat_id:
            chat = _safe("chat", lambda: datastore.select_one(PLAYGROUND_CHATS, "id, title", filters={"id": context.chat_id}), None)
            sections.append(_chat_section(chat, list_canvas_files(datastore, context.chat_id)))
    elif context.project_id:
        sections.append(_project_section(load_project(datastore, context.project_id), list_project_files(datastore, context.project_id)))

    manifest = attachment_manifest(context.attachments)
    if manifest:
        sections.append(f"{manifest}\n{URL_RULE}")

    if context.mode == Mode.PLAYGROUND and context.chat_id:
        artifacts = artifact_manifest(list_artifacts(datastore, context.chat_id))
        if artifacts:
            sections.append(f"{artifacts}\nRefer to artifacts by id when a tool needs one.")

    sections.append(f"Available tools: {', '.join(tool_names(toolset))}.\n{GUIDANCE}")
    return "\n\n".join(section for section in sections if section)
