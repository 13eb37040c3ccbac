"""
The static catalog of tools the model may call.

Each declaration is a plain dict in the function-declaration shape the Gemini
API accepts (name, description, JSON-schema-like parameters). Declarations are
grouped by concern and composed per mode by `toolset_for`; which handler runs
for each name is the tool agent's business, and `tool_agent.verify_registry`
keeps the two sides in lockstep.
"""
from typing import Any, Iterable

from google.genai import types

from data_models import Mode


def _tool(name: str, description: str, properties: dict[str, Any], required: Iterable[str] = ()) -> dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "parameters": {"type": "OBJECT", "properties": properties, "required": list(required)},
    }


def _string(description: str) -> dict[str, Any]:
    return {"type": "STRING", "description": description}


def _string_list(description: str) -> dict[str, Any]:
    return {"type": "ARRAY", "description": description, "items": {"type": "STRING"}}


_MAX_BYTES = {"type": "INTEGER", "description": "Optional maximum number of bytes to return for very large files."}
_MAX_RESULTS = {"type": "INTEGER", "description": "Optional cap for matches per file (default 20)."}

# --- Project files ---
FILE_TOOLS = [
    _tool(
        "create_file",
        "Creates a new file with a specified path and initial content. Use this to create new project files.",
        {
            "path": _string("The full, unique path of the file to create, e.g. 'src/components/button.tsx'."),
            "content": _string("The initial content of the file. Can be empty."),
        },
        required=["path", "content"],
    ),
    _tool(
        "update_file_content",
        "Updates the entire content of an existing file, identified by its unique path.",
        {
            "path": _string("The unique path of the file to be updated."),
            "new_content": _string("The new, complete content that will overwrite the existing file content."),
        },
        required=["path", "new_content"],
    ),
    _tool(
        "delete_file",
        "Permanently deletes a file from the project, identified by its unique path.",
        {"path": _string("The unique path of the file to be deleted.")},
        required=["path"],
    ),
    _tool(
        "read_file",
        "Reads and returns the content of a file in the current project by its path.",
        {"path": _string("The unique path of the file to read."), "max_bytes": _MAX_BYTES},
        required=["path"],
    ),
]

SEARCH_TOOLS = [
    _tool(
        "search",
        "Search the project files for lines containing a query (case-insensitive). Returns files and matching line numbers.",
        {
            "query": _string("The substring to search for (no regex)."),
            "max_results_per_file": _MAX_RESULTS,
        },
        required=["query"],
    ),
]

# --- Review ---
REVIEW_TOOLS = [
    _tool(
        "lint_check",
        "Run a fast local lint pass (unbalanced brackets, braces, parentheses and quotes) over a file or a snippet. "
        "No model call; use it before a full review.",
        {
            "path": _string("Path of a project or canvas file to check."),
            "content": _string("Inline content to check instead of a stored file."),
        },
    ),
    _tool(
        "analyze_code",
        "Ask a reviewer model to analyze code. Provide an issue to get a focused diagnosis, or omit it for a general review.",
        {
            "path": _string("Path of a project or canvas file to analyze."),
            "content": _string("Inline code to analyze instead of a stored file."),
            "issue": _string("Optional description of a specific bug or symptom to diagnose."),
        },
    ),
]

# --- Playground ---
PLAYGROUND_TOOLS = [
    _tool(
        "project_card_preview",
        "Create a JSON card describing a simple, web-first project proposal with name, summary, stack, key_features, "
        "and whether it can be implemented as a single-file canvas component.",
        {
            "name": _string("Short project name."),
            "summary": _string("One-paragraph description of the project. Assume a web target unless the user requested otherwise."),
            "stack": _string_list("Suggested technologies (e.g., React, HTML/CSS/JS)."),
            "key_features": _string_list("List of 3-7 headline features."),
            "can_implement_in_canvas": {
                "type": "BOOLEAN",
                "description": "True if the project can be implemented entirely in a single JS/HTML file for canvas preview.",
            },
        },
        required=["name", "summary"],
    ),
    _tool(
        "todo_list_create",
        "Create a structured todo list (JSON) from a user request, stored as an artifact.",
        {
            "title": _string("Title of the todo list."),
            "tasks": {
                "type": "ARRAY",
                "description": "Array of tasks with id, title and done flag.",
                "items": {
                    "type": "OBJECT",
                    "properties": {
                        "id": {"type": "STRING"},
                        "title": {"type": "STRING"},
                        "done": {"type": "BOOLEAN"},
                        "notes": {"type": "STRING"},
                    },
                },
            },
        },
        required=["title"],
    ),
    _tool(
        "todo_list_check",
        "Mark tasks of an existing todo list artifact as completed.",
        {
            "artifact_id": _string("ID of the todo list artifact."),
            "completed_task_ids": _string_list("Task IDs to mark as done."),
            "context": _string("Optional context or recent changes to consider."),
        },
        required=["artifact_id"],
    ),
    _tool(
        "analyze_document",
        "Analyze user-provided documents or images (PDF, images, text). Summarize, extract or answer questions about them. "
        "Reference attachments by their URL or file name exactly as listed.",
        {
            "instruction": _string("Instruction, e.g. 'summarize', 'extract tables', or a question."),
            "file_uri": _string("URL of the document, copied verbatim from the attachment list."),
            "file_name": _string("Name of an attached file, as listed."),
            "base64": _string("Base64 data if provided inline."),
            "mime_type": _string("MIME type, e.g. application/pdf, image/png."),
            "file_uris": _string_list("Several document URLs to analyze together."),
            "file_names": _string_list("Several attached file names to analyze together."),
        },
        required=["instruction"],
    ),
    _tool(
        "generate_image",
        "Generate an image from a text prompt using an image generation model. Returns the storage path and URL.",
        {
            "prompt": _string("Image description to generate."),
            "folder": _string("Optional storage folder (default 'playground/images')."),
            "file_name": _string("Optional output file name (png)."),
        },
        required=["prompt"],
    ),
    _tool(
        "enhance_image",
        "Enhance or edit an existing image given its URL, an attached file name, or base64 data, plus an instruction.",
        {
            "instruction": _string("How to improve the image (e.g., upscale, color grade)."),
            "file_uri": _string("URL of the image to enhance, copied verbatim from the attachment list."),
            "file_name": _string("Name of an attached image, as listed."),
            "base64": _string("Base64 image data."),
            "mime_type": _string("MIME type for the source if base64 is provided."),
            "folder": _string("Optional storage folder to write the enhanced image."),
            "output_file_name": _string("Optional output file name (png)."),
        },
        required=["instruction"],
    ),
]

# --- Canvas (per-chat files) ---
CANVAS_TOOLS = [
    _tool(
        "canvas_create_file",
        "Create the canvas file of the current Playground chat. A chat holds a single canvas file; "
        "if one exists already, update it instead.",
        {
            "path": _string("Path of the canvas file to create (e.g., 'index.html')."),
            "content": _string("Initial content of the file."),
        },
        required=["path", "content"],
    ),
    _tool(
        "canvas_update_file_content",
        "Update the entire content of an existing canvas file.",
        {
            "path": _string("Path of the canvas file to update."),
            "new_content": _string("New content to overwrite."),
            "new_version": {
                "type": "BOOLEAN",
                "description": "Force a new version checkpoint even if this file was already edited in this turn.",
            },
        },
        required=["path", "new_content"],
    ),
    _tool(
        "canvas_delete_file",
        "Delete a canvas file from the current chat.",
        {"path": _string("Path of the canvas file to delete.")},
        required=["path"],
    ),
    _tool(
        "canvas_read_file",
        "Read a canvas file's content by path.",
        {"path": _string("Path of the canvas file to read."), "max_bytes": _MAX_BYTES},
        required=["path"],
    ),
    _tool(
        "canvas_search",
        "Search within all canvas files of the current chat for a query (case-insensitive).",
        {"query": _string("Substring to search for."), "max_results_per_file": _MAX_RESULTS},
        required=["query"],
    ),
]

ARTIFACT_READ_TOOLS = [
    _tool(
        "canvas_read_file_by_id",
        "Read a canvas file's content using its database id.",
        {"id": _string("Id of the canvas file."), "max_bytes": _MAX_BYTES},
        required=["id"],
    ),
    _tool(
        "artifact_read",
        "Read an artifact's metadata and JSON data using its id.",
        {"id": _string("Id of the artifact, as listed in the available artifacts.")},
        required=["id"],
    ),
]

COMPOSITE_TOOLS = [
    _tool(
        "create_file_from_template",
        "Create the canvas file from a template stored as an artifact, replacing {{key}} placeholders.",
        {
            "artifact_id": _string("Id of the template artifact. Its data must contain a 'template' string."),
            "path": _string("Destination canvas file path (e.g., 'index.html')."),
            "substitutions": {
                "type": "OBJECT",
                "description": "Optional key-value pairs replacing {{key}} placeholders in the template.",
            },
        },
        required=["artifact_id", "path"],
    ),
    _tool(
        "implement_feature_and_update_todo",
        "Update a canvas file's content and then mark the corresponding task done in a todo list artifact.",
        {
            "artifact_id": _string("Id of the todo list artifact."),
            "task_id": _string("Id of the task to mark as done."),
            "path": _string("Canvas file path to update."),
            "new_content": _string("New content to write into the canvas file."),
            "context": _string("Optional notes about the implementation."),
        },
        required=["artifact_id", "task_id", "path", "new_content"],
    ),
]

ALL_TOOLS = [
    *FILE_TOOLS,
    *SEARCH_TOOLS,
    *REVIEW_TOOLS,
    *PLAYGROUND_TOOLS,
    *CANVAS_TOOLS,
    *ARTIFACT_READ_TOOLS,
    *COMPOSITE_TOOLS,
]
DECLARATIONS_BY_NAME = {declaration["name"]: declaration for declaration in ALL_TOOLS}

_ASK_TOOL_NAMES = ("read_file", "search", "lint_check", "analyze_code")


def toolset_for(mode: Mode) -> list[dict[str, Any]]:
    """Returns the declarations offered to the model in one endpoint mode."""
    mode = Mode(mode)
    if mode == Mode.ASK:
        return [DECLARATIONS_BY_NAME[name] for name in _ASK_TOOL_NAMES]
    if mode == Mode.BUILD:
        return [*FILE_TOOLS, *SEARCH_TOOLS, *REVIEW_TOOLS]
    return [*PLAYGROUND_TOOLS, *CANVAS_TOOLS, *ARTIFACT_READ_TOOLS, *COMPOSITE_TOOLS, *REVIEW_TOOLS]


def tool_names(toolset: list[dict[str, Any]]) -> list[str]:
    return [declaration["name"] for declaration in toolset]


def to_function_declarations(toolset: list[dict[str, Any]]) -> list[types.FunctionDeclaration]:
    """Converts catalog entries to SDK objects for one model call."""
    return [types.FunctionDeclaration.model_validate(declaration) for declaration in toolset]


_JSON_TYPES = {
    "STRING": (str,),
    "INTEGER": (int,),
    "NUMBER": (int, float),
    "BOOLEAN": (bool,),
    "ARRAY": (list, tuple),
    "OBJECT": (dict,),
}

# Identifier arguments; a blank value names nothing.
NON_BLANK_FIELDS = ("path", "id", "artifact_id", "task_id")


def validate_args(name: str, args: dict[str, Any]) -> list[str]:
    """
    Checks a tool call's arguments against its declaration.

    Only the top level is checked: required fields must be present and
    non-null, required identifiers must not be blank, and every declared
    field that is present must have its declared type. Unknown fields are
    ignored.

    Returns:
        A list of human-readable problems; empty when the arguments are valid.
    """
    declaration = DECLARATIONS_BY_NAME.get(name)
    if declaration is None:
        return [f"Unknown tool: {name}"]
    schema = declaration["parameters"]
    problems = []
    for field in schema.get("required", []):
        if args.get(field) is None:
            problems.append(f"Missing required parameter: {field}.")
        elif field in NON_BLANK_FIELDS and isinstance(args[field], str) and not args[field].strip():
            problems.append(f"{field} is required.")
    for field, prop in schema.get("properties", {}).items():
        value = args.get(field)
        if value is None:
            continue
        expected = _JSON_TYPES.get(prop.get("type", ""), ())
        # bool is an int subclass; keep them apart.
        if prop.get("type") in ("INTEGER", "NUMBER") and isinstance(value, bool):
            problems.append(f"Parameter '{field}' must be of type {prop['type'].lower()}.")
        elif prop.get("type") == "INTEGER" and isinstance(value, float) and value.is_integer():
            continue
        elif expected and not isinstance(value, expected):
            problems.append(f"Parameter '{field}' must be of type {prop['type'].lower()}.")
    return problems
