"""
Defines the core data structures for the application using Pydantic.

This module provides centralized, validated models that ensure data consistency
across the orchestrator, tool agent, attachment resolver and persistence layer.
Using these models keeps the untrusted edges of the system (request bodies,
model-issued tool calls, datastore rows) explicit and self-documenting.
"""
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Role(str, Enum):
    """The two conversation roles the model API accepts."""
    USER = "user"
    MODEL = "model"


class Mode(str, Enum):
    """The endpoint flavours, each with its own toolset and prompt rules."""
    ASK = "ask"
    BUILD = "build"
    PLAYGROUND = "playground"


class ToolCall(BaseModel):
    """
    A tool invocation requested by the model.
    The arguments are untrusted and validated against the declaration before use.
    """

    # The specific name of the tool to be executed, e.g., 'read_file', 'canvas_search'.
    name: str = Field(..., description="The name of the tool to be executed.")
    # A flexible dictionary of arguments for the specified tool.
    args: dict[str, Any] = Field(default_factory=dict, description="Arguments for the tool.")


class ToolResult(BaseModel):
    """
    Represents a standardized result returned after a tool is executed.

    Only `status` is fixed; each tool adds its own payload keys (path, content,
    artifact_id, ...), which is why extra fields are allowed.
    """
    model_config = ConfigDict(extra="allow")

    status: Literal["success", "error"] = Field(..., description="Indicates whether the tool execution was successful.")
    message: Optional[str] = Field(default=None, description="A human-readable message describing the outcome.")

    @classmethod
    def success(cls, message: Optional[str] = None, **payload: Any) -> "ToolResult":
        return cls(status="success", message=message, **payload)

    @classmethod
    def error(cls, message: str, **payload: Any) -> "ToolResult":
        return cls(status="error", message=message, **payload)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_response(self) -> dict[str, Any]:
        """The JSON-serialisable form fed back to the model and to clients."""
        return self.model_dump(mode="json", exclude_none=True)


class FileEdit(BaseModel):
    """An audit record for one file operation performed during a request."""
    operation: Literal["create", "update", "delete", "read"]
    path: str
    old_content: str = ""
    new_content: str = ""


class RawAttachment(BaseModel):
    """
    An attachment exactly as a client submitted it.

    Clients use several spellings for the same field, so each one accepts
    its known aliases. Exactly one source is expected: inline base64, a
    storage bucket/key pair, a URL, or (for IDE attachments) inline text content.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    base64: Optional[str] = Field(default=None, validation_alias=AliasChoices("base64", "data", "bytes"))
    mime_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("mime_type", "mimeType", "type"))
    file_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("file_name", "fileName", "name"))
    bucket: Optional[str] = None
    key: Optional[str] = Field(default=None, validation_alias=AliasChoices("key", "path"))
    url: Optional[str] = None
    signed_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("signed_url", "signedUrl"))
    public_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("public_url", "publicUrl"))
    content: Optional[str] = None
    line_count: Optional[int] = None


class Attachment(BaseModel):
    """
    The canonical, durable form of an attachment: metadata plus URLs.
    Raw bytes never survive normalization.
    """
    mime_type: str = "application/octet-stream"
    file_name: str = "file"
    url: Optional[str] = None
    signed_url: Optional[str] = None
    public_url: Optional[str] = None
    bucket: Optional[str] = None
    path: Optional[str] = None
    line_count: Optional[int] = None

    @property
    def best_url(self) -> Optional[str]:
        return self.url or self.public_url or self.signed_url


class Artifact(BaseModel):
    """A structured side product of a tool call, referenceable by id."""
    id: str
    artifact_type: str
    data: dict[str, Any] = Field(default_factory=dict)
    chat_id: Optional[str] = None
    message_id: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def title(self) -> str:
        return str(self.data.get("title") or self.data.get("name") or self.artifact_type or "untitled")


class ToolEvent(BaseModel):
    """A tool execution as recorded in a persisted message's tool_results."""
    id: int
    name: str
    result: dict[str, Any]


class TurnRequest(BaseModel):
    """The JSON body shared by the Ask, Build and Playground endpoints."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    prompt: str = ""
    history: list[dict[str, Any]] = Field(default_factory=list)
    model: Optional[str] = None
    include_thoughts: bool = Field(default=False, alias="includeThoughts")
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    attached_files: list[dict[str, Any]] = Field(default_factory=list, alias="attachedFiles")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    chat_id: Optional[str] = Field(default=None, alias="chatId")

    @property
    def all_attachments(self) -> list[dict[str, Any]]:
        return [*self.attachments, *self.attached_files]


class ModelTurn(BaseModel):
    """
    One model response (or one streamed chunk of it), reduced to what the loop
    needs: answer text, reasoning text and requested tool calls.
    """
    text: str = ""
    thoughts: str = ""
    function_calls: list[ToolCall] = Field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.function_calls)


class StreamEvent(BaseModel):
    """
    One line of the NDJSON response stream.
    Each event type carries its own keys (delta, id, name, result, ...).
    """
    model_config = ConfigDict(extra="allow")

    type: Literal["start", "text", "thought", "tool_in_progress", "tool_result", "ping", "error", "end"]

    def to_line(self) -> str:
        return self.model_dump_json(exclude_none=True) + "\n"


class TurnResult(BaseModel):
    """What one orchestration run produced."""
    text: str = ""
    model: str = ""
    file_edits: list[FileEdit] = Field(default_factory=list)
    tool_events: list[ToolEvent] = Field(default_factory=list)
    artifact_ids: list[str] = Field(default_factory=list)
    thoughts: str = ""
    chat_id: Optional[str] = None
    message_id: Optional[str] = None
    files_analyzed: list[str] = Field(default_factory=list)

    def to_response(self, mode: Mode) -> dict[str, Any]:
        """Renders the mode-specific non-streaming response body."""
        body: dict[str, Any] = {
            "text": self.text,
            "fileEdits": [edit.model_dump() for edit in self.file_edits],
        }
        if mode == Mode.PLAYGROUND:
            body["chatId"] = self.chat_id
            body["artifactIds"] = list(self.artifact_ids)
            body["messageId"] = self.message_id
        elif self.chat_id:
            body["chatId"] = self.chat_id
        if self.files_analyzed:
            body["filesAnalyzed"] = list(self.files_analyzed)
        return body


class TerminalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    command: str = ""
    project_id: Optional[str] = Field(default=None, alias="projectId")
    current_directory: str = Field(default="/", alias="currentDirectory")


class TerminalResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    output: str = ""
    exit_code: int = Field(default=0, serialization_alias="exitCode")
    cwd: str = "/"
