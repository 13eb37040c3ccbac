"""
Reads conversation history in and writes finished turns out.

Playground chats are server-tracked: the chat row is created on first use,
the last few messages seed the model's context, and every completed turn is
appended with its tool activity and reasoning. Ask and Build requests are
stateless; their history comes from the client, or from the project's chat
log when the client names one.
"""
import json
import logging
from typing import Any, Optional

from google.genai import types
from pydantic import ValidationError

from audit_logger import audit_log
from config import HISTORY_WINDOW
from data_models import Mode, Role, TurnRequest, TurnResult
from datastore import PLAYGROUND_ARTIFACTS, PLAYGROUND_CHAT_MESSAGES, PLAYGROUND_CHATS, PROJECT_CHAT_MESSAGES, Datastore
from exceptions import DatastoreError
from tool_agent import ToolContext
from tracer import trace
from utils import now_iso

NEW_CHAT_TITLE = "New Playground Chat"


def _role(sender: Any) -> Role:
    return Role.USER if str(sender).lower() == "user" else Role.MODEL


def _text_turn(role: Role, text: str) -> types.Content:
    return types.Content(role=role.value, parts=[types.Part.from_text(text=text)])


@trace
def ensure_playground_chat(datastore: Datastore, chat_id: Optional[str]) -> str:
    """
    Returns the chat id, creating a chat owned by the caller when none was given.

    Raises:
        AuthError: If a chat must be created and the caller cannot be identified.
    """
    if chat_id:
        return chat_id
    user_id = datastore.current_user_id()
    row = datastore.insert(PLAYGROUND_CHATS, {"user_id": user_id, "title": NEW_CHAT_TITLE})
    logging.info(f"Created playground chat {row.get('id')} for user {user_id}.")
    return str(row["id"])


def rows_to_contents(rows: list[dict[str, Any]]) -> list[types.Content]:
    """
    Converts stored messages (oldest first) to conversation turns.

    A message's tool activity is replayed as a separate text turn so the model
    remembers what its tools returned; stored reasoning is left out.
    """
    contents = []
    for row in rows:
        role = _role(row.get("sender"))
        text = str(row.get("content") or "")
        if text:
            contents.append(_text_turn(role, text))
        events = (row.get("tool_results") or {}).get("events") if isinstance(row.get("tool_results"), dict) else None
        if events:
            summary = json.dumps({"tool_results": events}, default=str)
            contents.append(_text_turn(role, f"Previous tool activity:\n{summary}"))
    return contents


def history_to_contents(history: list[dict[str, Any]]) -> list[types.Content]:
    """
    Converts client-supplied history to conversation turns.

    Items may be API-shaped ({role, parts}) or chat-shaped ({role|sender,
    content}). Reasoning entries are dropped: a thought is not a role.
    """
    contents = []
    for item in history or []:
        if not isinstance(item, dict):
            continue
        role_name = str(item.get("role") or item.get("sender") or "user").lower()
        if role_name == "thought":
            continue
        role = _role(role_name)
        if isinstance(item.get("parts"), list):
            try:
                contents.append(types.Content.model_validate({"role": role.value, "parts": item["parts"]}))
            except ValidationError as e:
                logging.warning(f"Skipping malformed history turn: {e}")
        elif item.get("content"):
            contents.append(_text_turn(role, str(item["content"])))
    return contents


def _recent_rows(datastore: Datastore, table: str, chat_id: str) -> list[dict[str, Any]]:
    rows = datastore.select(
        table,
        "sender, content, tool_results, sent_at",
        filters={"chat_id": chat_id},
        order_by="sent_at",
        descending=True,
        limit=HISTORY_WINDOW,
    )
    return list(reversed(rows))


@trace
def load_history(context: ToolContext, request: TurnRequest) -> list[types.Content]:
    """
    Returns the prior conversation for this request, oldest first.

    Must run before the new user message is stored, or that message would be
    sent to the model twice. A failed lookup yields an empty history.
    """
    try:
        if context.mode == Mode.PLAYGROUND:
            return rows_to_contents(_recent_rows(context.datastore, PLAYGROUND_CHAT_MESSAGES, context.chat_id)) if context.chat_id else []
        if request.chat_id:
            return rows_to_contents(_recent_rows(context.datastore, PROJECT_CHAT_MESSAGES, request.chat_id))
    except DatastoreError as e:
        logging.warning(f"Could not load chat history; continuing without it: {e}")
        return []
    return history_to_contents(request.history)


@trace
def save_user_message(context: ToolContext, prompt: str) -> Optional[str]:
    """Appends the user's message with its normalized attachments."""
    attached = [attachment.model_dump(exclude_none=True) for attachment in context.attachments]
    try:
        row = context.datastore.insert(
            PLAYGROUND_CHAT_MESSAGES,
            {
                "chat_id": context.chat_id,
                "sender": "user",
                "message_type": "text",
                "content": prompt,
                "attached_files": attached or None,
                "sent_at": now_iso(),
            },
        )
    except DatastoreError as e:
        logging.error(f"Could not store user message for chat {context.chat_id}: {e}")
        return None
    return row.get("id")


@trace
def save_ai_message(context: ToolContext, result: TurnResult) -> Optional[str]:
    """
    Appends the assistant's message with its tool events and reasoning, then
    links every artifact the turn produced or touched to that message.

    Returns:
        The new message id, or None if the message could not be stored.
    """
    try:
        row = context.datastore.insert(
            PLAYGROUND_CHAT_MESSAGES,
            {
                "chat_id": context.chat_id,
                "sender": "ai",
                "message_type": "text",
                "content": result.text,
                "thoughts": result.thoughts or None,
                "tool_results": {"events": [event.model_dump() for event in result.tool_events]},
                "sent_at": now_iso(),
            },
        )
    except DatastoreError as e:
        logging.error(f"Could not store assistant message for chat {context.chat_id}: {e}")
        return None
    message_id = row.get("id")
    audit_log.log_event(
        event="Message Persisted",
        chat_id=context.chat_id,
        loop_id=context.loop_id,
        source="Orchestrator",
        destination=PLAYGROUND_CHAT_MESSAGES,
        details={"message_id": message_id, "tool_events": len(result.tool_events)},
    )
    if message_id:
        backfill_artifacts(context.datastore, str(message_id), result.artifact_ids)
    return message_id


def backfill_artifacts(datastore: Datastore, message_id: str, artifact_ids: list[str]):
    for artifact_id in artifact_ids:
        try:
            datastore.update(PLAYGROUND_ARTIFACTS, {"message_id": message_id}, {"id": artifact_id})
        except DatastoreError as e:
            logging.warning(f"Could not link artifact {artifact_id} to message {message_id}: {e}")
