"""
Core reasoning loop of the agent.

This module drives one request from prompt to answer: it seeds the
conversation, asks the model for its next turn, executes every requested tool
in order, feeds the results back, and repeats until the model answers in plain
text. The same routine serves JSON and streamed responses; the difference
lives entirely in the OutputSink it is given.
"""
import json
import logging
import uuid
from typing import Callable, Optional, TypeVar

from google.genai import types

import persistence
from attachments import normalize_attachments
from audit_logger import audit_log
from config import DEFAULT_MODEL, DEBUG_MODE, MAX_TOOL_ROUNDS, SYNTHETIC_CHUNK_SIZE
from context_builder import attachment_manifest, build_system_instruction
from data_models import Attachment, FileEdit, Mode, ModelTurn, Role, StreamEvent, ToolCall, ToolEvent, ToolResult, TurnRequest, TurnResult
from exceptions import RequestCancelled, RoundLimitExceeded
from tool_agent import ToolContext, execute_tool_command
from tool_declarations import to_function_declarations, toolset_for
from tracer import log_event, trace, tracing
from utils import chunk_text

T = TypeVar("T")


class OutputSink:
    """
    Receives everything a run produces, in order.

    The base class only accumulates; subclasses forward events by overriding
    `emit`. Tool ids increase monotonically for the sink's whole lifetime, so
    they stay unique across a model-fallback retry.
    """
    # Whether the loop should use the provider's streaming endpoint.
    streams_deltas = False

    def __init__(self, include_thoughts: bool = False):
        self.include_thoughts = include_thoughts
        self.cancelled = False
        self._tool_counter = 0
        self.transcript = ""
        self.thoughts = ""
        self.tool_events: list[ToolEvent] = []

    def emit(self, event: StreamEvent):
        pass

    def begin_attempt(self, model: str, chat_id: Optional[str] = None):
        self.transcript = ""
        self.thoughts = ""
        self.tool_events = []
        self.emit(StreamEvent(type="start", model=model, chatId=chat_id))

    def text(self, delta: str):
        if delta:
            self.transcript += delta
            self.emit(StreamEvent(type="text", delta=delta))

    def thought(self, delta: str):
        if delta and self.include_thoughts:
            self.thoughts += delta
            self.emit(StreamEvent(type="thought", delta=delta))

    def begin_tool(self, name: str) -> int:
        self._tool_counter += 1
        self.emit(StreamEvent(type="tool_in_progress", id=self._tool_counter, name=name))
        return self._tool_counter

    def end_tool(self, tool_id: int, name: str, result: ToolResult):
        payload = result.to_response()
        self.tool_events.append(ToolEvent(id=tool_id, name=name, result=payload))
        self.emit(StreamEvent(type="tool_result", id=tool_id, name=name, ok=result.ok, result=payload))

    def final_text(self, loop_text: str) -> str:
        """The answer text to return and persist for a finished run."""
        return loop_text

    def finish(self, result: TurnResult):
        self.emit(StreamEvent(
            type="end",
            finalText=result.text,
            messageId=result.message_id,
            chatId=result.chat_id,
            fileEdits=[edit.model_dump() for edit in result.file_edits],
        ))

    def fail(self, message: str):
        self.emit(StreamEvent(type="error", message=message))


class BufferSink(OutputSink):
    """Collects a run for a single JSON response."""


# --- Conversation Helpers ---
def function_call_turn(call: ToolCall) -> types.Content:
    return types.Content(role=Role.MODEL.value, parts=[types.Part.from_function_call(name=call.name, args=call.args)])


def function_response_turn(call: ToolCall, result: ToolResult) -> types.Content:
    return types.Content(
        role=Role.USER.value,
        parts=[types.Part.from_function_response(name=call.name, response={"result": result.to_response()})],
    )


def seed_contents(history: list[types.Content], prompt: str, attachments: list[Attachment]) -> list[types.Content]:
    """Prior turns, then the user's prompt, then the attachment manifest when there is one."""
    contents = list(history)
    contents.append(types.Content(role=Role.USER.value, parts=[types.Part.from_text(text=prompt)]))
    manifest = attachment_manifest(attachments)
    if manifest:
        contents.append(types.Content(role=Role.USER.value, parts=[types.Part.from_text(text=manifest)]))
    return contents


def changes_summary(file_edits: list[FileEdit]) -> str:
    changed = [edit for edit in file_edits if edit.operation != "read"]
    if not changed:
        return ""
    return "\n\nChanges applied:\n" + "\n".join(f"- {edit.operation} {edit.path}" for edit in changed)


def _check_cancelled(sink: OutputSink):
    if sink.cancelled:
        raise RequestCancelled("Client disconnected.")


# --- Model Calls ---
@trace
def _next_model_turn(
    model: str,
    context: ToolContext,
    sink: OutputSink,
    contents: list[types.Content],
    declarations: list[types.FunctionDeclaration],
    system_instruction: str,
) -> ModelTurn:
    """
    Gets the model's next turn, streaming its text and reasoning into the sink.

    When the streaming endpoint yields no chunks at all, one non-streaming
    call is made and its text is replayed as fixed-size deltas, so the sink
    sees the same events either way.
    """
    client = context.model_client
    audit_log.log_event(
        event="Model Call",
        chat_id=context.chat_id,
        project_id=context.project_id,
        loop_id=context.loop_id,
        source="Orchestrator",
        destination=model,
        details={"turns": len(contents), "streaming": sink.streams_deltas},
    )

    if not sink.streams_deltas:
        turn = client.generate(model, contents, declarations, system_instruction, sink.include_thoughts)
        sink.thought(turn.thoughts)
        return turn

    text, thoughts, calls = [], [], []
    received = False
    for chunk in client.stream(model, contents, declarations, system_instruction, sink.include_thoughts):
        _check_cancelled(sink)
        received = True
        if chunk.thoughts:
            thoughts.append(chunk.thoughts)
            sink.thought(chunk.thoughts)
        if chunk.text:
            text.append(chunk.text)
            sink.text(chunk.text)
        calls.extend(chunk.function_calls)
    if received:
        return ModelTurn(text="".join(text), thoughts="".join(thoughts), function_calls=calls)

    logging.info(f"Model '{model}' streamed no chunks; falling back to a single call.")
    turn = client.generate(model, contents, declarations, system_instruction, sink.include_thoughts)
    sink.thought(turn.thoughts)
    if not turn.has_tool_calls:
        for delta in chunk_text(turn.text, SYNTHETIC_CHUNK_SIZE):
            sink.text(delta)
    return turn


@trace
def run_loop(model: str, context: ToolContext, sink: OutputSink, contents: list[types.Content]) -> str:
    """
    Runs the tool-calling loop until the model answers without tool calls.

    Tool calls run strictly in the order received. Each one appends exactly
    two turns: the model's function call, then the user-side function
    response.

    Returns:
        The text of the final model turn.

    Raises:
        RoundLimitExceeded: If the model asks for tools more than MAX_TOOL_ROUNDS times.
        RequestCancelled: If the sink reports that the client went away.
    """
    toolset = toolset_for(context.mode)
    declarations = to_function_declarations(toolset)
    rounds = 0
    while True:
        _check_cancelled(sink)
        system_instruction = build_system_instruction(context, toolset)
        turn = _next_model_turn(model, context, sink, contents, declarations, system_instruction)
        if not turn.has_tool_calls:
            return turn.text

        rounds += 1
        if rounds > MAX_TOOL_ROUNDS:
            raise RoundLimitExceeded(f"The model requested tools in more than {MAX_TOOL_ROUNDS} consecutive rounds.")
        log_event("TOOL ROUND", {"round": rounds, "calls": [call.name for call in turn.function_calls]})

        for call in turn.function_calls:
            _check_cancelled(sink)
            tool_id = sink.begin_tool(call.name)
            result = execute_tool_command(call, context)
            sink.end_tool(tool_id, call.name, result)
            contents.append(function_call_turn(call))
            contents.append(function_response_turn(call, result))


def run_with_fallback(preferred_model: str, attempt: Callable[[str], T], context: Optional[ToolContext] = None) -> T:
    """
    Runs `attempt` on the preferred model, retrying the whole attempt once on
    DEFAULT_MODEL if it fails.

    No retry happens when the preferred model already is the default, or when
    the failure is a round limit or a cancellation.
    """
    try:
        return attempt(preferred_model)
    except (RoundLimitExceeded, RequestCancelled):
        raise
    except Exception as e:
        if preferred_model == DEFAULT_MODEL:
            raise
        logging.warning(f"Model '{preferred_model}' failed ({e}); retrying once with '{DEFAULT_MODEL}'.")
        audit_log.log_event(
            event="Model Fallback",
            chat_id=getattr(context, "chat_id", None),
            project_id=getattr(context, "project_id", None),
            loop_id=getattr(context, "loop_id", None),
            source=preferred_model,
            destination=DEFAULT_MODEL,
            details=str(e),
        )
        return attempt(DEFAULT_MODEL)


# --- Request Entry Point ---
@trace
def execute_turn(request: TurnRequest, context: ToolContext, sink: OutputSink) -> TurnResult:
    """
    Runs one Ask, Build or Playground request end to end.

    Steps:
    1. Resolve the scope (creating the playground chat if needed) and
       normalize attachments.
    2. Load prior history, then store the new user message (playground).
    3. Run the loop on the preferred model, with one fallback retry.
    4. Store the assistant message and link produced artifacts (playground).
    5. Report the result to the sink.

    Args:
        request: The parsed request body.
        context: The request's tool context; its scope ids and accumulated
                 state are filled in here.
        sink: Where incremental output goes.
    """
    context.loop_id = str(uuid.uuid4())
    preferred_model = request.model or DEFAULT_MODEL
    is_playground = context.mode == Mode.PLAYGROUND

    with tracing() as tracer:
        try:
            if is_playground:
                context.chat_id = persistence.ensure_playground_chat(context.datastore, request.chat_id)
            context.attachments = normalize_attachments(request.all_attachments, context.storage)
            history = persistence.load_history(context, request)
            if is_playground:
                persistence.save_user_message(context, request.prompt)

            def attempt(model: str) -> tuple[str, str]:
                context.begin_attempt()
                context.preferred_model = model
                sink.begin_attempt(model, context.chat_id)
                contents = seed_contents(history, request.prompt, context.attachments)
                return model, run_loop(model, context, sink, contents)

            model, loop_text = run_with_fallback(preferred_model, attempt, context)

            text = sink.final_text(loop_text)
            if context.mode == Mode.BUILD:
                summary = changes_summary(context.file_edits)
                if summary:
                    sink.text(summary)
                    text += summary

            result = TurnResult(
                text=text,
                model=model,
                file_edits=list(context.file_edits),
                tool_events=list(sink.tool_events),
                artifact_ids=list(context.artifact_ids),
                thoughts=sink.thoughts,
                chat_id=context.chat_id,
                files_analyzed=list(context.files_analyzed),
            )
            if is_playground:
                result.message_id = persistence.save_ai_message(context, result)
            sink.finish(result)
            logging.info(f"Loop {context.loop_id} finished on '{model}' with {len(result.tool_events)} tool call(s).")
            return result
        finally:
            if DEBUG_MODE:
                logging.debug(f"Trace for loop {context.loop_id}: {json.dumps(tracer.get_trace(), default=str)}")
