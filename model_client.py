"""
Provides the application's single point of contact with the Gemini API.

The wrapper keeps SDK details (config objects, candidate/part traversal,
file-state polling) out of the orchestrator and tool agent, and gives every
upstream call the same two guarantees:
- it runs in eventlet's OS thread pool, so a slow response never stalls the
  hub (keepalive pings and other requests keep flowing);
- it is bounded by a timeout and fails with a typed ModelTimeout, distinct
  from other provider errors.
"""
import io
import logging
import os
import time
from typing import Any, Iterator, Optional

import eventlet
from eventlet import tpool
from google import genai
from google.genai import types

from config import (
    API_KEY_ENV_BY_MODE,
    API_KEY_FILE,
    FILE_READY_POLL_SECONDS,
    FILE_READY_TIMEOUT_SECONDS,
    MODEL_CALL_TIMEOUT_SECONDS,
)
from data_models import ModelTurn, ToolCall
from exceptions import ConfigError, ModelCallError, ModelTimeout
from tracer import trace

_STREAM_END = object()


def load_api_key(mode: Optional[str] = None) -> Optional[str]:
    """
    Finds the Gemini API key for an endpoint.

    The mode-specific variable wins, then GEMINI_API_KEY, then the key file
    under private_data/.
    """
    candidates = []
    if mode and mode in API_KEY_ENV_BY_MODE:
        candidates.append(os.environ.get(API_KEY_ENV_BY_MODE[mode]))
    candidates.append(os.environ.get("GEMINI_API_KEY"))
    for value in candidates:
        if value and value.strip():
            return value.strip()
    try:
        with open(API_KEY_FILE, "r") as f:
            return f.read().strip() or None
    except FileNotFoundError:
        return None


def create_model_client(mode: Optional[str] = None) -> "ModelClient":
    """
    Raises:
        ConfigError: If no API key can be found for the mode.
    """
    api_key = load_api_key(mode)
    if not api_key:
        variable = API_KEY_ENV_BY_MODE.get(mode or "", "GEMINI_API_KEY")
        raise ConfigError(f"{variable} is not set.")
    return ModelClient(genai.Client(api_key=api_key))


def build_config(
    declarations: Optional[list[types.FunctionDeclaration]] = None,
    system_instruction: Optional[str] = None,
    include_thoughts: bool = False,
) -> types.GenerateContentConfig:
    """Assembles the per-call generation config for a tool-calling turn."""
    return types.GenerateContentConfig(
        system_instruction=system_instruction or None,
        tools=[types.Tool(function_declarations=declarations)] if declarations else None,
        thinking_config=types.ThinkingConfig(include_thoughts=True, thinking_budget=-1) if include_thoughts else None,
    )


def _response_parts(response: Any) -> list[Any]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    content = getattr(candidates[0], "content", None)
    return list(getattr(content, "parts", None) or [])


def to_model_turn(response: Any) -> ModelTurn:
    """
    Reduces an SDK response (or stream chunk) to text, thoughts and tool calls.

    Parts flagged as thoughts never leak into the answer text.
    """
    text, thoughts, calls = [], [], []
    for part in _response_parts(response):
        part_text = getattr(part, "text", None)
        if part_text:
            (thoughts if getattr(part, "thought", False) else text).append(part_text)
        function_call = getattr(part, "function_call", None)
        if function_call is not None and getattr(function_call, "name", None):
            calls.append(ToolCall(name=function_call.name, args=dict(function_call.args or {})))
    return ModelTurn(text="".join(text), thoughts="".join(thoughts), function_calls=calls)


class ModelClient:
    """
    Acts as the local stand-in for the remote model service.
    Every method mirrors one provider capability the application uses.
    """

    def __init__(self, client: genai.Client, timeout: float = MODEL_CALL_TIMEOUT_SECONDS):
        self.client = client
        self.timeout = timeout

    def _bounded(self, label: str, fn, *args, **kwargs):
        """
        Runs a blocking SDK call in the thread pool under the call timeout.

        Raises:
            ModelTimeout: If the call outlives `self.timeout` seconds.
            ModelCallError: For any other provider failure.
        """
        timer = eventlet.Timeout(self.timeout) if self.timeout and self.timeout > 0 else None
        try:
            return tpool.execute(fn, *args, **kwargs)
        except eventlet.Timeout as t:
            if t is not timer:
                raise
            logging.warning(f"Model call '{label}' timed out after {self.timeout}s.")
            raise ModelTimeout(f"Model call '{label}' timed out after {self.timeout}s") from None
        except ModelCallError:
            raise
        except Exception as e:
            raise ModelCallError(f"Model call '{label}' failed: {e}") from e
        finally:
            if timer is not None:
                timer.cancel()

    @trace
    def generate(
        self,
        model: str,
        contents: list[types.Content],
        declarations: Optional[list[types.FunctionDeclaration]] = None,
        system_instruction: Optional[str] = None,
        include_thoughts: bool = False,
    ) -> ModelTurn:
        """Sends one non-streaming tool-calling turn and reduces the response."""
        config = build_config(declarations, system_instruction, include_thoughts)
        response = self._bounded(
            "generate_content", self.client.models.generate_content,
            model=model, contents=contents, config=config,
        )
        return to_model_turn(response)

    def stream(
        self,
        model: str,
        contents: list[types.Content],
        declarations: Optional[list[types.FunctionDeclaration]] = None,
        system_instruction: Optional[str] = None,
        include_thoughts: bool = False,
    ) -> Iterator[ModelTurn]:
        """
        Streams one tool-calling turn, yielding each chunk as a ModelTurn delta.

        Each chunk is pulled under its own timeout, so a stalled stream fails
        with ModelTimeout instead of hanging the request.
        """
        config = build_config(declarations, system_instruction, include_thoughts)
        chunks = self._bounded(
            "generate_content_stream", self.client.models.generate_content_stream,
            model=model, contents=contents, config=config,
        )
        iterator = iter(chunks)
        while True:
            chunk = self._bounded("generate_content_stream", next, iterator, _STREAM_END)
            if chunk is _STREAM_END:
                return
            yield to_model_turn(chunk)

    @trace
    def generate_content(self, model: str, parts: list[types.Part], config: Optional[types.GenerateContentConfig] = None) -> str:
        """A single user turn made of arbitrary parts; returns the answer text."""
        contents = [types.Content(role="user", parts=parts)]
        response = self._bounded(
            "generate_content", self.client.models.generate_content,
            model=model, contents=contents, config=config,
        )
        return to_model_turn(response).text

    @trace
    def generate_image(self, model: str, parts: list[types.Part]) -> tuple[Optional[bytes], Optional[str], Optional[str]]:
        """
        Asks an image-capable model for an image.

        Returns:
            (image bytes, image mime type, caption); bytes are None when the
            response carried no image.
        """
        config = types.GenerateContentConfig(response_modalities=["TEXT", "IMAGE"])
        contents = [types.Content(role="user", parts=parts)]
        response = self._bounded(
            "generate_image", self.client.models.generate_content,
            model=model, contents=contents, config=config,
        )
        image, mime_type, caption = None, None, None
        for part in _response_parts(response):
            if getattr(part, "text", None) and caption is None:
                caption = part.text
            inline = getattr(part, "inline_data", None)
            if inline is not None and getattr(inline, "data", None) and image is None:
                image, mime_type = inline.data, getattr(inline, "mime_type", None) or "image/png"
        return image, mime_type, caption

    @trace
    def upload_file(self, data: bytes, mime_type: str, display_name: Optional[str] = None) -> types.File:
        """Uploads bytes to the provider's file store."""
        upload_config = types.UploadFileConfig(mime_type=mime_type, display_name=display_name)
        return self._bounded("files.upload", self.client.files.upload, file=io.BytesIO(data), config=upload_config)

    @trace
    def wait_until_active(
        self,
        file: types.File,
        timeout: float = FILE_READY_TIMEOUT_SECONDS,
        poll_interval: float = FILE_READY_POLL_SECONDS,
    ) -> types.File:
        """
        Polls an uploaded file until the provider reports it ready.

        Raises:
            ModelCallError: If processing failed on the provider side.
            ModelTimeout: If the file is still processing after `timeout` seconds.
        """
        deadline = time.monotonic() + timeout
        while True:
            state = getattr(file, "state", None)
            if state is None or state == types.FileState.ACTIVE:
                return file
            if state == types.FileState.FAILED:
                raise ModelCallError(f"Provider failed to process file '{file.name}'.")
            if time.monotonic() >= deadline:
                raise ModelTimeout(f"File '{file.name}' was not ready after {timeout}s.")
            eventlet.sleep(poll_interval)
            file = self._bounded("files.get", self.client.files.get, name=file.name)
