"""
Newline-delimited JSON streaming for the agent endpoints.

The orchestration loop runs in its own green thread and reports through a
StreamSink, which turns every sink call into a StreamEvent on an eventlet
queue. The response generator drains that queue and fills idle gaps with
keepalive pings so intermediaries never buffer the response. When the client
goes away, the generator's cleanup cancels the loop and kills the worker.
"""
import logging
import time
from typing import Any, Callable, Iterator

import eventlet
from eventlet.queue import Empty, Queue

from config import PING_INTERVAL_SECONDS
from data_models import StreamEvent
from exceptions import RequestCancelled
from orchestrator import OutputSink
from utils import now_millis

TOOL_MARKER = "\n\n[tool:{id}]\n\n"

NDJSON_HEADERS = {
    "Content-Type": "application/x-ndjson; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}

_DONE = object()


class StreamSink(OutputSink):
    """
    Forwards a run to the client as it happens.

    A text marker is written into the text channel whenever a tool starts, so
    a client that renders only text still sees where each tool ran.
    """
    streams_deltas = True

    def __init__(self, include_thoughts: bool = False):
        super().__init__(include_thoughts)
        self.events: Queue = Queue()

    def emit(self, event: StreamEvent):
        self.events.put(event)

    def begin_tool(self, name: str) -> int:
        tool_id = super().begin_tool(name)
        self.text(TOOL_MARKER.format(id=tool_id))
        return tool_id

    def final_text(self, loop_text: str) -> str:
        # The streamed transcript, markers included, is what the client saw.
        return self.transcript

    def close(self):
        self.events.put(_DONE)

    def cancel(self):
        self.cancelled = True


def wants_stream(headers) -> bool:
    """True when the request asked for NDJSON via Accept or X-Stream."""
    accept = (headers.get("Accept") or "").lower()
    return "application/x-ndjson" in accept or (headers.get("X-Stream") or "").strip().lower() == "true"


def stream_events(
    run: Callable[[StreamSink], Any],
    sink: StreamSink,
    ping_interval: float = PING_INTERVAL_SECONDS,
) -> Iterator[str]:
    """
    Runs `run(sink)` in a green thread and yields its events as NDJSON lines.

    A failure inside the run becomes an in-band error event, after which the
    stream ends without an end event. Pings are only written between events,
    so a successful stream always finishes with its end event.

    Args:
        run: The work to perform; it reports exclusively through the sink.
        sink: The sink shared with `run`.
        ping_interval: Seconds between keepalive pings while nothing else is sent.
    """
    def worker():
        try:
            run(sink)
        except RequestCancelled:
            logging.info("Streaming run cancelled after the client disconnected.")
        except Exception as e:
            logging.error(f"Streaming run failed: {e}", exc_info=True)
            sink.fail(str(e))
        finally:
            sink.close()

    thread = eventlet.spawn(worker)
    next_ping = time.monotonic() + ping_interval
    try:
        while True:
            try:
                item = sink.events.get(timeout=max(0.0, next_ping - time.monotonic()))
            except Empty:
                yield StreamEvent(type="ping", t=now_millis()).to_line()
                next_ping = time.monotonic() + ping_interval
                continue
            if item is _DONE:
                break
            if time.monotonic() >= next_ping:
                yield StreamEvent(type="ping", t=now_millis()).to_line()
                next_ping = time.monotonic() + ping_interval
            yield item.to_line()
    finally:
        sink.cancel()
        thread.kill()
